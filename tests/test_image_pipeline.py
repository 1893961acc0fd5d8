import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from errors import (
    DirectoryCreateError,
    EnhancementError,
    InputNotFoundError,
    RenameError,
    TranscodeError,
)
from fakes import TOOLCHAIN, FakeHandle, FakeRunner, RecordingEvents, arg_after
from image_pipeline import (
    ImagePipeline,
    ImageRunConfig,
    build_output_paths,
    parse_progress_percentages,
)


class ImageScript:
    """Enhancer writes the temp PNG; ffmpeg exit codes are scripted per call."""

    def __init__(self, transcode_exits=(), enhance_exit=0, enhancer_output="25.00%\n50.00%\n100.00%\n"):
        self.transcode_exits = list(transcode_exits)
        self.enhance_exit = enhance_exit
        self.enhancer_output = enhancer_output

    def __call__(self, executable, args):
        if executable == TOOLCHAIN.realesrgan:
            if self.enhance_exit == 0:
                Path(arg_after(args, "-o")).write_bytes(b"png")
            return FakeHandle(args, exit_code=self.enhance_exit, output=self.enhancer_output)

        exit_code = self.transcode_exits.pop(0) if self.transcode_exits else 0
        if exit_code == 0:
            Path(args[-1]).write_bytes(b"encoded")
        return FakeHandle(args, exit_code=exit_code, output="Error while encoding")


class ImagePipelineTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.dir = Path(self._tmp.name).resolve()
        self.events = RecordingEvents()
        self.reveal = mock.patch("image_pipeline.reveal_directory").start()
        self.addCleanup(mock.patch.stopall)

    def make_inputs(self, *names):
        paths = []
        for name in names:
            path = self.dir / name
            path.write_bytes(b"img")
            paths.append(path)
        return paths

    def run_pipeline(self, script, inputs, output_format="png", **config):
        runner = FakeRunner(script)
        pipeline = ImagePipeline(TOOLCHAIN, events=self.events, runner=runner)
        run_config = ImageRunConfig(
            input_paths=tuple(inputs),
            model_name="realesrgan-x4plus",
            output_format=output_format,
            **config,
        )
        return runner, pipeline, run_config


class TestHelpers(unittest.TestCase):
    def test_parse_progress_percentages(self):
        text = "0.00%\n12.50%\nloading model\n99.99%"
        self.assertEqual(parse_progress_percentages(text), [0.0, 12.5, 99.99])

    def test_parse_ignores_integer_percentages(self):
        self.assertEqual(parse_progress_percentages("50% done"), [])

    def test_build_output_paths(self):
        temp, final = build_output_paths(Path("/in/cat.photo.JPG"), Path("/out"), "WEBP")
        self.assertEqual(temp, Path("/out/cat.photo_temp.png"))
        self.assertEqual(final, Path("/out/cat.photo-ENLARGE.webp"))

    def test_config_rejects_empty_inputs_and_unknown_format(self):
        with self.assertRaises(ValueError):
            ImageRunConfig(input_paths=(), model_name="m")
        with self.assertRaises(ValueError):
            ImageRunConfig(input_paths=(Path("a.png"),), model_name="m", output_format="tiff")

    def test_config_normalizes_format_case(self):
        config = ImageRunConfig(input_paths=("a.png",), model_name="m", output_format="JPG")
        self.assertEqual(config.output_format, "jpg")
        self.assertEqual(config.input_paths, (Path("a.png"),))


class TestPngOutput(ImagePipelineTestCase):
    def test_three_inputs_produce_three_manifest_entries(self):
        inputs = self.make_inputs("a.jpg", "b.png", "c.webp")
        runner, pipeline, config = self.run_pipeline(ImageScript(), inputs)

        manifest = pipeline.run(config)

        expected = [self.dir / f"{name}-ENLARGE.png" for name in ("a", "b", "c")]
        self.assertEqual(manifest, expected)
        self.assertTrue(all(path.exists() for path in manifest))
        self.assertEqual(self.events.of("images_finished"), [expected])
        self.assertEqual(self.events.of("file"), expected)
        self.assertEqual(runner.calls_to(TOOLCHAIN.ffmpeg), [])
        self.assertFalse(any(self.dir.glob("*_temp.png")))

    def test_enhancer_arguments(self):
        inputs = self.make_inputs("a.jpg")
        runner, pipeline, config = self.run_pipeline(ImageScript(), inputs)

        pipeline.run(config)

        self.assertEqual(
            runner.calls_to(TOOLCHAIN.realesrgan),
            [["-i", str(inputs[0]), "-o", str(self.dir / "a_temp.png"), "-n", "realesrgan-x4plus"]],
        )

    def test_progress_forwarded_from_enhancer_output(self):
        inputs = self.make_inputs("a.jpg")
        _, pipeline, config = self.run_pipeline(ImageScript(), inputs)

        pipeline.run(config)

        percents = [percent for percent, _ in self.events.of("progress")]
        self.assertEqual(percents, [0, 25, 50, 100])

    def test_output_dir_is_created(self):
        inputs = self.make_inputs("a.jpg")
        out_dir = self.dir / "out" / "nested"
        _, pipeline, config = self.run_pipeline(ImageScript(), inputs, output_dir=out_dir)

        manifest = pipeline.run(config)

        self.assertEqual(manifest, [out_dir / "a-ENLARGE.png"])

    def test_reveal_last_output_folder_when_requested(self):
        inputs = self.make_inputs("a.jpg", "b.jpg")
        _, pipeline, config = self.run_pipeline(ImageScript(), inputs, open_output_dir=True)

        pipeline.run(config)

        self.reveal.assert_called_once_with(self.dir)

    def test_rename_failure_raises(self):
        inputs = self.make_inputs("a.jpg")
        _, pipeline, config = self.run_pipeline(ImageScript(), inputs)

        with mock.patch.object(Path, "replace", side_effect=PermissionError("locked")):
            with self.assertRaises(RenameError):
                pipeline.run(config)
        self.assertEqual(len(self.events.of("error")), 1)


class TestFailures(ImagePipelineTestCase):
    def test_missing_input_halts_the_queue(self):
        existing = self.make_inputs("b.jpg")[0]
        runner, pipeline, config = self.run_pipeline(
            ImageScript(), [self.dir / "missing.jpg", existing]
        )

        with self.assertRaises(InputNotFoundError):
            pipeline.run(config)

        self.assertEqual(runner.calls, [])
        self.assertEqual(len(self.events.of("error")), 1)
        self.assertEqual(self.events.of("images_finished"), [])

    def test_failure_midway_keeps_earlier_outputs_and_stops(self):
        inputs = self.make_inputs("a.jpg", "b.jpg", "c.jpg")
        script = ImageScript(transcode_exits=[0, 1, 1])
        runner, pipeline, config = self.run_pipeline(script, inputs, output_format="webp")

        with self.assertRaises(TranscodeError):
            pipeline.run(config)

        self.assertEqual(pipeline.manifest, [self.dir / "a-ENLARGE.webp"])
        self.assertEqual(len(runner.calls_to(TOOLCHAIN.realesrgan)), 2)

    def test_enhancer_failure_reports_exit_code_and_output(self):
        inputs = self.make_inputs("a.jpg")
        script = ImageScript(enhance_exit=255, enhancer_output="vkCreateInstance failed -9\n")
        _, pipeline, config = self.run_pipeline(script, inputs)

        with self.assertRaises(EnhancementError) as ctx:
            pipeline.run(config)

        self.assertEqual(ctx.exception.exit_code, 255)
        self.assertIn("code 255", str(ctx.exception))
        self.assertIn("vkCreateInstance failed", str(ctx.exception))
        self.assertIs(self.events.of("error")[0], ctx.exception)

    def test_unwritable_output_dir_raises(self):
        inputs = self.make_inputs("a.jpg")
        blocker = self.dir / "blocker"
        blocker.write_text("file, not a directory")
        _, pipeline, config = self.run_pipeline(
            ImageScript(), inputs, output_dir=blocker / "sub"
        )

        with self.assertRaises(DirectoryCreateError):
            pipeline.run(config)


class TestTranscode(ImagePipelineTestCase):
    def test_jpeg_success_uses_quality_flag(self):
        inputs = self.make_inputs("a.png")
        runner, pipeline, config = self.run_pipeline(ImageScript(), inputs, output_format="jpg")

        manifest = pipeline.run(config)

        self.assertEqual(manifest, [self.dir / "a-ENLARGE.jpg"])
        calls = runner.calls_to(TOOLCHAIN.ffmpeg)
        self.assertEqual(
            calls,
            [["-y", "-i", str(self.dir / "a_temp.png"), "-q:v", "2", str(manifest[0])]],
        )
        self.assertFalse((self.dir / "a_temp.png").exists())

    def test_jpeg_failure_triggers_exactly_one_fallback(self):
        inputs = self.make_inputs("a.png")
        runner, pipeline, config = self.run_pipeline(
            ImageScript(transcode_exits=[1, 0]), inputs, output_format="jpeg"
        )

        manifest = pipeline.run(config)

        calls = runner.calls_to(TOOLCHAIN.ffmpeg)
        self.assertEqual(len(calls), 2)
        self.assertIn("scale=iw/1.3:ih/1.3", calls[1])
        self.assertEqual(manifest, [self.dir / "a-ENLARGE.jpeg"])

    def test_jpeg_fallback_failure_is_fatal(self):
        inputs = self.make_inputs("a.png")
        runner, pipeline, config = self.run_pipeline(
            ImageScript(transcode_exits=[1, 1]), inputs, output_format="jpg"
        )

        with self.assertRaises(TranscodeError):
            pipeline.run(config)

        self.assertEqual(len(runner.calls_to(TOOLCHAIN.ffmpeg)), 2)
        self.assertFalse((self.dir / "a_temp.png").exists())

    def test_webp_failure_has_no_fallback(self):
        inputs = self.make_inputs("a.png")
        runner, pipeline, config = self.run_pipeline(
            ImageScript(transcode_exits=[1]), inputs, output_format="webp"
        )

        with self.assertRaises(TranscodeError):
            pipeline.run(config)

        calls = runner.calls_to(TOOLCHAIN.ffmpeg)
        self.assertEqual(len(calls), 1)
        self.assertIn("-compression_level", calls[0])


class TestCancel(ImagePipelineTestCase):
    def test_cancel_before_next_input_stops_queue(self):
        inputs = self.make_inputs("a.jpg", "b.jpg")
        runner, pipeline, config = self.run_pipeline(ImageScript(), inputs)
        self.events.file_processed = lambda path: pipeline.cancel()

        manifest = pipeline.run(config)

        self.assertEqual(manifest, [self.dir / "a-ENLARGE.png"])
        self.assertEqual(len(runner.calls_to(TOOLCHAIN.realesrgan)), 1)
        self.assertEqual(self.events.of("images_finished"), [])
        self.assertEqual(len(self.events.of("cancelled")), 1)

    def cancel_after_enhance(self, pipeline):
        enhance = pipeline._enhance

        def enhance_then_cancel(*args):
            finished = enhance(*args)
            worker = threading.Thread(target=pipeline.cancel)
            worker.start()
            worker.join()
            return finished

        pipeline._enhance = enhance_then_cancel

    def test_cancel_between_enhance_and_transcode_starts_nothing(self):
        inputs = self.make_inputs("a.png")
        runner, pipeline, config = self.run_pipeline(ImageScript(), inputs, output_format="jpg")
        self.cancel_after_enhance(pipeline)

        manifest = pipeline.run(config)

        self.assertEqual(manifest, [])
        self.assertEqual(runner.calls_to(TOOLCHAIN.ffmpeg), [])
        self.assertEqual(len(self.events.of("cancelled")), 1)
        self.assertEqual(self.events.of("error"), [])
        self.assertFalse((self.dir / "a-ENLARGE.jpg").exists())
        self.assertFalse((self.dir / "a_temp.png").exists())

    def test_cancel_before_png_rename_keeps_manifest_empty(self):
        inputs = self.make_inputs("a.jpg")
        _, pipeline, config = self.run_pipeline(ImageScript(), inputs)
        self.cancel_after_enhance(pipeline)

        manifest = pipeline.run(config)

        self.assertEqual(manifest, [])
        self.assertEqual(self.events.of("file"), [])
        self.assertFalse((self.dir / "a-ENLARGE.png").exists())
        self.assertFalse((self.dir / "a_temp.png").exists())


if __name__ == "__main__":
    unittest.main()
