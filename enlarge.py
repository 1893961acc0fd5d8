#!/usr/bin/env python3
"""
Enlarge images and videos with Real-ESRGAN.

Images are enhanced one at a time and optionally transcoded; videos are split
into frames, enhanced in a single batch, and rebuilt with the original audio.
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from cli import build_video_config, parse_args, resolve_model, validate_runtime_args
from events import PipelineEvents
from image_pipeline import ImagePipeline, ImageRunConfig
from toolchain import progress_write, resolve_toolchain
from tracing import init_tracing, traced, tracing_requested
from video_pipeline import PipelineStage, VideoPipeline

STAGE_LABELS = {
    PipelineStage.PROBING: "Analyzing video",
    PipelineStage.EXTRACTING_FRAMES: "Extracting frames",
    PipelineStage.ENHANCING_FRAMES: "Enhancing frames",
    PipelineStage.REBUILDING: "Rebuilding video",
}


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


class ConsoleEvents(PipelineEvents):
    """Render pipeline events as a tqdm bar plus step timings."""

    def __init__(self) -> None:
        self._bar: Optional[tqdm] = None
        self._step_start = time.time()

    def _close_bar(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def _open_bar(self, desc: str) -> tqdm:
        self._close_bar()
        self._bar = tqdm(total=100, desc=desc, unit="%", leave=False)
        return self._bar

    def stage_changed(self, stage: PipelineStage) -> None:
        elapsed = time.time() - self._step_start
        self._close_bar()
        if stage in STAGE_LABELS:
            if stage is not PipelineStage.PROBING:
                print(f"  Time: {format_time(elapsed)}\n")
            print(f"{STAGE_LABELS[stage]}...")
            self._step_start = time.time()
        elif stage is PipelineStage.DONE:
            print(f"  Time: {format_time(elapsed)}\n")

    def progress(self, percent: float, status: str) -> None:
        bar = self._bar or self._open_bar("Progress")
        bar.set_postfix_str(status, refresh=False)
        bar.n = max(0.0, min(100.0, float(percent)))
        bar.refresh()

    def file_processed(self, path: Path) -> None:
        self._close_bar()
        progress_write(f"  Saved: {path}")

    def images_finished(self, manifest: list[Path]) -> None:
        self._close_bar()

    def video_finished(self, path: Path) -> None:
        self._close_bar()

    def cancelled(self) -> None:
        self._close_bar()
        progress_write("Processing cancelled.")

    def error(self, exc: Exception) -> None:
        self._close_bar()


def print_banner(title: str, rows: list[tuple[str, object]]) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    for label, value in rows:
        print(f"{label + ':':<8}{value}")
    print("=" * 60 + "\n")


def run_images(args: argparse.Namespace) -> int:
    toolchain = resolve_toolchain(args)
    config = ImageRunConfig(
        input_paths=tuple(Path(p).expanduser() for p in args.inputs),
        model_name=resolve_model(args),
        output_format=args.output_format,
        open_output_dir=args.open_dir,
        output_dir=Path(args.output_dir).expanduser().resolve() if args.output_dir else None,
    )
    print_banner(
        "Image Enlarger - Real-ESRGAN",
        [
            ("Inputs", len(config.input_paths)),
            ("Model", config.model_name),
            ("Format", config.output_format),
        ],
    )

    total_start = time.time()
    manifest = ImagePipeline(toolchain, events=ConsoleEvents()).run(config)

    print("=" * 60)
    print(f"Complete! {len(manifest)} file(s) written.")
    print(f"Total time: {format_time(time.time() - total_start)}")
    print("=" * 60 + "\n")
    return 0


def run_video(args: argparse.Namespace) -> int:
    config = build_video_config(args)
    input_video = config.input_path
    if not input_video.is_file():
        raise FileNotFoundError(f"Input video not found: {input_video}")

    toolchain = resolve_toolchain(args)
    output_video = config.resolve_output_path()
    print_banner(
        "Video Enlarger - Real-ESRGAN",
        [
            ("Input", input_video),
            ("Output", output_video),
            ("Scale", f"{config.scale_factor}x"),
            ("Model", config.model_name),
            ("Frames", config.output_format),
        ],
    )

    total_start = time.time()
    work_parent = Path(args.work_dir).expanduser().resolve() if args.work_dir else None
    with VideoPipeline(
        toolchain,
        events=ConsoleEvents(),
        work_parent=work_parent,
        poll_interval=args.poll_interval,
        stall_timeout=args.stall_timeout,
    ) as pipeline:
        result = pipeline.run(config)

    if result is None:
        return 130

    print("=" * 60)
    print("Complete!")
    print(f"Framerate: {pipeline.framerate} fps")
    print(f"Total time: {format_time(time.time() - total_start)}")
    print(f"Output: {result}")
    if result.exists():
        output_size_mb = result.stat().st_size / (1024 * 1024)
        print(f"Output size: {output_size_mb:.1f} MB")
    print("=" * 60 + "\n")
    return 0


@traced
def run(args: argparse.Namespace) -> int:
    validate_runtime_args(args)
    if args.command == "image":
        return run_images(args)
    return run_video(args)


def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parse_args(raw_argv)

    if args.trace or tracing_requested():
        init_tracing()

    try:
        return run(args)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
