"""Single-image pipeline: enhance each input, then optionally transcode it."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from errors import (
    DirectoryCreateError,
    EnhancementError,
    EnlargeError,
    InputNotFoundError,
    RenameError,
    TranscodeError,
)
from events import PipelineEvents
from process_runner import ProcessHandle, ProcessRunner
from toolchain import Toolchain, reveal_directory
from tracing import span

SUPPORTED_OUTPUT_FORMATS = ("png", "jpg", "jpeg", "webp")
OUTPUT_SUFFIX = "-ENLARGE"
TEMP_SUFFIX = "_temp.png"

PROGRESS_PATTERN = re.compile(r"(\d+\.\d+)%")

# Fallback for encoders that reject the full-size frame.
JPEG_FALLBACK_SCALE = "scale=iw/1.3:ih/1.3"


class QueueCancelled(Exception):
    """Raised instead of starting a process once cancel() has been called."""


@dataclass(frozen=True)
class ImageRunConfig:
    input_paths: tuple[Path, ...]
    model_name: str
    output_format: str = "png"
    open_output_dir: bool = False
    output_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "input_paths", tuple(Path(p) for p in self.input_paths))
        object.__setattr__(self, "output_format", self.output_format.lower())
        if self.output_dir is not None:
            object.__setattr__(self, "output_dir", Path(self.output_dir))
        if not self.input_paths:
            raise ValueError("No input files provided.")
        if self.output_format not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format: {self.output_format}")


def parse_progress_percentages(text: str) -> list[float]:
    """Return every `NN.NN%` value found in enhancer output."""
    return [float(match) for match in PROGRESS_PATTERN.findall(text)]


def build_output_paths(input_path: Path, output_dir: Path, output_format: str) -> tuple[Path, Path]:
    stem = input_path.stem
    temp_output = output_dir / f"{stem}{TEMP_SUFFIX}"
    final_output = output_dir / f"{stem}{OUTPUT_SUFFIX}.{output_format.lower()}"
    return temp_output, final_output


def build_enhance_args(input_path: Path, temp_output: Path, model_name: str) -> list[str]:
    return ["-i", str(input_path), "-o", str(temp_output), "-n", model_name]


def build_transcode_args(temp_output: Path, final_output: Path, output_format: str) -> list[str]:
    if output_format in ("jpg", "jpeg"):
        return ["-y", "-i", str(temp_output), "-q:v", "2", str(final_output)]
    if output_format == "webp":
        return [
            "-y",
            "-i",
            str(temp_output),
            "-quality",
            "90",
            "-compression_level",
            "6",
            str(final_output),
        ]
    raise ValueError(f"Unsupported transcode format: {output_format}")


def build_jpeg_fallback_args(temp_output: Path, final_output: Path) -> list[str]:
    return [
        "-y",
        "-i",
        str(temp_output),
        "-vf",
        JPEG_FALLBACK_SCALE,
        "-q:v",
        "2",
        str(final_output),
    ]


class ImagePipeline:
    """Process a queue of images strictly one after another.

    Any fatal error halts the whole queue; inputs after the failing one are
    left untouched.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        events: Optional[PipelineEvents] = None,
        runner: Optional[ProcessRunner] = None,
        cancel_grace: float = 1.0,
    ) -> None:
        self.toolchain = toolchain
        self.events = events or PipelineEvents()
        self.runner = runner or ProcessRunner()
        self.cancel_grace = cancel_grace
        self._lock = threading.Lock()
        self._active: Optional[ProcessHandle] = None
        self._cancelled = threading.Event()
        self.manifest: list[Path] = []

    @property
    def cancel_requested(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            handle = self._active
        if handle is not None:
            handle.stop(self.cancel_grace)

    def run(self, config: ImageRunConfig) -> list[Path]:
        self.manifest = []
        self._cancelled.clear()
        total = len(config.input_paths)

        try:
            for index, input_path in enumerate(config.input_paths, start=1):
                if self.cancel_requested:
                    self.events.cancelled()
                    return list(self.manifest)
                with span("process_image", input=input_path):
                    output = self._process_one(config, input_path, index, total)
                if output is None:
                    self.events.cancelled()
                    return list(self.manifest)
                self.manifest.append(output)
                self.events.file_processed(output)
        except QueueCancelled:
            self.events.cancelled()
            return list(self.manifest)
        except EnlargeError as exc:
            self.events.error(exc)
            raise

        manifest = list(self.manifest)
        self.events.images_finished(manifest)
        if config.open_output_dir and manifest:
            reveal_directory(manifest[-1].resolve().parent)
        return manifest

    def _process_one(
        self,
        config: ImageRunConfig,
        input_path: Path,
        index: int,
        total: int,
    ) -> Optional[Path]:
        if not input_path.is_file():
            raise InputNotFoundError(input_path)

        output_dir = config.output_dir or input_path.resolve().parent
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DirectoryCreateError(output_dir, str(exc)) from exc

        temp_output, final_output = build_output_paths(input_path, output_dir, config.output_format)
        status = f"Processing image {index}/{total}: {input_path.name}"
        self.events.progress(0, status)

        try:
            if not self._enhance(input_path, temp_output, config.model_name, status):
                return None

            if config.output_format == "png":
                if self.cancel_requested:
                    return None
                try:
                    temp_output.replace(final_output)
                except OSError as exc:
                    raise RenameError(temp_output, final_output, str(exc)) from exc
            elif not self._transcode(temp_output, final_output, config.output_format):
                return None
        finally:
            temp_output.unlink(missing_ok=True)

        return final_output

    def _start(self, executable: str, args: list[str]) -> ProcessHandle:
        with self._lock:
            if self._cancelled.is_set():
                raise QueueCancelled()
            handle = self.runner.start(executable, args)
            self._active = handle
        return handle

    def _release(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._active is handle:
                self._active = None

    def _enhance(self, input_path: Path, temp_output: Path, model_name: str, status: str) -> bool:
        handle = self._start(
            self.toolchain.realesrgan,
            build_enhance_args(input_path, temp_output, model_name),
        )
        try:
            for line in handle.lines():
                for percent in parse_progress_percentages(line):
                    self.events.progress(int(percent), status)
            result = handle.wait()
        finally:
            self._release(handle)

        if self.cancel_requested:
            return False
        if result.exit_code != 0:
            raise EnhancementError(result.exit_code, result.output)
        if not temp_output.exists():
            raise EnhancementError(
                result.exit_code,
                result.output,
                detail=f"no output written to {temp_output}",
            )
        return True

    def _transcode(self, temp_output: Path, final_output: Path, output_format: str) -> bool:
        result = self._run_ffmpeg(build_transcode_args(temp_output, final_output, output_format))
        if self.cancel_requested:
            return False
        if result.exit_code == 0:
            return True

        if output_format not in ("jpg", "jpeg"):
            raise TranscodeError(result.exit_code, result.output)

        result = self._run_ffmpeg(build_jpeg_fallback_args(temp_output, final_output))
        if self.cancel_requested:
            return False
        if result.exit_code != 0:
            raise TranscodeError(result.exit_code, result.output)
        return True

    def _run_ffmpeg(self, args: list[str]):
        handle = self._start(self.toolchain.ffmpeg, args)
        try:
            return handle.wait()
        finally:
            self._release(handle)
