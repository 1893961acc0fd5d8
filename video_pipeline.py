"""
Video pipeline: probe, extract frames, enhance them in batch, rebuild the video.

Each stage runs exactly one external process and the next stage starts only
after the previous process has exited and been reaped. The enhancement stage
is the one place where two things happen at once: Real-ESRGAN works through
the frame directory while the driver polls the output directory for progress
and stalls.
"""

from __future__ import annotations

import math
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from errors import (
    EnhancementError,
    ExtractionError,
    FrameCountMismatchError,
    LaunchError,
    MetadataError,
    RebuildError,
    StallTimeoutError,
)
from events import PipelineEvents
from image_pipeline import parse_progress_percentages
from process_runner import ProcessHandle, ProcessResult, ProcessRunner
from progress_watcher import ProgressEvent, ProgressWatcher, count_matching_files
from toolchain import Toolchain, progress_write, reveal_directory
from tracing import span
from workspace import TempWorkspace

DEFAULT_FPS = "30"
DEFAULT_SCALE = 2
SUPPORTED_SCALES = (2, 3, 4)
SUPPORTED_FRAME_FORMATS = ("png", "jpg", "webp")

FRAME_PATTERN = "frame%08d"
EXTRACTED_FRAME_GLOB = "*.png"

PREFERRED_ENCODER = "libx264"
FALLBACK_ENCODER = "mpeg4"


class PipelineStage(Enum):
    IDLE = 0
    PROBING = 1
    EXTRACTING_FRAMES = 2
    ENHANCING_FRAMES = 3
    REBUILDING = 4
    DONE = 5
    FAILED = 6
    CANCELLED = 7

    @property
    def terminal(self) -> bool:
        return self in (PipelineStage.DONE, PipelineStage.FAILED, PipelineStage.CANCELLED)


@dataclass(frozen=True)
class VideoRunConfig:
    input_path: Path
    model_name: str
    scale_factor: int = DEFAULT_SCALE
    output_format: str = "png"
    open_output_dir: bool = False
    output_path: Optional[Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "input_path", Path(self.input_path))
        object.__setattr__(self, "output_format", self.output_format.lower())
        if self.output_path is not None:
            object.__setattr__(self, "output_path", Path(self.output_path))
        if self.scale_factor not in SUPPORTED_SCALES:
            raise ValueError(f"Unsupported scale factor: {self.scale_factor}")
        if self.output_format not in SUPPORTED_FRAME_FORMATS:
            raise ValueError(f"Unsupported frame format: {self.output_format}")

    def resolve_output_path(self) -> Path:
        if self.output_path is not None:
            return self.output_path.expanduser().resolve()
        source = self.input_path.resolve()
        return source.parent / f"{source.stem}_enhanced.mp4"


@dataclass(frozen=True)
class FrameCounters:
    total_frames: int = 0
    processed_frames: int = 0
    last_progress_at: float = 0.0


class RunCancelled(Exception):
    """Raised inside the driver once a cancellation has been observed."""


def parse_frame_rate(value: str) -> str:
    """Parse an ffprobe `num/den` frame rate into a two-decimal string.

    Anything that is not a well-formed positive ratio falls back to "30".
    """
    parts = value.strip().split("/")
    if len(parts) != 2:
        return DEFAULT_FPS

    try:
        numerator = float(parts[0])
        denominator = float(parts[1])
    except ValueError:
        return DEFAULT_FPS

    if denominator == 0:
        return DEFAULT_FPS
    framerate = numerator / denominator
    if not math.isfinite(framerate) or framerate <= 0:
        return DEFAULT_FPS
    return f"{framerate:.2f}"


def build_probe_args(input_video: Path) -> list[str]:
    return [
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=r_frame_rate",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(input_video),
    ]


def build_extract_args(input_video: Path, frames_dir: Path) -> list[str]:
    return [
        "-i",
        str(input_video),
        "-qscale:v",
        "1",
        "-qmin",
        "1",
        "-qmax",
        "1",
        "-fps_mode",
        "passthrough",
        "-hide_banner",
        "-loglevel",
        "warning",
        str(frames_dir / f"{FRAME_PATTERN}.png"),
    ]


def build_enhance_args(
    frames_dir: Path,
    enhanced_dir: Path,
    *,
    model_name: str,
    scale_factor: int,
    frame_format: str,
) -> list[str]:
    return [
        "-i",
        str(frames_dir),
        "-o",
        str(enhanced_dir),
        "-n",
        model_name,
        "-s",
        str(scale_factor),
        "-f",
        frame_format,
    ]


def get_encoder_flags(encoders_listing: str) -> tuple[list[str], bool]:
    """Return encoder flags and whether the preferred encoder was available."""
    if PREFERRED_ENCODER in encoders_listing:
        return ["-c:v", PREFERRED_ENCODER, "-pix_fmt", "yuv420p"], True
    return ["-c:v", FALLBACK_ENCODER, "-q:v", "2"], False


def build_rebuild_args(
    enhanced_dir: Path,
    input_video: Path,
    output_video: Path,
    *,
    framerate: str,
    frame_format: str,
    encoder_flags: list[str],
) -> list[str]:
    # Audio is mapped optionally ("?") so silent sources still rebuild.
    args = [
        "-y",
        "-r",
        framerate,
        "-i",
        str(enhanced_dir / f"{FRAME_PATTERN}.{frame_format}"),
        "-i",
        str(input_video),
        "-map",
        "0:v:0",
        "-map",
        "1:a:0?",
        "-c:a",
        "copy",
    ]
    args.extend(encoder_flags)
    args.extend(["-hide_banner", "-loglevel", "warning", str(output_video)])
    return args


class VideoPipeline:
    """Drive one video through the four stages, one run at a time.

    `cancel()` may be called from any thread. It stops the active process
    and watcher immediately; the driver notices at its next checkpoint,
    discards whatever completed late, and tears the workspace down.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        events: Optional[PipelineEvents] = None,
        runner: Optional[ProcessRunner] = None,
        *,
        work_parent: Optional[Path] = None,
        poll_interval: float = 0.5,
        stall_timeout: float = 30.0,
        probe_timeout: float = 5.0,
        cancel_grace: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.toolchain = toolchain
        self.events = events or PipelineEvents()
        self.runner = runner or ProcessRunner()
        self.work_parent = work_parent
        self.poll_interval = poll_interval
        self.stall_timeout = stall_timeout
        self.probe_timeout = probe_timeout
        self.cancel_grace = cancel_grace
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._idle = threading.Event()
        self._idle.set()
        self._driver_thread: Optional[int] = None
        self._active: Optional[ProcessHandle] = None
        self._watcher: Optional[ProgressWatcher] = None
        self._workspace: Optional[TempWorkspace] = None
        self._stage = PipelineStage.IDLE
        self._counters = FrameCounters()
        self._framerate = DEFAULT_FPS

    @property
    def stage(self) -> PipelineStage:
        return self._stage

    @property
    def counters(self) -> FrameCounters:
        return self._counters

    @property
    def workspace(self) -> Optional[TempWorkspace]:
        return self._workspace

    @property
    def framerate(self) -> str:
        return self._framerate

    @property
    def running(self) -> bool:
        return not self._idle.is_set()

    # -- public API -------------------------------------------------------

    def run(self, config: VideoRunConfig) -> Optional[Path]:
        """Run all stages; returns the output path, or None when cancelled."""
        with self._lock:
            if self.running:
                raise RuntimeError("A run is already active on this pipeline.")
            self._idle.clear()
            self._driver_thread = threading.get_ident()
            self._cancel_requested.clear()
            self._stage = PipelineStage.IDLE
            self._counters = FrameCounters()
            self._framerate = DEFAULT_FPS

        try:
            output = self._run_stages(config)
        except RunCancelled:
            self._finish(PipelineStage.CANCELLED)
            self.events.cancelled()
            return None
        except KeyboardInterrupt:
            self._cancel_requested.set()
            self._finish(PipelineStage.CANCELLED)
            self.events.cancelled()
            raise
        except Exception as exc:
            self._finish(PipelineStage.FAILED)
            self.events.error(exc)
            raise
        except BaseException:
            self._finish(PipelineStage.FAILED)
            raise
        finally:
            self._release_workspace()
            self._idle.set()

        self.events.video_finished(output)
        if config.open_output_dir:
            reveal_directory(output.parent)
        return output

    def cancel(self) -> None:
        self._cancel_requested.set()
        with self._lock:
            handle = self._active
            watcher = self._watcher
        if watcher is not None:
            watcher.stop()
        if handle is not None:
            handle.stop(self.cancel_grace)

        if self.running and threading.get_ident() != self._driver_thread:
            self._idle.wait(timeout=self.cancel_grace + self.poll_interval)

    def close(self) -> None:
        """Cancel any active run and remove whatever workspace remains."""
        if self.running:
            self.cancel()
        self._release_workspace()

    def __enter__(self) -> "VideoPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- stages -----------------------------------------------------------

    def _run_stages(self, config: VideoRunConfig) -> Path:
        input_video = config.input_path.expanduser().resolve()
        output_video = config.resolve_output_path()
        if output_video == input_video:
            raise ValueError("Output video path must be different from input video path.")

        workspace = TempWorkspace.create(parent=self.work_parent)
        with self._lock:
            self._workspace = workspace

        self._advance(PipelineStage.PROBING)
        with span("probe", input=input_video):
            self._framerate = self._probe(input_video)

        self._advance(PipelineStage.EXTRACTING_FRAMES)
        with span("extract_frames"):
            frame_count = self._extract(input_video, workspace.frames_dir)

        self._advance(PipelineStage.ENHANCING_FRAMES)
        with span("enhance_frames", frames=frame_count, model=config.model_name):
            self._enhance(config, workspace)

        self._advance(PipelineStage.REBUILDING)
        with span("rebuild", output=output_video):
            self._rebuild(config, input_video, output_video, workspace)

        self._advance(PipelineStage.DONE)
        self.events.progress(100, f"Video complete: {output_video}")
        return output_video

    def _probe(self, input_video: Path) -> str:
        self.events.progress(0, "Reading video metadata...")
        try:
            handle = self._launch(self.toolchain.ffprobe, build_probe_args(input_video))
        except LaunchError as exc:
            raise MetadataError(None, detail=str(exc)) from exc

        try:
            result = handle.wait(timeout=self.probe_timeout)
        except subprocess.TimeoutExpired:
            handle.stop(self.cancel_grace)
            self._checkpoint()
            progress_write(
                f"Warning: ffprobe did not answer within {self.probe_timeout:g}s; "
                f"assuming {DEFAULT_FPS} fps."
            )
            return DEFAULT_FPS
        finally:
            self._release(handle)

        self._checkpoint()
        return parse_frame_rate(result.output if result.exit_code == 0 else "")

    def _extract(self, input_video: Path, frames_dir: Path) -> int:
        self.events.progress(0, "Extracting video frames...")
        result = self._run_to_completion(
            self.toolchain.ffmpeg, build_extract_args(input_video, frames_dir)
        )
        if result.exit_code != 0:
            raise ExtractionError(result.exit_code, result.output)

        frame_count = count_matching_files(frames_dir, EXTRACTED_FRAME_GLOB)
        if frame_count == 0:
            raise ExtractionError(
                result.exit_code, result.output, detail="extraction produced zero frames"
            )
        return frame_count

    def _enhance(self, config: VideoRunConfig, workspace: TempWorkspace) -> None:
        self.events.progress(0, "Enhancing video frames...")
        total = count_matching_files(workspace.frames_dir, EXTRACTED_FRAME_GLOB)
        self._counters = FrameCounters(total_frames=total, last_progress_at=self._clock())

        handle = self._launch(
            self.toolchain.realesrgan,
            build_enhance_args(
                workspace.frames_dir,
                workspace.enhanced_dir,
                model_name=config.model_name,
                scale_factor=config.scale_factor,
                frame_format=config.output_format,
            ),
        )
        enhanced_glob = f"*.{config.output_format}"
        watcher = ProgressWatcher(
            workspace.enhanced_dir,
            enhanced_glob,
            total,
            poll_interval=self.poll_interval,
            stall_timeout=self.stall_timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
        with self._lock:
            self._watcher = watcher

        try:
            while True:
                self._checkpoint()
                try:
                    event = watcher.tick()
                except StallTimeoutError:
                    handle.stop(self.cancel_grace)
                    raise
                if event is not None:
                    self._record_progress(event)
                self._forward_enhancer_output(handle)
                if handle.poll() is not None:
                    break
                self._sleep(self.poll_interval)
            result = handle.wait()
            self._forward_enhancer_output(handle)
        finally:
            watcher.stop()
            with self._lock:
                self._watcher = None
            self._release(handle)

        self._checkpoint()
        if result.exit_code != 0:
            raise EnhancementError(result.exit_code, result.output)

        enhanced = count_matching_files(workspace.enhanced_dir, enhanced_glob)
        if enhanced != total:
            raise FrameCountMismatchError(total, enhanced)
        if enhanced > self._counters.processed_frames:
            self._record_progress(ProgressEvent(enhanced, total))

    def _rebuild(
        self,
        config: VideoRunConfig,
        input_video: Path,
        output_video: Path,
        workspace: TempWorkspace,
    ) -> None:
        self.events.progress(0, "Rebuilding video...")
        listing = self._run_to_completion(self.toolchain.ffmpeg, ["-hide_banner", "-encoders"])
        encoder_flags, preferred = get_encoder_flags(listing.output)
        if not preferred:
            progress_write(
                f"Warning: {PREFERRED_ENCODER} not available, falling back to {FALLBACK_ENCODER}."
            )

        try:
            output_video.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RebuildError(None, detail=f"cannot create {output_video.parent}: {exc}") from exc

        result = self._run_to_completion(
            self.toolchain.ffmpeg,
            build_rebuild_args(
                workspace.enhanced_dir,
                input_video,
                output_video,
                framerate=self._framerate,
                frame_format=config.output_format,
                encoder_flags=encoder_flags,
            ),
        )
        if result.exit_code != 0:
            raise RebuildError(result.exit_code, result.output)

    # -- helpers ----------------------------------------------------------

    def _advance(self, stage: PipelineStage) -> None:
        if self._stage.terminal or stage.value <= self._stage.value:
            raise RuntimeError(f"Invalid stage transition {self._stage.name} -> {stage.name}")
        self._checkpoint()
        self._stage = stage
        self.events.stage_changed(stage)

    def _finish(self, stage: PipelineStage) -> None:
        self._stop_active()
        self._release_workspace()
        if not self._stage.terminal:
            self._stage = stage
            self.events.stage_changed(stage)

    def _checkpoint(self) -> None:
        if self._cancel_requested.is_set():
            raise RunCancelled()

    def _record_progress(self, event: ProgressEvent) -> None:
        processed = min(max(event.processed, self._counters.processed_frames), event.total)
        self._counters = FrameCounters(
            total_frames=event.total,
            processed_frames=processed,
            last_progress_at=self._clock(),
        )
        self.events.progress(event.percent, f"Enhanced {processed}/{event.total} frames")

    def _forward_enhancer_output(self, handle: ProcessHandle) -> None:
        # The file count stays the progress value; the enhancer's own
        # percentage only goes into the status text.
        counters = self._counters
        percent = ProgressEvent(counters.processed_frames, counters.total_frames).percent
        for line in handle.drain_lines():
            for reported in parse_progress_percentages(line):
                self.events.progress(percent, f"Real-ESRGAN {reported:.2f}%")

    def _launch(self, executable: str, args: list[str]) -> ProcessHandle:
        with self._lock:
            if self._cancel_requested.is_set():
                raise RunCancelled()
            handle = self.runner.start(executable, args)
            self._active = handle
        return handle

    def _release(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._active is handle:
                self._active = None
        if handle.running:
            handle.stop(self.cancel_grace)

    def _run_to_completion(self, executable: str, args: list[str]) -> ProcessResult:
        handle = self._launch(executable, args)
        try:
            result = handle.wait()
        finally:
            self._release(handle)
        # A process that finished after cancel() must not advance the run.
        self._checkpoint()
        return result

    def _stop_active(self) -> None:
        with self._lock:
            handle = self._active
            watcher = self._watcher
            self._active = None
            self._watcher = None
        if watcher is not None:
            watcher.stop()
        if handle is not None and handle.running:
            handle.stop(self.cancel_grace)

    def _release_workspace(self) -> None:
        with self._lock:
            workspace = self._workspace
            self._workspace = None
        if workspace is not None:
            workspace.cleanup()
