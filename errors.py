"""Errors raised by the image and video pipelines."""

from __future__ import annotations

from typing import Optional


class EnlargeError(RuntimeError):
    """Base class for every pipeline failure."""


class LaunchError(EnlargeError):
    """An external executable could not be located or spawned."""

    def __init__(self, executable: str, reason: str) -> None:
        super().__init__(f"Failed to launch {executable}: {reason}")
        self.executable = executable
        self.reason = reason


class InputNotFoundError(EnlargeError):
    def __init__(self, path: object) -> None:
        super().__init__(f"Input file not found: {path}")
        self.path = path


class DirectoryCreateError(EnlargeError):
    def __init__(self, path: object, reason: str = "") -> None:
        message = f"Failed to create directory: {path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.path = path


class RenameError(EnlargeError):
    def __init__(self, source: object, target: object, reason: str = "") -> None:
        message = f"Failed to rename {source} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.source = source
        self.target = target


class ProcessFailedError(EnlargeError):
    """An external process exited unsuccessfully.

    Carries the exit code and whatever output was captured so the message
    shown to the user is enough to diagnose the failure.
    """

    what = "External process"

    def __init__(self, exit_code: Optional[int], output: str = "", detail: str = "") -> None:
        self.exit_code = exit_code
        self.output = output.strip()
        if detail:
            message = f"{self.what} failed: {detail}"
        else:
            message = f"{self.what} failed (code {exit_code}): {self.output or 'no output'}"
        super().__init__(message)


class ExtractionError(ProcessFailedError):
    what = "Frame extraction"


class EnhancementError(ProcessFailedError):
    what = "Real-ESRGAN"


class RebuildError(ProcessFailedError):
    what = "Video rebuild"


class TranscodeError(ProcessFailedError):
    what = "FFmpeg transcode"


class MetadataError(ProcessFailedError):
    what = "Metadata probe"


class FrameCountMismatchError(EnlargeError):
    """The enhancer exited cleanly but produced the wrong number of frames."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Frame count mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class StallTimeoutError(EnlargeError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"Processing stalled: no new output for {timeout:g} seconds")
        self.timeout = timeout
