"""Infer batch progress by counting files as they appear in a directory."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from errors import StallTimeoutError

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_STALL_TIMEOUT = 30.0


@dataclass(frozen=True)
class ProgressEvent:
    processed: int
    total: int

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return self.processed * 100.0 / self.total


def count_matching_files(directory: Path, pattern: str) -> int:
    """Count regular files matching a glob pattern; a missing directory is 0."""
    if not directory.is_dir():
        return 0
    return sum(1 for candidate in directory.glob(pattern) if candidate.is_file())


class ProgressWatcher:
    """Poll a directory and turn the growing file count into progress events.

    Real-ESRGAN has no progress channel in batch mode, so progress is the
    number of output files seen so far. A file still being written counts as
    soon as its name matches. Nothing here blocks or spawns a thread: the
    owner calls `tick()` from its own loop, or iterates `watch()`.
    """

    def __init__(
        self,
        target_dir: Path,
        file_pattern: str,
        total_expected: int,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.target_dir = Path(target_dir)
        self.file_pattern = file_pattern
        self.total = max(int(total_expected), 0)
        self.poll_interval = poll_interval
        self.stall_timeout = stall_timeout
        self._clock = clock
        self._sleep = sleep
        self._processed = 0
        self._last_progress_at = clock()
        self._stopped = False

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True

    def tick(self) -> Optional[ProgressEvent]:
        if self._stopped:
            return None

        now = self._clock()
        count = min(count_matching_files(self.target_dir, self.file_pattern), self.total)
        event = None
        if count > self._processed:
            self._processed = count
            self._last_progress_at = now
            event = ProgressEvent(self._processed, self.total)

        # Reaching the total wins over a stall detected in the same tick.
        if self._processed >= self.total:
            self._stopped = True
            return event or ProgressEvent(self._processed, self.total)

        if now - self._last_progress_at >= self.stall_timeout:
            self._stopped = True
            raise StallTimeoutError(self.stall_timeout)

        return event

    def watch(self) -> Iterator[ProgressEvent]:
        while not self._stopped:
            event = self.tick()
            if event is not None:
                yield event
            if self._stopped:
                return
            self._sleep(self.poll_interval)


def watch(
    target_dir: Path,
    file_pattern: str,
    total_expected: int,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    stall_timeout: float = DEFAULT_STALL_TIMEOUT,
    **kwargs,
) -> Iterator[ProgressEvent]:
    watcher = ProgressWatcher(
        target_dir,
        file_pattern,
        total_expected,
        poll_interval=poll_interval,
        stall_timeout=stall_timeout,
        **kwargs,
    )
    return watcher.watch()
