"""Launch external programs and supervise their lifetime."""

from __future__ import annotations

import queue
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import IO, Iterator, Optional, Sequence

from errors import LaunchError

DEFAULT_STOP_GRACE = 1.0
READER_JOIN_TIMEOUT = 5.0

_EOF = object()


class TerminationReason(Enum):
    NORMAL = "normal"
    KILLED = "killed"
    CRASHED = "crashed"


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    reason: TerminationReason
    output: str

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.reason is TerminationReason.NORMAL


class ProcessHandle:
    """A running external process with its output drained in the background.

    One reader thread per pipe keeps the child from blocking on a full pipe
    buffer. Lines read from stdout (or the merged stream) are queued for
    `lines()` / `drain_lines()` and kept for `output`.
    """

    def __init__(self, process: subprocess.Popen, args: Sequence[str], merge_stderr: bool) -> None:
        self.args = list(args)
        self._process = process
        self._stop_requested = False
        self._eof_seen = False
        self._lines: queue.Queue = queue.Queue()
        self._captured: list[str] = []
        self._stderr_captured: list[str] = []

        self._readers = [
            threading.Thread(
                target=self._pump,
                args=(process.stdout, self._captured, self._lines),
                daemon=True,
            )
        ]
        if not merge_stderr and process.stderr is not None:
            self._readers.append(
                threading.Thread(
                    target=self._pump,
                    args=(process.stderr, self._stderr_captured, None),
                    daemon=True,
                )
            )
        for reader in self._readers:
            reader.start()

    @staticmethod
    def _pump(stream: IO[str], captured: list[str], sink: Optional[queue.Queue]) -> None:
        try:
            for line in iter(stream.readline, ""):
                captured.append(line)
                if sink is not None:
                    sink.put(line.rstrip("\r\n"))
        finally:
            stream.close()
            if sink is not None:
                sink.put(_EOF)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def running(self) -> bool:
        return self._process.poll() is None

    @property
    def output(self) -> str:
        return "".join(self._captured)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr_captured)

    def lines(self) -> Iterator[str]:
        """Yield captured lines as they arrive, until the stream closes."""
        while not self._eof_seen:
            item = self._lines.get()
            if item is _EOF:
                self._eof_seen = True
                return
            yield item

    def drain_lines(self) -> list[str]:
        """Return the lines captured since the last call without blocking."""
        drained: list[str] = []
        while not self._eof_seen:
            try:
                item = self._lines.get_nowait()
            except queue.Empty:
                break
            if item is _EOF:
                self._eof_seen = True
                break
            drained.append(item)
        return drained

    def poll(self) -> Optional[ProcessResult]:
        returncode = self._process.poll()
        if returncode is None:
            return None
        return self._finish(returncode)

    def wait(self, timeout: Optional[float] = None) -> ProcessResult:
        """Wait for exit; raises subprocess.TimeoutExpired if still running."""
        returncode = self._process.wait(timeout=timeout)
        return self._finish(returncode)

    def terminate(self) -> None:
        if self.running:
            self._stop_requested = True
            self._process.terminate()

    def kill(self) -> None:
        if self.running:
            self._stop_requested = True
            self._process.kill()

    def stop(self, grace: float = DEFAULT_STOP_GRACE) -> ProcessResult:
        """Terminate, give the process `grace` seconds, then kill and reap it."""
        self.terminate()
        try:
            return self.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            self.kill()
            return self.wait()

    def _finish(self, returncode: int) -> ProcessResult:
        for reader in self._readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)

        if self._stop_requested and returncode != 0:
            reason = TerminationReason.KILLED
        elif returncode < 0:
            reason = TerminationReason.CRASHED
        else:
            reason = TerminationReason.NORMAL
        return ProcessResult(exit_code=returncode, reason=reason, output=self.output)


class ProcessRunner:
    """Spawn external programs as `ProcessHandle`s."""

    def __init__(self, no_window: bool = True) -> None:
        self.no_window = no_window

    def start(
        self,
        executable: str,
        args: Sequence[str],
        *,
        merge_stderr: bool = True,
    ) -> ProcessHandle:
        cmd = [str(executable), *[str(arg) for arg in args]]
        creationflags = 0
        if self.no_window:
            creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0)

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                creationflags=creationflags,
            )
        except OSError as exc:
            raise LaunchError(str(executable), exc.strerror or str(exc)) from exc

        return ProcessHandle(process, cmd[1:], merge_stderr)
