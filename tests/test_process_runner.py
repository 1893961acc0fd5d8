import os
import subprocess
import sys
import time
import unittest

from errors import LaunchError
from process_runner import ProcessRunner, TerminationReason

POSIX_ONLY = unittest.skipUnless(os.name == "posix", "requires POSIX signals")


def python_args(code: str) -> list[str]:
    return ["-c", code]


class TestProcessRunner(unittest.TestCase):
    def setUp(self):
        self.runner = ProcessRunner()

    def test_merged_output_lines_arrive_in_order(self):
        handle = self.runner.start(
            sys.executable,
            python_args(
                "import sys; sys.stdout.write('one\\n'); sys.stdout.flush(); "
                "sys.stderr.write('two\\n'); sys.stderr.flush()"
            ),
        )
        lines = list(handle.lines())
        result = handle.wait()

        self.assertEqual(lines, ["one", "two"])
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.reason, TerminationReason.NORMAL)
        self.assertTrue(result.succeeded)
        self.assertIn("two", result.output)

    def test_separate_stderr_is_captured_apart(self):
        handle = self.runner.start(
            sys.executable,
            python_args("import sys; print('out'); sys.stderr.write('err\\n')"),
            merge_stderr=False,
        )
        handle.wait()

        self.assertEqual(handle.output.strip(), "out")
        self.assertEqual(handle.stderr.strip(), "err")

    def test_nonzero_exit_code_is_reported(self):
        handle = self.runner.start(sys.executable, python_args("import sys; sys.exit(3)"))
        result = handle.wait()

        self.assertEqual(result.exit_code, 3)
        self.assertEqual(result.reason, TerminationReason.NORMAL)
        self.assertFalse(result.succeeded)

    def test_drain_lines_returns_available_lines_without_blocking(self):
        handle = self.runner.start(sys.executable, python_args("print('a'); print('b')"))
        handle.wait()

        self.assertEqual(handle.drain_lines(), ["a", "b"])
        self.assertEqual(handle.drain_lines(), [])

    def test_missing_executable_raises_launch_error(self):
        with self.assertRaises(LaunchError) as ctx:
            self.runner.start("/nonexistent/enlarge-missing-tool", ["-h"])
        self.assertIn("enlarge-missing-tool", str(ctx.exception))

    def test_wait_with_timeout_raises_while_running(self):
        handle = self.runner.start(sys.executable, python_args("import time; time.sleep(30)"))
        try:
            with self.assertRaises(subprocess.TimeoutExpired):
                handle.wait(timeout=0.1)
            self.assertTrue(handle.running)
        finally:
            handle.stop(grace=1.0)

    def test_stop_terminates_running_process(self):
        handle = self.runner.start(sys.executable, python_args("import time; time.sleep(30)"))
        started = time.monotonic()
        result = handle.stop(grace=1.0)

        self.assertFalse(handle.running)
        self.assertEqual(result.reason, TerminationReason.KILLED)
        self.assertLess(time.monotonic() - started, 5.0)

    @POSIX_ONLY
    def test_stop_kills_process_that_ignores_terminate(self):
        handle = self.runner.start(
            sys.executable,
            python_args(
                "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
                "print('ready', flush=True); time.sleep(30)"
            ),
        )
        self.assertEqual(next(handle.lines()), "ready")

        result = handle.stop(grace=0.5)

        self.assertFalse(handle.running)
        self.assertEqual(result.exit_code, -9)
        self.assertEqual(result.reason, TerminationReason.KILLED)

    @POSIX_ONLY
    def test_unrequested_signal_death_is_a_crash(self):
        handle = self.runner.start(
            sys.executable,
            python_args("import os, signal; os.kill(os.getpid(), signal.SIGKILL)"),
        )
        result = handle.wait()

        self.assertEqual(result.reason, TerminationReason.CRASHED)

    def test_stop_after_exit_is_harmless(self):
        handle = self.runner.start(sys.executable, python_args("pass"))
        handle.wait()
        result = handle.stop()

        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.reason, TerminationReason.NORMAL)


if __name__ == "__main__":
    unittest.main()
