"""Supervised test-runner wrapper.

The runner's own output is teed to log files and only a filtered subset is
echoed, so a reader that closes our stdout early (EPIPE) cannot take the
child down with it. Our own stdout is then pointed at /dev/null. SIGINT and
SIGTERM are forwarded to the child and end the run without a retry. A run
is bounded by a fixed timeout (SIGTERM, then SIGKILL after a grace period,
exit 124). Reporter crashes caused by EPIPE are reclassified as passes when
the captured output shows only passing tests.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import signal
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import IO, Callable, Iterator

from .config import RunnerConfig
from .util import capture_cmd, ensure_dir, log_event, setup_json_logger, utc_now_iso, write_json

_LOG = setup_json_logger("opsctl.runner")

TIMEOUT_EXIT_CODE = 124
E_RUNNER_MISSING = "E_RUNNER_MISSING"
MAX_CRITICAL_LINES = 5

_IMPORTANT_STDOUT = [
    re.compile(p)
    for p in (
        r"Running \d+ tests",
        r"✓|✗|⚠",
        r"\d+ passed",
        r"\d+ failed",
        r"\d+ skipped",
        r"Slow test file",
        r"Error:",
        r"Failed:",
    )
]
_NOISY_STDOUT = [
    re.compile(p)
    for p in (r"^\s*$", r"\[chromium\]", r"page\.goto", r"expect\(", r"Timeout")
]
_NOISY_STDERR = [
    re.compile(p) for p in (r"^\s*$", r"DevTools listening on", r"\[Chromium\]")
]
_CRITICAL_MARKERS = ("Error:", "Failed:", "EPIPE")


def _silence(stream) -> None:
    """Point a broken stdio stream at /dev/null so later writes and the exit flush succeed."""
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        return
    devnull = os.open(os.devnull, os.O_WRONLY)
    try:
        os.dup2(devnull, fd)
    finally:
        os.close(devnull)


def should_display_line(line: str) -> bool:
    if any(p.search(line) for p in _NOISY_STDOUT):
        return False
    return any(p.search(line) for p in _IMPORTANT_STDOUT)


def should_display_error(line: str) -> bool:
    if any(p.search(line) for p in _NOISY_STDERR):
        return False
    return bool(line.strip())


def looks_like_epipe_pass(stdout: str, stderr: str) -> bool:
    """A reporter killed by EPIPE after every test passed."""
    return "EPIPE" in stderr and "passed" in stdout and "failed" not in stdout


@dataclass
class RunResult:
    exit_code: int
    duration_s: float
    timed_out: bool = False
    reclassified: bool = False
    echo_broken: bool = False
    raw_exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class _Pump(threading.Thread):
    """Drain one child stream into its log file and a filtered echo."""

    def __init__(
        self,
        stream: IO[str],
        log_file: IO[str],
        accept: Callable[[str], bool],
        echo: Callable[[], IO[str]],
    ) -> None:
        super().__init__(daemon=True)
        self.stream = stream
        self.log_file = log_file
        self.accept = accept
        self.echo = echo
        self.lines: list[str] = []
        self.echo_broken = False

    def run(self) -> None:
        for line in self.stream:
            self.log_file.write(line)
            self.log_file.flush()
            self.lines.append(line)
            text = line.rstrip("\n")
            if self.echo_broken or not self.accept(text):
                continue
            out = self.echo()
            try:
                out.write(text + "\n")
                out.flush()
            except BrokenPipeError:
                # keep draining into the log; only the echo is lost
                self.echo_broken = True
                _silence(out)

    @property
    def text(self) -> str:
        return "".join(self.lines)


class TestRunner:
    __test__ = False  # not a pytest class

    def __init__(
        self,
        cfg: RunnerConfig,
        *,
        project_root: Path,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.project_root = project_root
        self.sleep = sleep
        self._child: subprocess.Popen[str] | None = None
        self._interrupted: int | None = None
        self._forwarding = False
        self._stdout_broken = False

    def _say(self, text: str) -> None:
        if self._stdout_broken:
            return
        try:
            print(text, flush=True)
        except BrokenPipeError:
            self._stdout_broken = True
            log_event(_LOG, "runner.epipe.stdout")
            _silence(sys.stdout)

    def build_argv(self, args: list[str]) -> list[str]:
        argv = list(self.cfg.command)
        if self.cfg.config_file:
            argv += ["--config", self.cfg.config_file]
        return argv + list(args)

    def build_env(self) -> dict[str, str]:
        return dict(os.environ, **self.cfg.env)

    def preflight(self) -> None:
        for d in self.cfg.directories:
            ensure_dir(d)
        ensure_dir(self.cfg.output_log.parent)
        ensure_dir(self.cfg.error_log.parent)
        if self.cfg.version_command:
            probe = capture_cmd(self.cfg.version_command, cwd=self.project_root)
            if not probe.ok:
                raise RuntimeError(
                    f"{E_RUNNER_MISSING}: {' '.join(self.cfg.version_command)} exited {probe.exit_code}"
                )
            log_event(_LOG, "runner.preflight", version=probe.stdout.strip())

    def _forward_signal(self, signum, _frame) -> None:
        self._interrupted = signum
        log_event(_LOG, "runner.signal.forward", signal=signal.Signals(signum).name)
        child = self._child
        if child is not None and child.poll() is None:
            child.terminate()

    @contextmanager
    def _signals_forwarded(self) -> Iterator[None]:
        if self._forwarding or threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = {
            sig: signal.signal(sig, self._forward_signal)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        self._forwarding = True
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            self._forwarding = False

    def _stop(self, proc: subprocess.Popen[str]) -> None:
        proc.terminate()
        try:
            proc.wait(timeout=self.cfg.kill_grace_s)
        except subprocess.TimeoutExpired:
            log_event(_LOG, "runner.kill", pid=proc.pid)
            proc.kill()
            proc.wait()

    def run_once(self, args: list[str]) -> RunResult:
        argv = self.build_argv(args)
        self._say(f"Running: {' '.join(argv)}")
        log_event(_LOG, "runner.start", argv=argv, timeout_s=self.cfg.timeout_s)
        started = time.monotonic()

        with self._signals_forwarded(), self.cfg.output_log.open(
            "w", encoding="utf-8"
        ) as out_log, self.cfg.error_log.open("w", encoding="utf-8") as err_log:
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=str(self.project_root),
                    env=self.build_env(),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    errors="replace",
                    bufsize=1,
                )
            except BrokenPipeError:
                log_event(_LOG, "runner.epipe.spawn")
                self._say("EPIPE error handled gracefully")
                return RunResult(exit_code=0, duration_s=time.monotonic() - started)
            except FileNotFoundError as exc:
                raise RuntimeError(f"{E_RUNNER_MISSING}: {exc}") from exc

            self._child = proc
            if self._interrupted is not None:
                proc.terminate()
            pumps = [
                _Pump(proc.stdout, out_log, should_display_line, lambda: sys.stdout),
                _Pump(proc.stderr, err_log, should_display_error, lambda: sys.stderr),
            ]
            for p in pumps:
                p.start()

            timed_out = False
            try:
                proc.wait(timeout=self.cfg.timeout_s)
            except subprocess.TimeoutExpired:
                timed_out = True
                self._say("Test timeout reached, terminating...")
                log_event(_LOG, "runner.timeout", timeout_s=self.cfg.timeout_s)
                self._stop(proc)
            finally:
                for p in pumps:
                    p.join()
                self._child = None

        raw = proc.returncode
        if timed_out:
            code = TIMEOUT_EXIT_CODE
        elif raw < 0:
            code = 128 - raw
        else:
            code = raw

        result = RunResult(
            exit_code=code,
            duration_s=round(time.monotonic() - started, 3),
            timed_out=timed_out,
            echo_broken=any(p.echo_broken for p in pumps),
            raw_exit_code=raw,
        )
        if code not in (0, TIMEOUT_EXIT_CODE) and looks_like_epipe_pass(
            pumps[0].text, pumps[1].text
        ):
            self._say("Tests appear to have passed despite EPIPE in reporter")
            result.exit_code = 0
            result.reclassified = True

        log_event(_LOG, "runner.finish", **asdict(result))
        return result

    def cleanup_between_attempts(self) -> None:
        for d in self.cfg.temp_dirs:
            shutil.rmtree(d, ignore_errors=True)
        log_event(_LOG, "runner.cleanup", dirs=[str(d) for d in self.cfg.temp_dirs])

    def results_stats(self) -> dict | None:
        path = self.cfg.results_json
        if not path.is_file():
            return None
        try:
            stats = json.loads(path.read_text(encoding="utf-8")).get("stats") or {}
        except (json.JSONDecodeError, AttributeError) as exc:
            # summary is informational; the exit code already decided the run
            log_event(_LOG, "runner.results.unreadable", path=str(path), error=str(exc))
            return None
        return {
            "total": stats.get("total", 0),
            "passed": stats.get("expected", 0),
            "failed": stats.get("unexpected", 0),
            "skipped": stats.get("skipped", 0),
        }

    def critical_errors(self) -> list[str]:
        if not self.cfg.error_log.is_file():
            return []
        text = self.cfg.error_log.read_text(encoding="utf-8", errors="replace")
        return [
            line.strip()
            for line in text.splitlines()
            if any(marker in line for marker in _CRITICAL_MARKERS)
        ]

    def run(self, args: list[str]) -> int:
        started = time.monotonic()
        self._interrupted = None
        self.preflight()

        attempts: list[RunResult] = []
        with self._signals_forwarded():
            for attempt in range(1, self.cfg.max_attempts + 1):
                self._say(f"Test attempt {attempt}/{self.cfg.max_attempts}")
                result = self.run_once(args)
                attempts.append(result)
                if result.ok or self._interrupted is not None:
                    break
                if attempt < self.cfg.max_attempts:
                    self._say(f"Waiting {self.cfg.retry_delay_s:g}s before retry...")
                    self.sleep(self.cfg.retry_delay_s)
                    self.cleanup_between_attempts()

        final = attempts[-1]
        exit_code = final.exit_code
        interrupted = None
        if self._interrupted is not None:
            interrupted = signal.Signals(self._interrupted).name
            exit_code = 128 + self._interrupted
            self._say(f"Interrupted by {interrupted}")
        self._say("Test Run Summary:")
        self._say(f"   Exit Code: {exit_code}")
        self._say(f"   Duration: {final.duration_s}s")
        self._say(f"   Output logged to: {self.cfg.output_log}")
        self._say(f"   Errors logged to: {self.cfg.error_log}")

        stats = self.results_stats()
        if stats:
            for key in ("total", "passed", "failed", "skipped"):
                self._say(f"   {key.capitalize()}: {stats[key]}")

        critical = self.critical_errors()
        if critical:
            self._say("Critical Errors:")
            for line in critical[:MAX_CRITICAL_LINES]:
                self._say(f"   {line}")
            if len(critical) > MAX_CRITICAL_LINES:
                self._say(f"   ... and {len(critical) - MAX_CRITICAL_LINES} more errors")

        write_json(
            self.cfg.summary_json,
            {
                "attempts": [asdict(a) for a in attempts],
                "critical_errors": len(critical),
                "duration_s": round(time.monotonic() - started, 3),
                "exit_code": exit_code,
                "interrupted": interrupted,
                "stats": stats,
                "success": exit_code == 0,
                "ts": utc_now_iso(),
            },
        )
        return exit_code
