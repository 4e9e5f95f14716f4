from __future__ import annotations

import io
import json
import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest

from opsctl import runner
from opsctl.config import load_config

REPO_ROOT = Path(__file__).resolve().parents[1]


def _runner(write_config, code: str, **overrides) -> runner.TestRunner:
    cfg = load_config(write_config(runner={"command": [sys.executable, "-c", code], **overrides}))
    return runner.TestRunner(cfg.runner, project_root=cfg.project_root, sleep=lambda _s: None)


def _summary(tmp_path: Path) -> dict:
    return json.loads((tmp_path / "test-results" / "summary.json").read_text(encoding="utf-8"))


def test_successful_run_logs_everything_and_echoes_filtered(tmp_path, write_config, capsys) -> None:
    code = "print('Running 3 tests using 2 workers'); print('chatter from a worker'); print('3 passed (1.2s)')"
    r = _runner(write_config, code)

    assert r.run([]) == 0

    out = capsys.readouterr().out
    assert "3 passed" in out
    assert "chatter from a worker" not in out
    log = (tmp_path / "test-results" / "output.log").read_text(encoding="utf-8")
    assert "chatter from a worker" in log
    summary = _summary(tmp_path)
    assert summary["success"] is True
    assert summary["exit_code"] == 0
    assert len(summary["attempts"]) == 1


def test_failing_run_returns_child_exit_code(tmp_path, write_config) -> None:
    r = _runner(write_config, "print('1 failed'); raise SystemExit(1)")
    assert r.run([]) == 1
    assert _summary(tmp_path)["success"] is False


def test_epipe_reporter_crash_after_passing_tests_is_success(tmp_path, write_config, capsys) -> None:
    code = (
        "import sys; print('5 passed (3.0s)'); "
        "print('Error: write EPIPE', file=sys.stderr); raise SystemExit(1)"
    )
    r = _runner(write_config, code)

    assert r.run([]) == 0
    assert "despite EPIPE" in capsys.readouterr().out
    (attempt,) = _summary(tmp_path)["attempts"]
    assert attempt["reclassified"] is True
    assert attempt["raw_exit_code"] == 1


def test_epipe_with_failures_is_not_reclassified(write_config) -> None:
    code = (
        "import sys; print('4 passed'); print('1 failed'); "
        "print('Error: write EPIPE', file=sys.stderr); raise SystemExit(1)"
    )
    assert _runner(write_config, code).run([]) == 1


def test_timeout_terminates_child_with_124(tmp_path, write_config) -> None:
    r = _runner(write_config, "import time; time.sleep(30)", timeout_s=0.5, kill_grace_s=2)

    result = r.run_once([])

    assert result.exit_code == runner.TIMEOUT_EXIT_CODE
    assert result.timed_out is True
    assert result.duration_s < 20


def test_timeout_escalates_to_kill(write_config) -> None:
    code = (
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(30)"
    )
    r = _runner(write_config, code, timeout_s=2, kill_grace_s=0.5)

    result = r.run_once([])

    assert result.exit_code == 124
    assert result.raw_exit_code == -9


def test_signal_death_maps_to_128_plus_signal(write_config) -> None:
    r = _runner(write_config, "import os, signal; os.kill(os.getpid(), signal.SIGKILL)")
    assert r.run_once([]).exit_code == 137


def test_retries_clean_temp_dirs_between_attempts(tmp_path, write_config) -> None:
    marker = tmp_path / "first-attempt"
    code = (
        "import pathlib, sys; p = pathlib.Path(sys.argv[1]); "
        "raise SystemExit(0 if p.exists() else (p.touch() or 1))"
    )
    temp = tmp_path / "test-results" / "temp"
    temp.mkdir(parents=True)
    sleeps: list[float] = []
    cfg = load_config(
        write_config(
            runner={
                "command": [sys.executable, "-c", code],
                "max_attempts": 3,
                "retry_delay_s": 7,
                "temp_dirs": ["test-results/temp"],
            }
        )
    )
    r = runner.TestRunner(cfg.runner, project_root=cfg.project_root, sleep=sleeps.append)

    assert r.run([str(marker)]) == 0

    assert sleeps == [7]
    assert not temp.exists()
    assert [a["exit_code"] for a in _summary(tmp_path)["attempts"]] == [1, 0]


def test_runner_args_and_env_overrides_reach_child(tmp_path, write_config) -> None:
    code = "import os, sys; print('args=' + ' '.join(sys.argv[1:])); print('pool=' + os.environ['UV_THREADPOOL_SIZE'])"
    r = _runner(write_config, code, config_file="pw.config.ts", env={"UV_THREADPOOL_SIZE": "8"})

    r.run(["--grep", "smoke"])

    log = (tmp_path / "test-results" / "output.log").read_text(encoding="utf-8")
    assert "args=--config pw.config.ts --grep smoke" in log
    assert "pool=8" in log


def test_preflight_fails_when_runner_is_missing(write_config) -> None:
    r = _runner(
        write_config, "print('x')", version_command=[sys.executable, "-c", "raise SystemExit(3)"]
    )
    with pytest.raises(RuntimeError, match="E_RUNNER_MISSING"):
        r.run([])


def test_missing_executable_is_a_stable_error(write_config) -> None:
    cfg = load_config(write_config(runner={"command": ["opsctl-no-such-binary-xyz"]}))
    r = runner.TestRunner(cfg.runner, project_root=cfg.project_root)
    with pytest.raises(RuntimeError, match="E_RUNNER_MISSING"):
        r.run([])


def test_summary_reads_results_and_critical_errors(tmp_path, write_config, capsys) -> None:
    results = tmp_path / "test-results" / "results.json"
    results.parent.mkdir(parents=True)
    results.write_text(
        json.dumps({"stats": {"expected": 3, "unexpected": 1, "skipped": 2, "total": 6}}),
        encoding="utf-8",
    )
    code = "import sys\nfor i in range(7): print(f'Error: boom {i}', file=sys.stderr)\nraise SystemExit(1)"
    r = _runner(write_config, code)

    assert r.run([]) == 1

    out = capsys.readouterr().out
    assert "Failed: 1" in out
    assert "Error: boom 4" in out
    assert "... and 2 more errors" in out
    summary = _summary(tmp_path)
    assert summary["stats"] == {"failed": 1, "passed": 3, "skipped": 2, "total": 6}
    assert summary["critical_errors"] == 7


def test_unreadable_results_do_not_fail_the_run(tmp_path, write_config) -> None:
    results = tmp_path / "test-results" / "results.json"
    results.parent.mkdir(parents=True)
    results.write_text("{not json", encoding="utf-8")

    assert _runner(write_config, "print('1 passed')").run([]) == 0
    assert _summary(tmp_path)["stats"] is None


@pytest.mark.parametrize(
    ("line", "shown"),
    [
        ("Running 12 tests using 4 workers", True),
        ("  ✓  login works (1.1s)", True),
        ("12 passed (30s)", True),
        ("[chromium] › auth.spec.ts:3:1 › login", False),
        ("   at page.goto (file.ts:1:1)", False),
        ("", False),
        ("random progress", False),
    ],
)
def test_should_display_line(line: str, shown: bool) -> None:
    assert runner.should_display_line(line) is shown


def test_should_display_error_drops_browser_noise() -> None:
    assert runner.should_display_error("Error: EPIPE") is True
    assert runner.should_display_error("DevTools listening on ws://127.0.0.1") is False
    assert runner.should_display_error("   ") is False


class _ClosedPipe:
    def write(self, _text: str) -> int:
        raise BrokenPipeError(32, "Broken pipe")

    def flush(self) -> None:
        pass


def test_pump_keeps_logging_after_echo_breaks() -> None:
    log = io.StringIO()
    pipe = _ClosedPipe()
    pump = runner._Pump(io.StringIO("3 passed\nmore\n1 skipped\n"), log, lambda _l: True, lambda: pipe)

    pump.run()

    assert pump.echo_broken is True
    assert log.getvalue() == "3 passed\nmore\n1 skipped\n"


def test_closed_stdout_does_not_change_the_outcome(tmp_path, write_config, monkeypatch) -> None:
    code = (
        "import sys; print('5 passed (3.0s)'); "
        "print('Error: write EPIPE', file=sys.stderr); raise SystemExit(1)"
    )
    r = _runner(write_config, code)
    monkeypatch.setattr(sys, "stdout", _ClosedPipe())

    assert r.run([]) == 0

    (attempt,) = _summary(tmp_path)["attempts"]
    assert attempt["reclassified"] is True
    log = (tmp_path / "test-results" / "output.log").read_text(encoding="utf-8")
    assert "5 passed" in log


def _wrapper_argv(cfg: Path, tmp_path: Path, *args: str) -> list[str]:
    return [
        sys.executable,
        "-m",
        "opsctl.cli",
        "--config",
        str(cfg),
        "--metrics-out",
        str(tmp_path / "m.jsonl"),
        "test-run",
        *args,
    ]


def test_wrapper_exit_code_survives_reader_closing_stdout(tmp_path, write_config) -> None:
    code = (
        "import sys, time\n"
        "time.sleep(0.5)\n"
        "for i in range(3000): print(f'Running {i} tests')\n"
        "print('5 passed (3.0s)')\n"
        "print('Error: write EPIPE', file=sys.stderr)\n"
        "raise SystemExit(1)\n"
    )
    cfg = write_config(runner={"command": [sys.executable, "-c", code]})
    proc = subprocess.Popen(
        _wrapper_argv(cfg, tmp_path),
        cwd=REPO_ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        text=True,
    )

    head = [proc.stdout.readline(), proc.stdout.readline()]
    proc.stdout.close()

    assert proc.wait(timeout=60) == 0
    assert head[0].startswith("Test attempt 1/1")
    log = (tmp_path / "test-results" / "output.log").read_text(encoding="utf-8")
    assert len(log.splitlines()) == 3001
    summary = _summary(tmp_path)
    assert summary["exit_code"] == 0
    (attempt,) = summary["attempts"]
    assert attempt["echo_broken"] is True


@pytest.mark.parametrize(("sig", "expected"), [(signal.SIGTERM, 143), (signal.SIGINT, 130)])
def test_signal_to_wrapper_stops_child_without_retry(tmp_path, write_config, sig, expected) -> None:
    code = (
        "import pathlib, signal, sys, time\n"
        "d = pathlib.Path(sys.argv[1])\n"
        "def stop(*_):\n"
        "    (d / 'child-terminated').touch()\n"
        "    raise SystemExit(143)\n"
        "signal.signal(signal.SIGTERM, stop)\n"
        "(d / 'child-ready').touch()\n"
        "time.sleep(30)\n"
    )
    cfg = write_config(
        runner={"command": [sys.executable, "-c", code], "max_attempts": 3, "retry_delay_s": 0}
    )
    proc = subprocess.Popen(
        _wrapper_argv(cfg, tmp_path, "--", str(tmp_path)),
        cwd=REPO_ROOT,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    ready = tmp_path / "child-ready"
    deadline = time.monotonic() + 30
    while not ready.exists() and time.monotonic() < deadline:
        time.sleep(0.05)
    assert ready.exists()

    proc.send_signal(sig)

    assert proc.wait(timeout=30) == expected
    assert (tmp_path / "child-terminated").exists()
    summary = _summary(tmp_path)
    assert [a["exit_code"] for a in summary["attempts"]] == [143]
    assert summary["interrupted"] == sig.name
    assert summary["success"] is False
