from __future__ import annotations

from pathlib import Path

import pytest

from opsctl import compose
from opsctl.config import load_config
from opsctl.util import CmdOutput


class FakeShell:
    """Records argv and answers from a table of (argv fragment, exit, stdout)."""

    def __init__(self, answers=None) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[dict] = []
        self.answers = answers or []

    def __call__(self, argv, *, cwd=None, env=None, input_text=None, timeout=None) -> CmdOutput:
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(dict(env or {}))
        joined = " ".join(argv)
        for fragment, code, stdout in self.answers:
            if fragment in joined:
                return CmdOutput(argv=argv, exit_code=code, stdout=stdout, stderr="")
        return CmdOutput(argv=argv, exit_code=0, stdout="", stderr="")

    def ran(self, fragment: str) -> bool:
        return any(fragment in " ".join(c) for c in self.calls)


def _stack(tmp_path: Path, write_config, **sections) -> compose.ComposeStack:
    cfg = load_config(write_config(**sections))
    (tmp_path / "docker-compose.test.yml").write_text("services: {}\n", encoding="utf-8")
    (tmp_path / ".env.test").write_text("POSTGRES_PASSWORD=pw\nEMPTY\n", encoding="utf-8")
    return compose.ComposeStack(cfg.compose, project_root=cfg.project_root, sleep=lambda _s: None)


def test_setup_runs_full_sequence(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("ps", 0, "test-db   Up 3 seconds (healthy)\n")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    stack = _stack(tmp_path, write_config, compose={"directories": ["logs"]})

    stack.setup()

    assert shell.calls[0] == ["docker", "info"]
    up = next(c for c in shell.calls if "up" in c)
    assert up[:6] == [
        "docker",
        "compose",
        "-f",
        str(tmp_path.resolve() / "docker-compose.test.yml"),
        "-p",
        "e2e-test",
    ]
    assert up[6:] == ["up", "-d", "--remove-orphans"]
    assert shell.ran("ps test-db")
    assert shell.envs[-1]["POSTGRES_PASSWORD"] == "pw"
    assert "EMPTY" not in shell.envs[-1]
    assert (tmp_path / "logs").is_dir()


def test_setup_fails_when_docker_is_down(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("docker info", 1, "")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    stack = _stack(tmp_path, write_config)

    with pytest.raises(RuntimeError, match="E_DOCKER_UNAVAILABLE"):
        stack.setup()
    assert not shell.ran(" up ")


def test_check_files_reports_every_missing_file(tmp_path: Path, write_config) -> None:
    stack = _stack(
        tmp_path, write_config, compose={"required_files": ["docker/kong.yml", "docker/init.sql"]}
    )

    with pytest.raises(FileNotFoundError) as err:
        stack.check_files()
    msg = str(err.value)
    assert msg.startswith("E_COMPOSE_FILES_MISSING")
    assert "kong.yml" in msg and "init.sql" in msg


def test_unhealthy_critical_service_raises(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("ps test-db", 0, "test-db   Restarting\n")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    stack = _stack(tmp_path, write_config)

    with pytest.raises(RuntimeError, match="E_SERVICE_UNHEALTHY: test-db"):
        stack.setup()
    assert sum(1 for c in shell.calls if c[-2:] == ["ps", "test-db"]) == 3


def test_teardown_ignores_prune_failure(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("container prune", 1, "")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    stack = _stack(tmp_path, write_config)

    stack.teardown()

    assert shell.calls[0][-3:] == ["down", "--volumes", "--remove-orphans"]
    assert shell.calls[1] == ["docker", "container", "prune", "-f"]


def test_logs_tail_sizes(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell()
    monkeypatch.setattr(compose, "capture_cmd", shell)
    stack = _stack(tmp_path, write_config)

    stack.logs("test-db")
    stack.logs()

    assert shell.calls[0][-3:] == ["logs", "--tail=100", "test-db"]
    assert shell.calls[1][-2:] == ["logs", "--tail=50"]


def test_status_reports_each_service(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("ps test-db", 0, "test-db Up\n"), ("ps test-redis", 0, "")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    stack = _stack(tmp_path, write_config)

    assert stack.status() == {"test-db": True, "test-redis": False}


def test_validate_collects_all_failures(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("pg_isready", 2, ""), ("ps", 0, "")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    monkeypatch.setattr(compose, "http_ok", lambda url: False)
    stack = _stack(tmp_path, write_config)

    with pytest.raises(RuntimeError) as err:
        stack.validate()
    msg = str(err.value)
    assert msg.startswith("E_STACK_INVALID")
    assert "no services are running" in msg
    assert "database connection failed" in msg
    assert "API gateway is not responding" in msg


def test_smoke_test_queries_db_and_redis(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("ps", 0, "test-db Up\n")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    monkeypatch.setattr(compose, "http_ok", lambda url: True)
    stack = _stack(tmp_path, write_config, compose={"smoke_query": "SELECT 1;"})

    stack.smoke_test()

    assert shell.ran("exec -T test-db psql -U postgres -d app_test -c SELECT 1;")
    assert shell.ran("exec -T test-redis redis-cli ping")


def test_reset_tears_down_then_sets_up(tmp_path: Path, write_config, monkeypatch) -> None:
    shell = FakeShell([("ps", 0, "test-db Up (healthy)\n")])
    monkeypatch.setattr(compose, "capture_cmd", shell)
    stack = _stack(tmp_path, write_config)

    stack.reset()

    down_at = next(i for i, c in enumerate(shell.calls) if "down" in c)
    up_at = next(i for i, c in enumerate(shell.calls) if "up" in c)
    assert down_at < up_at
