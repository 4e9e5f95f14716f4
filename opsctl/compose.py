"""Docker Compose lifecycle for the end-to-end test stack."""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Callable

from dotenv import dotenv_values

from .config import ComposeConfig
from .health import http_ok, wait_until
from .util import CmdOutput, capture_cmd, ensure_dir, log_event, setup_json_logger

_LOG = setup_json_logger("opsctl.compose")

E_DOCKER_UNAVAILABLE = "E_DOCKER_UNAVAILABLE"
E_COMPOSE_FILES_MISSING = "E_COMPOSE_FILES_MISSING"
E_SERVICE_UNHEALTHY = "E_SERVICE_UNHEALTHY"
E_STACK_INVALID = "E_STACK_INVALID"

_RUNNING = re.compile(r"healthy|Up")
RESET_PAUSE_S = 3.0


class ComposeStack:
    def __init__(
        self,
        cfg: ComposeConfig,
        *,
        project_root: Path,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.project_root = project_root
        self.sleep = sleep
        self._env: dict[str, str] = {}

    def _base(self) -> list[str]:
        return [
            *self.cfg.command,
            "-f",
            str(self.cfg.file),
            "-p",
            self.cfg.project_name,
        ]

    def compose(self, *args: str) -> CmdOutput:
        return capture_cmd(
            [*self._base(), *args], cwd=self.project_root, env=self._env
        )

    def load_env(self) -> dict[str, str]:
        if self.cfg.env_file.is_file():
            values = dotenv_values(self.cfg.env_file)
            self._env = {k: v for k, v in values.items() if v is not None}
            print(f"Loaded environment variables from {self.cfg.env_file.name}")
        return dict(self._env)

    def check_docker(self) -> None:
        out = capture_cmd(["docker", "info"])
        if not out.ok:
            log_event(_LOG, "compose.docker.unavailable", exit_code=out.exit_code)
            raise RuntimeError(
                f"{E_DOCKER_UNAVAILABLE}: Docker is not running. Please start Docker and try again."
            )
        print("Docker is running")

    def check_files(self) -> None:
        wanted = [self.cfg.file, self.cfg.env_file, *self.cfg.required_files]
        missing = [p for p in wanted if not p.exists()]
        if missing:
            names = ", ".join(str(p) for p in missing)
            raise FileNotFoundError(f"{E_COMPOSE_FILES_MISSING}: {names}")
        print("All required files are present")

    def service_running(self, service: str) -> bool:
        out = self.compose("ps", service)
        return out.ok and bool(_RUNNING.search(out.stdout))

    def wait_for_service(self, service: str, attempts: int = 30) -> None:
        print(f"Waiting for {service} to be healthy...")
        ready = wait_until(
            lambda: self.service_running(service),
            attempts=attempts,
            interval=self.cfg.poll_interval_s,
            sleep=self.sleep,
        )
        log_event(_LOG, "compose.service.wait", service=service, ready=ready, attempts=attempts)
        if not ready:
            budget = attempts * self.cfg.poll_interval_s
            raise RuntimeError(
                f"{E_SERVICE_UNHEALTHY}: {service} failed to become healthy within {budget:g} seconds"
            )
        print(f"{service} is healthy")

    def setup(self) -> None:
        log_event(_LOG, "compose.setup.start", project=self.cfg.project_name)
        self.check_docker()
        self.check_files()
        self.load_env()

        for d in self.cfg.directories:
            ensure_dir(d)

        up = self.compose("up", "-d", "--remove-orphans")
        if not up.ok:
            raise RuntimeError(
                f"{E_STACK_INVALID}: compose up failed (exit {up.exit_code}): {up.stderr.strip()}"
            )

        for service, attempts in self.cfg.critical_services.items():
            self.wait_for_service(service, attempts)

        self.sleep(self.cfg.settle_s)

        ps = self.compose("ps")
        if not _RUNNING.search(ps.stdout):
            print(ps.stdout, end="")
            raise RuntimeError(f"{E_STACK_INVALID}: some services failed to start properly")

        print("E2E test environment is ready!")
        for name, where in self.cfg.endpoints.items():
            print(f"  - {name}: {where}")
        log_event(_LOG, "compose.setup.finish", project=self.cfg.project_name)

    def teardown(self) -> None:
        down = self.compose("down", "--volumes", "--remove-orphans")
        if not down.ok:
            raise RuntimeError(
                f"{E_STACK_INVALID}: compose down failed (exit {down.exit_code}): {down.stderr.strip()}"
            )
        prune = capture_cmd(["docker", "container", "prune", "-f"])
        # orphan pruning is best effort
        log_event(_LOG, "compose.teardown", prune_exit_code=prune.exit_code)
        print("E2E test environment torn down")

    def reset(self) -> None:
        self.teardown()
        self.sleep(RESET_PAUSE_S)
        self.setup()

    def logs(self, service: str | None = None) -> str:
        if service:
            out = self.compose("logs", "--tail=100", service)
        else:
            out = self.compose("logs", "--tail=50")
        return out.stdout + out.stderr

    def status(self) -> dict[str, bool]:
        print(self.compose("ps").stdout, end="")
        states = {svc: self.service_running(svc) for svc in self.cfg.services}
        for svc, up in states.items():
            print(f"  {svc}: {'Running' if up else 'Not running'}")
        return states

    def validate(self) -> list[str]:
        """Run every check and raise with all failures at once."""
        failures: list[str] = []

        if not re.search(r"Up", self.compose("ps").stdout):
            failures.append("no services are running; run setup first")

        if self.cfg.db_service:
            out = self.compose(
                "exec",
                "-T",
                self.cfg.db_service,
                "pg_isready",
                "-U",
                self.cfg.db_user,
                "-d",
                self.cfg.db_name,
            )
            if out.ok:
                print("Database connection successful")
            else:
                failures.append("database connection failed")

        for name, url in self.cfg.http_checks.items():
            if http_ok(url):
                print(f"{name} is responding")
            else:
                failures.append(f"{name} is not responding at {url}")

        log_event(_LOG, "compose.validate", failures=failures)
        if failures:
            raise RuntimeError(f"{E_STACK_INVALID}: " + "; ".join(failures))
        print("Environment validation passed")
        return failures

    def smoke_test(self) -> None:
        self.validate()

        query = self.compose(
            "exec",
            "-T",
            self.cfg.db_service,
            "psql",
            "-U",
            self.cfg.db_user,
            "-d",
            self.cfg.db_name,
            "-c",
            self.cfg.smoke_query,
        )
        if not query.ok:
            raise RuntimeError(f"{E_STACK_INVALID}: database queries failed")
        print("Database queries working")

        if self.cfg.redis_service:
            ping = self.compose("exec", "-T", self.cfg.redis_service, "redis-cli", "ping")
            if not ping.ok:
                raise RuntimeError(f"{E_STACK_INVALID}: redis connection failed")
            print("Redis connection working")

        log_event(_LOG, "compose.smoke.pass", project=self.cfg.project_name)
        print("Smoke test passed - E2E environment is ready for testing!")
