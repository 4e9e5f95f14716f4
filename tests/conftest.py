from __future__ import annotations

import copy
import hashlib
import json
import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

PRODUCT_MODULE_PREFIXES = ("opsctl",)

BASE_CONFIG = {
    "project_root": "..",
    "compose": {
        "command": ["docker", "compose"],
        "file": "docker-compose.test.yml",
        "project_name": "e2e-test",
        "env_file": ".env.test",
        "services": ["test-db", "test-redis"],
        "critical_services": {"test-db": 3},
        "poll_interval_s": 0,
        "settle_s": 0,
        "db_service": "test-db",
        "db_user": "postgres",
        "db_name": "app_test",
        "redis_service": "test-redis",
        "http_checks": {"API gateway": "http://127.0.0.1:54321/health"},
    },
    "database": {
        "host": "localhost",
        "port": 5434,
        "user": "postgres",
        "password": "${OPSCTL_TEST_DB_PASS:-postgres}",
        "name": "test_db",
    },
    "migrations": {
        "migrations_dir": "db/migrations",
        "rollbacks_dir": "db/rollbacks",
        "snapshots_dir": "db/snapshots",
        "authoring_dir": "supabase/migrations",
        "required_tables": ["organizations"],
        "required_columns": {"organizations": ["settings"]},
        "baseline_migrations": ["000_migration_tracking", "001_invitations_schema"],
    },
    "runner": {
        "command": [sys.executable, "-c", "print('1 passed')"],
        "timeout_s": 30,
        "kill_grace_s": 1,
        "output_log": "test-results/output.log",
        "error_log": "test-results/errors.log",
        "results_json": "test-results/results.json",
        "summary_json": "test-results/summary.json",
        "directories": ["test-results"],
    },
}


def _canonical_env_hash(env: dict[str, str]) -> str:
    payload = json.dumps(sorted(env.items()), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@pytest.fixture(autouse=True)
def isolate_runtime_state() -> Iterator[None]:
    modules_before = set(sys.modules.keys())
    environ_before = dict(os.environ)
    environ_before_hash = _canonical_env_hash(environ_before)

    yield

    post_modules = set(sys.modules.keys())
    new_modules = post_modules - modules_before
    for module_name in new_modules:
        if module_name.startswith(PRODUCT_MODULE_PREFIXES):
            sys.modules.pop(module_name, None)

    post_env = dict(os.environ)
    for key in list(post_env.keys()):
        if key not in environ_before:
            os.environ.pop(key, None)
    for key, value in environ_before.items():
        os.environ[key] = value

    assert _canonical_env_hash(dict(os.environ)) == environ_before_hash


@pytest.fixture
def write_config(tmp_path: Path):
    """Write a config under `<tmp>/configs/` with section-level overrides."""

    def _write(**sections) -> Path:
        raw = copy.deepcopy(BASE_CONFIG)
        for key, value in sections.items():
            if isinstance(value, dict) and isinstance(raw.get(key), dict):
                raw[key].update(value)
            else:
                raw[key] = value
        cfg_dir = tmp_path / "configs"
        cfg_dir.mkdir(exist_ok=True)
        cfg_path = cfg_dir / "opsctl.config.json"
        cfg_path.write_text(json.dumps(raw), encoding="utf-8")
        return cfg_path

    return _write
