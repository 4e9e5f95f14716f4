from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import jsonschema

from .util import read_json

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "configs" / "opsctl.config.schema.json"
SENSITIVE_KEY_PATTERN = re.compile(
    r"(?:secret|token|password|passwd|private[_-]?key|api[_-]?key)",
    re.IGNORECASE,
)
ALLOWED_SECRET_VALUE_PATTERN = re.compile(
    r"^(\$\{[A-Z][A-Z0-9_]*(?::-[^}]*)?\}|sm://[a-zA-Z0-9._/-]+)$"
)
_BINDING_PATTERN = re.compile(r"^\$\{(?P<name>[A-Z][A-Z0-9_]*)(?::-(?P<default>[^}]*))?\}$")


@dataclass(frozen=True)
class EnvFilesConfig:
    secure_dir: Path
    docs_dir: Path


@dataclass(frozen=True)
class ComposeConfig:
    command: list[str]
    file: Path
    project_name: str
    env_file: Path
    required_files: list[Path]
    directories: list[Path]
    services: list[str]
    critical_services: dict[str, int]
    poll_interval_s: float
    settle_s: float
    db_service: str
    db_user: str
    db_name: str
    redis_service: str
    smoke_query: str
    http_checks: dict[str, str]
    endpoints: dict[str, str]


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    user: str
    password_binding: str
    name: str
    maintenance_db: str = "postgres"

    def password(self, environ: Mapping[str, str] | None = None) -> str:
        return resolve_binding(self.password_binding, environ)


@dataclass(frozen=True)
class MigrationsConfig:
    migrations_dir: Path
    rollbacks_dir: Path
    snapshots_dir: Path
    authoring_dir: Path
    required_tables: list[str]
    required_columns: dict[str, list[str]]
    baseline_migrations: list[str]
    baseline_sql: Path | None


@dataclass(frozen=True)
class RunnerConfig:
    command: list[str]
    version_command: list[str] | None
    config_file: str | None
    timeout_s: float
    kill_grace_s: float
    max_attempts: int
    retry_delay_s: float
    output_log: Path
    error_log: Path
    results_json: Path
    summary_json: Path
    directories: list[Path]
    temp_dirs: list[Path]
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Config:
    project_root: Path
    env_files: EnvFilesConfig
    api_dir: Path
    ci_output_dir: Path
    compose: ComposeConfig
    database: DatabaseConfig
    migrations: MigrationsConfig
    runner: RunnerConfig


def resolve_binding(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Resolve `${NAME}` / `${NAME:-default}` against the environment."""
    env = os.environ if environ is None else environ
    m = _BINDING_PATTERN.fullmatch(value)
    if not m:
        raise ValueError(f"E_CONFIG_BINDING: {value!r} is not an environment binding")
    name = m.group("name")
    if env.get(name):
        return str(env[name])
    if m.group("default") is not None:
        return m.group("default")
    raise ValueError(f"E_CONFIG_BINDING_UNSET: environment variable {name} is not set")


def _assert_no_inline_secrets(node, path: str = "$") -> None:
    if isinstance(node, dict):
        for key in sorted(node.keys()):
            value = node[key]
            current_path = f"{path}.{key}"
            if SENSITIVE_KEY_PATTERN.search(key) and not isinstance(value, (dict, list)):
                if not isinstance(value, str) or not ALLOWED_SECRET_VALUE_PATTERN.fullmatch(
                    value
                ):
                    raise ValueError(
                        f"inline secret-like value is not allowed at {current_path}; use environment variable or secret-manager binding"
                    )
            _assert_no_inline_secrets(value, current_path)
        return

    if isinstance(node, list):
        for index, value in enumerate(node):
            _assert_no_inline_secrets(value, f"{path}[{index}]")


def load_config(path: Path) -> Config:
    raw = read_json(path)
    schema = read_json(SCHEMA_PATH)
    jsonschema.validate(instance=raw, schema=schema)
    _assert_no_inline_secrets(raw)

    # project_root is resolved relative to the config file's directory;
    # every other relative path is resolved relative to project_root.
    base_dir = path.parent.resolve()
    pr = Path(str(raw["project_root"]))
    project_root = (base_dir / pr).resolve() if not pr.is_absolute() else pr.resolve()

    def _rel(p: str) -> Path:
        q = Path(str(p))
        return (project_root / q).resolve() if not q.is_absolute() else q.resolve()

    env_files = raw.get("env_files", {})
    comp = raw["compose"]
    db = raw["database"]
    mig = raw["migrations"]
    run = raw["runner"]

    baseline_sql = mig.get("baseline_sql")

    return Config(
        project_root=project_root,
        env_files=EnvFilesConfig(
            secure_dir=_rel(env_files.get("secure_dir", ".secrets")),
            docs_dir=_rel(env_files.get("docs_dir", "docs/security")),
        ),
        api_dir=_rel(raw.get("routes", {}).get("api_dir", "app/api")),
        ci_output_dir=_rel(raw.get("ci", {}).get("output_dir", ".ci")),
        compose=ComposeConfig(
            command=list(comp.get("command", ["docker", "compose"])),
            file=_rel(comp["file"]),
            project_name=str(comp["project_name"]),
            env_file=_rel(comp["env_file"]),
            required_files=[_rel(p) for p in comp.get("required_files", [])],
            directories=[_rel(p) for p in comp.get("directories", [])],
            services=list(comp["services"]),
            critical_services=dict(comp.get("critical_services", {})),
            poll_interval_s=float(comp.get("poll_interval_s", 2)),
            settle_s=float(comp.get("settle_s", 10)),
            db_service=str(comp.get("db_service", "")),
            db_user=str(comp.get("db_user", "postgres")),
            db_name=str(comp.get("db_name", "postgres")),
            redis_service=str(comp.get("redis_service", "")),
            smoke_query=str(comp.get("smoke_query", "SELECT 1;")),
            http_checks=dict(comp.get("http_checks", {})),
            endpoints=dict(comp.get("endpoints", {})),
        ),
        database=DatabaseConfig(
            host=str(db["host"]),
            port=int(db["port"]),
            user=str(db["user"]),
            password_binding=str(db["password"]),
            name=str(db["name"]),
            maintenance_db=str(db.get("maintenance_db", "postgres")),
        ),
        migrations=MigrationsConfig(
            migrations_dir=_rel(mig.get("migrations_dir", "migrations")),
            rollbacks_dir=_rel(mig.get("rollbacks_dir", "rollbacks")),
            snapshots_dir=_rel(mig.get("snapshots_dir", "snapshots")),
            authoring_dir=_rel(mig.get("authoring_dir", "supabase/migrations")),
            required_tables=list(mig.get("required_tables", [])),
            required_columns={
                k: list(v) for k, v in mig.get("required_columns", {}).items()
            },
            baseline_migrations=list(mig.get("baseline_migrations", [])),
            baseline_sql=(_rel(baseline_sql) if baseline_sql else None),
        ),
        runner=RunnerConfig(
            command=list(run["command"]),
            version_command=(
                list(run["version_command"]) if run.get("version_command") else None
            ),
            config_file=run.get("config_file"),
            timeout_s=float(run.get("timeout_s", 600)),
            kill_grace_s=float(run.get("kill_grace_s", 5)),
            max_attempts=int(run.get("max_attempts", 1)),
            retry_delay_s=float(run.get("retry_delay_s", 5)),
            output_log=_rel(run.get("output_log", "test-results/output.log")),
            error_log=_rel(run.get("error_log", "test-results/errors.log")),
            results_json=_rel(run.get("results_json", "test-results/results.json")),
            summary_json=_rel(run.get("summary_json", "test-results/summary.json")),
            directories=[_rel(p) for p in run.get("directories", ["test-results"])],
            temp_dirs=[_rel(p) for p in run.get("temp_dirs", [])],
            env=dict(run.get("env", {})),
        ),
    )
