"""SQL migrations against the test database, with snapshot-based rollback.

Every migration runs inside a wrapper transaction that records the version
in ``schema_migrations`` and asserts the tables/columns the application
cannot live without. A ``pg_dump`` snapshot is taken before each migration
so that a failed (or later regretted) migration can be undone by restoring
it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Mapping

from .config import DatabaseConfig, MigrationsConfig
from .util import (
    CmdOutput,
    capture_cmd,
    ensure_dir,
    local_stamp,
    log_event,
    run_cmd,
    setup_json_logger,
)

_LOG = setup_json_logger("opsctl.migrations")

INITIAL_VERSION = "000_initial"
E_SNAPSHOT_FAILED = "E_SNAPSHOT_FAILED"
E_SNAPSHOT_NOT_FOUND = "E_SNAPSHOT_NOT_FOUND"
E_MIGRATION_NOT_FOUND = "E_MIGRATION_NOT_FOUND"
E_NO_ROLLBACK_INFO = "E_NO_ROLLBACK_INFO"
E_BAD_DESCRIPTION = "E_BAD_DESCRIPTION"

SMOKE_INSERTS = (
    ("auth_user", "INSERT INTO auth.users (id, email) VALUES (gen_random_uuid(), 'test@example.com');"),
    ("organization", "INSERT INTO organizations (name, domain) VALUES ('Test', 'test.com');"),
)

_ERROR_LINE = re.compile(r"ERROR|EXCEPTION")
_DESCRIPTION = re.compile(r"^[A-Za-z0-9_-]+$")


def sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _ident(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


@dataclass(frozen=True)
class MigrationOutcome:
    name: str
    status: str  # applied | skipped | rolled_back | failed
    snapshot: str | None = None
    errors: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status in ("applied", "skipped")


class MigrationManager:
    def __init__(
        self,
        db: DatabaseConfig,
        mig: MigrationsConfig,
        *,
        project_root: Path,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.db = db
        self.mig = mig
        self.project_root = project_root
        self._pg_env = {"PGPASSWORD": db.password(environ)}
        for d in (mig.migrations_dir, mig.rollbacks_dir, mig.snapshots_dir):
            ensure_dir(d)

    # -- psql plumbing -------------------------------------------------

    def _conn_args(self) -> list[str]:
        return ["-h", self.db.host, "-p", str(self.db.port), "-U", self.db.user]

    def _psql(self, database: str | None = None, *, tuples_only: bool = False) -> list[str]:
        argv = ["psql", *self._conn_args(), "-d", database or self.db.name]
        argv += ["-v", "ON_ERROR_STOP=1"]
        if tuples_only:
            argv += ["-t", "-A"]
        return argv

    def execute_sql(
        self, sql: str, *, database: str | None = None, tuples_only: bool = False
    ) -> CmdOutput:
        return capture_cmd(
            self._psql(database, tuples_only=tuples_only),
            cwd=self.project_root,
            env=self._pg_env,
            input_text=sql,
        )

    def execute_sql_file(self, path: Path, *, database: str | None = None) -> CmdOutput:
        return capture_cmd(
            [*self._psql(database), "-f", str(path)],
            cwd=self.project_root,
            env=self._pg_env,
        )

    def query_value(self, sql: str) -> str | None:
        out = self.execute_sql(sql, tuples_only=True)
        if not out.ok:
            return None
        for line in out.stdout.splitlines():
            if line.strip():
                return line.strip()
        return None

    def query_rows(self, sql: str) -> list[str]:
        out = self.execute_sql(sql, tuples_only=True)
        if not out.ok:
            return []
        return [line for line in out.stdout.splitlines() if line.strip()]

    # -- snapshots -----------------------------------------------------

    def create_snapshot(self, name: str) -> Path:
        target = self.mig.snapshots_dir / f"{name}_{local_stamp()}.sql"
        err_path = target.with_suffix(".err")
        res = run_cmd(
            [
                "pg_dump",
                *self._conn_args(),
                "--clean",
                "--if-exists",
                "--create",
                "--no-owner",
                "--no-privileges",
                self.db.name,
            ],
            cwd=self.project_root,
            stdout_path=target,
            stderr_path=err_path,
            env=self._pg_env,
        )
        if res.exit_code != 0:
            log_event(_LOG, "migrations.snapshot.failure", name=name, exit_code=res.exit_code)
            raise RuntimeError(
                f"{E_SNAPSHOT_FAILED}: pg_dump exited {res.exit_code}; see {err_path}"
            )
        err_path.unlink(missing_ok=True)
        log_event(_LOG, "migrations.snapshot.created", name=name, path=str(target))
        return target

    def restore_snapshot(self, snapshot: Path) -> bool:
        if not snapshot.is_file():
            raise FileNotFoundError(f"{E_SNAPSHOT_NOT_FOUND}: {snapshot}")
        maint = self.db.maintenance_db
        drop = self.execute_sql(
            f"DROP DATABASE IF EXISTS {_ident(self.db.name)};", database=maint
        )
        # The dump was taken with --create, so it recreates and reconnects itself.
        load = self.execute_sql_file(snapshot, database=maint) if drop.ok else drop
        log_event(
            _LOG,
            "migrations.snapshot.restore",
            path=str(snapshot),
            ok=load.ok,
            exit_code=load.exit_code,
        )
        return load.ok

    def latest_snapshots(self, limit: int = 5) -> list[Path]:
        return sorted(self.mig.snapshots_dir.glob("*.sql"))[-limit:]

    # -- versions ------------------------------------------------------

    def current_version(self) -> str:
        value = self.query_value(
            f"SELECT COALESCE(MAX(version), {sql_literal(INITIAL_VERSION)}) FROM schema_migrations;"
        )
        return value or INITIAL_VERSION

    def is_applied(self, name: str) -> bool:
        count = self.query_value(
            f"SELECT COUNT(*) FROM schema_migrations WHERE version = {sql_literal(name)};"
        )
        return count == "1"

    def _record_sql(self, name: str, description: str) -> str:
        return (
            "INSERT INTO schema_migrations (version, description, applied_at)\n"
            f"VALUES ({sql_literal(name)}, {sql_literal(description)}, NOW())\n"
            "ON CONFLICT (version) DO NOTHING;\n"
        )

    def _verification_block(self) -> str:
        checks: list[str] = []
        for table in self.mig.required_tables:
            checks.append(
                "    IF NOT EXISTS (SELECT 1 FROM information_schema.tables "
                f"WHERE table_schema = 'public' AND table_name = {sql_literal(table)}) THEN\n"
                f"        RAISE EXCEPTION {sql_literal('Critical table missing: ' + table)};\n"
                "    END IF;"
            )
        for table, columns in self.mig.required_columns.items():
            for column in columns:
                checks.append(
                    "    IF NOT EXISTS (SELECT 1 FROM information_schema.columns "
                    f"WHERE table_schema = 'public' AND table_name = {sql_literal(table)} "
                    f"AND column_name = {sql_literal(column)}) THEN\n"
                    f"        RAISE EXCEPTION {sql_literal(f'Critical column missing: {table}.{column}')};\n"
                    "    END IF;"
                )
        if not checks:
            return ""
        return "DO $$\nBEGIN\n" + "\n".join(checks) + "\nEND $$;\n"

    def wrapper_sql(self, migration_file: Path) -> str:
        name = migration_file.stem
        path_literal = str(migration_file.resolve()).replace("'", "''")
        return (
            "BEGIN;\n\n"
            f"\\i '{path_literal}'\n\n"
            + self._record_sql(name, f"Applied from {migration_file.name}")
            + "\n"
            + self._verification_block()
            + "\nCOMMIT;\n"
        )

    # -- operations ----------------------------------------------------

    def apply_migration(self, migration_file: Path) -> MigrationOutcome:
        if not migration_file.is_file():
            raise FileNotFoundError(f"{E_MIGRATION_NOT_FOUND}: {migration_file}")
        name = migration_file.stem
        print(f"Applying migration: {name}")

        if self.is_applied(name):
            print(f"Migration already applied: {name}")
            log_event(_LOG, "migrations.apply.skipped", name=name)
            return MigrationOutcome(name=name, status="skipped")

        pre = self.create_snapshot(f"pre_{name}")
        wrapper = self.mig.migrations_dir / f".apply_{name}.sql"
        wrapper.write_text(self.wrapper_sql(migration_file), encoding="utf-8")
        try:
            out = self.execute_sql_file(wrapper)
        finally:
            wrapper.unlink(missing_ok=True)

        if out.ok:
            self.create_snapshot(f"post_{name}")
            (self.mig.rollbacks_dir / f"{name}.rollback").write_text(
                str(pre) + "\n", encoding="utf-8"
            )
            print(f"Migration applied successfully: {name}")
            log_event(_LOG, "migrations.apply.success", name=name, snapshot=str(pre))
            return MigrationOutcome(name=name, status="applied", snapshot=str(pre))

        errors = tuple(
            line
            for line in (out.stdout + "\n" + out.stderr).splitlines()
            if _ERROR_LINE.search(line)
        )[:5]
        print(f"Migration failed: {name}")
        for line in errors:
            print(f"  {line}")
        log_event(_LOG, "migrations.apply.failure", name=name, errors=list(errors))

        print("Attempting automatic rollback...")
        if self.restore_snapshot(pre):
            print("Successfully rolled back to pre-migration state")
            return MigrationOutcome(
                name=name, status="rolled_back", snapshot=str(pre), errors=errors
            )
        print(f"Automatic rollback failed! Manual intervention required. Snapshot: {pre}")
        return MigrationOutcome(name=name, status="failed", snapshot=str(pre), errors=errors)

    def rollback_migration(self, name: str) -> bool:
        info = self.mig.rollbacks_dir / f"{name}.rollback"
        if not info.is_file():
            raise FileNotFoundError(f"{E_NO_ROLLBACK_INFO}: no rollback information for {name}")
        snapshot = Path(info.read_text(encoding="utf-8").strip())
        print(f"Rolling back: {name}")
        if not self.restore_snapshot(snapshot):
            log_event(_LOG, "migrations.rollback.failure", name=name)
            print(f"Rollback failed for: {name}")
            return False
        self.execute_sql(f"DELETE FROM schema_migrations WHERE version = {sql_literal(name)};")
        log_event(_LOG, "migrations.rollback.success", name=name)
        print(f"Successfully rolled back migration: {name}")
        return True

    def sync_baseline(self) -> Path:
        print("Syncing with production state")
        baseline = self.mig.baseline_sql
        if baseline is not None and baseline.is_file():
            out = self.execute_sql_file(baseline)
            log_event(_LOG, "migrations.baseline.sql", path=str(baseline), exit_code=out.exit_code)
        for version in self.mig.baseline_migrations:
            self.execute_sql(self._record_sql(version, "Production sync"))
        snapshot = self.create_snapshot("production_baseline")
        log_event(
            _LOG,
            "migrations.baseline.synced",
            versions=len(self.mig.baseline_migrations),
            snapshot=str(snapshot),
        )
        return snapshot

    def test_migration(self, migration_file: Path) -> dict:
        if not migration_file.is_file():
            raise FileNotFoundError(f"{E_MIGRATION_NOT_FOUND}: {migration_file}")
        self.sync_baseline()
        outcome = self.apply_migration(migration_file)
        report: dict = {"migration": outcome.name, "status": outcome.status, "ok": outcome.ok}
        if outcome.ok:
            report["smoke"] = {key: self.execute_sql(sql).ok for key, sql in SMOKE_INSERTS}
            report["indexes"] = self.query_value(
                "SELECT COUNT(*) FROM pg_indexes WHERE schemaname = 'public';"
            )
            report["foreign_keys"] = self.query_value(
                "SELECT COUNT(*) FROM information_schema.table_constraints "
                "WHERE constraint_type = 'FOREIGN KEY' AND table_schema = 'public';"
            )
        else:
            report["errors"] = list(outcome.errors)
        return report

    def status(self) -> dict:
        applied = self.query_rows(
            "SELECT version || '|' || applied_at FROM schema_migrations ORDER BY applied_at;"
        )
        tables = self.query_rows(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'public' ORDER BY table_name;"
        )
        return {
            "applied": [
                dict(zip(("version", "applied_at"), row.split("|", 1))) for row in applied
            ],
            "current_version": self.current_version(),
            "snapshots": [str(p) for p in self.latest_snapshots()],
            "tables": tables,
        }


FORWARD_TEMPLATE = """\
-- ============================================
-- Migration: {name}
-- Date: {date}
-- Description: {description}
-- ============================================

DO $$
BEGIN
    IF EXISTS (SELECT 1 FROM schema_migrations WHERE version = '{name}') THEN
        RAISE EXCEPTION 'Migration already applied: {name}';
    END IF;

    IF NOT EXISTS (SELECT 1 FROM information_schema.tables WHERE table_schema = 'public' AND table_name = 'schema_migrations') THEN
        RAISE EXCEPTION 'Migration system not initialized';
    END IF;
END $$;

BEGIN;

-- ============================================
-- CHANGES START HERE
-- ============================================

-- ALTER TABLE public.organizations ADD COLUMN IF NOT EXISTS new_column VARCHAR(255);

-- ============================================
-- CHANGES END HERE
-- ============================================

INSERT INTO schema_migrations (version, description, applied_at)
VALUES ('{name}', '{description}', NOW());

COMMIT;
"""

ROLLBACK_TEMPLATE = """\
-- ============================================
-- Rollback for: {name}
-- Date: {date}
-- Description: Rollback {description}
-- ============================================

DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM schema_migrations WHERE version = '{name}') THEN
        RAISE EXCEPTION 'Migration not found: {name}. Nothing to rollback.';
    END IF;
END $$;

BEGIN;

-- ============================================
-- ROLLBACK CHANGES START HERE
-- ============================================

-- ALTER TABLE public.organizations DROP COLUMN IF EXISTS new_column;

-- ============================================
-- ROLLBACK CHANGES END HERE
-- ============================================

DELETE FROM schema_migrations WHERE version = '{name}';

COMMIT;
"""

HEALTH_TEMPLATE = """\
-- ============================================
-- Health Check for: {name}
-- Run this AFTER applying the migration
-- ============================================

SELECT
    CASE
        WHEN EXISTS (SELECT 1 FROM schema_migrations WHERE version = '{name}')
        THEN 'Migration recorded'
        ELSE 'Migration NOT recorded'
    END AS migration_status;

SELECT
    table_name,
    COUNT(*) AS column_count
FROM information_schema.columns
WHERE table_schema = 'public'
GROUP BY table_name
ORDER BY table_name;
"""


def create_migration(description: str, authoring_dir: Path) -> dict[str, Path]:
    """Write forward/rollback/health-check SQL skeletons for a new migration."""
    description = description.strip().replace(" ", "_")
    if not _DESCRIPTION.fullmatch(description):
        raise ValueError(
            f"{E_BAD_DESCRIPTION}: description may only contain letters, digits, '_' and '-'"
        )
    name = f"{local_stamp()}_{description}"
    fields = {
        "name": name,
        "description": description,
        "date": datetime.now().isoformat(timespec="seconds"),
    }
    targets = {
        "forward": authoring_dir / "forward" / f"{name}.sql",
        "rollback": authoring_dir / "rollback" / f"{name}_rollback.sql",
        "health_check": authoring_dir / "health-checks" / f"verify_{name}.sql",
    }
    templates = {
        "forward": FORWARD_TEMPLATE,
        "rollback": ROLLBACK_TEMPLATE,
        "health_check": HEALTH_TEMPLATE,
    }
    for kind, path in targets.items():
        ensure_dir(path.parent)
        path.write_text(templates[kind].format(**fields), encoding="utf-8")
    log_event(_LOG, "migrations.create", name=name, files=[str(p) for p in targets.values()])
    return targets
