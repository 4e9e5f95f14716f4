from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from . import ci, routes, secrets
from .compose import ComposeStack
from .config import Config, load_config
from .migrations import MigrationManager, create_migration
from .runner import TestRunner
from .util import (
    MetricsEmitter,
    generate_request_id,
    get_request_id,
    log_event,
    set_request_id,
    setup_json_logger,
)

_LOG = setup_json_logger("opsctl.cli")

GLOBAL_FLAGS = ("--config", "--metrics-out", "--request-id")


def _default_config_path() -> Path:
    return Path("configs/opsctl.config.json")


def _split_passthrough(argv: list[str]) -> tuple[list[str], list[str]]:
    """Everything after a bare `--` belongs to the wrapped test runner."""
    if "--" in argv:
        i = argv.index("--")
        return argv[:i], argv[i + 1 :]
    return argv, []


def _normalize_global_flags(argv: list[str]) -> list[str]:
    """Allow global flags after the subcommand.

    `argparse` only accepts global args before the subcommand. We normalize
    `opsctl e2e setup --config X` into `opsctl --config X e2e setup`.
    """
    if not argv:
        return argv

    out = list(argv)
    for flag in GLOBAL_FLAGS:
        if flag in out:
            i = out.index(flag)
            if i + 1 < len(out):
                val = out[i + 1]
                del out[i : i + 2]
                out = [flag, val, *out]
    return out


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def cmd_secrets(cfg: Config, action: str, file: str | None) -> int:
    root = cfg.project_root
    if action == "setup-test":
        print(f"Created {secrets.setup_test_environment(root)}")
        return 0
    if action == "setup-dev":
        print(f"Created {secrets.setup_development_environment(root)}")
        return 0
    if action == "setup-prod-template":
        print(f"Created {secrets.create_production_template(root)}")
        return 0
    if action == "generate-secrets":
        target = Path(file) if file else root / ".env.test"
        if not target.is_absolute():
            target = root / target
        rotated = secrets.update_secrets(target)
        _print_json({"path": str(target), "rotated": rotated})
        return 0
    if action == "backup":
        written = secrets.backup_env_files(root, cfg.env_files.secure_dir)
        _print_json({"backups": [str(p) for p in written]})
        return 0
    if action == "create-docs":
        print(f"Created {secrets.create_security_docs(cfg.env_files.docs_dir)}")
        return 0
    if action == "validate":
        report = secrets.validate_environments(root)
    elif action == "full-setup":
        report = secrets.full_setup(
            root,
            secure_dir=cfg.env_files.secure_dir,
            docs_dir=cfg.env_files.docs_dir,
        )
    else:
        raise RuntimeError("unreachable")
    _print_json(report.as_dict())
    if report.ok:
        print("PASS: all environment files validated")
        return 0
    print(f"FAIL: validation failed with {report.errors} errors")
    return 1


def cmd_routes(cfg: Config, *, check_only: bool, list_only: bool) -> int:
    if list_only:
        found = routes.discover_routes(cfg.api_dir)
        _print_json(
            [
                {
                    "file": r.file.relative_to(cfg.api_dir).as_posix(),
                    "methods": list(r.methods),
                    "path": r.path,
                }
                for r in found
            ]
        )
        return 0
    if not cfg.api_dir.is_dir():
        print(f"WARN: API directory not found: {cfg.api_dir}")
    rep = routes.apply_boilerplate(cfg.api_dir, check_only=check_only)
    _print_json(rep)
    if check_only and rep["changed"]:
        print(f"FAIL: {len(rep['changed'])} route file(s) missing the dynamic directive")
        return 1
    return 0


def cmd_ci(cfg: Config, *, write: bool, out_dir: str | None) -> int:
    ci_env = ci.detect_ci_environment()
    config = ci.build_config(ci_env)
    _print_json(
        {"ci_environment": ci_env, "config": config, "test_command": ci.test_command(config)}
    )
    if write:
        target = Path(out_dir) if out_dir else cfg.ci_output_dir
        for path in ci.write_configs(target, config):
            print(f"Wrote {path}")
    return 0


def cmd_e2e(cfg: Config, action: str, service: str | None) -> int:
    stack = ComposeStack(cfg.compose, project_root=cfg.project_root)
    if action == "setup":
        stack.setup()
    elif action == "teardown":
        stack.teardown()
    elif action == "reset":
        stack.reset()
    elif action == "logs":
        print(stack.logs(service), end="")
    elif action == "status":
        states = stack.status()
        return 0 if all(states.values()) else 1
    elif action == "validate":
        stack.validate()
    elif action == "smoke-test":
        stack.smoke_test()
    else:
        raise RuntimeError("unreachable")
    return 0


def cmd_migrate(cfg: Config, action: str, target: str | None) -> int:
    if action == "create":
        files = create_migration(target or "", cfg.migrations.authoring_dir)
        _print_json({kind: str(p) for kind, p in files.items()})
        return 0

    mgr = MigrationManager(cfg.database, cfg.migrations, project_root=cfg.project_root)
    if action == "sync":
        print(f"Baseline snapshot: {mgr.sync_baseline()}")
        return 0
    if action == "apply":
        mgr.sync_baseline()
        outcome = mgr.apply_migration(Path(target))
        return 0 if outcome.ok else 1
    if action == "test":
        rep = mgr.test_migration(Path(target))
        _print_json(rep)
        return 0 if rep["ok"] else 1
    if action == "rollback":
        return 0 if mgr.rollback_migration(target) else 1
    if action == "status":
        _print_json(mgr.status())
        return 0
    if action == "snapshot":
        print(f"Snapshot created: {mgr.create_snapshot(target or 'manual')}")
        return 0
    if action == "restore":
        return 0 if mgr.restore_snapshot(Path(target)) else 1
    raise RuntimeError("unreachable")


def cmd_test_run(cfg: Config, runner_args: list[str]) -> int:
    runner = TestRunner(cfg.runner, project_root=cfg.project_root)
    return runner.run(runner_args)


def _run_command_with_observability(
    *,
    command_name: str,
    fn,
    metrics: MetricsEmitter,
) -> int:
    started = time.perf_counter()
    log_event(_LOG, "cli.command.start", command=command_name)
    try:
        rc = fn()
    except Exception as exc:
        latency_ms = (time.perf_counter() - started) * 1000.0
        log_event(
            _LOG,
            "cli.command.error",
            command=command_name,
            error=str(exc),
            gate_outcome="error",
            latency_ms=round(latency_ms, 3),
        )
        metrics.emit(
            metric="opsctl.command",
            status="error",
            latency_ms=latency_ms,
            gate_outcome="error",
            error=type(exc).__name__,
        )
        raise

    latency_ms = (time.perf_counter() - started) * 1000.0
    gate_outcome = "success" if rc == 0 else "failure"
    status = "success" if rc == 0 else "error"
    log_event(
        _LOG,
        "cli.command.finish",
        command=command_name,
        gate_outcome=gate_outcome,
        latency_ms=round(latency_ms, 3),
        status=status,
    )
    metrics.emit(
        metric="opsctl.command",
        status=status,
        latency_ms=latency_ms,
        gate_outcome=gate_outcome,
        error=(None if rc == 0 else f"exit_code={rc}"),
    )
    return rc


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="opsctl", description="Development and CI lifecycle tooling."
    )
    p.add_argument(
        "--config", default=str(_default_config_path()), help="Path to opsctl.config.json"
    )
    p.add_argument(
        "--metrics-out",
        default="artifacts/observability/metrics.jsonl",
        help="Path to JSONL metrics file emitter output.",
    )
    p.add_argument(
        "--request-id",
        default=None,
        help="Correlation/request identifier for all structured logs and metrics.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    sec = sub.add_parser("secrets", help="Generate, rotate and validate env files.")
    sec.add_argument(
        "action",
        choices=(
            "setup-test",
            "setup-dev",
            "setup-prod-template",
            "generate-secrets",
            "validate",
            "backup",
            "create-docs",
            "full-setup",
        ),
    )
    sec.add_argument("file", nargs="?", help="Env file for generate-secrets (default .env.test).")

    rt = sub.add_parser("routes", help="Add the dynamic directive to API route files.")
    rt.add_argument("--check", action="store_true", help="Report only; exit 1 if changes are needed.")
    rt.add_argument("--list", action="store_true", help="List discovered routes and methods.")

    cip = sub.add_parser("ci", help="Detect the CI environment and emit pipeline configs.")
    cip.add_argument("--write-configs", action="store_true", help="Write pipeline files.")
    cip.add_argument("--out", default=None, help="Output directory (default from config).")

    e2e = sub.add_parser("e2e", help="Manage the end-to-end test containers.")
    e2e.add_argument(
        "action",
        choices=("setup", "teardown", "reset", "logs", "status", "validate", "smoke-test"),
    )
    e2e.add_argument("service", nargs="?", help="Service name for logs.")

    mig = sub.add_parser("migrate", help="Apply, test and roll back database migrations.")
    mig.add_argument(
        "action",
        choices=("sync", "test", "apply", "rollback", "status", "snapshot", "restore", "create"),
    )
    mig.add_argument(
        "target",
        nargs="?",
        help="Migration file, migration name, snapshot name/file or description.",
    )

    sub.add_parser(
        "test-run",
        help="Run the test runner with EPIPE recovery; pass runner args after `--`.",
    )
    return p


_NEEDS_TARGET = ("test", "apply", "rollback", "restore", "create")


def main(argv: list[str] | None = None) -> None:
    own, passthrough = _split_passthrough(list(argv if argv is not None else sys.argv[1:]))
    p = build_parser()
    args = p.parse_args(_normalize_global_flags(own))
    if args.cmd == "migrate" and args.action in _NEEDS_TARGET and not args.target:
        p.error(f"migrate {args.action} requires a target")
    if passthrough and args.cmd != "test-run":
        p.error("arguments after `--` are only accepted by test-run")

    req_id = args.request_id or generate_request_id()
    set_request_id(req_id)
    metrics = MetricsEmitter(Path(args.metrics_out))
    log_event(_LOG, "cli.request.context", request_id=get_request_id(), command=args.cmd)

    def _load() -> Config:
        return load_config(Path(args.config))

    if args.cmd == "secrets":
        fn = lambda: cmd_secrets(_load(), args.action, args.file)
        name = f"secrets.{args.action}"
    elif args.cmd == "routes":
        fn = lambda: cmd_routes(_load(), check_only=args.check, list_only=args.list)
        name = "routes"
    elif args.cmd == "ci":
        fn = lambda: cmd_ci(_load(), write=args.write_configs, out_dir=args.out)
        name = "ci"
    elif args.cmd == "e2e":
        fn = lambda: cmd_e2e(_load(), args.action, args.service)
        name = f"e2e.{args.action}"
    elif args.cmd == "migrate":
        fn = lambda: cmd_migrate(_load(), args.action, args.target)
        name = f"migrate.{args.action}"
    elif args.cmd == "test-run":
        fn = lambda: cmd_test_run(_load(), passthrough)
        name = "test-run"
    else:
        raise RuntimeError("unreachable")

    rc = _run_command_with_observability(command_name=name, fn=fn, metrics=metrics)
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
