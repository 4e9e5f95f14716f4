"""Environment file management.

Generates per-environment ``.env`` files with fresh secrets, keeps timestamped
backups, rotates placeholder secrets in place, and validates the result
(file mode 0600, required variables, value formats).
"""

from __future__ import annotations

import logging
import os
import re
import secrets as _random
import shutil
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from .util import ensure_dir, local_stamp, log_event, setup_json_logger

_LOG = setup_json_logger("opsctl.secrets")

SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700

BACKED_UP_FILES = (".env.local", ".env.test", ".env.production")
VALIDATED_FILES = (".env.test", ".env.local", ".env.production.secure")
REQUIRED_VARS = ("NODE_ENV", "CSRF_SECRET", "NEXT_PUBLIC_SUPABASE_URL")

ENV_PATTERNS: dict[str, re.Pattern[str]] = {
    "CSRF_SECRET": re.compile(r"^[a-zA-Z0-9]{32,}$"),
    "SESSION_SECRET": re.compile(r"^[a-zA-Z0-9]{32,}$"),
    "DATABASE_ENCRYPTION_KEY": re.compile(r"^[a-zA-Z0-9]{32,}$"),
    "NEXT_PUBLIC_SUPABASE_URL": re.compile(r"^https://[a-zA-Z0-9-]+\.supabase\.co$"),
    "SUPABASE_SERVICE_ROLE_KEY": re.compile(
        r"^eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+$"
    ),
    "OPENAI_API_KEY": re.compile(r"^sk-[a-zA-Z0-9]{48,}$"),
    "ANTHROPIC_API_KEY": re.compile(r"^sk-ant-[a-zA-Z0-9\-_]{64,}$"),
}

PLACEHOLDER_LINE = re.compile(r"^([A-Z_]+)=(generate_new_.*|your_.*|test_.*_change_me)$")
_ROTATABLE_NAME = re.compile(r".*_(SECRET|KEY)$")


TEST_ENV_TEMPLATE = """\
# =============================================================================
# Test Environment Configuration
# =============================================================================
# CRITICAL: This file contains TEST-ONLY credentials.
# NEVER use these in production.

# Environment
NODE_ENV=test
ENVIRONMENT=test

# Test Database Configuration (Isolated)
NEXT_PUBLIC_SUPABASE_URL=https://test-project.supabase.co
NEXT_PUBLIC_SUPABASE_ANON_KEY=test_anon_key_change_me
SUPABASE_SERVICE_ROLE_KEY=test_service_role_key_change_me

# Test-specific Security Configuration
CSRF_SECRET={csrf_secret}
SESSION_SECRET={session_secret}
DATABASE_ENCRYPTION_KEY={db_key}

# Application URLs (Test)
NEXT_PUBLIC_APP_URL=http://localhost:3000
NEXTAUTH_URL=http://localhost:3000

# Test LLM API Keys (Separate from production, lower quotas)
OPENAI_API_KEY=test_openai_key_change_me
ANTHROPIC_API_KEY=test_anthropic_key_change_me
GOOGLE_AI_API_KEY=test_google_key_change_me

# Test Rate Limiting (More permissive for testing)
API_RATE_LIMIT_MAX=1000
API_RATE_LIMIT_WINDOW=900000
AUTH_RATE_LIMIT_MAX=100
LLM_RATE_LIMIT_MAX=500

# Test File Upload Configuration
MAX_FILE_SIZE_MB=10
ALLOWED_FILE_TYPES=image/jpeg,image/png,text/csv,application/pdf

# Test Security Configuration
ENABLE_HSTS=false
ENABLE_CSP=true
CSP_REPORT_ONLY=true
ENABLE_IP_BLOCKING=false
ENABLE_SECURITY_MONITORING=true

# Test Redis Configuration (Optional)
REDIS_URL=redis://localhost:6379/1

# Test Webhook Configuration
SECURITY_WEBHOOK_URL=http://localhost:3001/test-webhook
SECURITY_LOGGING_ENDPOINT=http://localhost:3001/test-logs

# Test Email Configuration
ALERT_EMAIL=test@example.com

# Performance Settings for Tests
DISABLE_ANALYTICS=true
DISABLE_TELEMETRY=true
SKIP_ENV_VALIDATION=false

# Test Feature Flags
ENABLE_DEBUG_MODE=true
ENABLE_VERBOSE_LOGGING=true
MOCK_EXTERNAL_APIS=true

# Test Data Configuration
TEST_USER_EMAIL=test@example.com
TEST_USER_PASSWORD=test_password_123
TEST_ADMIN_EMAIL=admin@example.com

# Database Connection Pool Settings (Test)
DB_POOL_MIN=1
DB_POOL_MAX=5

# Test Timeout Settings
API_TIMEOUT_MS=5000
LLM_TIMEOUT_MS=30000

# Test Cache Configuration
CACHE_TTL_SECONDS=60
DISABLE_CACHE=false

# Compliance and Audit (Test)
AUDIT_LOGGING=true
PII_DETECTION=true
DATA_RETENTION_DAYS=7
"""

DEV_ENV_TEMPLATE = """\
# =============================================================================
# Development Environment Configuration
# =============================================================================
# Safe for local development. Do not use in production.

# Environment
NODE_ENV=development
ENVIRONMENT=development

# Development Database Configuration
NEXT_PUBLIC_SUPABASE_URL=https://your-dev-project.supabase.co
NEXT_PUBLIC_SUPABASE_ANON_KEY=your_dev_anon_key_here
SUPABASE_SERVICE_ROLE_KEY=your_dev_service_role_key_here

# Development Security Configuration
CSRF_SECRET={csrf_secret}
SESSION_SECRET={session_secret}

# Development Application URLs
NEXT_PUBLIC_APP_URL=http://localhost:3000
NEXTAUTH_URL=http://localhost:3000

# Development LLM API Keys (Use development keys with quotas)
# OPENAI_API_KEY=your_dev_openai_key
# ANTHROPIC_API_KEY=your_dev_anthropic_key
# GOOGLE_AI_API_KEY=your_dev_google_key

# Development Rate Limiting (Permissive)
API_RATE_LIMIT_MAX=1000
API_RATE_LIMIT_WINDOW=900000
AUTH_RATE_LIMIT_MAX=100
LLM_RATE_LIMIT_MAX=200

# Development Security Configuration (Relaxed)
ENABLE_HSTS=false
ENABLE_CSP=true
CSP_REPORT_ONLY=true
ENABLE_IP_BLOCKING=false
ENABLE_SECURITY_MONITORING=true

# Development Feature Flags
ENABLE_DEBUG_MODE=true
ENABLE_VERBOSE_LOGGING=true
MOCK_EXTERNAL_APIS=false
"""

PRODUCTION_TEMPLATE = """\
# =============================================================================
# Production Environment Template (SECURE)
# =============================================================================
# Replace ALL values before deploying to production.
# NEVER commit this file with real values.

# Environment
NODE_ENV=production
ENVIRONMENT=production

# Production Database Configuration
NEXT_PUBLIC_SUPABASE_URL=https://your-prod-project.supabase.co
NEXT_PUBLIC_SUPABASE_ANON_KEY=your_production_anon_key_here
SUPABASE_SERVICE_ROLE_KEY=your_production_service_role_key_here

# Production Security Configuration (Generate new secrets!)
CSRF_SECRET=generate_new_32_char_secret_for_production
SESSION_SECRET=generate_new_32_char_secret_for_production
DATABASE_ENCRYPTION_KEY=generate_new_32_char_secret_for_production

# Production Application URLs
NEXT_PUBLIC_APP_URL=https://your-production-domain.com
NEXTAUTH_URL=https://your-production-domain.com

# Production LLM API Keys (Use separate production keys)
OPENAI_API_KEY=your_production_openai_key
ANTHROPIC_API_KEY=your_production_anthropic_key
GOOGLE_AI_API_KEY=your_production_google_key

# Production Rate Limiting (Stricter)
API_RATE_LIMIT_MAX=100
API_RATE_LIMIT_WINDOW=900000
AUTH_RATE_LIMIT_MAX=10
LLM_RATE_LIMIT_MAX=50

# Production File Upload Configuration
MAX_FILE_SIZE_MB=50
ALLOWED_FILE_TYPES=image/jpeg,image/png,text/csv,application/pdf

# Production Security Configuration (Strict)
ENABLE_HSTS=true
ENABLE_CSP=true
CSP_REPORT_ONLY=false
ENABLE_IP_BLOCKING=true
ENABLE_SECURITY_MONITORING=true

# Production Redis Configuration
REDIS_URL=your_production_redis_url

# Production Webhook Configuration
SECURITY_WEBHOOK_URL=https://your-security-service.com/webhook
SECURITY_LOGGING_ENDPOINT=https://your-logging-service.com/api/logs
SECURITY_LOGGING_TOKEN=your_logging_service_token

# Production Email Configuration
ALERT_EMAIL=security@your-domain.com

# Production Performance Settings
DISABLE_ANALYTICS=false
DISABLE_TELEMETRY=false
SKIP_ENV_VALIDATION=false

# Production Feature Flags
ENABLE_DEBUG_MODE=false
ENABLE_VERBOSE_LOGGING=false
MOCK_EXTERNAL_APIS=false

# Production Database Configuration
DB_POOL_MIN=5
DB_POOL_MAX=20

# Production Timeout Settings
API_TIMEOUT_MS=10000
LLM_TIMEOUT_MS=60000

# Production Cache Configuration
CACHE_TTL_SECONDS=3600
DISABLE_CACHE=false

# Compliance and Audit (Production)
AUDIT_LOGGING=true
PII_DETECTION=true
DATA_RETENTION_DAYS=365
"""

SECURITY_DOC = """\
# Secret Management Guide

## Environment Separation

### Test Environment (.env.test)
- Isolated testing with a separate database and API keys
- Test-specific keys with lower quotas
- Rate limits relaxed for test automation

### Development Environment (.env.local)
- Local development with safe defaults
- Development keys are optional
- Relaxed security settings for debugging

### Production Environment (.env.production)
- Production keys with full quotas
- Strict rate limits and full security hardening

## Security Requirements

- Secrets are at least 32 characters, generated from a CSPRNG
- Rotate secrets every 90 days
- Environment and backup files: mode 600
- Secret directory: mode 700

## Commands

```bash
opsctl secrets setup-test
opsctl secrets generate-secrets .env.local
opsctl secrets validate
opsctl secrets backup
```

## Troubleshooting

```bash
chmod 600 .env.*
chmod 700 .secrets/
```
"""


@dataclass
class FileReport:
    path: str
    missing: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    mode_fixed_from: str | None = None


@dataclass
class ValidationReport:
    files: list[FileReport] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return sum(len(f.missing) + len(f.invalid) for f in self.files)

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def as_dict(self) -> dict:
        return {
            "errors": self.errors,
            "files": [
                {
                    "invalid": f.invalid,
                    "missing": f.missing,
                    "mode_fixed_from": f.mode_fixed_from,
                    "path": f.path,
                }
                for f in self.files
            ],
            "ok": self.ok,
        }


def generate_secret(length: int = 32) -> str:
    if length < 1:
        raise ValueError("E_SECRET_LENGTH: length must be positive")
    return _random.token_hex(length)


def validate_env_var(name: str, value: str) -> bool:
    pattern = ENV_PATTERNS.get(name)
    if pattern is None:
        return True
    return pattern.fullmatch(value) is not None


def is_placeholder(value: str) -> bool:
    return PLACEHOLDER_LINE.match(f"X={value}") is not None


def _write_secure(path: Path, text: str, *, newline: str | None = None) -> None:
    with path.open("w", encoding="utf-8", newline=newline) as f:
        f.write(text)
    os.chmod(path, SECURE_FILE_MODE)


def backup_env_files(root: Path, secure_dir: Path | None = None) -> list[Path]:
    secure_dir = secure_dir or (root / ".secrets")
    ensure_dir(secure_dir, mode=SECURE_DIR_MODE)
    backup_dir = secure_dir / "backups"
    ensure_dir(backup_dir, mode=SECURE_DIR_MODE)
    stamp = local_stamp()
    written: list[Path] = []
    for name in BACKED_UP_FILES:
        src = root / name
        if src.is_file():
            dst = backup_dir / f"{name}.backup.{stamp}"
            shutil.copy2(src, dst)
            os.chmod(dst, SECURE_FILE_MODE)
            written.append(dst)
            print(f"Backed up {name}")
    log_event(_LOG, "secrets.backup", count=len(written), backup_dir=str(backup_dir))
    return written


def setup_test_environment(root: Path) -> Path:
    target = root / ".env.test"
    _write_secure(
        target,
        TEST_ENV_TEMPLATE.format(
            csrf_secret=generate_secret(32),
            session_secret=generate_secret(32),
            db_key=generate_secret(32),
        ),
    )
    log_event(_LOG, "secrets.env.written", env="test", path=str(target))
    return target


def setup_development_environment(root: Path) -> Path:
    target = root / ".env.local"
    if target.exists():
        log_event(
            _LOG,
            "secrets.env.exists",
            level=logging.WARNING,
            path=str(target),
            fallback=".env.local.new",
        )
        print("WARN: .env.local already exists, writing .env.local.new")
        target = root / ".env.local.new"
    _write_secure(
        target,
        DEV_ENV_TEMPLATE.format(
            csrf_secret=generate_secret(32),
            session_secret=generate_secret(32),
        ),
    )
    log_event(_LOG, "secrets.env.written", env="development", path=str(target))
    return target


def create_production_template(root: Path) -> Path:
    target = root / ".env.production.secure"
    _write_secure(target, PRODUCTION_TEMPLATE)
    log_event(_LOG, "secrets.env.written", env="production-template", path=str(target))
    return target


def validate_env_file(path: Path) -> FileReport:
    report = FileReport(path=str(path))
    mode = stat.S_IMODE(path.stat().st_mode)
    if mode != SECURE_FILE_MODE:
        report.mode_fixed_from = oct(mode)
        log_event(
            _LOG,
            "secrets.validate.insecure_mode",
            level=logging.WARNING,
            path=str(path),
            mode=oct(mode),
        )
        os.chmod(path, SECURE_FILE_MODE)

    values = dotenv_values(path)
    for var in REQUIRED_VARS:
        if values.get(var) is None:
            report.missing.append(var)
    for name, value in values.items():
        if value is None or is_placeholder(value):
            continue
        if not validate_env_var(name, value):
            report.invalid.append(name)
    return report


def validate_environments(root: Path) -> ValidationReport:
    report = ValidationReport()
    for name in VALIDATED_FILES:
        path = root / name
        if not path.is_file():
            continue
        file_report = validate_env_file(path)
        report.files.append(file_report)
        for var in file_report.missing:
            print(f"ERROR: missing required variable {var} in {name}")
        for var in file_report.invalid:
            print(f"ERROR: {var} format validation failed in {name}")
    log_event(_LOG, "secrets.validate", errors=report.errors, files=len(report.files))
    return report


def update_secrets(path: Path) -> list[str]:
    """Replace placeholder *_SECRET / *_KEY values with generated secrets."""
    if not path.is_file():
        raise FileNotFoundError(f"E_ENV_FILE_NOT_FOUND: {path}")

    shutil.copy2(path, path.with_name(f"{path.name}.backup.{int(time.time())}"))

    rotated: list[str] = []
    out_lines: list[str] = []
    with path.open(encoding="utf-8", newline="") as f:
        original = f.read()
    for line in original.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        m = PLACEHOLDER_LINE.match(body)
        if m and _ROTATABLE_NAME.fullmatch(m.group(1)):
            name = m.group(1)
            out_lines.append(f"{name}={generate_secret(32)}{line[len(body):]}")
            rotated.append(name)
        else:
            out_lines.append(line)

    _write_secure(path, "".join(out_lines), newline="")
    log_event(_LOG, "secrets.rotate", path=str(path), rotated=rotated)
    return rotated


def create_security_docs(docs_dir: Path) -> Path:
    ensure_dir(docs_dir, mode=SECURE_DIR_MODE)
    target = docs_dir / "SECRET_MANAGEMENT.md"
    target.write_text(SECURITY_DOC, encoding="utf-8")
    log_event(_LOG, "secrets.docs.written", path=str(target))
    return target


def full_setup(root: Path, *, secure_dir: Path, docs_dir: Path) -> ValidationReport:
    backup_env_files(root, secure_dir)
    setup_test_environment(root)
    setup_development_environment(root)
    create_production_template(root)
    create_security_docs(docs_dir)
    return validate_environments(root)
