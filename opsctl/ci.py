"""CI environment detection and pipeline config generation."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping

import yaml

from .util import ensure_dir, log_event, setup_json_logger

_LOG = setup_json_logger("opsctl.ci")

LOCAL = "local"

# Order matters: the first variable present wins.
CI_MARKERS: list[tuple[str, str]] = [
    ("GITHUB_ACTIONS", "github-actions"),
    ("GITLAB_CI", "gitlab-ci"),
    ("JENKINS_URL", "jenkins"),
    ("CIRCLECI", "circleci"),
    ("TRAVIS", "travis"),
    ("CI", "generic-ci"),
]

TEST_RUNNER = "opsctl test-run"
SECURITY_SCAN = "npm run test:security"


def detect_ci_environment(env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    for var, name in CI_MARKERS:
        if env.get(var):
            return name
    return LOCAL


def optimal_worker_count(ci_env: str, cpus: int) -> int:
    if ci_env != LOCAL:
        return min(2, max(1, cpus // 2))
    return max(1, cpus - 1)


def build_config(ci_env: str, cpus: int | None = None) -> dict:
    cpus = cpus if cpus is not None else (os.cpu_count() or 1)
    base = {
        "test_runner": TEST_RUNNER,
        "security_scan": SECURITY_SCAN,
        "parallel": True,
        "coverage": True,
        "bail": True,
        "max_workers": optimal_worker_count(ci_env, cpus),
        "timeout": 30000,
        "retries": 2,
    }
    overrides: dict[str, dict] = {
        "github-actions": {
            "max_workers": 2,
            "timeout": 60000,
            "artifacts": {"coverage": "coverage/", "reports": "test-results/"},
            "cache_key": "node-modules-${{ hashFiles('**/package-lock.json') }}",
        },
        "gitlab-ci": {
            "max_workers": 2,
            "timeout": 45000,
            "artifacts": {
                "coverage": "coverage/",
                "reports": {
                    "junit": "test-results/junit.xml",
                    "coverage_report": {
                        "coverage_format": "cobertura",
                        "path": "coverage/cobertura-coverage.xml",
                    },
                },
            },
        },
        "jenkins": {
            "max_workers": 4,
            "timeout": 90000,
            # shared agents are usually resource constrained
            "parallel": False,
            "publish_html": {
                "allowMissing": False,
                "alwaysLinkToLastBuild": True,
                "keepAll": True,
                "reportDir": "coverage/lcov-report",
                "reportFiles": "index.html",
                "reportName": "Coverage Report",
            },
        },
        "circleci": {
            "max_workers": 2,
            "timeout": 45000,
            "store_artifacts": [
                {"path": "coverage", "destination": "coverage"},
                {"path": "test-results", "destination": "test-results"},
            ],
        },
        LOCAL: {
            "parallel": True,
            "coverage": True,
            "bail": False,
            "max_workers": max(1, cpus - 1),
            "watch": False,
        },
    }
    # travis and generic-ci have no dedicated profile and use the local one
    return {**base, **overrides.get(ci_env, overrides[LOCAL])}


def test_command(config: Mapping[str, object]) -> str:
    args = [
        "--parallel" if config.get("parallel") else "--sequential",
        "--coverage" if config.get("coverage") else "--no-coverage",
    ]
    if config.get("bail"):
        args.append("--bail")
    args.append(f"--workers {config['max_workers']}")
    args.append(f"--timeout {config['timeout']}")
    return f"{config['test_runner']} {' '.join(args)}"


def _dump_yaml(doc: dict) -> str:
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, width=120)


def render_github_actions() -> str:
    doc = {
        "name": "Test Suite",
        "on": {
            "push": {"branches": ["main", "develop"]},
            "pull_request": {"branches": ["main"]},
        },
        "jobs": {
            "test": {
                "runs-on": "ubuntu-latest",
                "strategy": {"matrix": {"node-version": ["18.x", "20.x"]}},
                "steps": [
                    {"uses": "actions/checkout@v4"},
                    {
                        "name": "Use Node.js ${{ matrix.node-version }}",
                        "uses": "actions/setup-node@v4",
                        "with": {
                            "node-version": "${{ matrix.node-version }}",
                            "cache": "npm",
                        },
                    },
                    {"name": "Install dependencies", "run": "npm ci"},
                    {"name": "Run security scan", "run": "npm run test:security"},
                    {
                        "name": "Run tests",
                        "run": "npm run test:ci",
                        "env": {"CI": True},
                    },
                    {
                        "name": "Upload coverage to Codecov",
                        "uses": "codecov/codecov-action@v3",
                        "with": {
                            "file": "./coverage/lcov.info",
                            "flags": "unittests",
                            "name": "codecov-umbrella",
                        },
                    },
                    {
                        "name": "Upload test results",
                        "uses": "actions/upload-artifact@v4",
                        "if": "always()",
                        "with": {
                            "name": "test-results-${{ matrix.node-version }}",
                            "path": "coverage/\ntest-results/\n",
                        },
                    },
                ],
            }
        },
    }
    return _dump_yaml(doc)


def render_gitlab_ci() -> str:
    branches = ["merge_requests", "main", "develop"]
    doc = {
        "stages": ["security", "test", "coverage"],
        "variables": {"NODE_VERSION": "20", "CACHE_KEY": "$CI_COMMIT_REF_SLUG"},
        "cache": {"key": "${CACHE_KEY}", "paths": ["node_modules/", ".npm/"]},
        "before_script": ["npm ci --cache .npm --prefer-offline"],
        "security_scan": {
            "stage": "security",
            "image": "node:${NODE_VERSION}",
            "script": ["npm run test:security"],
            "only": list(branches),
        },
        "test": {
            "stage": "test",
            "image": "node:${NODE_VERSION}",
            "script": ["npm run test:ci"],
            "coverage": r"/Lines\s*:\s*(\d+\.?\d*)%/",
            "artifacts": {
                "when": "always",
                "reports": {
                    "junit": "test-results/junit.xml",
                    "coverage_report": {
                        "coverage_format": "cobertura",
                        "path": "coverage/cobertura-coverage.xml",
                    },
                },
                "paths": ["coverage/"],
                "expire_in": "1 week",
            },
            "only": list(branches),
        },
        "pages": {
            "stage": "coverage",
            "dependencies": ["test"],
            "script": ["mkdir public", "cp -r coverage/lcov-report/* public/"],
            "artifacts": {"paths": ["public"]},
            "only": ["main"],
        },
    }
    return _dump_yaml(doc)


JENKINSFILE = """\
pipeline {
    agent any

    tools {
        nodejs '20'
    }

    environment {
        CI = 'true'
    }

    stages {
        stage('Install') {
            steps {
                sh 'npm ci'
            }
        }

        stage('Security Scan') {
            steps {
                sh 'npm run test:security'
            }
        }

        stage('Test') {
            steps {
                sh 'npm run test:ci'
            }
            post {
                always {
                    publishHTML([
                        allowMissing: false,
                        alwaysLinkToLastBuild: true,
                        keepAll: true,
                        reportDir: 'coverage/lcov-report',
                        reportFiles: 'index.html',
                        reportName: 'Coverage Report'
                    ])

                    archiveArtifacts artifacts: 'coverage/**/*', fingerprint: true
                }
            }
        }
    }

    post {
        always {
            cleanWs()
        }
        failure {
            emailext(
                subject: "Build Failed: ${env.JOB_NAME} - ${env.BUILD_NUMBER}",
                body: "Build failed. Check console output at ${env.BUILD_URL}",
                to: "${env.CHANGE_AUTHOR_EMAIL}"
            )
        }
    }
}
"""


def render_jenkinsfile() -> str:
    return JENKINSFILE


def write_configs(out_dir: Path, config: Mapping[str, object]) -> list[Path]:
    ensure_dir(out_dir)
    outputs = {
        "github-actions.yml": render_github_actions(),
        "gitlab-ci.yml": render_gitlab_ci(),
        "Jenkinsfile": render_jenkinsfile(),
        "config.json": json.dumps(config, indent=2, sort_keys=True) + "\n",
    }
    written: list[Path] = []
    for name, text in outputs.items():
        target = out_dir / name
        target.write_text(text, encoding="utf-8")
        written.append(target)
    log_event(_LOG, "ci.configs.written", out_dir=str(out_dir), files=sorted(outputs))
    return written
