from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from opsctl import ci


@pytest.mark.parametrize(
    ("env", "expected"),
    [
        ({"GITHUB_ACTIONS": "true", "CI": "true"}, "github-actions"),
        ({"GITLAB_CI": "true"}, "gitlab-ci"),
        ({"JENKINS_URL": "http://jenkins"}, "jenkins"),
        ({"CIRCLECI": "true"}, "circleci"),
        ({"TRAVIS": "true"}, "travis"),
        ({"CI": "1"}, "generic-ci"),
        ({"GITHUB_ACTIONS": "", "CI": ""}, "local"),
        ({}, "local"),
    ],
)
def test_detect_ci_environment(env: dict[str, str], expected: str) -> None:
    assert ci.detect_ci_environment(env) == expected


def test_detect_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for var, _ in ci.CI_MARKERS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("GITLAB_CI", "true")
    assert ci.detect_ci_environment() == "gitlab-ci"


@pytest.mark.parametrize(
    ("ci_env", "cpus", "expected"),
    [
        ("local", 8, 7),
        ("local", 1, 1),
        ("github-actions", 8, 2),
        ("jenkins", 2, 1),
        ("jenkins", 1, 1),
    ],
)
def test_optimal_worker_count(ci_env: str, cpus: int, expected: int) -> None:
    assert ci.optimal_worker_count(ci_env, cpus) == expected


def test_build_config_applies_environment_overrides() -> None:
    gh = ci.build_config("github-actions", cpus=16)
    assert gh["max_workers"] == 2
    assert gh["timeout"] == 60000
    assert gh["retries"] == 2
    assert "cache_key" in gh

    jenkins = ci.build_config("jenkins", cpus=16)
    assert jenkins["max_workers"] == 4
    assert jenkins["parallel"] is False
    assert jenkins["publish_html"]["reportName"] == "Coverage Report"


def test_unknown_ci_environments_fall_back_to_local() -> None:
    local = ci.build_config("local", cpus=4)
    assert ci.build_config("travis", cpus=4) == local
    assert ci.build_config("generic-ci", cpus=4) == local
    assert local["bail"] is False
    assert local["watch"] is False
    assert local["max_workers"] == 3


def test_test_command_renders_flags() -> None:
    cmd = ci.test_command(ci.build_config("jenkins", cpus=4))
    assert cmd == f"{ci.TEST_RUNNER} --sequential --coverage --bail --workers 4 --timeout 90000"

    local = ci.test_command(ci.build_config("local", cpus=2))
    assert local.endswith("--parallel --coverage --workers 1 --timeout 30000")


def test_rendered_pipelines_are_valid_yaml() -> None:
    gh = yaml.safe_load(ci.render_github_actions())
    assert gh["on"]["pull_request"]["branches"] == ["main"]
    assert gh["jobs"]["test"]["strategy"]["matrix"]["node-version"] == ["18.x", "20.x"]

    gl = yaml.safe_load(ci.render_gitlab_ci())
    assert gl["stages"] == ["security", "test", "coverage"]
    assert gl["test"]["artifacts"]["reports"]["junit"] == "test-results/junit.xml"

    assert ci.render_jenkinsfile().startswith("pipeline {")


def test_write_configs(tmp_path: Path) -> None:
    config = ci.build_config("circleci", cpus=4)
    written = ci.write_configs(tmp_path / ".ci", config)

    assert sorted(p.name for p in written) == [
        "Jenkinsfile",
        "config.json",
        "github-actions.yml",
        "gitlab-ci.yml",
    ]
    assert json.loads((tmp_path / ".ci" / "config.json").read_text(encoding="utf-8")) == config
