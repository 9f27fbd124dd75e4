from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest
from typer.testing import CliRunner

from conftest import FakeBuild, FakeCompletion, JavaProject, generation_yaml, java_test
from covagent import cli
from covagent.orchestrator import CoverAgent
from covagent.settings import AgentSettings


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def _install_agent(monkeypatch: pytest.MonkeyPatch, completion: FakeCompletion, build) -> List[AgentSettings]:
    seen: List[AgentSettings] = []

    def factory(settings: AgentSettings, **kwargs) -> CoverAgent:
        seen.append(settings)
        return CoverAgent(settings, completion=completion, runner=build, on_chunk=kwargs.get("on_chunk"))

    monkeypatch.setattr(cli, "CoverAgent", factory)
    return seen


def test_init_writes_default_config(runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "coverage-agent.yaml"

    result = runner.invoke(cli.app, ["init", "--config", str(config_path)], catch_exceptions=False)

    assert result.exit_code == 0
    assert config_path.exists()
    assert "Wrote default configuration" in result.stdout
    settings = AgentSettings.load(config_path)
    assert settings.coverage.desired == 80


def test_init_refuses_to_overwrite_without_force(runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "coverage-agent.yaml"
    config_path.write_text("custom: true\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["init", "-c", str(config_path)], catch_exceptions=False)
    assert result.exit_code == 1
    assert config_path.read_text(encoding="utf-8") == "custom: true\n"

    result = runner.invoke(cli.app, ["init", "-c", str(config_path), "--force"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "custom" not in config_path.read_text(encoding="utf-8")


def test_status_reports_resolved_inputs(runner: CliRunner, java_project: JavaProject) -> None:
    result = runner.invoke(cli.app, ["status", "--config", str(java_project.config_path)], catch_exceptions=False)

    assert result.exit_code == 0
    assert "Language: java" in result.stdout
    assert "Desired coverage: 80%" in result.stdout
    assert "Coverage report not generated yet." in result.stdout


def test_status_flags_missing_files(runner: CliRunner, java_project: JavaProject) -> None:
    java_project.test_file.unlink()

    result = runner.invoke(cli.app, ["status", "--config", str(java_project.config_path)], catch_exceptions=False)

    assert result.exit_code == 1
    assert "Missing test file" in result.stdout


def test_run_exits_zero_when_target_reached(
    runner: CliRunner, java_project: JavaProject, fake_build: FakeBuild, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    tests = [java_test(name) for name in ("adds", "subtracts", "negatives")]
    seen = _install_agent(monkeypatch, FakeCompletion(generations=[generation_yaml(*tests)]), fake_build)
    report_path = tmp_path / "final.json"

    result = runner.invoke(
        cli.app,
        [
            "run",
            "--config",
            str(java_project.config_path),
            "--desired-coverage",
            "70",
            "--report",
            str(report_path),
        ],
        catch_exceptions=False,
    )

    assert result.exit_code == 0
    assert "Status: SUCCESS" in result.stdout
    assert seen[0].coverage.desired == 70
    assert json.loads(report_path.read_text(encoding="utf-8"))["accepted_tests"] == 3


def test_run_exits_two_when_target_missed(
    runner: CliRunner, java_project: JavaProject, fake_build: FakeBuild, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen = _install_agent(monkeypatch, FakeCompletion(), fake_build)

    result = runner.invoke(
        cli.app,
        ["run", "--config", str(java_project.config_path), "--max-iterations", "2"],
        catch_exceptions=False,
    )

    assert result.exit_code == cli.EXIT_TARGET_MISSED
    assert "Status: target coverage not reached" in result.stdout
    assert "Iterations: 2/2" in result.stdout
    assert seen[0].iteration.max_iterations == 2


def test_run_exits_one_on_fatal_build_error(
    runner: CliRunner, java_project: JavaProject, fake_build: FakeBuild, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake_build.exit_code = 1
    _install_agent(monkeypatch, FakeCompletion(), fake_build)

    result = runner.invoke(cli.app, ["run", "--config", str(java_project.config_path)], catch_exceptions=False)

    assert result.exit_code == 1
    assert "Fatal:" in result.stdout
    assert "Final coverage: 0.00%" in result.stdout


def test_run_exits_one_on_invalid_config(runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "coverage-agent.yaml"
    config_path.write_text("source: {}\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["run", "--config", str(config_path)], catch_exceptions=False)

    assert result.exit_code == 1
    assert "Invalid configuration" in result.stdout


def test_run_exits_one_when_agent_cannot_start(
    runner: CliRunner, java_project: JavaProject, fake_build: FakeBuild, monkeypatch: pytest.MonkeyPatch
) -> None:
    java_project.source_file.unlink()
    _install_agent(monkeypatch, FakeCompletion(), fake_build)

    result = runner.invoke(cli.app, ["run", "--config", str(java_project.config_path)], catch_exceptions=False)

    assert result.exit_code == 1
    assert "Failed to initialise coverage agent" in result.stdout


def test_run_exits_one_when_config_is_missing(runner: CliRunner, tmp_path: Path) -> None:
    missing = tmp_path / "absent.yaml"

    result = runner.invoke(cli.app, ["run", "--config", str(missing)], catch_exceptions=False)

    assert result.exit_code == 1
    assert result.exit_code != cli.EXIT_TARGET_MISSED
    assert "Config file not found" in result.stdout


def test_run_exits_one_when_test_file_disappears(
    runner: CliRunner, java_project: JavaProject, fake_build: FakeBuild, monkeypatch: pytest.MonkeyPatch
) -> None:
    def build_then_delete(command: str, cwd=None, *, timeout: float = 0):
        result = fake_build(command, cwd, timeout=timeout)
        java_project.test_file.unlink()
        return result

    _install_agent(monkeypatch, FakeCompletion(), build_then_delete)

    result = runner.invoke(cli.app, ["run", "--config", str(java_project.config_path)], catch_exceptions=False)

    assert result.exit_code == 1
    assert "Fatal: Failed to read test file" in result.stdout
    assert "Final coverage: 20.00%" in result.stdout
