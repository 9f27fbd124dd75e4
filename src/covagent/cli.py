"""CLI commands for running the coverage agent."""

from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Optional

import typer

from .models.llm_client import ModelClientError
from .generator import GeneratorReadError
from .orchestrator import AgentConfigurationError, CoverAgent
from .prompts import PromptTemplateError
from .settings import DEFAULT_CONFIG_NAME, AgentSettings, SettingsError, default_config, write_config
from .tools.coverage import CoverageReportError
from .tools.files import language_from_path
from .validator import BuildFatalError, TestSuiteAnalysisError

APP_HELP = "Generate unit tests with a language model until coverage reaches a target."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

EXIT_TARGET_MISSED = 2

CONFIG_HEADER = """\
# coverage-agent configuration.
# Relative paths are resolved against the directory containing this file.
# models.api_key may be left empty; OPENROUTER_API_KEY is used instead.
"""

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _echo_chunk(chunk: str) -> None:
    typer.echo(chunk, nl=False)


def load_settings(config_path: Path) -> AgentSettings:
    """Load configuration or exit with status 1 on any problem."""
    if not config_path.exists():
        typer.echo(f"Config file not found: {config_path}")
        raise typer.Exit(code=1)
    try:
        return AgentSettings.load(config_path)
    except SettingsError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path of the configuration file to create.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}. Use --force to overwrite.")
        raise typer.Exit(code=1)

    write_config(config_path, default_config(), header=CONFIG_HEADER)
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command()
def status(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the agent configuration file.",
    ),
) -> None:
    """Validate the configuration and show the resolved inputs."""
    settings = load_settings(Path(config))

    rows = [
        ("Project root", settings.project.root or Path.cwd()),
        ("Source file", settings.source.file),
        ("Test file", settings.tests.file),
        ("Test output", settings.tests.output_file or settings.tests.file),
        ("Test command", settings.tests.command),
        ("Coverage report", settings.coverage.report),
        ("Language", language_from_path(settings.source.file)),
        ("Model", settings.models.default),
        ("Desired coverage", f"{settings.coverage.desired:g}%"),
    ]
    for label, value in rows:
        typer.echo(f"{label}: {value}")

    problems = 0
    for label, path in (("Source file", settings.source.file), ("Test file", settings.tests.file)):
        if not path.is_file():
            typer.echo(f"Missing {label.lower()}: {path}")
            problems += 1

    report = settings.coverage.report
    if report.is_file():
        modified = _dt.datetime.fromtimestamp(report.stat().st_mtime)
        typer.echo(f"Coverage report last updated: {modified.isoformat(timespec='seconds')}")
    else:
        typer.echo("Coverage report not generated yet.")

    if problems:
        raise typer.Exit(code=1)


@app.command()
def run(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the agent configuration file.",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        min=1,
        help="Override iteration.max_iterations.",
    ),
    desired_coverage: Optional[float] = typer.Option(
        None,
        "--desired-coverage",
        min=0,
        max=100,
        help="Override coverage.desired (percent).",
    ),
    report: Optional[Path] = typer.Option(
        None,
        "--report",
        help="Write the final JSON report to this path.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Generate and validate tests until the coverage target or iteration limit is reached."""
    _configure_logging(verbose)
    settings = load_settings(Path(config))

    overrides = {}
    if max_iterations is not None:
        overrides["iteration"] = settings.iteration.model_copy(update={"max_iterations": max_iterations})
    if desired_coverage is not None:
        overrides["coverage"] = settings.coverage.model_copy(update={"desired": desired_coverage})
    if report is not None:
        overrides["paths"] = settings.paths.model_copy(update={"report": report.resolve()})
    if overrides:
        settings = settings.model_copy(update=overrides)

    try:
        agent = CoverAgent(settings, on_chunk=_echo_chunk)
    except (AgentConfigurationError, RuntimeError, ValueError) as error:
        typer.echo(f"Failed to initialise coverage agent: {error}")
        raise typer.Exit(code=1) from error

    try:
        final = agent.run()
    except (
        BuildFatalError,
        CoverageReportError,
        GeneratorReadError,
        TestSuiteAnalysisError,
        PromptTemplateError,
        ModelClientError,
    ) as error:
        typer.echo("")
        typer.echo(f"Fatal: {error}")
        typer.echo(agent.build_report().render())
        raise typer.Exit(code=1) from error

    typer.echo("")
    typer.echo(final.render())
    if settings.paths.report is not None:
        typer.echo(f"Report written to {settings.paths.report}")
    if not final.target_reached:
        raise typer.Exit(code=EXIT_TARGET_MISSED)


if __name__ == "__main__":
    app()
