"""Run configuration loaded from ``coverage-agent.yaml``."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models.openrouter import DEFAULT_BASE_URL

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "coverage-agent.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {"root": "."},
    "source": {
        "file": "src/main/java/com/example/Calculator.java",
        "included_files": [],
        "additional_instructions": "",
    },
    "tests": {
        "file": "src/test/java/com/example/CalculatorTest.java",
        "output_file": None,
        "command": "mvn -q test jacoco:report",
        "command_dir": ".",
        "attempts": 1,
        "max_run_time": 3600,
        "run_each_test_separately": False,
    },
    "coverage": {
        "report": "target/site/jacoco/jacoco.xml",
        "desired": 80,
    },
    "iteration": {
        "max_iterations": 5,
        "max_tests_per_run": 4,
        "analyze_failures": True,
    },
    "models": {
        "default": "openai/gpt-4o-mini",
        "base_url": DEFAULT_BASE_URL,
        "api_key": None,
        "site_url": "",
        "site_name": "coverage-agent",
        "timeout": 200,
        "max_retries": 3,
        "initial_retry_delay": 1.0,
        "max_retry_delay": 10.0,
    },
    "paths": {"report": None},
}


class SettingsError(ValueError):
    """Raised when the configuration file is missing or invalid."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProjectSection(_Section):
    root: Optional[Path] = None


class SourceSection(_Section):
    file: Path
    included_files: List[Path] = Field(default_factory=list)
    additional_instructions: str = ""

    @field_validator("additional_instructions", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class SuiteSection(_Section):
    file: Path
    output_file: Optional[Path] = None
    command: str = Field(min_length=1)
    command_dir: Optional[Path] = None
    attempts: int = Field(default=1, ge=1)
    max_run_time: float = Field(default=3600, gt=0)
    run_each_test_separately: bool = False


class CoverageSection(_Section):
    report: Path
    desired: float = Field(default=80, ge=0, le=100)


class IterationSection(_Section):
    max_iterations: int = Field(default=5, ge=1)
    max_tests_per_run: int = Field(default=4, ge=1)
    analyze_failures: bool = True


class ModelsSection(_Section):
    default: str = Field(min_length=1)
    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None
    site_url: str = ""
    site_name: str = ""
    timeout: float = Field(default=200, gt=0)
    max_retries: int = Field(default=3, ge=0)
    initial_retry_delay: float = Field(default=1.0, ge=0)
    max_retry_delay: float = Field(default=10.0, ge=0)


class PathsSection(_Section):
    report: Optional[Path] = None


class AgentSettings(BaseModel):
    """Validated configuration for one coverage run."""

    model_config = ConfigDict(extra="forbid")

    project: ProjectSection = Field(default_factory=ProjectSection)
    source: SourceSection
    tests: SuiteSection
    coverage: CoverageSection
    iteration: IterationSection = Field(default_factory=IterationSection)
    models: ModelsSection
    paths: PathsSection = Field(default_factory=PathsSection)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any], *, base_dir: Path | None = None) -> "AgentSettings":
        """Validate ``data`` and resolve relative paths against ``base_dir``."""
        try:
            settings = cls.model_validate(data)
        except ValidationError as error:
            raise SettingsError(f"Invalid configuration: {error}") from error
        return settings.resolve_paths(base_dir) if base_dir is not None else settings

    @classmethod
    def load(cls, config_path: Path) -> "AgentSettings":
        if not config_path.is_file():
            raise SettingsError(f"Config file not found: {config_path}")
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise SettingsError(f"Failed to parse config: {error}") from error
        if not isinstance(data, dict):
            raise SettingsError("Configuration must be a mapping at the top level.")
        LOGGER.debug("Loaded configuration from %s", config_path)
        return cls.from_mapping(data, base_dir=config_path.resolve().parent)

    def resolve_paths(self, base_dir: Path) -> "AgentSettings":
        def _resolve(path: Optional[Path]) -> Optional[Path]:
            if path is None:
                return None
            expanded = path.expanduser()
            return expanded if expanded.is_absolute() else (base_dir / expanded).resolve()

        return self.model_copy(
            update={
                "project": self.project.model_copy(update={"root": _resolve(self.project.root)}),
                "source": self.source.model_copy(
                    update={
                        "file": _resolve(self.source.file),
                        "included_files": [_resolve(path) for path in self.source.included_files],
                    }
                ),
                "tests": self.tests.model_copy(
                    update={
                        "file": _resolve(self.tests.file),
                        "output_file": _resolve(self.tests.output_file),
                        "command_dir": _resolve(self.tests.command_dir),
                    }
                ),
                "coverage": self.coverage.model_copy(update={"report": _resolve(self.coverage.report)}),
                "paths": self.paths.model_copy(update={"report": _resolve(self.paths.report)}),
            }
        )


def default_config() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, data: Dict[str, Any], *, header: str = "") -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        handle.write(header)
        yaml.safe_dump(data, handle, sort_keys=False)


__all__ = [
    "AgentSettings",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "SettingsError",
    "default_config",
    "write_config",
]
