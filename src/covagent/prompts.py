"""Prompt templates rendered for each model-backed operation."""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError

from .models.llm_client import Prompt

LOGGER = logging.getLogger(__name__)

TEST_GENERATION = "test_generation_prompt"
ANALYZE_FAILURE = "analyze_test_run_failure"
ANALYZE_INSERT_LINE = "analyze_suite_test_insert_line"
ADAPT_TEST_COMMAND = "adapt_test_command_for_a_single_test_via_ai"

TEMPLATE_KEYS = (TEST_GENERATION, ANALYZE_FAILURE, ANALYZE_INSERT_LINE, ADAPT_TEST_COMMAND)


class PromptTemplateError(ValueError):
    """Raised when a template is missing, malformed, or fails to render."""


class PromptBuilder:
    """Loads ``<key>.yaml`` files holding ``system``/``user`` Jinja templates.

    Templates ship with the package; ``templates_dir`` overrides the location
    so a project can supply its own wording.
    """

    def __init__(self, templates_dir: Path | None = None) -> None:
        self.templates_dir = templates_dir
        self._env = Environment(
            undefined=StrictUndefined,
            keep_trailing_newline=False,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        self._cache: Dict[str, Dict[str, str]] = {}

    def build_prompt(self, key: str, variables: Mapping[str, Any]) -> Prompt:
        """Render the system/user pair for ``key`` with ``variables``."""
        template = self._load(key)
        try:
            system = self._env.from_string(template["system"]).render(**variables)
            user = self._env.from_string(template["user"]).render(**variables)
        except TemplateError as error:
            raise PromptTemplateError(f"Failed to render prompt '{key}': {error}") from error
        LOGGER.debug("Rendered prompt %s (system=%d chars, user=%d chars)", key, len(system), len(user))
        return Prompt(user=user, system=system.strip() or None)

    def _load(self, key: str) -> Dict[str, str]:
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        raw = self._read(f"{key}.yaml")
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as error:
            raise PromptTemplateError(f"Prompt template '{key}' is not valid YAML: {error}") from error
        if not isinstance(data, dict) or not isinstance(data.get("user"), str):
            raise PromptTemplateError(f"Could not find valid system/user prompt settings for: {key}")

        template = {"system": str(data.get("system") or ""), "user": data["user"]}
        self._cache[key] = template
        return template

    def _read(self, filename: str) -> str:
        try:
            if self.templates_dir is not None:
                return (self.templates_dir / filename).read_text(encoding="utf-8")
            return (
                resources.files("covagent.resources")
                .joinpath("prompts").joinpath(filename)
                .read_text(encoding="utf-8")
            )
        except OSError as error:
            raise PromptTemplateError(f"Prompt template {filename} not found") from error


__all__ = [
    "ADAPT_TEST_COMMAND",
    "ANALYZE_FAILURE",
    "ANALYZE_INSERT_LINE",
    "PromptBuilder",
    "PromptTemplateError",
    "TEMPLATE_KEYS",
    "TEST_GENERATION",
]
