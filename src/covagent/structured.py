"""Typed payloads parsed from the structured YAML bodies the model returns."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Mapping

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .models.llm_client import ModelProtocolError

LOGGER = logging.getLogger(__name__)

_FENCE_OPEN_RE = re.compile(r"^```[A-Za-z0-9_-]*[ \t]*\r?\n?")
_FENCE_CLOSE_RE = re.compile(r"\r?\n?```[ \t]*$")


class StructuredResponseError(ModelProtocolError):
    """Raised when a model response body cannot be read as a YAML mapping."""


class GeneratedTest(BaseModel):
    """Candidate unit test proposed by the model."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    test_code: str = Field(validation_alias=AliasChoices("test_code", "testCode"))
    new_imports_code: str = Field(
        default="",
        validation_alias=AliasChoices("new_imports_code", "newImportsCode"),
    )
    test_name: str | None = None
    test_behavior: str | None = None
    lines_to_cover: str | None = None

    def to_yaml(self) -> str:
        """Serialise the candidate the way it is echoed back to the model."""
        payload = {
            "test_code": self.test_code,
            "new_imports_code": self.new_imports_code,
        }
        if self.test_name:
            payload["test_name"] = self.test_name
        return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)


@dataclass(slots=True)
class FailedTestRun:
    """A rejected candidate paired with the explanation fed back into generation."""

    test: GeneratedTest
    error_message: str = ""


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown fence such as ```yaml ... ``` if present."""
    cleaned = text.strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned, count=1)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned, count=1)
    return cleaned.strip()


def load_yaml(text: str) -> dict[str, Any]:
    """Parse a (possibly fenced) YAML response body into a mapping.

    Raises :class:`StructuredResponseError` when the body is not valid YAML or
    its top level is not a mapping.
    """
    cleaned = strip_code_fence(text or "")
    try:
        data = yaml.safe_load(cleaned)
    except yaml.YAMLError as error:
        LOGGER.warning("Failed to parse YAML response: %s", error)
        raise StructuredResponseError("Failed to parse YAML response") from error
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise StructuredResponseError(
            f"Expected a YAML mapping, received {type(data).__name__}."
        )
    return data


def parse_generated_tests(payload: Mapping[str, Any], *, limit: int | None = None) -> List[GeneratedTest]:
    """Extract well-formed candidates from the ``new_tests`` list.

    Entries that do not validate are dropped. ``limit`` caps the number of
    candidates returned.
    """
    raw_tests = payload.get("new_tests")
    if not isinstance(raw_tests, list):
        if raw_tests is not None:
            LOGGER.warning("Ignoring new_tests entry of type %s", type(raw_tests).__name__)
        return []

    tests: List[GeneratedTest] = []
    for index, entry in enumerate(raw_tests):
        if not isinstance(entry, Mapping):
            LOGGER.debug("Dropping candidate %d: not a mapping", index)
            continue
        try:
            tests.append(GeneratedTest.model_validate(dict(entry)))
        except ValidationError as error:
            LOGGER.debug("Dropping malformed candidate %d: %s", index, error)
            continue
        if limit is not None and len(tests) >= limit:
            break
    return tests


def coerce_line_number(value: Any) -> int | None:
    """Return ``value`` as a non-negative line number, or ``None`` when unusable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


__all__ = [
    "FailedTestRun",
    "GeneratedTest",
    "StructuredResponseError",
    "coerce_line_number",
    "load_yaml",
    "parse_generated_tests",
    "strip_code_fence",
]
