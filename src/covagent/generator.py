"""Builds generation context and turns model output into candidate tests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

from .completion import AgentCompletion
from .structured import FailedTestRun, GeneratedTest, StructuredResponseError, load_yaml, parse_generated_tests
from .tools.files import included_files_content, numbered_listing, relative_path

LOGGER = logging.getLogger(__name__)

MAX_TESTS_PER_RUN = 4


class GeneratorReadError(RuntimeError):
    """Raised when the source or test file cannot be read."""


@dataclass(slots=True)
class GenerationResult:
    """Candidates parsed from one generation call and the raw text they came from."""

    candidates: List[GeneratedTest] = field(default_factory=list)
    raw_response: str = ""


def format_failed_runs(failed_runs: Sequence[FailedTestRun]) -> str:
    """Render rejected candidates and their analyses for the next prompt."""
    sections: List[str] = []
    for run in failed_runs:
        body = run.test.to_yaml().rstrip()
        section = f"Failed Test:\n```\n{body}\n```\n"
        if run.error_message:
            section += f"Test execution error analysis:\n{run.error_message}\n\n\n"
        else:
            section += "\n\n"
        sections.append(section)
    return "".join(sections)


class UnitTestGenerator:
    """Asks the model for new tests that target uncovered source lines."""

    def __init__(
        self,
        *,
        source_file: Path,
        test_file: Path,
        project_root: Path,
        completion: AgentCompletion,
        included_files: Sequence[Path] = (),
        additional_instructions: str = "",
        max_tests: int = MAX_TESTS_PER_RUN,
    ) -> None:
        self.source_file = Path(source_file)
        self.test_file = Path(test_file)
        self.project_root = Path(project_root)
        self.completion = completion
        self.included_files = list(included_files)
        self.additional_instructions = additional_instructions
        self.max_tests = max_tests
        self.total_input_tokens = 0
        self.total_output_tokens = 0

        try:
            self.source_code = self.source_file.read_text(encoding="utf-8")
        except OSError as error:
            raise GeneratorReadError(f"Failed to read source file {self.source_file}: {error}") from error

    def generate_tests(
        self,
        failed_runs: Sequence[FailedTestRun],
        language: str,
        testing_framework: str,
        coverage_report: str,
    ) -> GenerationResult:
        """Request up to ``max_tests`` candidates.

        An unparseable response yields no candidates rather than an error.
        """
        # The validator rewrites the test file between calls.
        try:
            test_code = self.test_file.read_text(encoding="utf-8")
        except OSError as error:
            raise GeneratorReadError(f"Failed to read test file {self.test_file}: {error}") from error

        result = self.completion.generate_tests(
            source_file_name=relative_path(self.source_file, self.project_root),
            max_tests=self.max_tests,
            source_file_numbered=numbered_listing(self.source_code),
            code_coverage_report=coverage_report,
            language=language,
            test_file=test_code,
            test_file_name=relative_path(self.test_file, self.project_root),
            testing_framework=testing_framework,
            additional_instructions_text=self.additional_instructions,
            additional_includes_section=included_files_content(self.included_files),
            failed_tests_section=format_failed_runs(failed_runs),
        )
        self.total_input_tokens += result.input_tokens
        self.total_output_tokens += result.output_tokens

        if result.is_error:
            LOGGER.error("Test generation failed: %s", result.response)
            return GenerationResult(raw_response=result.response)

        try:
            payload = load_yaml(result.response)
        except StructuredResponseError as error:
            LOGGER.error("Error during test generation: %s", error)
            return GenerationResult(raw_response=result.response)

        candidates = parse_generated_tests(payload, limit=self.max_tests)
        if not candidates:
            LOGGER.warning("Model response contained no usable tests")
        else:
            LOGGER.debug("Parsed %d candidate test(s)", len(candidates))
        return GenerationResult(candidates=candidates, raw_response=result.response)


__all__ = [
    "GenerationResult",
    "GeneratorReadError",
    "MAX_TESTS_PER_RUN",
    "UnitTestGenerator",
    "format_failed_runs",
]
