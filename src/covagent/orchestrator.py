"""Iteration loop that drives generation, validation, and coverage measurement."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .completion import AgentCompletion, DefaultAgentCompletion
from .generator import UnitTestGenerator
from .models.llm_client import ChunkObserver, ModelClient
from .models.openrouter import OpenRouterClient
from .settings import AgentSettings
from .tools.files import relative_path
from .tools.runner import CommandRunner, run_command
from .validator import UnitTestValidator

LOGGER = logging.getLogger(__name__)


class AgentConfigurationError(ValueError):
    """Raised when the configured files or directories are unusable."""


@dataclass(slots=True)
class FinalReport:
    """Outcome of a coverage run."""

    final_coverage: float
    desired_coverage: float
    iterations: int
    max_iterations: int
    target_reached: bool
    input_tokens: int
    output_tokens: int
    model: str
    accepted_tests: int = 0
    rejected_tests: int = 0
    test_file: str = ""
    test_command: str = ""
    rollback_failures: List[str] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["total_tokens"] = self.total_tokens
        return payload

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, indent=2)

    def render(self) -> str:
        """Human-readable summary printed at the end of a run."""
        lines = [
            f"Final coverage: {self.final_coverage * 100:.2f}% (target {self.desired_coverage:g}%)",
            f"Iterations: {self.iterations}/{self.max_iterations}",
        ]
        if self.target_reached:
            lines.append(
                f"Status: SUCCESS - reached target coverage in {self.iterations} iteration(s)"
            )
        else:
            lines.append("Status: target coverage not reached")
        lines.append(f"Tests accepted: {self.accepted_tests}, rejected: {self.rejected_tests}")
        lines.append(
            f"Token usage for model {self.model}: input={self.input_tokens}, "
            f"output={self.output_tokens}, total={self.total_tokens}"
        )
        for failure in self.rollback_failures:
            lines.append(f"WARNING: test file may be in an unknown state: {failure}")
        return "\n".join(lines)


def build_model_client(settings: AgentSettings) -> ModelClient:
    models = settings.models
    return OpenRouterClient(
        model=models.default,
        api_key=models.api_key,
        site_url=models.site_url,
        site_name=models.site_name,
        base_url=models.base_url,
        timeout=models.timeout,
        max_retries=models.max_retries,
        initial_retry_delay=models.initial_retry_delay,
        max_retry_delay=models.max_retry_delay,
    )


class CoverAgent:
    """Raises coverage of one source file by generating and vetting tests."""

    def __init__(
        self,
        settings: AgentSettings,
        *,
        completion: Optional[AgentCompletion] = None,
        runner: CommandRunner = run_command,
        on_chunk: Optional[ChunkObserver] = None,
    ) -> None:
        self.settings = settings
        self.project_root = self._validate_paths()
        self.test_file = self._prepare_test_file()
        self.completion = completion or DefaultAgentCompletion(
            build_model_client(settings), on_chunk=on_chunk
        )
        self.test_command = settings.tests.command
        self.test_command_original: str | None = None
        self.adaptation_tokens = (0, 0)
        self.iterations = 0
        self.target_reached = False

        if settings.tests.run_each_test_separately:
            self._adapt_test_command()

        self.generator = UnitTestGenerator(
            source_file=settings.source.file,
            test_file=self.test_file,
            project_root=self.project_root,
            completion=self.completion,
            included_files=settings.source.included_files,
            additional_instructions=settings.source.additional_instructions,
            max_tests=settings.iteration.max_tests_per_run,
        )
        self.validator = UnitTestValidator(
            source_file=settings.source.file,
            test_file=self.test_file,
            project_root=self.project_root,
            report_path=settings.coverage.report,
            test_command=self.test_command,
            test_command_dir=settings.tests.command_dir or self.project_root,
            completion=self.completion,
            attempts=settings.tests.attempts,
            max_run_time=settings.tests.max_run_time,
            analyze_failures=settings.iteration.analyze_failures,
            runner=runner,
        )

    def run(self) -> FinalReport:
        """Execute the full loop.

        Build failures and a missing coverage report during a measurement run
        propagate to the caller; everything confined to one candidate does not.
        """
        self.iterations = 0
        self.target_reached = False

        LOGGER.info("Starting initial test suite analysis")
        self.validator.initial_test_suite_analysis()
        LOGGER.info("Running initial coverage analysis")
        self.validator.run_coverage()
        self.target_reached = self._target_reached()

        max_iterations = self.settings.iteration.max_iterations
        while not self.target_reached and self.iterations < max_iterations:
            self.iterations += 1
            state = self.validator.state
            LOGGER.info(
                "Iteration %d/%d: current coverage %.2f%% (target %g%%)",
                self.iterations,
                max_iterations,
                state.current_coverage * 100,
                self.settings.coverage.desired,
            )

            generation = self.generator.generate_tests(
                list(state.failed_runs),
                self.validator.language,
                state.testing_framework,
                state.coverage_report,
            )
            if not generation.candidates:
                LOGGER.warning("No new tests were generated in this iteration")
            for candidate in generation.candidates:
                LOGGER.debug("Validating generated test:\n%s", candidate.test_code)
                outcome = self.validator.validate_test(candidate)
                if not outcome.passed:
                    LOGGER.debug("Candidate rejected: %s", outcome.reason.value if outcome.reason else "")

            self.validator.run_coverage()
            self.target_reached = self._target_reached()
            if not self.target_reached:
                LOGGER.info(
                    "Coverage %.2f%% is still below target %g%%",
                    self.validator.current_coverage * 100,
                    self.settings.coverage.desired,
                )

        report = self.build_report()
        if report.target_reached:
            LOGGER.info("Reached target coverage in %d iteration(s)", report.iterations)
        else:
            LOGGER.warning(
                "Reached maximum iteration limit (%d) without achieving desired coverage of %g%%",
                max_iterations,
                self.settings.coverage.desired,
            )
        if self.settings.paths.report is not None:
            report.write(self.settings.paths.report)
        return report

    def build_report(self) -> FinalReport:
        state = self.validator.state
        return FinalReport(
            final_coverage=state.current_coverage,
            desired_coverage=self.settings.coverage.desired,
            iterations=self.iterations,
            max_iterations=self.settings.iteration.max_iterations,
            target_reached=self.target_reached,
            input_tokens=self.generator.total_input_tokens + state.total_input_tokens + self.adaptation_tokens[0],
            output_tokens=self.generator.total_output_tokens + state.total_output_tokens + self.adaptation_tokens[1],
            model=self.settings.models.default,
            accepted_tests=state.accepted,
            rejected_tests=state.rejected,
            test_file=str(self.test_file),
            test_command=self.test_command,
            rollback_failures=list(state.rollback_failures),
        )

    def _target_reached(self) -> bool:
        return self.validator.current_coverage * 100 >= self.settings.coverage.desired

    def _validate_paths(self) -> Path:
        source = self.settings.source.file
        test_file = self.settings.tests.file
        if not source.is_file():
            raise AgentConfigurationError(f"Source file not found at {source}")
        if not test_file.is_file():
            raise AgentConfigurationError(f"Test file not found at {test_file}")

        root = self.settings.project.root
        if root is None:
            LOGGER.warning("Project root not specified. Relative paths might be ambiguous.")
            return Path.cwd()
        if not root.is_dir():
            raise AgentConfigurationError(f"Project root specified but not found at {root}")
        return root

    def _prepare_test_file(self) -> Path:
        source = self.settings.tests.file
        target = self.settings.tests.output_file
        if target is None or target.resolve() == source.resolve():
            LOGGER.info("Modifying test file in place: %s", source)
            return source
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        except OSError as error:
            raise AgentConfigurationError(
                f"Failed to copy initial test file from {source} to {target}: {error}"
            ) from error
        LOGGER.info("Copied initial test file from %s to %s", source, target)
        return target

    def _adapt_test_command(self) -> None:
        command_dir = self.settings.tests.command_dir or self.project_root
        result = self.completion.adapt_test_command_for_single_test(
            test_file_relative_path=relative_path(self.test_file, self.project_root),
            test_command=self.test_command,
            project_root_dir=str(command_dir),
        )
        self.adaptation_tokens = (result.input_tokens, result.output_tokens)
        if result.is_error or not result.response.strip():
            LOGGER.warning(
                "Failed to adapt test command for a single test; using the original. Response: %s",
                result.response,
            )
            return
        self.test_command_original = self.test_command
        self.test_command = result.response.strip()
        LOGGER.info("Using adapted test command: %s", self.test_command)


__all__ = ["AgentConfigurationError", "CoverAgent", "FinalReport", "build_model_client"]
