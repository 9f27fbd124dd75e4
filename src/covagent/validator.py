"""Applies candidate tests to the live test file and keeps only the useful ones.

Each candidate goes through ``RECEIVED -> PATCHED -> EXECUTED`` and ends either
``ACCEPTED`` (file keeps the new test, coverage baseline moves up) or
``ROLLED_BACK`` (file restored to the exact bytes it had before the attempt).
The validator is the only writer of the test file.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .completion import AgentCompletion
from .structured import FailedTestRun, GeneratedTest, StructuredResponseError, coerce_line_number, load_yaml
from .tools.coverage import CoverageProcessor, CoverageReportError, CoverageReportMissing
from .tools.files import language_from_path, numbered_listing, relative_path, split_lines
from .tools.runner import MAX_ALLOWED_RUNTIME_SECONDS, CommandResult, CommandRunner, run_command

LOGGER = logging.getLogger(__name__)

ANALYSIS_ATTEMPTS = 3


class BuildFatalError(RuntimeError):
    """Raised when a measurement run of the test command fails."""


class TestSuiteAnalysisError(RuntimeError):
    """Raised when the insertion points of the test file cannot be determined."""

    __test__ = False


class ValidationStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class RejectionReason(str, Enum):
    TEST_FAILED = "test-failed"
    NO_COVERAGE_GAIN = "no-coverage-gain"
    RUNTIME_ERROR = "runtime-error"
    INVALID_INSERTION_POINT = "invalid-insertion-point"


@dataclass(slots=True)
class ValidationOutcome:
    """Verdict for one candidate test."""

    status: ValidationStatus
    test: GeneratedTest
    reason: RejectionReason | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error_message: str = ""
    processed_test_file: str = ""

    @property
    def passed(self) -> bool:
        return self.status is ValidationStatus.PASS


@dataclass(slots=True)
class ValidatorState:
    """Everything the validator mutates while working through candidates."""

    test_file_content: str = ""
    insert_tests_after: int | None = None
    insert_imports_after: int | None = None
    testing_framework: str = "Unknown"
    current_coverage: float = 0.0
    per_file_coverage: Dict[str, float] = field(default_factory=dict)
    coverage_report: str = ""
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    failed_runs: List[FailedTestRun] = field(default_factory=list)
    rollback_failures: List[str] = field(default_factory=list)
    accepted: int = 0
    rejected: int = 0


@dataclass(slots=True)
class CoverageSnapshot:
    """Coverage numbers derived from one report."""

    overall: float
    per_file: Dict[str, float]
    covered_count: int
    missed_count: int
    stale: bool = False

    def summary(self) -> str:
        return (
            f"Lines covered: {self.covered_count}\n"
            f"Lines missed: {self.missed_count}\n"
            f"Percentage covered: {self.overall * 100:.2f}%"
        )


def clean_imports(raw: str) -> str:
    """Normalise the ``new_imports_code`` field of a candidate."""
    value = (raw or "").strip()
    if value == '""':
        return ""
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1].strip()
    return value


def clean_test_code(raw: str) -> str:
    """Drop surrounding blank lines while keeping the body's indentation."""
    lines = split_lines((raw or "").rstrip())
    while lines and not lines[0].strip():
        lines.pop(0)
    return "\n".join(lines)


def dedupe_imports(imports: str, existing_lines: Sequence[str]) -> List[str]:
    """Return the import lines not already present (trimmed match) in the file."""
    seen = {line.strip() for line in existing_lines}
    novel: List[str] = []
    for line in split_lines(imports):
        trimmed = line.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        novel.append(line)
    return novel


def splice_candidate(
    lines: Sequence[str],
    test_lines: Sequence[str],
    import_lines: Sequence[str],
    tests_after: int,
    imports_after: int | None,
) -> Tuple[List[str], int]:
    """Insert imports, then the test body, after the given 1-based lines.

    Returns the new line list and the number of import lines inserted. The
    test insertion point is shifted by that number.
    """
    result = list(lines)
    inserted_imports = 0
    if imports_after is not None and import_lines:
        if not 0 <= imports_after <= len(result):
            raise ValueError(f"Import insertion line {imports_after} is outside the file")
        result[imports_after:imports_after] = list(import_lines)
        inserted_imports = len(import_lines)

    index = tests_after + inserted_imports
    if not 0 <= index <= len(result):
        raise ValueError(f"Test insertion line {tests_after} is outside the file")
    result[index:index] = list(test_lines)
    return result, inserted_imports


def _detect_newline(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def _join_lines(lines: Sequence[str], newline: str, trailing: bool) -> str:
    text = newline.join(lines)
    return text + newline if trailing and lines else text


def read_text_exact(path: Path) -> str:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def write_text_atomic(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` via a temporary file in the same directory."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class UnitTestValidator:
    """Owns the test file and decides the fate of each candidate."""

    def __init__(
        self,
        *,
        source_file: Path,
        test_file: Path,
        project_root: Path,
        report_path: Path,
        test_command: str,
        completion: AgentCompletion,
        test_command_dir: Path | None = None,
        attempts: int = 1,
        max_run_time: float = MAX_ALLOWED_RUNTIME_SECONDS,
        analyze_failures: bool = True,
        runner: CommandRunner = run_command,
        coverage_processor: Optional[CoverageProcessor] = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.source_file = Path(source_file)
        self.test_file = Path(test_file)
        self.project_root = Path(project_root)
        self.report_path = Path(report_path)
        self.test_command = test_command
        self.test_command_dir = Path(test_command_dir) if test_command_dir else self.project_root
        self.completion = completion
        self.attempts = attempts
        self.max_run_time = max_run_time
        self.analyze_failures = analyze_failures
        self._runner = runner
        self.coverage_processor = coverage_processor or CoverageProcessor(self.report_path, self.source_file)
        self.language = language_from_path(self.source_file)
        self.state = ValidatorState()

        try:
            self.source_code = self.source_file.read_text(encoding="utf-8")
        except OSError as error:
            LOGGER.error("Error reading source file %s: %s", self.source_file, error)
            self.source_code = ""

    @property
    def current_coverage(self) -> float:
        return self.state.current_coverage

    def initial_test_suite_analysis(self) -> None:
        """Ask the model where new tests and imports belong in the test file.

        Raises :class:`TestSuiteAnalysisError` when either line number is still
        unknown after the allowed attempts.
        """
        tests_after: int | None = None
        imports_after: int | None = None
        framework: str | None = None
        test_file_name = relative_path(self.test_file, self.project_root)

        for attempt in range(1, ANALYSIS_ATTEMPTS + 1):
            try:
                content = read_text_exact(self.test_file)
            except OSError as error:
                raise TestSuiteAnalysisError(f"Unable to read test file {self.test_file}: {error}") from error

            LOGGER.info("Performing test suite analysis (attempt %d/%d)", attempt, ANALYSIS_ATTEMPTS)
            result = self.completion.analyze_test_insert_line(
                language=self.language,
                test_file_numbered=numbered_listing(content),
                test_file_name=test_file_name,
            )
            self._add_tokens(result.input_tokens, result.output_tokens)
            if result.is_error:
                LOGGER.warning("Test suite analysis failed: %s", result.response)
                continue

            try:
                payload = load_yaml(result.response)
            except StructuredResponseError as error:
                LOGGER.warning("Unreadable test suite analysis response: %s", error)
                continue

            tests_value = coerce_line_number(payload.get("relevant_line_number_to_insert_tests_after"))
            imports_value = coerce_line_number(payload.get("relevant_line_number_to_insert_imports_after"))
            if tests_value is not None:
                tests_after = tests_value
            if imports_value is not None:
                imports_after = imports_value
            if payload.get("testing_framework"):
                framework = str(payload["testing_framework"]).strip()
            if tests_after is not None and imports_after is not None:
                break

        if tests_after is None:
            raise TestSuiteAnalysisError("Failed to analyze the relevant line number to insert new tests")
        if imports_after is None:
            raise TestSuiteAnalysisError("Failed to analyze the relevant line number to insert new imports")

        self.state.insert_tests_after = tests_after
        self.state.insert_imports_after = imports_after
        self.state.testing_framework = framework or "Unknown"
        self.state.test_file_content = read_text_exact(self.test_file)
        LOGGER.debug(
            "Tests insert after line %d, imports after line %d, framework %s",
            tests_after,
            imports_after,
            self.state.testing_framework,
        )

    def run_coverage(self) -> CoverageSnapshot | None:
        """Run the test command once to refresh the coverage baseline.

        Returns ``None`` when the report could not be interpreted; the raw
        report text then becomes the coverage context for generation.
        """
        LOGGER.info('Running build/test command to generate coverage report: "%s"', self.test_command)
        result = self._run_once()
        if result.exit_code != 0:
            raise BuildFatalError(
                "Error running test command. Are you sure the command is correct? "
                f'"{self.test_command}"\nExit code {result.exit_code}.\n'
                f"Stdout:\n{result.stdout}\nStderr:\n{result.stderr}"
            )

        try:
            snapshot = self.post_process_coverage_report(result.started_at)
        except CoverageReportMissing:
            raise
        except CoverageReportError as error:
            LOGGER.warning("Error parsing coverage report: %s", error)
            LOGGER.info(
                "Will default to using the full coverage report. "
                "You will need to check coverage manually for each passing test."
            )
            try:
                self.state.coverage_report = self.report_path.read_text(encoding="utf-8", errors="replace")
            except OSError as read_error:
                raise CoverageReportMissing(
                    f"Failed to read coverage report {self.report_path}: {read_error}"
                ) from read_error
            return None

        self.state.current_coverage = snapshot.overall
        self.state.per_file_coverage = dict(snapshot.per_file)
        self.state.coverage_report = snapshot.summary()
        return snapshot

    def post_process_coverage_report(self, since: float | None) -> CoverageSnapshot:
        data = self.coverage_processor.process(since)
        return CoverageSnapshot(
            overall=data.coverage_percentage,
            per_file={self.source_file.name: data.coverage_percentage},
            covered_count=data.covered_count,
            missed_count=data.missed_count,
            stale=data.report_stale,
        )

    def validate_test(self, test: GeneratedTest) -> ValidationOutcome:
        """Insert ``test``, run the suite, and keep it only if coverage grows."""
        try:
            original = read_text_exact(self.test_file)
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.error("Error reading test file %s: %s", self.test_file, error)
            return self._reject(test, RejectionReason.RUNTIME_ERROR, error_message=str(error))

        patched = False
        processed = ""
        try:
            test_code = clean_test_code(test.test_code)
            imports = clean_imports(test.new_imports_code)
            tests_after = self.state.insert_tests_after
            imports_after = self.state.insert_imports_after
            if tests_after is None or not test_code.strip():
                return self._reject(test, RejectionReason.INVALID_INSERTION_POINT)

            lines = split_lines(original)
            import_lines = dedupe_imports(imports, lines)
            test_lines = split_lines(test_code)
            try:
                new_lines, inserted_imports = splice_candidate(
                    lines, test_lines, import_lines, tests_after, imports_after
                )
            except ValueError as error:
                LOGGER.warning("Cannot place candidate: %s", error)
                return self._reject(test, RejectionReason.INVALID_INSERTION_POINT, error_message=str(error))

            newline = _detect_newline(original)
            processed = _join_lines(new_lines, newline, original.endswith("\n"))
            write_text_atomic(self.test_file, processed)
            patched = True
            LOGGER.debug(
                "Inserted %d import line(s) and %d test line(s) after line %d",
                inserted_imports,
                len(test_lines),
                tests_after,
            )

            result = self._run_candidate()
            if result.exit_code != 0:
                self._rollback(original)
                patched = False
                LOGGER.info("Skipping a generated test that failed")
                analysis = self._explain_failure(processed, result)
                if analysis:
                    LOGGER.info("Error message summary:\n%s", analysis)
                self.state.failed_runs.append(FailedTestRun(test=test, error_message=analysis))
                return self._reject(
                    test,
                    RejectionReason.TEST_FAILED,
                    result=result,
                    error_message=analysis,
                    processed=processed,
                )

            snapshot = self.post_process_coverage_report(result.started_at)
            if snapshot.overall <= self.state.current_coverage:
                self._rollback(original)
                patched = False
                LOGGER.info("Test did not increase coverage. Rolling back.")
                message = "Test did not increase code coverage"
                self.state.failed_runs.append(FailedTestRun(test=test, error_message=message))
                return self._reject(
                    test,
                    RejectionReason.NO_COVERAGE_GAIN,
                    result=result,
                    error_message=message,
                    processed=processed,
                )

            self.state.insert_tests_after = tests_after + inserted_imports + len(test_lines)
            self._log_coverage_increase(snapshot.per_file)
            self.state.current_coverage = snapshot.overall
            self.state.per_file_coverage = dict(snapshot.per_file)
            self.state.coverage_report = snapshot.summary()
            self.state.test_file_content = processed
            self.state.accepted += 1
            LOGGER.info(
                "Test passed and coverage increased. Current coverage: %.2f%%",
                snapshot.overall * 100,
            )
            return ValidationOutcome(
                status=ValidationStatus.PASS,
                test=test,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                processed_test_file=processed,
            )
        except Exception as error:  # noqa: BLE001
            LOGGER.exception("Error validating test: %s", error)
            if patched:
                self._rollback(original)
            self.state.failed_runs.append(FailedTestRun(test=test, error_message=f"Runtime error: {error}"))
            return self._reject(
                test,
                RejectionReason.RUNTIME_ERROR,
                error_message=str(error),
                processed=processed,
            )

    def _reject(
        self,
        test: GeneratedTest,
        reason: RejectionReason,
        *,
        result: CommandResult | None = None,
        error_message: str = "",
        processed: str = "",
    ) -> ValidationOutcome:
        self.state.rejected += 1
        return ValidationOutcome(
            status=ValidationStatus.FAIL,
            test=test,
            reason=reason,
            exit_code=result.exit_code if result else None,
            stdout=result.stdout if result else "",
            stderr=result.stderr if result else "",
            error_message=error_message,
            processed_test_file=processed,
        )

    def _rollback(self, original: str) -> None:
        try:
            write_text_atomic(self.test_file, original)
        except OSError as error:
            message = f"Error rolling back {self.test_file}: {error}"
            LOGGER.error(message)
            self.state.rollback_failures.append(message)

    def _run_once(self) -> CommandResult:
        return self._runner(self.test_command, self.test_command_dir, timeout=self.max_run_time)

    def _run_candidate(self) -> CommandResult:
        # Stop at the first failing attempt to catch flaky tests.
        result = self._run_once()
        for _ in range(self.attempts - 1):
            if result.exit_code != 0:
                break
            LOGGER.info('Running test with the following command: "%s"', self.test_command)
            result = self._run_once()
        return result

    def _explain_failure(self, processed: str, result: CommandResult) -> str:
        if not self.analyze_failures:
            return ""
        analysis = self.completion.analyze_test_failure(
            source_file_name=relative_path(self.source_file, self.project_root),
            source_file=self.source_code,
            processed_test_file=processed,
            stdout=result.stdout,
            stderr=result.stderr,
            test_file_name=relative_path(self.test_file, self.project_root),
        )
        self._add_tokens(analysis.input_tokens, analysis.output_tokens)
        if analysis.is_error:
            LOGGER.warning("Failure analysis unavailable: %s", analysis.response)
            return ""
        return analysis.response.strip()

    def _log_coverage_increase(self, per_file: Dict[str, float]) -> None:
        for name, new_value in per_file.items():
            old_value = self.state.per_file_coverage.get(name, 0.0)
            if new_value <= old_value:
                continue
            label = "provided source file" if name == self.source_file.name else "non-source file"
            LOGGER.info(
                "Coverage for %s: %s increased from %.2f%% to %.2f%%",
                label,
                name,
                old_value * 100,
                new_value * 100,
            )

    def _add_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self.state.total_input_tokens += input_tokens
        self.state.total_output_tokens += output_tokens


__all__ = [
    "BuildFatalError",
    "CoverageSnapshot",
    "RejectionReason",
    "TestSuiteAnalysisError",
    "UnitTestValidator",
    "ValidationOutcome",
    "ValidationStatus",
    "ValidatorState",
    "clean_imports",
    "clean_test_code",
    "dedupe_imports",
    "read_text_exact",
    "splice_candidate",
    "write_text_atomic",
]
