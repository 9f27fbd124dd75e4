from __future__ import annotations

import sys
import textwrap
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from covagent.completion import (  # noqa: E402
    AgentCompletion,
    AnalysisResult,
    CommandAdaptationResult,
    TestGenerationResult,
)
from covagent.tools.runner import CommandResult  # noqa: E402

SOURCE_TEXT = textwrap.dedent(
    """
    package com.example;

    public class Calculator {
        public int add(int a, int b) {
            return a + b;
        }

        public int subtract(int a, int b) {
            return a - b;
        }
    }
    """
).lstrip()

TEST_TEXT = textwrap.dedent(
    """
    package com.example;

    import org.junit.jupiter.api.Test;
    import static org.junit.jupiter.api.Assertions.assertEquals;

    class CalculatorTest {
        @Test
        void addsNumbers() {
            assertEquals(4, new Calculator().add(2, 2));
        }
    }
    """
).lstrip()

# Line after which new tests go (the closing brace of the last test method).
TESTS_AFTER = 10
IMPORTS_AFTER = 4
SOURCE_LINES = 10
FAIL_MARKER = "// fails"
NOOP_MARKER = "// no-op"


def write_jacoco_report(
    path: Path,
    *,
    covered: Iterable[int],
    missed: Iterable[int],
    name: str = "Calculator.java",
    package: str = "com/example",
) -> Path:
    """Write a minimal JaCoCo XML report for a single source file."""
    lines = [f'<line nr="{nr}" mi="0" ci="3" mb="0" cb="0"/>' for nr in covered]
    lines += [f'<line nr="{nr}" mi="2" ci="0" mb="0" cb="0"/>' for nr in missed]
    head = textwrap.dedent(
        f"""\
        <?xml version="1.0" encoding="UTF-8" standalone="yes"?>
        <!DOCTYPE report PUBLIC "-//JACOCO//DTD Report 1.1//EN" "report.dtd">
        <report name="calculator">
          <package name="{package}">
            <sourcefile name="{name}">
        """
    )
    tail = "    </sourcefile>\n  </package>\n</report>\n"
    xml = head + "".join(f"      {line}\n" for line in lines) + tail
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(xml, encoding="utf-8")
    return path


@dataclass(slots=True)
class JavaProject:
    """Synthetic Maven-style project used by validator and orchestrator tests."""

    root: Path
    source_file: Path
    test_file: Path
    report_path: Path
    config_path: Path


@pytest.fixture()
def java_project(tmp_path: Path) -> JavaProject:
    root = tmp_path / "calculator"
    source_file = root / "src" / "main" / "java" / "com" / "example" / "Calculator.java"
    test_file = root / "src" / "test" / "java" / "com" / "example" / "CalculatorTest.java"
    source_file.parent.mkdir(parents=True)
    test_file.parent.mkdir(parents=True)
    source_file.write_text(SOURCE_TEXT, encoding="utf-8")
    test_file.write_text(TEST_TEXT, encoding="utf-8")
    report_path = root / "target" / "site" / "jacoco" / "jacoco.xml"

    config_path = root / "coverage-agent.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            project:
              root: .
            source:
              file: src/main/java/com/example/Calculator.java
            tests:
              file: src/test/java/com/example/CalculatorTest.java
              command: mvn -q test jacoco:report
            coverage:
              report: target/site/jacoco/jacoco.xml
              desired: 80
            iteration:
              max_iterations: 3
            models:
              default: test/model
              api_key: sk-test
            """
        ).lstrip(),
        encoding="utf-8",
    )
    return JavaProject(
        root=root,
        source_file=source_file,
        test_file=test_file,
        report_path=report_path,
        config_path=config_path,
    )


@dataclass
class FakeBuild:
    """Stands in for the project's build: coverage grows with each passing test.

    Every ``@Test`` in the test file covers two more source lines, except
    tests tagged ``// no-op``. A test tagged ``// fails`` makes the run fail.
    """

    test_file: Path
    report_path: Path
    exit_code: int = 0
    write_report: bool = True
    calls: List[str] = field(default_factory=list)
    contents_seen: List[str] = field(default_factory=list)

    def __call__(self, command: str, cwd: Path | str | None = None, *, timeout: float = 0) -> CommandResult:
        self.calls.append(command)
        content = self.test_file.read_text(encoding="utf-8")
        self.contents_seen.append(content)
        started_at = time.time() - 5
        if self.exit_code != 0:
            return CommandResult(command, None, self.exit_code, "", "BUILD FAILURE", started_at)
        if FAIL_MARKER in content:
            return CommandResult(command, None, 1, "Tests run: 2, Failures: 1", "AssertionFailedError", started_at)

        if self.write_report:
            units = content.count("@Test") - content.count(NOOP_MARKER)
            covered_total = max(0, min(SOURCE_LINES, 2 * units))
            covered = range(1, covered_total + 1)
            missed = range(covered_total + 1, SOURCE_LINES + 1)
            write_jacoco_report(self.report_path, covered=covered, missed=missed)
        return CommandResult(command, None, 0, "BUILD SUCCESS", "", started_at)


@pytest.fixture()
def fake_build(java_project: JavaProject) -> FakeBuild:
    return FakeBuild(test_file=java_project.test_file, report_path=java_project.report_path)


def insert_line_yaml(tests_after: int | None = TESTS_AFTER, imports_after: int | None = IMPORTS_AFTER) -> str:
    lines = ["language: java", "testing_framework: JUnit5"]
    if tests_after is not None:
        lines.append(f"relevant_line_number_to_insert_tests_after: {tests_after}")
    if imports_after is not None:
        lines.append(f"relevant_line_number_to_insert_imports_after: {imports_after}")
    return "```yaml\n" + "\n".join(lines) + "\n```"


def generation_yaml(*tests: Dict[str, str]) -> str:
    import yaml

    return yaml.safe_dump({"language": "java", "new_tests": list(tests)}, sort_keys=False)


def java_test(name: str, *, marker: str = "", imports: str = '""') -> Dict[str, str]:
    body = "\n".join(
        [
            "    @Test",
            f"    void {name}() {{ {marker}",
            "        assertEquals(0, new Calculator().subtract(2, 2));",
            "    }",
        ]
    )
    return {"test_name": name, "test_code": body, "new_imports_code": imports}


class FakeCompletion(AgentCompletion):
    """Scripted completion service; each queue is consumed in order."""

    def __init__(
        self,
        *,
        insert_lines: List[str] | None = None,
        generations: List[str] | None = None,
        analysis: str = "The assertion compares the wrong values.",
        adapted_command: str | None = None,
        tokens: int = 10,
    ) -> None:
        self.insert_lines = list(insert_lines or [insert_line_yaml()])
        self.generations = list(generations or [])
        self.analysis = analysis
        self.adapted_command = adapted_command
        self.tokens = tokens
        self.generate_calls: List[Dict[str, object]] = []
        self.failure_calls: List[Dict[str, object]] = []
        self.insert_calls: List[Dict[str, object]] = []
        self.adapt_calls: List[Dict[str, object]] = []

    def generate_tests(self, **kwargs: object) -> TestGenerationResult:
        self.generate_calls.append(kwargs)
        response = self.generations.pop(0) if self.generations else "new_tests: []"
        return TestGenerationResult(response, self.tokens, self.tokens, "generate")

    def analyze_test_failure(self, **kwargs: object) -> AnalysisResult:
        self.failure_calls.append(kwargs)
        return AnalysisResult(self.analysis, self.tokens, self.tokens, "analyze")

    def analyze_test_insert_line(self, **kwargs: object) -> AnalysisResult:
        self.insert_calls.append(kwargs)
        response = self.insert_lines.pop(0) if self.insert_lines else "language: java"
        return AnalysisResult(response, self.tokens, self.tokens, "insert")

    def adapt_test_command_for_single_test(self, **kwargs: object) -> CommandAdaptationResult:
        self.adapt_calls.append(kwargs)
        if self.adapted_command is None:
            failure = "Error: Could not parse command"
            return CommandAdaptationResult(failure, self.tokens, self.tokens, "adapt", error=True)
        return CommandAdaptationResult(self.adapted_command, self.tokens, self.tokens, "adapt")
