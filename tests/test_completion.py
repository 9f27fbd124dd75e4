from __future__ import annotations

from typing import List, Optional

from covagent.completion import DefaultAgentCompletion
from covagent.models.llm_client import (
    ChunkObserver,
    ModelClient,
    ModelResponse,
    ModelTransportError,
    Prompt,
)
from covagent.prompts import PromptBuilder


class CannedClient(ModelClient):
    def __init__(self, *texts: str, fail: bool = False) -> None:
        super().__init__("test/model", max_retries=0, sleep=lambda _: None)
        self.texts = list(texts)
        self.fail = fail
        self.prompts: List[Prompt] = []
        self.streamed: List[bool] = []

    def _complete(self, prompt: Prompt) -> ModelResponse:
        self.prompts.append(prompt)
        self.streamed.append(False)
        return self._next()

    def _stream(self, prompt: Prompt, on_chunk: Optional[ChunkObserver]) -> ModelResponse:
        self.prompts.append(prompt)
        self.streamed.append(True)
        response = self._next()
        if on_chunk is not None:
            on_chunk(response.text)
        return response

    def _next(self) -> ModelResponse:
        if self.fail:
            raise ModelTransportError("service unavailable", status_code=503)
        return ModelResponse(self.texts.pop(0), prompt_tokens=11, completion_tokens=5)


def _generate(completion: DefaultAgentCompletion):
    return completion.generate_tests(
        source_file_name="Calculator.java",
        max_tests=2,
        source_file_numbered="1 class Calculator {}",
        code_coverage_report="Lines covered: 0",
        language="java",
        test_file="class CalculatorTest {}",
        test_file_name="CalculatorTest.java",
        testing_framework="JUnit5",
    )


def test_generation_streams_and_reports_tokens() -> None:
    client = CannedClient("new_tests: []")
    chunks: List[str] = []
    completion = DefaultAgentCompletion(client, on_chunk=chunks.append)

    result = _generate(completion)

    assert result.response == "new_tests: []"
    assert (result.input_tokens, result.output_tokens) == (11, 5)
    assert client.streamed == [True]
    assert chunks == ["new_tests: []"]
    assert "Generate at most 2 new tests" in result.prompt


def test_model_failure_is_returned_as_error_result() -> None:
    completion = DefaultAgentCompletion(CannedClient(fail=True))

    result = completion.analyze_test_insert_line(
        language="java", test_file_numbered="1 class T {}", test_file_name="T.java"
    )

    assert result.is_error
    assert result.response.startswith("Error calling model")
    assert result.input_tokens == 0


def test_render_failure_is_returned_as_error_result(tmp_path) -> None:
    (tmp_path / "analyze_test_run_failure.yaml").write_text("user: '{{ missing }}'\n", encoding="utf-8")
    client = CannedClient("unused")
    completion = DefaultAgentCompletion(client, PromptBuilder(tmp_path))

    result = completion.analyze_test_failure(
        source_file_name="A.java",
        source_file="",
        processed_test_file="",
        stdout="",
        stderr="",
        test_file_name="ATest.java",
    )

    assert result.is_error
    assert result.response.startswith("Error rendering prompt")
    assert client.prompts == []


def test_adapt_command_extracts_new_command_line() -> None:
    client = CannedClient(
        "```yaml\nprogramming_language: java\ntesting_framework: JUnit5\n"
        "new_command_line: mvn -q test -Dtest=CalculatorTest jacoco:report\n```"
    )
    completion = DefaultAgentCompletion(client)

    result = completion.adapt_test_command_for_single_test(
        test_file_relative_path="src/test/java/com/example/CalculatorTest.java",
        test_command="mvn -q test jacoco:report",
        project_root_dir="/work/calculator",
    )

    assert not result.is_error
    assert result.response == "mvn -q test -Dtest=CalculatorTest jacoco:report"
    assert client.streamed == [False]
    assert "/work/calculator" in client.prompts[0].user


def test_adapt_command_without_command_line_is_an_error() -> None:
    completion = DefaultAgentCompletion(CannedClient("programming_language: java\n"))

    result = completion.adapt_test_command_for_single_test(
        test_file_relative_path="T.java", test_command="mvn test", project_root_dir="."
    )

    assert result.is_error
    assert result.response == "Error: Could not parse command"
    assert result.input_tokens == 11


def test_answer_starting_with_error_is_not_a_failure() -> None:
    text = "Error: NullPointerException because subtract() is called on a null Calculator."
    completion = DefaultAgentCompletion(CannedClient(text))

    result = completion.analyze_test_failure(
        source_file_name="Calculator.java",
        source_file="",
        processed_test_file="",
        stdout="",
        stderr="",
        test_file_name="CalculatorTest.java",
    )

    assert not result.is_error
    assert result.response == text
    assert result.input_tokens == 11
