"""Model-backed operations used by the generator and validator."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .models.llm_client import ChunkObserver, ModelClient, ModelClientError, Prompt
from .prompts import (
    ADAPT_TEST_COMMAND,
    ANALYZE_FAILURE,
    ANALYZE_INSERT_LINE,
    TEST_GENERATION,
    PromptBuilder,
    PromptTemplateError,
)
from .structured import StructuredResponseError, load_yaml

LOGGER = logging.getLogger(__name__)

@dataclass(slots=True)
class CompletionResult:
    """Raw response text of one operation plus the tokens it consumed."""

    response: str
    input_tokens: int = 0
    output_tokens: int = 0
    prompt: str = ""
    error: bool = False

    @property
    def is_error(self) -> bool:
        return self.error


@dataclass(slots=True)
class TestGenerationResult(CompletionResult):
    __test__ = False


@dataclass(slots=True)
class AnalysisResult(CompletionResult):
    pass


@dataclass(slots=True)
class CommandAdaptationResult(CompletionResult):
    """``response`` holds the adapted command line, or an ``Error:`` message."""


class AgentCompletion(abc.ABC):
    """The four model-backed operations the coverage loop relies on."""

    @abc.abstractmethod
    def generate_tests(
        self,
        *,
        source_file_name: str,
        max_tests: int,
        source_file_numbered: str,
        code_coverage_report: str,
        language: str,
        test_file: str,
        test_file_name: str,
        testing_framework: str,
        additional_instructions_text: str = "",
        additional_includes_section: str = "",
        failed_tests_section: str = "",
    ) -> TestGenerationResult:
        ...

    @abc.abstractmethod
    def analyze_test_failure(
        self,
        *,
        source_file_name: str,
        source_file: str,
        processed_test_file: str,
        stdout: str,
        stderr: str,
        test_file_name: str,
    ) -> AnalysisResult:
        ...

    @abc.abstractmethod
    def analyze_test_insert_line(
        self,
        *,
        language: str,
        test_file_numbered: str,
        test_file_name: str,
    ) -> AnalysisResult:
        ...

    @abc.abstractmethod
    def adapt_test_command_for_single_test(
        self,
        *,
        test_file_relative_path: str,
        test_command: str,
        project_root_dir: str,
    ) -> CommandAdaptationResult:
        ...


class DefaultAgentCompletion(AgentCompletion):
    """Renders templates with :class:`PromptBuilder` and calls a :class:`ModelClient`.

    Failures never escape: they come back as results flagged with ``error``
    whose ``response`` carries the message.
    """

    def __init__(
        self,
        client: ModelClient,
        prompt_builder: Optional[PromptBuilder] = None,
        *,
        on_chunk: Optional[ChunkObserver] = None,
    ) -> None:
        self._client = client
        self._prompts = prompt_builder or PromptBuilder()
        self._on_chunk = on_chunk

    def generate_tests(
        self,
        *,
        source_file_name: str,
        max_tests: int,
        source_file_numbered: str,
        code_coverage_report: str,
        language: str,
        test_file: str,
        test_file_name: str,
        testing_framework: str,
        additional_instructions_text: str = "",
        additional_includes_section: str = "",
        failed_tests_section: str = "",
    ) -> TestGenerationResult:
        variables = {
            "source_file_name": source_file_name,
            "max_tests": max_tests,
            "source_file_numbered": source_file_numbered,
            "code_coverage_report": code_coverage_report,
            "language": language,
            "test_file": test_file,
            "test_file_name": test_file_name,
            "testing_framework": testing_framework,
            "additional_instructions_text": additional_instructions_text,
            "additional_includes_section": additional_includes_section,
            "failed_tests_section": failed_tests_section,
        }
        return self._invoke(TEST_GENERATION, variables, TestGenerationResult, stream=True)

    def analyze_test_failure(
        self,
        *,
        source_file_name: str,
        source_file: str,
        processed_test_file: str,
        stdout: str,
        stderr: str,
        test_file_name: str,
    ) -> AnalysisResult:
        variables = {
            "source_file_name": source_file_name,
            "source_file": source_file,
            "processed_test_file": processed_test_file,
            "stdout": stdout,
            "stderr": stderr,
            "test_file_name": test_file_name,
        }
        return self._invoke(ANALYZE_FAILURE, variables, AnalysisResult)

    def analyze_test_insert_line(
        self,
        *,
        language: str,
        test_file_numbered: str,
        test_file_name: str,
    ) -> AnalysisResult:
        variables = {
            "language": language,
            "test_file_numbered": test_file_numbered,
            "test_file_name": test_file_name,
        }
        return self._invoke(ANALYZE_INSERT_LINE, variables, AnalysisResult)

    def adapt_test_command_for_single_test(
        self,
        *,
        test_file_relative_path: str,
        test_command: str,
        project_root_dir: str,
    ) -> CommandAdaptationResult:
        variables = {
            "test_file_relative_path": test_file_relative_path,
            "test_command": test_command,
            "project_root_dir": project_root_dir,
        }
        result = self._invoke(ADAPT_TEST_COMMAND, variables, CommandAdaptationResult)
        if result.is_error:
            return result

        command: str | None = None
        try:
            value = load_yaml(result.response).get("new_command_line")
        except StructuredResponseError as error:
            LOGGER.error("Failed parsing YAML for adapt_test_command: %s", error)
            value = None
        if isinstance(value, str) and value.strip():
            command = value.strip()

        if command is None:
            result.response = "Error: Could not parse command"
            result.error = True
        else:
            result.response = command
        return result

    def _invoke(
        self,
        key: str,
        variables: Dict[str, Any],
        result_type: type[CompletionResult],
        *,
        stream: bool = False,
    ) -> Any:
        try:
            prompt: Prompt = self._prompts.build_prompt(key, variables)
        except PromptTemplateError as error:
            LOGGER.error("Unable to render prompt %s: %s", key, error)
            return result_type(f"Error rendering prompt: {error}", error=True)

        try:
            response = self._client.call(
                prompt,
                stream=stream,
                on_chunk=self._on_chunk if stream else None,
            )
        except ModelClientError as error:
            LOGGER.error("Error calling model %s: %s", self._client.model, error)
            return result_type(f"Error calling model: {error}", prompt=prompt.user, error=True)

        return result_type(
            response.text,
            input_tokens=response.prompt_tokens,
            output_tokens=response.completion_tokens,
            prompt=prompt.user,
        )


__all__ = [
    "AgentCompletion",
    "AnalysisResult",
    "CommandAdaptationResult",
    "CompletionResult",
    "DefaultAgentCompletion",
    "TestGenerationResult",
]
