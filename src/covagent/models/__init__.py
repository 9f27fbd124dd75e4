"""Convenience exports for coverage-agent model client implementations."""

from .llm_client import (
    ModelCallError,
    ModelClient,
    ModelClientError,
    ModelProtocolError,
    ModelResponse,
    ModelTransportError,
    Prompt,
    backoff_delay,
    is_retryable,
)
from .openrouter import OpenRouterClient, parse_event_stream

__all__ = [
    "ModelCallError",
    "ModelClient",
    "ModelClientError",
    "ModelProtocolError",
    "ModelResponse",
    "ModelTransportError",
    "OpenRouterClient",
    "Prompt",
    "backoff_delay",
    "is_retryable",
    "parse_event_stream",
]
