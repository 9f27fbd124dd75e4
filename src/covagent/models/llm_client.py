"""Resilient client base class shared by all language-model integrations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

__all__ = [
    "ChunkObserver",
    "ModelCallError",
    "ModelClient",
    "ModelClientError",
    "ModelProtocolError",
    "ModelResponse",
    "ModelTransportError",
    "Prompt",
    "backoff_delay",
    "is_retryable",
]

LOGGER = logging.getLogger(__name__)

ChunkObserver = Callable[[str], None]

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0
DEFAULT_MAX_RETRY_DELAY = 10.0


class ModelClientError(RuntimeError):
    """Base error raised for language-model client failures."""


class ModelTransportError(ModelClientError):
    """Raised when the transport fails to deliver a usable HTTP exchange."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelProtocolError(ModelClientError):
    """Raised when the model returns a payload that cannot be interpreted."""


class ModelCallError(ModelClientError):
    """Raised after every attempt of a model call has failed."""

    def __init__(self, message: str, *, last_error: Exception | None, attempts: int) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


@dataclass(frozen=True, slots=True)
class Prompt:
    """System/user message pair sent to the model."""

    user: str
    system: Optional[str] = None

    def to_messages(self) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        messages.append({"role": "user", "content": self.user})
        return messages


@dataclass(frozen=True, slots=True)
class ModelResponse:
    """Text returned by a single model call along with its token usage."""

    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __post_init__(self) -> None:
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("Token counts must be non-negative.")

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Return the wait in seconds before retry number ``attempt`` (0-based).

    The delay doubles with every attempt and never exceeds ``max_delay``.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if initial_delay <= 0:
        return 0.0
    delay = initial_delay
    for _ in range(attempt):
        delay *= 2
        if delay >= max_delay:
            return max_delay
    return min(delay, max_delay)


def is_retryable(error: BaseException) -> bool:
    """Classify whether a failed call may succeed when attempted again.

    Connection and read timeouts always qualify. HTTP failures qualify only for
    429 and 5xx. Unrecognised transport failures are treated as retryable.
    Malformed payloads are not: the same request yields the same body.
    """
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    if isinstance(error, ModelProtocolError):
        return False
    if isinstance(error, ModelTransportError):
        cause = error.__cause__
        if isinstance(cause, (TimeoutError, ConnectionError)):
            return True
        status = error.status_code
        if status is not None:
            return status == 429 or 500 <= status < 600
        return True
    return isinstance(error, OSError)


class _StreamRelay:
    """Forwards streamed text to ``observer`` once across retried attempts.

    A retried stream starts over from the beginning; the prefix the observer
    already received is suppressed and only new text is passed on.
    """

    def __init__(self, observer: ChunkObserver) -> None:
        self._observer = observer
        self._delivered = 0
        self._received = 0

    def restart(self) -> None:
        self._received = 0

    def __call__(self, chunk: str) -> None:
        start = self._received
        self._received += len(chunk)
        if self._received <= self._delivered:
            return
        fresh = chunk[max(0, self._delivered - start):]
        self._delivered = self._received
        self._observer(fresh)


class ModelClient:
    """Calls a single configured model, retrying transient failures."""

    def __init__(
        self,
        model: str,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if model is None:
            raise ValueError("Model cannot be None.")
        if not str(model).strip():
            raise ValueError("Model cannot be empty or blank.")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._model = str(model).strip()
        self._max_retries = max_retries
        self._initial_retry_delay = initial_retry_delay
        self._max_retry_delay = max_retry_delay
        self._sleep = sleep

    @property
    def model(self) -> str:
        """Return the model identifier configured for this client."""
        return self._model

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def call(
        self,
        prompt: Prompt,
        *,
        stream: bool = False,
        on_chunk: Optional[ChunkObserver] = None,
    ) -> ModelResponse:
        """Send ``prompt`` and return the aggregated response.

        ``on_chunk`` receives every content fragment as it arrives when
        ``stream`` is true, exactly once even when the stream is retried.
        Raises :class:`ModelCallError` once the retry budget is spent or a
        non-retryable failure occurs.
        """
        attempt = 0
        last_error: Exception | None = None
        relay = _StreamRelay(on_chunk) if stream and on_chunk is not None else None

        while True:
            try:
                if stream:
                    if relay is not None:
                        relay.restart()
                    return self._stream(prompt, relay)
                return self._complete(prompt)
            except (ModelClientError, OSError) as error:
                last_error = error
                if attempt >= self._max_retries or not is_retryable(error):
                    break
                delay = backoff_delay(attempt, self._initial_retry_delay, self._max_retry_delay)
                attempt += 1
                LOGGER.warning(
                    "Attempt %d/%d for model %s failed. Retrying in %.0fms... (%s)",
                    attempt,
                    self._max_retries,
                    self._model,
                    delay * 1000,
                    error,
                )
                self._sleep(delay)

        attempts = attempt + 1
        raise ModelCallError(
            f"Model call to {self._model} failed after {attempts} attempt(s): {last_error}",
            last_error=last_error,
            attempts=attempts,
        ) from last_error

    def _complete(self, prompt: Prompt) -> ModelResponse:
        """Perform one buffered request/response exchange. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _complete().")

    def _stream(self, prompt: Prompt, on_chunk: Optional[ChunkObserver]) -> ModelResponse:
        """Perform one streaming exchange. Defaults to a buffered call."""
        response = self._complete(prompt)
        if on_chunk is not None and response.text:
            on_chunk(response.text)
        return response

