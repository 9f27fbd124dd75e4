"""Production client that speaks the OpenRouter chat-completions API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional

from .llm_client import (
    ChunkObserver,
    ModelClient,
    ModelProtocolError,
    ModelResponse,
    ModelTransportError,
    Prompt,
)

__all__ = ["OpenRouterClient", "Transport", "parse_event_stream"]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_TIMEOUT_SECONDS = 200.0
TEMPERATURE = 0.35
EVENT_PREFIX = "data: "
STREAM_SENTINEL = "[DONE]"

# Receives the JSON request body and HTTP headers; yields the response body line by line.
Transport = Callable[[Dict[str, Any], Dict[str, str]], Iterable[str]]


def _usage_counts(usage: Any) -> tuple[int, int]:
    if not isinstance(usage, Mapping):
        return 0, 0

    def _count(key: str) -> int:
        value = usage.get(key)
        if isinstance(value, bool):
            return 0
        if isinstance(value, int):
            return max(value, 0)
        if isinstance(value, float):
            return max(int(value), 0)
        return 0

    return _count("prompt_tokens"), _count("completion_tokens")


def parse_event_stream(lines: Iterable[str], on_chunk: Optional[ChunkObserver] = None) -> ModelResponse:
    """Fold server-sent event lines into a single :class:`ModelResponse`.

    Lines without the ``data: `` prefix and the ``[DONE]`` sentinel are
    ignored. Content deltas are appended in order and forwarded to
    ``on_chunk``; the last usage object seen provides the token counts.
    """
    fragments: list[str] = []
    prompt_tokens = 0
    completion_tokens = 0

    for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line.startswith(EVENT_PREFIX):
            continue
        data = line[len(EVENT_PREFIX):].strip()
        if data == STREAM_SENTINEL:
            continue
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError as error:
            LOGGER.warning("Error parsing streaming chunk: %s | Chunk: %s", error, data[:200])
            continue
        if not isinstance(chunk, dict):
            continue

        choices = chunk.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0] if isinstance(choices[0], dict) else {}
            delta = first.get("delta") if isinstance(first.get("delta"), dict) else {}
            content = delta.get("content")
            if isinstance(content, str):
                fragments.append(content)
                if on_chunk is not None:
                    on_chunk(content)

        if "usage" in chunk and chunk["usage"] is not None:
            prompt_tokens, completion_tokens = _usage_counts(chunk["usage"])

    return ModelResponse(
        text="".join(fragments),
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )


class OpenRouterClient(ModelClient):
    """Thin adapter around the OpenRouter chat-completions endpoint."""

    def __init__(
        self,
        *,
        model: str,
        api_key: Optional[str] = None,
        site_url: str = "",
        site_name: str = "",
        base_url: str = DEFAULT_BASE_URL,
        transport: Optional[Transport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        **retry_options: Any,
    ) -> None:
        super().__init__(model, **retry_options)
        self._api_key = api_key or os.getenv("OPENROUTER_API_KEY")
        self._site_url = site_url
        self._site_name = site_name
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def build_payload(self, prompt: Prompt, *, stream: bool) -> Dict[str, Any]:
        """Render the JSON request body for ``prompt``."""
        return {
            "model": self.model,
            "temperature": TEMPERATURE,
            "messages": prompt.to_messages(),
            "stream": stream,
        }

    def build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key or ''}",
            "Content-Type": "application/json",
            "HTTP-Referer": self._site_url,
            "X-Title": self._site_name,
        }

    def _complete(self, prompt: Prompt) -> ModelResponse:
        payload = self.build_payload(prompt, stream=False)
        body = "\n".join(self._send(payload))
        return self._parse_completion(body)

    def _stream(self, prompt: Prompt, on_chunk: Optional[ChunkObserver]) -> ModelResponse:
        payload = self.build_payload(prompt, stream=True)
        return parse_event_stream(self._send(payload), on_chunk)

    def _send(self, payload: Dict[str, Any]) -> Iterator[str]:
        """Yield response lines, normalising unexpected transport failures."""
        try:
            yield from self._transport(payload, self.build_headers())
        except (ModelTransportError, ModelProtocolError):
            raise
        except OSError as error:
            raise ModelTransportError(f"Transport failed for model {self.model}: {error}") from error

    def _parse_completion(self, body: str) -> ModelResponse:
        if not body.strip():
            raise ModelProtocolError(f"Model {self.model} returned an empty body.")
        try:
            data = json.loads(body)
        except json.JSONDecodeError as error:
            raise ModelProtocolError(
                f"Model {self.model} returned invalid JSON: {body[:200]}"
            ) from error
        if not isinstance(data, dict):
            raise ModelProtocolError(f"Model {self.model} returned a non-object payload.")

        content = ""
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                content = message["content"]

        prompt_tokens, completion_tokens = _usage_counts(data.get("usage"))
        return ModelResponse(
            text=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    def _http_transport(self, payload: Dict[str, Any], headers: Dict[str, str]) -> Iterator[str]:
        """Default HTTP transport built on urllib."""
        import urllib.error
        import urllib.request

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._base_url, data=data, headers=headers, method="POST")

        try:
            response = urllib.request.urlopen(request, timeout=self._timeout)
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise ModelTransportError(
                f"API request failed for model {self.model} with status code {error.code}: {message}",
                status_code=error.code,
            ) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise ModelTransportError(
                f"Failed to reach model endpoint: {error.reason}"
            ) from (error.reason if isinstance(error.reason, BaseException) else error)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise ModelTransportError(f"Model {self.model} request timed out.") from error

        with response:  # pragma: no cover - network-dependent
            status = getattr(response, "status", 200)
            if not 200 <= status < 300:
                raise ModelTransportError(
                    f"API request failed for model {self.model} with status code {status}",
                    status_code=status,
                )
            for raw in response:
                yield raw.decode("utf-8", errors="replace")
