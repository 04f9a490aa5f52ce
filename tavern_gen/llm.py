"""Model clients — HTTP connection to a chat/text-completion backend.

The orchestrator talks to any object matching the protocol:

    async def generate(self, payload: GenerationPayload) -> Blocking | Streaming

The result is a tagged union decided once by the client: `Blocking` wraps a
complete GenerationResponse, `Streaming` wraps an async iterator of
StreamChunks. Callers match on the type instead of probing the object.

Two implementations are provided:

    HttpLLM   — real HTTP client, supports OpenAI-compatible chat completions
                (blocking or SSE streaming) and KoboldCpp (blocking).
    EchoLLM   — returns the last message back. Useful for smoke-testing the
                pipeline wiring without a running model.

Tests use the StubClient from conftest.py instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol, Union

import httpx

from tavern_gen.errors import TavernError
from tavern_gen.models import (
    ApiMessage,
    ConnectionProfile,
    GenerationPayload,
    GenerationResponse,
    ProviderFormat,
    StreamChunk,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result union + protocol
# ---------------------------------------------------------------------------

@dataclass
class Blocking:
    response: GenerationResponse


@dataclass
class Streaming:
    chunks: AsyncIterator[StreamChunk]

    async def close(self) -> None:
        """Release the underlying connection, if the iterator holds one."""
        aclose = getattr(self.chunks, "aclose", None)
        if aclose is not None:
            await aclose()


GenerationResult = Union[Blocking, Streaming]


class ModelClient(Protocol):
    async def generate(self, payload: GenerationPayload) -> GenerationResult: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for completion backends.

    Supported formats:
      "openai"     — POST /v1/chat/completions  {"model", "messages", ...}
                     Response: {"choices": [{"message": {"content": "..."}}]}
                     With "stream": true the body is server-sent events, one
                     {"choices": [{"delta": {...}}]} object per "data:" line.
      "koboldcpp"  — POST /api/v1/generate  {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}
                     Messages are flattened into a single prompt; always blocking.

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        timeout:         HTTP timeout in seconds. Defaults to 120.
        transport:       Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, timeout: float = 120.0) -> HttpLLM:
        return cls(
            provider_url=profile.provider_url,
            api_key=profile.api_key,
            provider_format=profile.provider_format,
            timeout=timeout,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, payload: GenerationPayload) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "koboldcpp":
            body: dict[str, Any] = {
                "prompt": flatten_messages(payload.messages),
                "max_length": payload.max_tokens,
                "temperature": payload.temperature,
                "top_p": payload.top_p,
            }
            if payload.stop:
                body["stop_sequence"] = payload.stop
            return f"{self._base_url}/api/v1/generate", body

        body = {
            "messages": [m.model_dump(exclude_none=True) for m in payload.messages],
            "max_tokens": payload.max_tokens,
            "temperature": payload.temperature,
            "top_p": payload.top_p,
            "stream": payload.stream,
        }
        if payload.model:
            body["model"] = payload.model
        if payload.stop:
            body["stop"] = payload.stop
        return f"{self._base_url}/v1/chat/completions", body

    def _parse_response(self, data: dict) -> GenerationResponse:
        """Extract the completion from a blocking response body."""
        if self._format == "koboldcpp":
            results = data.get("results")
            if not results or "text" not in results[0]:
                raise LLMError("Unexpected response format from KoboldCpp backend")
            return GenerationResponse(content=results[0]["text"])

        if "error" in data:
            raise LLMError(f"Backend error: {_error_message(data['error'])}")
        choices = data.get("choices")
        if not choices or "message" not in choices[0]:
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        message = choices[0]["message"]
        usage = data.get("usage") or {}
        return GenerationResponse(
            content=message.get("content") or "",
            reasoning=message.get("reasoning_content") or message.get("reasoning") or "",
            token_count=usage.get("completion_tokens"),
        )

    async def generate(self, payload: GenerationPayload) -> GenerationResult:
        url, body = self._build_request(payload)
        streaming = payload.stream and self._format == "openai"
        logger.debug(
            "llm call url=%s messages=%d stream=%s", url, len(payload.messages), streaming,
        )
        if streaming:
            return Streaming(self._stream(url, body))

        try:
            async with self._client() as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        response = self._parse_response(resp.json())
        logger.debug("llm response len=%d", len(response.content))
        return Blocking(response)

    async def _stream(self, url: str, body: dict) -> AsyncIterator[StreamChunk]:
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise LLMError(f"LLM backend returned HTTP {resp.status_code}")
                    async for line in resp.aiter_lines():
                        chunk = _parse_sse_line(line)
                        if chunk is None:
                            continue
                        if chunk is _DONE:
                            return
                        yield chunk
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e


_DONE = StreamChunk()


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


def _parse_sse_line(line: str) -> StreamChunk | None:
    """One server-sent-events line -> chunk, _DONE, or None for non-data lines."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return _DONE
    try:
        event = json.loads(data)
    except json.JSONDecodeError as e:
        raise LLMError(f"Malformed stream event: {data[:80]}") from e
    if "error" in event:
        raise LLMError(f"Backend error: {_error_message(event['error'])}")

    choices = event.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    return StreamChunk(
        delta=delta.get("content") or "",
        reasoning=delta.get("reasoning_content") or delta.get("reasoning") or "",
        images=[img["image_url"]["url"] for img in delta.get("images") or [] if "image_url" in img],
    )


def flatten_messages(messages: list[ApiMessage]) -> str:
    """Render chat messages as a plain text-completion prompt."""
    lines = []
    for m in messages:
        if not m.content:
            continue
        if m.role in ("user", "assistant") and m.name:
            lines.append(f"{m.name}: {m.content}")
        else:
            lines.append(m.content)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# EchoLLM: echoes the last message; useful for pipeline smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the last message's text as the reply. No network calls.

    Honours payload.stream by yielding the reply word by word, so the
    streaming path of the orchestrator can be exercised offline too.
    """

    async def generate(self, payload: GenerationPayload) -> GenerationResult:
        text = next((m.content for m in reversed(payload.messages) if m.content), "")
        logger.debug("EchoLLM messages=%d reply_len=%d", len(payload.messages), len(text))
        if not payload.stream:
            return Blocking(GenerationResponse(content=text))
        return Streaming(_word_chunks(text))


async def _word_chunks(text: str) -> AsyncIterator[StreamChunk]:
    for i, word in enumerate(text.split(" ")):
        yield StreamChunk(delta=word if i == 0 else " " + word)


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(TavernError):
    """Raised when the LLM backend cannot be reached or returns an error."""
