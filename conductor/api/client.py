"""Model client -- direct httpx calls to an OpenAI-compatible chat endpoint.

Turns the raw SSE stream of /chat/completions into the logical model
stream consumed by the runner: content deltas, thinking deltas, one
terminal tool_calls event per round, and stream_end.  Tool-call
fragments arrive split across chunks and are reassembled by index.

Every transport failure is raised as ModelApiError, whose message starts
with a stable prefix so callers can tell upstream failures apart from
tool or application errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from conductor.api.cancellation import CancellationToken
from conductor.api.models import ModelStreamEvent, ToolCall
from conductor.config import Settings

logger = logging.getLogger(__name__)

MODEL_API_ERROR_PREFIX = "Model API error: "


class ModelApiError(RuntimeError):
    """Upstream chat-completion failure (HTTP, timeout, in-stream error)."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(f"{MODEL_API_ERROR_PREFIX}{detail}")
        self.detail = detail
        self.status_code = status_code


# ------------------------------------------------------------------
# SSE parsing
# ------------------------------------------------------------------


class StreamAccumulator:
    """Converts parsed chat.completion.chunk dicts into ModelStreamEvents.

    Content and reasoning deltas are passed through immediately.  Tool
    call fragments are accumulated per index and announced once, as a
    single tool_calls event, when the choice reports a finish_reason (or
    the stream ends).
    """

    def __init__(self) -> None:
        self._tool_parts: dict[int, dict[str, Any]] = {}
        self._announced = False
        self._ended = False
        self.finish_reason = ""
        self.usage: dict[str, int] | None = None

    def feed(self, data: dict[str, Any]) -> list[ModelStreamEvent]:
        """Process one chunk. Raises ModelApiError for in-stream errors."""
        if "error" in data:
            error = data.get("error") or {}
            if isinstance(error, dict):
                message = error.get("message") or "unknown error"
                error_type = error.get("type") or error.get("code") or "unknown"
                raise ModelApiError(f"{error_type} - {message}")
            raise ModelApiError(str(error))

        if data.get("usage"):
            self.usage = data["usage"]

        events: list[ModelStreamEvent] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}

            thinking = delta.get("reasoning_content")
            if thinking:
                events.append(ModelStreamEvent(type="thinking_delta", text=thinking))

            content = delta.get("content")
            if content:
                events.append(ModelStreamEvent(type="content_delta", text=content))

            for fragment in delta.get("tool_calls") or []:
                self._accumulate_tool_call(fragment)

            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
                events.extend(self._announce())
        return events

    def finish(self) -> list[ModelStreamEvent]:
        """Terminal events for the stream ([DONE] or connection closed)."""
        if self._ended:
            return []
        events = self._announce()
        events.append(
            ModelStreamEvent(type="stream_end", finish_reason=self.finish_reason, usage=self.usage)
        )
        self._ended = True
        return events

    def _accumulate_tool_call(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index", len(self._tool_parts))
        acc = self._tool_parts.setdefault(index, {"id": "", "name": "", "arguments": []})
        if fragment.get("id"):
            acc["id"] = fragment["id"]
        function = fragment.get("function") or {}
        if function.get("name"):
            acc["name"] += function["name"]
        if function.get("arguments"):
            acc["arguments"].append(function["arguments"])

    def _announce(self) -> list[ModelStreamEvent]:
        if self._announced or not self._tool_parts:
            return []
        self._announced = True
        calls = [
            ToolCall(
                id=acc["id"] or f"call_{uuid.uuid4().hex[:12]}",
                name=acc["name"],
                arguments="".join(acc["arguments"]),
            )
            for _, acc in sorted(self._tool_parts.items())
        ]
        return [ModelStreamEvent(type="tool_calls", tool_calls=calls)]


def retry_after_seconds(value: str | None, default: float = 1.0, cap: float = 30.0) -> float:
    """Delay from a Retry-After header. Only delta-seconds is honoured."""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form
        return default
    if not seconds >= 0:
        return default
    return min(seconds, cap)


def parse_sse_line(line: str) -> dict[str, Any] | None:
    """Parse one SSE line. Returns None for non-data lines and [DONE].

    Raises ModelApiError on malformed JSON.
    """
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise ModelApiError(f"malformed stream chunk: {payload[:200]}") from e


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class ChatClient:
    """httpx client for the chat-completions endpoint."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._model = settings.model
        self._http: httpx.AsyncClient | None = None

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        if not model:
            raise ValueError("model must not be empty")
        self._model = model

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers = {"content-type": "application/json"}
        if settings.api_key:
            headers["authorization"] = f"Bearer {settings.api_key}"
        else:
            logger.warning("MODEL_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (%s, model=%s)", settings.api_base_url, self._model)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        model_override: str | None = None,
    ) -> dict[str, Any]:
        """Build the chat-completions request payload.

        Shared by complete() and stream() to avoid divergence.
        """
        payload: dict[str, Any] = {
            "model": model_override or self._model,
            "messages": messages,
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if self._settings.thinking_enabled:
            payload["thinking"] = {"type": "enabled"}
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _error_detail(response: httpx.Response, body: bytes | None = None) -> str:
        raw = body if body is not None else response.content
        try:
            error = json.loads(raw).get("error", {})
            if isinstance(error, dict):
                return f"HTTP {response.status_code}: {error.get('message', 'unknown error')}"
        except (ValueError, AttributeError):
            pass
        return f"HTTP {response.status_code}: {raw.decode(errors='replace')[:500]}"

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model_override: str | None = None,
    ) -> dict[str, Any]:
        """Non-streaming call with one retry for 429/500/529 and timeouts.

        Returns the first choice's message dict.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(messages, tools, model_override=model_override)

        last_error: ModelApiError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/chat/completions", json=payload)
                if response.status_code == 200:
                    data = response.json()
                    choices = data.get("choices") or []
                    if not choices:
                        raise ModelApiError("response contained no choices")
                    return choices[0].get("message") or {}

                last_error = ModelApiError(self._error_detail(response), response.status_code)
                if response.status_code in (429, 500, 529) and attempt == 0:
                    retry_after = retry_after_seconds(response.headers.get("retry-after"))
                    logger.warning("API error %d, retrying in %.1fs", response.status_code, retry_after)
                    await asyncio.sleep(retry_after)
                    continue
                break
            except httpx.TimeoutException as e:
                last_error = ModelApiError(f"request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ModelApiError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ModelApiError("call failed with unknown error")

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncGenerator[ModelStreamEvent, None]:
        """Stream one model response as ModelStreamEvents.

        Stops reading (without raising) as soon as the cancellation token
        is set; the check precedes every network read.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(messages, tools, stream=True)
        accumulator = StreamAccumulator()

        try:
            async with self._http.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise ModelApiError(self._error_detail(response, body), response.status_code)

                lines = response.aiter_lines()
                while True:
                    if cancel is not None and cancel.cancelled:
                        logger.debug("Stream read cancelled")
                        return
                    try:
                        line = await anext(lines)
                    except StopAsyncIteration:
                        break
                    if line.strip() == "data: [DONE]":
                        break
                    data = parse_sse_line(line)
                    if data is None:
                        continue
                    for event in accumulator.feed(data):
                        yield event
        except httpx.TimeoutException as e:
            raise ModelApiError(f"stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ModelApiError(f"HTTP error: {e}") from e

        for event in accumulator.finish():
            yield event
