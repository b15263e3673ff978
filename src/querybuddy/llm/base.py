"""LLM provider interface and the HTTP plumbing shared by vendor adapters."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol

import httpx

from querybuddy.llm.errors import ProviderError, parse_error_response
from querybuddy.llm.models import AIModel, ProviderType
from querybuddy.llm.sse import SSEFrame, aiter_sse
from querybuddy.llm.types import (
    ChatMessage,
    ChatResponse,
    Done,
    FinishReason,
    StreamError,
    StreamEvent,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


class LLMProvider(Protocol):
    """Protocol that all LLM providers must implement.

    ``chat`` must behave exactly like draining ``chat_stream`` and folding the
    events into a ChatResponse.
    """

    provider_type: ProviderType

    async def chat(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> ChatResponse: ...

    def chat_stream(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[StreamEvent]: ...


class StreamParser:
    """Turns one vendor's SSE frames into unified stream events.

    One parser instance lives for exactly one streamed response.
    """

    def __init__(self):
        self.done_sent = False

    def feed(self, frame: SSEFrame) -> list[StreamEvent]:
        raise NotImplementedError

    def finish(self) -> list[StreamEvent]:
        """Events to emit when the body ends without a terminal event."""
        if self.done_sent:
            return []
        return [self.done(self.default_finish_reason())]

    def default_finish_reason(self) -> FinishReason:
        return FinishReason.STOP

    def done(self, finish_reason: FinishReason) -> Done:
        self.done_sent = True
        return Done(finish_reason=finish_reason)


class HTTPProvider:
    """Base for adapters that speak JSON over HTTP with SSE streaming.

    Subclasses supply the vendor specifics: endpoint, headers, request body,
    response parsing and a StreamParser.
    """

    provider_type: ProviderType
    error_type_key = "type"

    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- vendor hooks -----------------------------------------------------

    def _endpoint(self, model: AIModel, stream: bool) -> str:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_payload(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        stream: bool,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, data: dict[str, Any]) -> ChatResponse:
        raise NotImplementedError

    def _stream_parser(self) -> StreamParser:
        raise NotImplementedError

    def _error_from_response(self, status_code: int, body: str) -> ProviderError:
        return parse_error_response(status_code, body, type_key=self.error_type_key)

    # -- capability -------------------------------------------------------

    async def chat(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> ChatResponse:
        """Non-streaming chat completion."""
        url = self._endpoint(model, stream=False)
        payload = self._build_payload(model, messages, tools, stream=False)
        logger.debug(
            "[%s] chat model=%s messages=%d tools=%d",
            self.provider_type.value, model, len(messages), len(tools),
        )

        try:
            response = await self._client.post(url, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            raise ProviderError(f"Request failed: {e}", is_retryable=True) from e

        if not response.is_success:
            raise self._error_from_response(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Failed to parse response: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError("Failed to parse response: expected a JSON object")

        return self._parse_response(data)

    async def chat_stream(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[StreamEvent]:
        """Streaming chat completion yielding unified stream events.

        Failing to open the stream raises ProviderError. Once the stream is
        open, transport failures arrive as a StreamError event instead.
        Nothing is yielded after Done or StreamError.
        """
        url = self._endpoint(model, stream=True)
        payload = self._build_payload(model, messages, tools, stream=True)
        logger.debug(
            "[%s] chat_stream model=%s messages=%d tools=%d",
            self.provider_type.value, model, len(messages), len(tools),
        )

        request = self._client.build_request("POST", url, json=payload, headers=self._headers())
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise ProviderError(f"Request failed: {e}", is_retryable=True) from e

        try:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                logger.debug("[%s] error body: %s", self.provider_type.value, body)
                raise self._error_from_response(response.status_code, body)

            parser = self._stream_parser()
            try:
                async for frame in aiter_sse(response.aiter_bytes()):
                    for event in parser.feed(frame):
                        yield event
                        if isinstance(event, (Done, StreamError)):
                            logger.debug("[%s] stream finished: %s", self.provider_type.value, event)
                            return
            except httpx.TransportError as e:
                logger.debug("[%s] stream interrupted: %s", self.provider_type.value, e)
                yield StreamError(message=str(e) or type(e).__name__)
                return

            for event in parser.finish():
                yield event
        finally:
            await response.aclose()
