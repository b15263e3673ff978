"""OpenAI-compatible chat completion providers.

OpenAI, OpenRouter and the Vercel AI Gateway all speak the same
``/v1/chat/completions`` wire format; they differ only in base URL, a few
headers, and whether the ``vendor/`` prefix is stripped from the model id.
"""

from __future__ import annotations

import logging
from typing import Any

from querybuddy.llm.base import HTTPProvider, StreamParser
from querybuddy.llm.errors import ProviderError
from querybuddy.llm.models import AIModel, ProviderType
from querybuddy.llm.sse import SSEFrame, parse_json_payload
from querybuddy.llm.types import (
    ChatMessage,
    ChatResponse,
    ContentDelta,
    FinishReason,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
VERCEL_API_URL = "https://ai-gateway.vercel.sh/v1/chat/completions"

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "tool_calls": FinishReason.TOOL_CALLS,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def parse_finish_reason(reason: str | None) -> FinishReason:
    return _FINISH_REASONS.get(reason or "", FinishReason.UNKNOWN)


def convert_message(msg: ChatMessage) -> dict[str, Any]:
    """Convert a ChatMessage to the OpenAI message format."""
    d: dict[str, Any] = {"role": msg.role.value}
    if msg.content is not None:
        d["content"] = msg.content
    if msg.tool_calls:
        d["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": tc.arguments,
                },
            }
            for tc in msg.tool_calls
        ]
    if msg.tool_call_id is not None:
        d["tool_call_id"] = msg.tool_call_id
    return d


def convert_tool(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters.as_schema(),
        },
    }


class OpenAIStreamParser(StreamParser):
    """Chat-completions chunks: deltas keyed by tool-call index."""

    def __init__(self):
        super().__init__()
        # index -> tool call id; argument fragments only carry the index
        self._ids_by_index: dict[int, str] = {}

    def feed(self, frame: SSEFrame) -> list[StreamEvent]:
        if frame.is_done:
            return [] if self.done_sent else [self.done(FinishReason.STOP)]

        chunk = parse_json_payload(frame.data)
        if chunk is None:
            return []

        events: list[StreamEvent] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}

            content = delta.get("content")
            if content:
                events.append(ContentDelta(text=content))

            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                function = tc.get("function") or {}
                call_id = tc.get("id")
                if call_id:
                    self._ids_by_index[index] = call_id
                    events.append(ToolCallStart(id=call_id, name=function.get("name") or ""))

                arguments = function.get("arguments")
                if arguments and index in self._ids_by_index:
                    events.append(ToolCallDelta(id=self._ids_by_index[index], arguments=arguments))

            reason = choice.get("finish_reason")
            if reason:
                logger.debug("Finish reason received: %s", reason)
                events.append(self.done(parse_finish_reason(reason)))

        return events


class OpenAICompatibleProvider(HTTPProvider):
    """Chat completion provider for any OpenAI-compatible endpoint."""

    provider_type = ProviderType.OPENAI
    api_url = OPENAI_API_URL
    strip_model_prefix = False

    def _endpoint(self, model: AIModel, stream: bool) -> str:
        return self.api_url

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _model_name(self, model: AIModel) -> str:
        return model.api_model_id if self.strip_model_prefix else str(model)

    def _build_payload(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model_name(model),
            "messages": [convert_message(m) for m in messages],
        }
        if tools:
            payload["tools"] = [convert_tool(t) for t in tools]
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
        return payload

    def _parse_response(self, data: dict[str, Any]) -> ChatResponse:
        error = data.get("error")
        if isinstance(error, dict):
            raise ProviderError(
                error.get("message") or "Unknown error",
                error_type=error.get("type"),
            )

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("No response choices")
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = [
            ToolCall(
                id=tc.get("id", ""),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=(tc.get("function") or {}).get("arguments", ""),
            )
            for tc in message.get("tool_calls") or []
        ]

        return ChatResponse(
            content=message.get("content"),
            tool_calls=tool_calls,
            finish_reason=parse_finish_reason(choice.get("finish_reason")),
        )

    def _stream_parser(self) -> StreamParser:
        return OpenAIStreamParser()


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI chat completion provider with streaming and tool calling."""


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter, addressed with ``openrouter/<vendor>/<model>`` ids."""

    provider_type = ProviderType.OPENROUTER
    api_url = OPENROUTER_API_URL
    strip_model_prefix = True

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = "https://querystudio.app"
        headers["X-Title"] = "QueryStudio"
        return headers


class VercelProvider(OpenAICompatibleProvider):
    """Vercel AI Gateway, addressed with ``vercel/<vendor>/<model>`` ids."""

    provider_type = ProviderType.VERCEL
    api_url = VERCEL_API_URL
    strip_model_prefix = True
