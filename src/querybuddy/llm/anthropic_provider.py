"""Anthropic (Claude) LLM provider implementation."""

from __future__ import annotations

import json
import logging
from typing import Any

from querybuddy.llm.base import HTTPProvider, StreamParser
from querybuddy.llm.errors import ProviderError, parse_error_response
from querybuddy.llm.models import AIModel, ProviderType
from querybuddy.llm.sse import SSEFrame, parse_json_payload
from querybuddy.llm.types import (
    ChatMessage,
    ChatResponse,
    ContentDelta,
    FinishReason,
    Role,
    StreamError,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

ANTHROPIC_MESSAGES_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_FINISH_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_use": FinishReason.TOOL_CALLS,
    "max_tokens": FinishReason.LENGTH,
    "refusal": FinishReason.CONTENT_FILTER,
}


def parse_finish_reason(reason: str | None) -> FinishReason:
    return _FINISH_REASONS.get(reason or "", FinishReason.UNKNOWN)


def _parse_arguments(arguments: str) -> Any:
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return {}


def convert_messages(messages: list[ChatMessage]) -> tuple[str | None, list[dict]]:
    """Convert ChatMessages to the Anthropic format.

    Anthropic has no system role: every system message is lifted out and
    joined into the top-level ``system`` field. Tool results travel back as
    ``user`` messages holding a ``tool_result`` block.

    Returns (system_prompt, messages_list).
    """
    system_parts: list[str] = []
    result: list[dict] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)

        elif msg.role == Role.USER:
            if msg.content:
                result.append({
                    "role": "user",
                    "content": [{"type": "text", "text": msg.content}],
                })

        elif msg.role == Role.ASSISTANT:
            blocks: list[dict] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls or []:
                blocks.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": _parse_arguments(tc.arguments),
                })
            if blocks:
                result.append({"role": "assistant", "content": blocks})

        elif msg.role == Role.TOOL:
            if msg.tool_call_id is not None and msg.content is not None:
                result.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": msg.tool_call_id,
                        "content": msg.content,
                    }],
                })

    system = "\n\n".join(system_parts) if system_parts else None
    return system, result


def convert_tool(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": tool.parameters.as_schema(),
    }


class AnthropicStreamParser(StreamParser):
    """Messages API stream: indexed content blocks.

    ``input_json_delta`` events only carry the block index, so tool ids are
    recorded per index when the block starts.
    """

    def __init__(self):
        super().__init__()
        self._ids_by_index: dict[int, str] = {}

    def feed(self, frame: SSEFrame) -> list[StreamEvent]:
        if frame.is_done:
            return [] if self.done_sent else [self.done(FinishReason.STOP)]

        event = parse_json_payload(frame.data)
        if event is None:
            return []

        event_type = event.get("type")

        if event_type == "error":
            error = event.get("error") or {}
            return [StreamError(message=error.get("message") or "Stream error")]

        if event_type == "content_block_start":
            return self._block_start(event)

        if event_type == "content_block_delta":
            return self._block_delta(event)

        if event_type == "message_delta":
            delta = event.get("delta") or {}
            reason = event.get("stop_reason") or delta.get("stop_reason")
            if reason:
                logger.debug("Stop reason received: %s", reason)
                return [self.done(parse_finish_reason(reason))]
            return []

        if event_type == "message_stop":
            return [] if self.done_sent else [self.done(FinishReason.STOP)]

        return []

    def _block_start(self, event: dict) -> list[StreamEvent]:
        block = event.get("content_block") or {}
        block_type = block.get("type")

        if block_type == "text":
            text = block.get("text")
            return [ContentDelta(text=text)] if text else []

        if block_type == "tool_use":
            index = event.get("index", 0)
            call_id = block.get("id") or f"tool_use_{index}"
            self._ids_by_index[index] = call_id
            events: list[StreamEvent] = [
                ToolCallStart(id=call_id, name=block.get("name") or "tool")
            ]
            initial = block.get("input")
            if initial:
                events.append(ToolCallDelta(id=call_id, arguments=json.dumps(initial)))
            return events

        return []

    def _block_delta(self, event: dict) -> list[StreamEvent]:
        delta = event.get("delta") or {}
        delta_type = delta.get("type")

        if delta_type == "text_delta":
            text = delta.get("text")
            return [ContentDelta(text=text)] if text else []

        if delta_type == "input_json_delta":
            index = event.get("index")
            partial = delta.get("partial_json")
            call_id = self._ids_by_index.get(index)
            if call_id is not None and partial is not None:
                return [ToolCallDelta(id=call_id, arguments=partial)]

        return []


class AnthropicProvider(HTTPProvider):
    """Anthropic Claude messages provider with streaming and tool calling."""

    provider_type = ProviderType.ANTHROPIC

    def __init__(self, api_key: str, max_tokens: int = DEFAULT_MAX_TOKENS, **kwargs):
        super().__init__(api_key, **kwargs)
        self._max_tokens = max_tokens

    def _endpoint(self, model: AIModel, stream: bool) -> str:
        return ANTHROPIC_MESSAGES_API_URL

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "content-type": "application/json",
        }

    def _build_payload(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        stream: bool,
    ) -> dict[str, Any]:
        system, anthropic_messages = convert_messages(messages)

        payload: dict[str, Any] = {
            "model": model.api_model_id,
            "max_tokens": self._max_tokens,
            "messages": anthropic_messages,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [convert_tool(t) for t in tools]
            payload["tool_choice"] = {"type": "auto"}
        if stream:
            payload["stream"] = True
        return payload

    def _parse_response(self, data: dict[str, Any]) -> ChatResponse:
        content_text = ""
        tool_calls: list[ToolCall] = []

        for block in data.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                content_text += block.get("text") or ""
            elif block_type == "tool_use" and block.get("id") and block.get("name"):
                tool_calls.append(ToolCall(
                    id=block["id"],
                    name=block["name"],
                    arguments=json.dumps(block.get("input") or {}),
                ))

        if tool_calls:
            finish_reason = FinishReason.TOOL_CALLS
        else:
            finish_reason = parse_finish_reason(data.get("stop_reason"))

        return ChatResponse(
            content=content_text or None,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
        )

    def _stream_parser(self) -> StreamParser:
        return AnthropicStreamParser()

    def _error_from_response(self, status_code: int, body: str) -> ProviderError:
        return parse_error_response(status_code, body, raw_fallback=True)
