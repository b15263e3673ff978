"""Google Gemini provider speaking the generateContent REST API."""

from __future__ import annotations

import json
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
    Role,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models/"

# Gemini rejects replayed functionCall parts without a thought signature.
# Any non-empty placeholder is accepted.
THOUGHT_SIGNATURE_PLACEHOLDER = "context_engineering_is_the_way_to_go"

# Models that think by default but should answer directly.
_NO_THINKING_MODELS = {"gemini-3-flash-preview"}

_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "TOOL_USE": FinishReason.TOOL_CALLS,
}


def parse_finish_reason(reason: str | None) -> FinishReason:
    return _FINISH_REASONS.get(reason or "", FinishReason.UNKNOWN)


def tool_name_from_call_id(call_id: str) -> str:
    """Recover the function name from a ``{name}_{index}`` call id.

    Splits at the first underscore, so tool names that themselves contain
    ``_`` come back truncated.
    """
    return call_id.split("_", 1)[0]


def _parse_args(arguments: str) -> Any:
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return {}


def convert_message(msg: ChatMessage) -> dict[str, Any]:
    role = "model" if msg.role == Role.ASSISTANT else "user"

    if msg.role == Role.TOOL:
        parts = [{
            "functionResponse": {
                "name": tool_name_from_call_id(msg.tool_call_id or ""),
                "response": {"result": msg.content or ""},
            }
        }]
    elif msg.role == Role.ASSISTANT and msg.tool_calls:
        parts = [
            {
                "functionCall": {"name": tc.name, "args": _parse_args(tc.arguments)},
                "thoughtSignature": THOUGHT_SIGNATURE_PLACEHOLDER,
            }
            for tc in msg.tool_calls
        ]
    else:
        parts = [{"text": msg.content or ""}]

    return {"role": role, "parts": parts}


def convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    declarations = []
    for tool in tools:
        schema = tool.parameters.as_schema()
        schema["type"] = schema["type"].lower()
        declarations.append({
            "name": tool.name,
            "description": tool.description,
            "parameters": schema,
        })
    return [{"functionDeclarations": declarations}]


class _CandidateReader:
    """Walks candidate parts, numbering function calls across the response."""

    def __init__(self):
        self.tool_call_count = 0

    def read(self, candidate: dict[str, Any]) -> tuple[list[str], list[ToolCall]]:
        texts: list[str] = []
        calls: list[ToolCall] = []
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            text = part.get("text")
            if text:
                texts.append(text)
            function_call = part.get("functionCall")
            if function_call:
                name = function_call.get("name") or ""
                calls.append(ToolCall(
                    id=f"{name}_{self.tool_call_count}",
                    name=name,
                    arguments=json.dumps(function_call.get("args") or {}),
                ))
                self.tool_call_count += 1
        return texts, calls


class GeminiStreamParser(StreamParser):
    """Each SSE frame carries a complete GenerateContentResponse."""

    def __init__(self):
        super().__init__()
        self._reader = _CandidateReader()

    def feed(self, frame: SSEFrame) -> list[StreamEvent]:
        if frame.is_done:
            return [] if self.done_sent else [self.done(self.default_finish_reason())]

        chunk = parse_json_payload(frame.data)
        if chunk is None:
            return []

        events: list[StreamEvent] = []
        for candidate in chunk.get("candidates") or []:
            texts, calls = self._reader.read(candidate)
            events.extend(ContentDelta(text=t) for t in texts)
            for call in calls:
                events.append(ToolCallStart(id=call.id, name=call.name))
                events.append(ToolCallDelta(id=call.id, arguments=call.arguments))

            reason = candidate.get("finishReason")
            if reason:
                logger.debug("Finish reason received: %s", reason)
                if self._reader.tool_call_count:
                    events.append(self.done(FinishReason.TOOL_CALLS))
                else:
                    events.append(self.done(parse_finish_reason(reason)))
        return events

    def default_finish_reason(self) -> FinishReason:
        if self._reader.tool_call_count:
            return FinishReason.TOOL_CALLS
        return FinishReason.STOP


class GeminiProvider(HTTPProvider):
    """Google Gemini provider; the API key travels as a query parameter."""

    provider_type = ProviderType.GOOGLE
    error_type_key = "status"

    def _endpoint(self, model: AIModel, stream: bool) -> str:
        if stream:
            return f"{GEMINI_API_BASE}{model.api_model_id}:streamGenerateContent?alt=sse&key={self._api_key}"
        return f"{GEMINI_API_BASE}{model.api_model_id}:generateContent?key={self._api_key}"

    def _build_payload(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": [convert_message(m) for m in messages],
        }
        if tools:
            payload["tools"] = convert_tools(tools)
            payload["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
        if model.api_model_id in _NO_THINKING_MODELS:
            payload["generationConfig"] = {"thinkingConfig": {"thinkingBudget": 0}}
        return payload

    def _parse_response(self, data: dict[str, Any]) -> ChatResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("No response candidates")
        candidate = candidates[0]
        if not candidate.get("content"):
            raise ProviderError("No content in response")

        texts, tool_calls = _CandidateReader().read(candidate)

        if tool_calls:
            finish_reason = FinishReason.TOOL_CALLS
        else:
            finish_reason = parse_finish_reason(candidate.get("finishReason"))

        content = "".join(texts)
        return ChatResponse(
            content=content or None,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
        )

    def _stream_parser(self) -> StreamParser:
        return GeminiStreamParser()
