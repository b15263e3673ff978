"""LLM data types shared across providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # JSON string, complete only once the turn is done


@dataclass
class ChatMessage:
    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> ChatMessage:
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def assistant_with_tool_calls(
        cls, content: str | None, tool_calls: list[ToolCall]
    ) -> ChatMessage:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls))

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> ChatMessage:
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)


@dataclass
class ToolParameters:
    type: str = "object"
    properties: dict[str, Any] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)

    def as_schema(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "properties": self.properties,
            "required": list(self.required),
        }


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: ToolParameters = field(default_factory=ToolParameters)


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    UNKNOWN = "unknown"


@dataclass
class ChatResponse:
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason = FinishReason.UNKNOWN


# Stream events. A turn is a sequence of these ending in Done or StreamError.


@dataclass
class ContentDelta:
    text: str


@dataclass
class ToolCallStart:
    id: str
    name: str


@dataclass
class ToolCallDelta:
    id: str
    arguments: str


@dataclass
class Done:
    finish_reason: FinishReason


@dataclass
class StreamError:
    message: str


StreamEvent = Union[ContentDelta, ToolCallStart, ToolCallDelta, Done, StreamError]
