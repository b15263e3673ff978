"""Core agent loop: drive the model through tool rounds over one conversation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from querybuddy.core.tool_registry import ToolRegistry
from querybuddy.db.base import DataAccess
from querybuddy.llm.base import LLMProvider
from querybuddy.llm.errors import ProviderError
from querybuddy.llm.factory import create_provider
from querybuddy.llm.models import AIModel
from querybuddy.llm.sse import ToolCallAccumulator
from querybuddy.llm.types import (
    ChatMessage,
    ContentDelta,
    Done,
    FinishReason,
    StreamError,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
)
from querybuddy.tools.definitions import DatabaseType, get_system_prompt

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 25
DEFAULT_QUEUE_SIZE = 100
MAX_ITERATIONS_MESSAGE = "Agent reached maximum iterations"


# -- events -----------------------------------------------------------------


@dataclass
class Content:
    type: ClassVar[str] = "content"
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.text}


@dataclass
class ToolCallStarted:
    type: ClassVar[str] = "tool_call_start"
    id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": {"id": self.id, "name": self.name}}


@dataclass
class ToolCallArguments:
    type: ClassVar[str] = "tool_call_delta"
    id: str
    arguments: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": {"id": self.id, "arguments": self.arguments}}


@dataclass
class ToolResult:
    type: ClassVar[str] = "tool_result"
    id: str
    name: str
    result: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": {"id": self.id, "name": self.name, "result": self.result}}


@dataclass
class Finished:
    type: ClassVar[str] = "done"
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": {"content": self.content}}


@dataclass
class Failed:
    type: ClassVar[str] = "error"
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.message}


AgentEvent = Union[Content, ToolCallStarted, ToolCallArguments, ToolResult, Finished, Failed]


# -- caller-held history ------------------------------------------------------


@dataclass
class AgentToolCall:
    id: str
    name: str
    arguments: str
    result: str | None = None


@dataclass
class AgentMessage:
    """A chat record as the caller's UI stores it."""

    id: str
    role: str
    content: str
    tool_calls: list[AgentToolCall] | None = None


# -- streaming handle -------------------------------------------------------------

_END = object()


class AgentStream:
    """Events of one streamed turn.

    Iterate with ``async for``. Leaving an ``async with`` block, or calling
    ``cancel()``, stops the turn and closes the in-flight provider response.
    """

    def __init__(self, queue: asyncio.Queue, task: asyncio.Task):
        self._queue = queue
        self._task = task
        self._closed = False

    def __aiter__(self) -> AgentStream:
        return self

    async def __anext__(self) -> AgentEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._closed = True
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> AgentStream:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._closed = True
        self._task.cancel()

    async def aclose(self) -> None:
        """Cancel the turn if still running and wait for it to unwind."""
        if not self._task.done():
            self.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._closed = True


async def _close_provider(provider: LLMProvider) -> None:
    aclose = getattr(provider, "aclose", None)
    if aclose is not None:
        await aclose()


# -- agent ------------------------------------------------------------------------


class Agent:
    """Tool-using database assistant over one conversation.

    Flow of a turn:
    1. Append the user message to history
    2. Call the model with the full history and the tool catalog
    3. If it asks for tools: record the request, run the tools in order,
       append their results, go to 2
    4. Otherwise record the answer and finish
    5. Guard: max_iterations to prevent runaway loops

    One Agent serves one session and runs one turn at a time.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: AIModel | str,
        data_access: DataAccess,
        connection_id: str,
        db_type: DatabaseType,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._provider = provider
        self._model = model if isinstance(model, AIModel) else AIModel.parse(model)
        self._db_type = DatabaseType(db_type)
        self._tools = ToolRegistry(data_access, connection_id, self._db_type)
        self._max_iterations = max_iterations
        self._queue_size = queue_size
        self._busy = False
        self._task: asyncio.Task | None = None
        self._history: list[ChatMessage] = []
        self.clear_history()

    @property
    def model(self) -> AIModel:
        return self._model

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    @property
    def history(self) -> list[ChatMessage]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history = [ChatMessage.system(get_system_prompt(self._db_type))]

    async def set_model(self, model: AIModel | str, api_key: str, **provider_kwargs) -> None:
        """Switch model; the provider is rebuilt only when the vendor changes."""
        model = model if isinstance(model, AIModel) else AIModel.parse(model)
        if model.provider != self._model.provider:
            logger.info("Switching provider %s -> %s", self._model.provider.value, model.provider.value)
            old = self._provider
            self._provider = create_provider(model.provider, api_key, **provider_kwargs)
            await _close_provider(old)
        self._model = model

    async def aclose(self) -> None:
        """Release the provider's connections."""
        await _close_provider(self._provider)

    def load_messages(self, messages: list[AgentMessage]) -> None:
        """Rebuild history from records kept by the caller."""
        self.clear_history()
        logger.debug("Loading %d history messages", len(messages))

        for msg in messages:
            if msg.role == "user":
                self._history.append(ChatMessage.user(msg.content))
            elif msg.role == "assistant":
                if msg.tool_calls is None:
                    self._history.append(ChatMessage.assistant(msg.content))
                    continue
                calls = [ToolCall(id=tc.id, name=tc.name, arguments=tc.arguments) for tc in msg.tool_calls]
                self._history.append(
                    ChatMessage.assistant_with_tool_calls(msg.content or None, calls)
                )
                for tc in msg.tool_calls:
                    if tc.result is not None:
                        self._history.append(ChatMessage.tool_result(tc.id, tc.result))
                    else:
                        logger.warning("Tool call %s has no stored result", tc.id)
            # tool records are carried by their assistant message

    def _begin_turn(self, user_message: str) -> None:
        if self._busy:
            raise RuntimeError("Agent is already processing a message")
        self._busy = True
        self._history.append(ChatMessage.user(user_message))

    async def _run_tools(self, tool_calls: list[ToolCall], emit=None) -> None:
        for tc in tool_calls:
            result = await self._tools.execute(tc)
            if emit is not None:
                emit(ToolResult(id=tc.id, name=tc.name, result=result))
            self._history.append(ChatMessage.tool_result(tc.id, result))

    def _finish_round(self, finish_reason: FinishReason, text: str) -> None:
        if finish_reason == FinishReason.STOP or text:
            self._history.append(ChatMessage.assistant(text))

    # -- streaming ---------------------------------------------------------------

    def chat_stream(self, user_message: str) -> AgentStream:
        """Start a streamed turn; events arrive on the returned AgentStream."""
        self._begin_turn(user_message)
        # One slot beyond the event capacity is kept for the end marker
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size + 1)
        self._task = asyncio.create_task(self._produce(queue))
        return AgentStream(queue, self._task)

    def _emitter(self, queue: asyncio.Queue):
        """Best-effort send: an event that finds the queue full is dropped."""
        def emit(event: AgentEvent) -> None:
            if queue.qsize() >= self._queue_size:
                logger.debug("Event queue full, dropping %s event", event.type)
                return
            queue.put_nowait(event)
        return emit

    async def _produce(self, queue: asyncio.Queue) -> None:
        emit = self._emitter(queue)
        try:
            await self._stream_loop(emit)
        except asyncio.CancelledError:
            logger.info("Agent turn cancelled")
            raise
        except Exception as e:
            logger.exception("Agent turn failed")
            emit(Failed(message=str(e)))
        finally:
            self._busy = False
        queue.put_nowait(_END)

    async def _stream_loop(self, emit) -> None:
        tool_definitions = self._tools.definitions()
        full_content: list[str] = []

        for iteration in range(1, self._max_iterations + 1):
            logger.debug("Agent iteration %d/%d", iteration, self._max_iterations)

            content: list[str] = []
            tool_calls = ToolCallAccumulator()
            finish_reason: FinishReason | None = None

            events = self._provider.chat_stream(self._model, list(self._history), tool_definitions)
            try:
                async for event in events:
                    if finish_reason is not None:
                        continue
                    if isinstance(event, ContentDelta):
                        content.append(event.text)
                        emit(Content(text=event.text))
                    elif isinstance(event, ToolCallStart):
                        tool_calls.start(event.id, event.name)
                        emit(ToolCallStarted(id=event.id, name=event.name))
                    elif isinstance(event, ToolCallDelta):
                        tool_calls.append(event.id, event.arguments)
                        emit(ToolCallArguments(id=event.id, arguments=event.arguments))
                    elif isinstance(event, Done):
                        finish_reason = event.finish_reason
                    elif isinstance(event, StreamError):
                        logger.warning("Stream error: %s", event.message)
                        emit(Failed(message=event.message))
                        return
            except ProviderError as e:
                logger.warning("Provider error: %s", e)
                emit(Failed(message=str(e)))
                return
            finally:
                await events.aclose()

            text = "".join(content)
            full_content.append(text)
            if finish_reason is None:
                finish_reason = FinishReason.STOP

            if finish_reason != FinishReason.TOOL_CALLS or not tool_calls:
                logger.debug("Turn finished: %s", finish_reason.value)
                self._finish_round(finish_reason, text)
                emit(Finished(content="".join(full_content)))
                return

            calls = tool_calls.tool_calls()
            self._history.append(ChatMessage.assistant_with_tool_calls(text or None, calls))
            await self._run_tools(calls, emit)

        emit(Failed(message=MAX_ITERATIONS_MESSAGE))

    # -- non-streaming -----------------------------------------------------------

    async def chat(self, user_message: str) -> str:
        """Run a whole turn without streaming and return the answer text."""
        self._begin_turn(user_message)
        try:
            return await self._chat_loop()
        finally:
            self._busy = False

    async def _chat_loop(self) -> str:
        tool_definitions = self._tools.definitions()
        full_content: list[str] = []

        for iteration in range(1, self._max_iterations + 1):
            logger.debug("Agent iteration %d/%d", iteration, self._max_iterations)
            response = await self._provider.chat(self._model, list(self._history), tool_definitions)
            text = response.content or ""
            full_content.append(text)

            if response.finish_reason != FinishReason.TOOL_CALLS or not response.tool_calls:
                self._finish_round(response.finish_reason, text)
                return "".join(full_content)

            self._history.append(
                ChatMessage.assistant_with_tool_calls(response.content, response.tool_calls)
            )
            await self._run_tools(response.tool_calls)

        raise ProviderError(MAX_ITERATIONS_MESSAGE)
