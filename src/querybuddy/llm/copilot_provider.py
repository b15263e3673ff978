"""GitHub Copilot CLI bridge.

The Copilot CLI runs as a local child process managed by the Copilot SDK
(``CopilotClient``). The CLI has no notion of our chat history, so every call
flattens the conversation into a single prompt and opens a fresh session.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable

from copilot import CopilotClient, Tool

from querybuddy.llm.errors import ProviderError
from querybuddy.llm.models import AIModel, ModelInfo, ProviderType
from querybuddy.llm.sse import ToolCallAccumulator
from querybuddy.llm.types import (
    ChatMessage,
    ChatResponse,
    ContentDelta,
    Done,
    FinishReason,
    Role,
    StreamError,
    StreamEvent,
    ToolCallDelta,
    ToolCallStart,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

DEFAULT_CLI_PATH = "copilot"
DEFAULT_EVENT_TIMEOUT = 120.0

NOT_AUTHENTICATED_MESSAGE = "GitHub Copilot CLI is not authenticated. Run `copilot login`."
NOT_INSTALLED_MESSAGE = (
    "GitHub Copilot CLI is not installed or not in PATH. "
    "Install it and run `copilot auth login`."
)
HOST_TOOL_RESULT = "The host application runs this tool and sends the result in the next message."

# Failures of the local process or pipe; a fresh attempt may succeed.
RETRYABLE_KINDS = {"connection_closed", "transport", "timeout", "process_exit"}


def session_error(kind: str, message: str) -> ProviderError:
    """Classify a failure of the Copilot CLI process."""
    if kind == "cli_not_found":
        return ProviderError(NOT_INSTALLED_MESSAGE, error_type="cli_not_found")
    return ProviderError(message, error_type=kind, is_retryable=kind in RETRYABLE_KINDS)


def map_copilot_error(error: Exception) -> ProviderError:
    """Translate an exception raised by the Copilot SDK."""
    message = str(error) or type(error).__name__
    if isinstance(error, FileNotFoundError) or "Could not find Copilot CLI" in message:
        return session_error("cli_not_found", message)
    if isinstance(error, asyncio.TimeoutError):
        return session_error("timeout", message)
    if isinstance(error, ProcessLookupError):
        return session_error("process_exit", message)
    if isinstance(error, (BrokenPipeError, ConnectionResetError)):
        return session_error("transport", message)
    if isinstance(error, (ConnectionError, EOFError)):
        return session_error("connection_closed", message)
    return ProviderError(message)


def build_prompt(messages: list[ChatMessage], tools: list[ToolDefinition]) -> str:
    """Flatten the conversation into one prompt for the CLI."""
    system_sections: list[str] = []
    transcript: list[str] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            if msg.content:
                system_sections.append(msg.content)
        elif msg.role == Role.USER:
            if msg.content:
                transcript.append(f"User: {msg.content}")
        elif msg.role == Role.ASSISTANT:
            if msg.content:
                transcript.append(f"Assistant: {msg.content}")
            for tc in msg.tool_calls or []:
                transcript.append(f"Assistant tool call [{tc.id}]: {tc.name} {tc.arguments}")
        elif msg.role == Role.TOOL:
            transcript.append(f"Tool result [{msg.tool_call_id or 'unknown'}]: {msg.content or ''}")

    sections: list[str] = []
    if system_sections:
        sections.append("System instructions:\n" + "\n\n".join(system_sections))
    if transcript:
        sections.append("Conversation transcript:\n" + "\n".join(transcript))
    if tools:
        tool_lines = "\n".join(f"- {t.name}: {t.description}" for t in tools)
        sections.append(
            "Available tools (ONLY these exact names are valid):\n"
            f"{tool_lines}\n\n"
            "Do not invent or call any other tool names. "
            "If none of these tools fit, respond normally without tool calls."
        )
    sections.append(
        "Continue the conversation as the assistant. "
        "If tool usage is needed, use the available tools."
    )
    return "\n\n".join(sections)


async def _host_tool_handler(invocation: Any) -> dict[str, Any]:
    return {"textResultForLlm": HOST_TOOL_RESULT, "resultType": "success"}


def convert_tool(tool: ToolDefinition) -> Tool:
    return Tool(
        name=tool.name,
        description=tool.description,
        parameters=tool.parameters.as_schema(),
        handler=_host_tool_handler,
    )


def _is_authenticated(status: Any) -> bool:
    if isinstance(status, dict):
        return bool(status.get("isAuthenticated"))
    return bool(getattr(status, "isAuthenticated", False) or getattr(status, "is_authenticated", False))


ClientFactory = Callable[[], Any]


class CopilotProvider:
    """Chat through the locally installed GitHub Copilot CLI.

    No API key is used; the CLI carries its own login. Tool calls requested
    by the model are reported back to the agent, which runs them itself.
    """

    provider_type = ProviderType.COPILOT

    def __init__(
        self,
        api_key: str = "",
        cli_path: str | None = None,
        cli_args: list[str] | None = None,
        timeout: float = DEFAULT_EVENT_TIMEOUT,
        client_factory: ClientFactory | None = None,
    ):
        self._cli_path = cli_path or DEFAULT_CLI_PATH
        self._cli_args = list(cli_args or [])
        self._timeout = timeout
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> CopilotClient:
        options: dict[str, Any] = {"cli_path": self._cli_path, "use_stdio": True}
        if self._cli_args:
            options["cli_args"] = self._cli_args
        return CopilotClient(options)

    async def _start(self) -> Any:
        client = self._client_factory()
        logger.debug("Starting Copilot CLI: %s", self._cli_path)
        try:
            await client.start()
            status = await client.get_auth_status()
        except Exception as e:
            await self._stop(client)
            raise map_copilot_error(e) from e
        if not _is_authenticated(status):
            await self._stop(client)
            raise ProviderError(NOT_AUTHENTICATED_MESSAGE, error_type="unauthorized")
        return client

    async def _stop(self, client: Any) -> None:
        try:
            await client.stop()
        except Exception as e:
            logger.debug("Copilot CLI did not stop cleanly: %s", e)

    async def _run(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[StreamEvent]:
        """Run one prompt; yields events ending in Done, raises ProviderError."""
        client = await self._start()
        session = None
        unsubscribe = None
        try:
            loop = asyncio.get_running_loop()
            queue: asyncio.Queue = asyncio.Queue()

            session = await client.create_session({
                "model": model.api_model_id,
                "tools": [convert_tool(t) for t in tools],
                "streaming": True,
            })
            # The SDK may deliver events from its reader thread
            unsubscribe = session.on(lambda event: loop.call_soon_threadsafe(queue.put_nowait, event))
            await session.send({"prompt": build_prompt(messages, tools)})

            seen_ids: set[str] = set()
            while True:
                event = await asyncio.wait_for(queue.get(), timeout=self._timeout)
                event_type = event.type.value
                data = event.data

                if event_type == "assistant.message":
                    requests = getattr(data, "tool_requests", None) or []
                    content = getattr(data, "content", None) or ""
                    if not requests and content:
                        yield ContentDelta(text=content)
                    for request in requests:
                        call_id = request.tool_call_id
                        if call_id in seen_ids:
                            continue
                        seen_ids.add(call_id)
                        arguments = json.dumps(request.arguments or {})
                        yield ToolCallStart(id=call_id, name=request.name)
                        yield ToolCallDelta(id=call_id, arguments=arguments)

                elif event_type == "session.error":
                    raise ProviderError(
                        getattr(data, "message", None) or "Copilot session error",
                        error_type=getattr(data, "error_type", None),
                    )

                elif event_type == "session.idle":
                    break

            finish_reason = FinishReason.TOOL_CALLS if seen_ids else FinishReason.STOP
            logger.debug("Copilot session finished: %s", finish_reason.value)
            yield Done(finish_reason=finish_reason)
        except ProviderError:
            raise
        except Exception as e:
            raise map_copilot_error(e) from e
        finally:
            if unsubscribe is not None:
                unsubscribe()
            if session is not None:
                try:
                    await session.destroy()
                except Exception as e:
                    logger.debug("Copilot session was not destroyed cleanly: %s", e)
            await self._stop(client)

    async def chat(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> ChatResponse:
        content: list[str] = []
        tool_calls = ToolCallAccumulator()
        finish_reason = FinishReason.STOP

        async for event in self._run(model, messages, tools):
            if isinstance(event, ContentDelta):
                content.append(event.text)
            elif isinstance(event, ToolCallStart):
                tool_calls.start(event.id, event.name)
            elif isinstance(event, ToolCallDelta):
                tool_calls.append(event.id, event.arguments)
            elif isinstance(event, Done):
                finish_reason = event.finish_reason

        text = "".join(content)
        return ChatResponse(
            content=text or None,
            tool_calls=tool_calls.tool_calls(),
            finish_reason=finish_reason,
        )

    async def chat_stream(
        self,
        model: AIModel,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[StreamEvent]:
        """Forward Copilot events; failures end the stream with StreamError."""
        events = self._run(model, messages, tools)
        try:
            async for event in events:
                yield event
        except ProviderError as e:
            logger.debug("Copilot stream failed: %s", e)
            yield StreamError(message=str(e))
        finally:
            await events.aclose()

    async def fetch_models(self) -> list[ModelInfo]:
        """Models the signed-in Copilot account can use."""
        client = await self._start()
        try:
            entries = await client.list_models()
        except Exception as e:
            raise map_copilot_error(e) from e
        finally:
            await self._stop(client)

        models: dict[str, ModelInfo] = {}
        for entry in entries or []:
            model_id = f"copilot/{entry.id}"
            models.setdefault(model_id, ModelInfo(
                id=model_id,
                name=entry.name or entry.id,
                provider=ProviderType.COPILOT,
                logo_provider="copilot",
            ))
        return sorted(models.values(), key=lambda m: m.name)
