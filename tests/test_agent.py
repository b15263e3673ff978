"""Tests for the agent loop."""

import asyncio
import json

import pytest

from querybuddy.core.agent import (
    MAX_ITERATIONS_MESSAGE,
    Agent,
    AgentMessage,
    AgentToolCall,
    Content,
    Failed,
    Finished,
    ToolCallArguments,
    ToolCallStarted,
    ToolResult,
)
from querybuddy.llm.anthropic_provider import AnthropicProvider
from querybuddy.llm.errors import ProviderError
from querybuddy.llm.types import (
    ChatResponse,
    ContentDelta,
    Done,
    FinishReason,
    Role,
    StreamError,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
)
from querybuddy.tools.definitions import DatabaseType, get_system_prompt

from tests.conftest import MockLLMProvider


def tool_round(*calls):
    return ChatResponse(
        tool_calls=[ToolCall(id=cid, name=name, arguments=args) for cid, name, args in calls],
        finish_reason=FinishReason.TOOL_CALLS,
    )


def make_agent(llm, data_access, **kwargs):
    return Agent(
        provider=llm,
        model="gpt-5",
        data_access=data_access,
        connection_id="conn-1",
        db_type=DatabaseType.SQLITE,
        **kwargs,
    )


async def drain(agent, text):
    async with agent.chat_stream(text) as stream:
        return [event async for event in stream]


class TestHistory:
    def test_starts_with_system_prompt(self, mock_llm, data_access):
        agent = make_agent(mock_llm, data_access)
        assert len(agent.history) == 1
        assert agent.history[0].role == Role.SYSTEM
        assert agent.history[0].content == get_system_prompt(DatabaseType.SQLITE)

    @pytest.mark.asyncio
    async def test_clear_history(self, mock_llm, data_access):
        agent = make_agent(mock_llm, data_access)
        await agent.chat("hi")
        agent.clear_history()
        assert [m.role for m in agent.history] == [Role.SYSTEM]

    def test_load_messages(self, mock_llm, data_access):
        agent = make_agent(mock_llm, data_access)
        agent.load_messages([
            AgentMessage(id="1", role="user", content="what tables?"),
            AgentMessage(id="2", role="assistant", content="", tool_calls=[
                AgentToolCall(id="c1", name="list_tables", arguments="{}", result="[]"),
                AgentToolCall(id="c2", name="list_tables", arguments="{}"),
            ]),
            AgentMessage(id="3", role="tool", content="ignored"),
            AgentMessage(id="4", role="assistant", content="There are none."),
        ])
        history = agent.history
        assert [m.role for m in history] == [
            Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT,
        ]
        assert history[2].content is None
        assert [tc.id for tc in history[2].tool_calls] == ["c1", "c2"]
        assert history[3].tool_call_id == "c1"
        assert history[4].content == "There are none."

    @pytest.mark.asyncio
    async def test_set_model_same_vendor_keeps_provider(self, mock_llm, data_access):
        agent = make_agent(mock_llm, data_access)
        await agent.set_model("gpt-5-mini", "key")
        assert agent.provider is mock_llm
        assert agent.model.id == "gpt-5-mini"

    @pytest.mark.asyncio
    async def test_set_model_other_vendor_rebuilds_provider(self, data_access):
        class ClosableProvider(MockLLMProvider):
            closed = False

            async def aclose(self):
                self.closed = True

        old = ClosableProvider()
        agent = make_agent(old, data_access)
        await agent.set_model("anthropic/claude-sonnet-4-5", "key")
        assert isinstance(agent.provider, AnthropicProvider)
        assert old.closed
        await agent.aclose()


class TestChatStream:
    @pytest.mark.asyncio
    async def test_simple_response(self, data_access):
        llm = MockLLMProvider([ChatResponse(content="Hello! How can I help?", finish_reason=FinishReason.STOP)])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "Hi there")

        assert "".join(e.text for e in events if isinstance(e, Content)) == "Hello! How can I help?"
        assert events[-1] == Finished(content="Hello! How can I help?")
        assert len(llm.calls) == 1
        assert [m.role for m in agent.history] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert agent.history[-1].content == "Hello! How can I help?"

    @pytest.mark.asyncio
    async def test_list_tables_scenario(self, data_access):
        llm = MockLLMProvider([
            tool_round(("call_1", "list_tables", "{}")),
            ChatResponse(content="There is one table: t1.", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "What tables are there?")

        assert ToolCallStarted(id="call_1", name="list_tables") in events
        results = [e for e in events if isinstance(e, ToolResult)]
        assert len(results) == 1
        assert json.loads(results[0].result) == [{"schema": "main", "name": "t1", "row_count": 3}]
        assert events[-1] == Finished(content="There is one table: t1.")

        history = agent.history
        assert [m.role for m in history] == [
            Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT,
        ]
        assert history[2].tool_calls == [ToolCall(id="call_1", name="list_tables", arguments="{}")]
        assert history[3].tool_call_id == "call_1"
        assert "t1" in history[3].content

        # Second provider call sees the tool result
        second_call_messages = llm.calls[1]["messages"]
        assert second_call_messages[-1].role == Role.TOOL
        assert llm.calls[0]["tools"][0].name == "list_tables"

    @pytest.mark.asyncio
    async def test_many_tool_rounds(self, data_access):
        rounds = 4
        llm = MockLLMProvider([
            *[tool_round((f"call_{i}", "list_tables", "{}")) for i in range(rounds)],
            ChatResponse(content="done", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "go")

        assert len(llm.calls) == rounds + 1
        assert sum(isinstance(e, ToolResult) for e in events) == rounds
        history = agent.history
        # system, user, then (assistant, tool) per round, then final assistant
        assert len(history) == 2 + 2 * rounds + 1
        for i in range(rounds):
            assistant, tool = history[2 + 2 * i], history[3 + 2 * i]
            assert assistant.tool_calls[0].id == f"call_{i}"
            assert tool.tool_call_id == f"call_{i}"

    @pytest.mark.asyncio
    async def test_parallel_tool_calls_recorded_before_results(self, data_access):
        llm = MockLLMProvider([
            tool_round(
                ("a", "list_tables", "{}"),
                ("b", "execute_select_query", '{"query": "SELECT * FROM t1"}'),
            ),
            ChatResponse(content="ok", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "go")

        history = agent.history
        assert [tc.id for tc in history[2].tool_calls] == ["a", "b"]
        assert history[2].tool_calls[1].arguments == '{"query": "SELECT * FROM t1"}'
        assert [history[3].tool_call_id, history[4].tool_call_id] == ["a", "b"]
        assert [e.id for e in events if isinstance(e, ToolResult)] == ["a", "b"]
        fragments = [e.arguments for e in events if isinstance(e, ToolCallArguments) and e.id == "b"]
        assert "".join(fragments) == '{"query": "SELECT * FROM t1"}'

    @pytest.mark.asyncio
    async def test_rejected_query_fed_back_to_model(self, data_access):
        llm = MockLLMProvider([
            tool_round(("c1", "execute_select_query", '{"query": "DELETE FROM t1"}')),
            ChatResponse(content="I can only read.", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "delete everything")

        assert events[-1] == Finished(content="I can only read.")
        tool_message = agent.history[3]
        assert "Only SELECT queries" in json.loads(tool_message.content)["error"]
        assert data_access.queries == []

    @pytest.mark.asyncio
    async def test_stream_error_ends_turn(self, data_access):
        llm = MockLLMProvider([[ContentDelta(text="partial"), StreamError(message="connection reset")]])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "hi")

        assert events == [Content(text="partial"), Failed(message="connection reset")]
        assert [m.role for m in agent.history] == [Role.SYSTEM, Role.USER]

    @pytest.mark.asyncio
    async def test_provider_error_on_open(self, data_access):
        class FailingProvider(MockLLMProvider):
            async def chat_stream(self, model, messages, tools):
                raise ProviderError("Invalid API key", error_type="authentication_error")
                yield  # pragma: no cover

        agent = make_agent(FailingProvider(), data_access)
        events = await drain(agent, "hi")
        assert events == [Failed(message="Invalid API key (authentication_error)")]

    @pytest.mark.asyncio
    async def test_stream_without_done_treated_as_stop(self, data_access):
        llm = MockLLMProvider([[ContentDelta(text="abrupt")]])
        agent = make_agent(llm, data_access)
        events = await drain(agent, "hi")
        assert events[-1] == Finished(content="abrupt")
        assert agent.history[-1].content == "abrupt"

    @pytest.mark.asyncio
    async def test_length_finish_with_empty_text_not_recorded(self, data_access):
        llm = MockLLMProvider([[Done(finish_reason=FinishReason.LENGTH)]])
        agent = make_agent(llm, data_access)
        events = await drain(agent, "hi")
        assert events == [Finished(content="")]
        assert [m.role for m in agent.history] == [Role.SYSTEM, Role.USER]

    @pytest.mark.asyncio
    async def test_events_after_done_ignored(self, data_access):
        llm = MockLLMProvider([[
            ContentDelta(text="a"),
            Done(finish_reason=FinishReason.STOP),
            ContentDelta(text="b"),
        ]])
        agent = make_agent(llm, data_access)
        events = await drain(agent, "hi")
        assert events == [Content(text="a"), Finished(content="a")]

    @pytest.mark.asyncio
    async def test_max_iterations(self, data_access):
        llm = MockLLMProvider([tool_round(("c", "list_tables", "{}"))])
        agent = make_agent(llm, data_access, max_iterations=3)
        events = await drain(agent, "loop forever")
        assert events[-1] == Failed(message=MAX_ITERATIONS_MESSAGE)
        assert len(llm.calls) == 3

    @pytest.mark.asyncio
    async def test_not_reentrant(self, data_access):
        llm = MockLLMProvider([[ContentDelta(text="x"), Done(finish_reason=FinishReason.STOP)]])
        agent = make_agent(llm, data_access)
        async with agent.chat_stream("first") as stream:
            with pytest.raises(RuntimeError):
                agent.chat_stream("second")
            _ = [e async for e in stream]
        # Free again once the turn has finished
        events = await drain(agent, "third")
        assert events[-1] == Finished(content="x")

    @pytest.mark.asyncio
    async def test_cancel_closes_provider_stream(self, data_access):
        release = asyncio.Event()

        class SlowProvider(MockLLMProvider):
            async def chat_stream(self, model, messages, tools):
                try:
                    yield ContentDelta(text="first")
                    await release.wait()
                    yield ContentDelta(text="never")
                finally:
                    self.closed_streams += 1

        llm = SlowProvider()
        agent = make_agent(llm, data_access)

        async with agent.chat_stream("hi") as stream:
            first = await stream.__anext__()
            assert first == Content(text="first")
            stream.cancel()
            assert [e async for e in stream] == []

        assert stream.done
        assert llm.closed_streams == 1
        # The agent accepts a new turn after cancellation
        release.set()
        events = await drain(agent, "again")
        assert events[-1] == Finished(content="firstnever")
        assert llm.closed_streams == 2

    @pytest.mark.asyncio
    async def test_finished_carries_text_of_every_round(self, data_access):
        llm = MockLLMProvider([
            ChatResponse(
                content="Let me look. ",
                tool_calls=[ToolCall(id="c1", name="list_tables", arguments="{}")],
                finish_reason=FinishReason.TOOL_CALLS,
            ),
            ChatResponse(content="There is 1 table.", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "tables?")

        assert events[-1] == Finished(content="Let me look. There is 1 table.")
        assert agent.history[2].content == "Let me look. "
        assert agent.history[-1].content == "There is 1 table."

    @pytest.mark.asyncio
    async def test_abandoned_stream_finishes_turn(self, data_access):
        llm = MockLLMProvider([
            [ContentDelta(text="x")] * 150 + [Done(finish_reason=FinishReason.STOP)],
            ChatResponse(content="ok", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access, queue_size=100)

        stream = agent.chat_stream("hi")
        del stream
        for _ in range(20):
            await asyncio.sleep(0)
            if agent._task.done():
                break

        assert agent._task.done()
        assert agent.history[-1].content == "x" * 150
        # The agent accepts the next turn
        events = await drain(agent, "again")
        assert events[-1] == Finished(content="ok")

    @pytest.mark.asyncio
    async def test_slow_reader_gets_end_marker_when_queue_overflows(self, data_access):
        llm = MockLLMProvider([[ContentDelta(text="x")] * 30 + [Done(finish_reason=FinishReason.STOP)]])
        agent = make_agent(llm, data_access, queue_size=10)

        stream = agent.chat_stream("hi")
        await agent._task
        events = [e async for e in stream]

        # Events beyond the queue capacity are dropped, the end marker never is
        assert len(events) == 10
        assert all(e == Content(text="x") for e in events)
        assert stream.done

    def test_event_serialization(self):
        assert Content(text="hi").to_dict() == {"type": "content", "data": "hi"}
        assert ToolCallStarted(id="c", name="n").to_dict() == {
            "type": "tool_call_start", "data": {"id": "c", "name": "n"}
        }
        assert ToolCallArguments(id="c", arguments="{}").to_dict()["type"] == "tool_call_delta"
        assert ToolResult(id="c", name="n", result="[]").to_dict() == {
            "type": "tool_result", "data": {"id": "c", "name": "n", "result": "[]"}
        }
        assert Finished(content="x").to_dict() == {"type": "done", "data": {"content": "x"}}
        assert Failed(message="bad").to_dict() == {"type": "error", "data": "bad"}


class TestChat:
    @pytest.mark.asyncio
    async def test_tool_call_then_response(self, data_access):
        llm = MockLLMProvider([
            ChatResponse(
                content="Let me check. ",
                tool_calls=[ToolCall(id="c1", name="list_tables", arguments="{}")],
                finish_reason=FinishReason.TOOL_CALLS,
            ),
            ChatResponse(content="You have t1.", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access)

        answer = await agent.chat("tables?")

        assert answer == "Let me check. You have t1."
        history = agent.history
        assert [m.role for m in history] == [
            Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT,
        ]
        assert history[2].content == "Let me check. "
        assert history[-1].content == "You have t1."

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, data_access):
        class FailingProvider(MockLLMProvider):
            async def chat(self, model, messages, tools):
                raise ProviderError("rate limited", is_retryable=True)

        agent = make_agent(FailingProvider(), data_access)
        with pytest.raises(ProviderError):
            await agent.chat("hi")
        # Busy flag is released after a failure
        with pytest.raises(ProviderError):
            await agent.chat("again")

    @pytest.mark.asyncio
    async def test_max_iterations(self, data_access):
        llm = MockLLMProvider([tool_round(("c", "list_tables", "{}"))])
        agent = make_agent(llm, data_access, max_iterations=2)
        with pytest.raises(ProviderError, match=MAX_ITERATIONS_MESSAGE):
            await agent.chat("loop")


class TestStreamEventsFromMock:
    @pytest.mark.asyncio
    async def test_tool_call_fragments_forwarded(self, data_access):
        llm = MockLLMProvider([
            [
                ToolCallStart(id="c1", name="get_table_sample"),
                ToolCallDelta(id="c1", arguments='{"schema": "main", '),
                ToolCallDelta(id="c1", arguments='"table": "t1", "limit": 2}'),
                Done(finish_reason=FinishReason.TOOL_CALLS),
            ],
            ChatResponse(content="Here are 2 rows.", finish_reason=FinishReason.STOP),
        ])
        agent = make_agent(llm, data_access)

        events = await drain(agent, "sample t1")

        result = next(e for e in events if isinstance(e, ToolResult))
        assert json.loads(result.result)["showing"] == 2
        assert agent.history[2].tool_calls[0].arguments == '{"schema": "main", "table": "t1", "limit": 2}'
