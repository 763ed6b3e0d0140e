"""Tests for the stream assembler."""

from __future__ import annotations

import asyncio

import pytest

from conductor.agents.base import StreamRequest
from conductor.agents.events import (
    Finish,
    ReasoningDelta,
    ReasoningStart,
    StepFinish,
    StepUsage,
    StreamError,
    TextDelta,
    TextStart,
    ToolCall,
    ToolError,
    ToolResult,
)
from conductor.core.memory import OMProgressTracker
from conductor.core.messages import (
    TextContent,
    ThinkingContent,
    ToolCallContent,
    ToolResultContent,
)
from conductor.core.safety.approvals import ApprovalCoordinator, ApprovalDecision
from conductor.core.session import Session
from conductor.core.stream import StreamAssembler, map_finish_reason
from conductor.exceptions import AgentError, OperationAborted
from tests.conftest import FakeExecutionService, approval_request, reply, wait_until


async def _events(items):
    for item in items:
        yield item


class _Harness:
    def __init__(self, service=None, hooks=None):
        self.session = Session(resource_id="r", mode_id="build")
        self.handle = self.session.next_operation()
        self.service = service or FakeExecutionService()
        self.emitted: list[tuple[str, dict]] = []
        self.usage_persisted = 0
        self.request = StreamRequest(
            content="hi",
            thread_id="thread-1",
            resource_id="r",
            mode_id="build",
            model_id="anthropic/claude",
            handle=self.handle,
        )
        self.approvals = ApprovalCoordinator(self.session, self.emit, hooks)
        self.tracker = OMProgressTracker()
        self.assembler = StreamAssembler(
            session=self.session,
            service=self.service,
            request=self.request,
            approvals=self.approvals,
            tracker=self.tracker,
            emit=self.emit,
            hooks=hooks,
            persist_usage=self.persist_usage,
        )

    async def emit(self, name, data):
        self.emitted.append((name, data))

    async def persist_usage(self):
        self.usage_persisted += 1

    def names(self):
        return [name for name, _ in self.emitted]


@pytest.fixture
def harness():
    return _Harness()


class TestFinishReason:
    def test_tool_calls(self):
        assert map_finish_reason("tool-calls") == "tool_use"

    @pytest.mark.parametrize("reason", ["stop", "length", "content-filter", None])
    def test_everything_else_completes(self, reason):
        assert map_finish_reason(reason) == "complete"


class TestTextAssembly:
    @pytest.mark.asyncio
    async def test_assembles_text_from_wire_chunks(self, harness):
        stream = _events(
            [
                {"type": "text-start", "runId": "run-9", "payload": {"id": "a"}},
                {"type": "text-delta", "payload": {"id": "a", "text": "Hel"}},
                {"type": "text-delta", "payload": {"id": "a", "text": "lo"}},
                {"type": "finish", "payload": {"stepResult": {"reason": "stop"}}},
            ]
        )
        message = await harness.assembler.run(stream)

        assert message.text == "Hello"
        assert message.stop_reason == "complete"
        assert harness.session.run_id == "run-9"
        assert harness.names().count("message_start") == 1
        assert harness.names()[-1] == "message_end"

    @pytest.mark.asyncio
    async def test_delta_for_unknown_span_is_ignored(self, harness):
        stream = _events(
            [
                TextStart(id="a"),
                TextDelta(id="zzz", text="lost"),
                TextDelta(id="a", text="kept"),
            ]
        )
        message = await harness.assembler.run(stream)
        assert message.text == "kept"

    @pytest.mark.asyncio
    async def test_reasoning_and_text_keep_arrival_order(self, harness):
        stream = _events(
            [
                ReasoningStart(id="r"),
                TextStart(id="t"),
                ReasoningDelta(id="r", text="thinking..."),
                TextDelta(id="t", text="answer"),
            ]
        )
        message = await harness.assembler.run(stream)
        assert [type(c) for c in message.content] == [ThinkingContent, TextContent]
        assert message.content[0].thinking == "thinking..."

    @pytest.mark.asyncio
    async def test_missing_finish_defaults_to_complete(self, harness):
        message = await harness.assembler.run(_events([TextStart(id="a")]))
        assert message.stop_reason == "complete"

    @pytest.mark.asyncio
    async def test_tool_use_finish(self, harness):
        message = await harness.assembler.run(_events([Finish(reason="tool-calls")]))
        assert message.stop_reason == "tool_use"

    @pytest.mark.asyncio
    async def test_returned_message_is_a_copy(self, harness):
        message = await harness.assembler.run(_events(reply("hi")))
        end = harness.emitted[-1][1]["message"]
        message.content.clear()
        assert end["content"][0]["text"] == "hi"

    @pytest.mark.asyncio
    async def test_cannot_run_twice(self, harness):
        await harness.assembler.run(_events([]))
        with pytest.raises(AgentError):
            await harness.assembler.run(_events([]))


class TestToolEvents:
    @pytest.mark.asyncio
    async def test_call_then_result(self, harness):
        stream = _events(
            [
                ToolCall(tool_call_id="c1", tool_name="view", args={"path": "a.py"}),
                ToolResult(tool_call_id="c1", tool_name="view", result="contents"),
            ]
        )
        message = await harness.assembler.run(stream)

        assert isinstance(message.content[0], ToolCallContent)
        result = message.content[1]
        assert isinstance(result, ToolResultContent)
        assert result.result == "contents"
        assert result.is_error is False
        start = dict(harness.emitted)["tool_start"]
        assert start == {"tool_call_id": "c1", "tool_name": "view", "args": {"path": "a.py"}}
        end = dict(harness.emitted)["tool_end"]
        assert end == {"tool_call_id": "c1", "result": "contents", "is_error": False}

    @pytest.mark.asyncio
    async def test_tool_error_marks_result(self, harness):
        stream = _events(
            [
                ToolCall(tool_call_id="c1", tool_name="execute_command"),
                ToolError(tool_call_id="c1", error="exit 1"),
            ]
        )
        message = await harness.assembler.run(stream)
        result = message.content[1]
        assert result.is_error is True
        assert result.name == "execute_command"


class TestUsage:
    @pytest.mark.asyncio
    async def test_step_usage_accumulates(self, harness):
        stream = _events(
            [
                StepFinish(usage=StepUsage(prompt_tokens=10, completion_tokens=5)),
                StepFinish(usage=StepUsage(prompt_tokens=3, completion_tokens=2)),
            ]
        )
        await harness.assembler.run(stream)
        await asyncio.sleep(0)

        usage = harness.session.token_usage
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (
            13,
            7,
            20,
        )
        updates = [d for n, d in harness.emitted if n == "usage_update"]
        assert updates[1]["usage"] == {
            "prompt_tokens": 3,
            "completion_tokens": 2,
            "total_tokens": 5,
        }
        assert harness.usage_persisted == 2

    @pytest.mark.asyncio
    async def test_wire_step_finish(self, harness):
        chunk = {
            "type": "step-finish",
            "payload": {"output": {"usage": {"promptTokens": 7, "completionTokens": 1}}},
        }
        await harness.assembler.run(_events([chunk]))
        assert harness.session.token_usage.total_tokens == 8


class TestApprovalSuspension:
    @pytest.mark.asyncio
    async def test_waits_for_user_then_resumes(self):
        service = FakeExecutionService(resumes=[[ToolResult(tool_call_id="call-1", tool_name="write_file", result="ok")]])
        harness = _Harness(service)
        task = asyncio.create_task(
            harness.assembler.run(_events(approval_request("write_file", {"path": "x"})))
        )
        await wait_until(lambda: harness.approvals.pending_count == 1)

        assert "tool_approval_required" in harness.names()
        assert harness.approvals.resolve(ApprovalDecision.APPROVE)
        message = await task

        assert service.resumes == [("approve", "run-1", "call-1")]
        assert message.content[-1].result == "ok"
        assert harness.approvals.pending_count == 0

    @pytest.mark.asyncio
    async def test_decline_resumes_with_decline(self):
        service = FakeExecutionService()
        harness = _Harness(service)
        task = asyncio.create_task(
            harness.assembler.run(_events(approval_request("execute_command")))
        )
        await wait_until(lambda: harness.approvals.pending_count == 1)
        harness.approvals.resolve(ApprovalDecision.DECLINE)
        message = await task

        assert service.resumes == [("decline", "run-1", "call-1")]
        assert message.text == "resumed"

    @pytest.mark.asyncio
    async def test_allowed_tool_resumes_without_asking(self):
        service = FakeExecutionService()
        harness = _Harness(service)
        await harness.assembler.run(_events(approval_request("view")))

        assert "tool_approval_required" not in harness.names()
        assert service.resumes == [("approve", "run-1", "call-1")]

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_aborts(self):
        harness = _Harness()
        task = asyncio.create_task(
            harness.assembler.run(_events(approval_request("write_file")))
        )
        await wait_until(lambda: harness.approvals.pending_count == 1)
        harness.handle.cancel(user=True)

        with pytest.raises(OperationAborted):
            await task
        assert harness.approvals.pending_count == 0
        assert harness.service.resumes == []


class TestCancellationAndErrors:
    @pytest.mark.asyncio
    async def test_cancelled_handle_stops_consumption(self, harness):
        harness.handle.cancel()
        with pytest.raises(OperationAborted):
            await harness.assembler.run(_events(reply("never")))
        assert "message_start" not in harness.names()

    @pytest.mark.asyncio
    async def test_stream_error_event_is_surfaced(self, harness):
        await harness.assembler.run(_events([StreamError(error="provider hiccup")]))
        assert dict(harness.emitted)["error"]["message"] == "provider hiccup"

    @pytest.mark.asyncio
    async def test_exceptions_propagate(self, harness):
        async def broken():
            yield TextStart(id="a")
            raise RuntimeError("stream died")

        with pytest.raises(RuntimeError, match="stream died"):
            await harness.assembler.run(broken())


class TestOMEvents:
    @pytest.mark.asyncio
    async def test_om_events_update_tracker(self, harness):
        stream = _events(
            [
                {
                    "type": "data-om-observation-start",
                    "data": {"cycleId": "c1", "tokensToObserve": 1200},
                },
                {"type": "data-om-status", "data": {"pendingTokens": 500, "messageTokens": 30000}},
            ]
        )
        await harness.assembler.run(stream)

        assert harness.names()[:2] == ["om_observation_start", "om_status"]
        progress = harness.tracker.snapshot()
        assert progress.observation.status == "running"
        assert progress.observation.tokens == 1200
        assert progress.active.message_tokens == 500
