"""Tests for stored-message conversion."""

from conductor.core.messages import (
    Message,
    OMObservationEndContent,
    OMObservationFailedContent,
    OMObservationStartContent,
    TextContent,
    ThinkingContent,
    ToolCallContent,
    ToolResultContent,
    convert_stored_message,
)
from conductor.storage.base import StoredMessage


def _stored(*parts, role="assistant"):
    return StoredMessage(id="m1", thread_id="t1", role=role, parts=list(parts))


class TestConvertStoredMessage:
    def test_text_and_reasoning(self):
        message = convert_stored_message(
            _stored(
                {"type": "reasoning", "reasoning": "hmm"},
                {"type": "text", "text": "Hello"},
                {"type": "text", "text": ""},
            )
        )
        assert [type(c) for c in message.content] == [ThinkingContent, TextContent]
        assert message.text == "Hello"
        assert message.id == "m1"

    def test_tool_invocation_with_result(self):
        message = convert_stored_message(
            _stored(
                {
                    "type": "tool-invocation",
                    "toolInvocation": {
                        "toolCallId": "c1",
                        "toolName": "view",
                        "args": {"path": "a"},
                        "state": "result",
                        "result": "body",
                    },
                }
            )
        )
        call, result = message.content
        assert isinstance(call, ToolCallContent)
        assert call.args == {"path": "a"}
        assert isinstance(result, ToolResultContent)
        assert result.result == "body"

    def test_pending_tool_invocation_has_no_result(self):
        message = convert_stored_message(
            _stored(
                {
                    "type": "tool-invocation",
                    "toolInvocation": {"toolCallId": "c1", "toolName": "view", "state": "call"},
                }
            )
        )
        assert len(message.content) == 1

    def test_flat_tool_parts(self):
        message = convert_stored_message(
            _stored(
                {"type": "tool-invocation", "toolCallId": "c1", "toolName": "execute_command"},
                {
                    "type": "tool-result",
                    "toolCallId": "c1",
                    "toolName": "execute_command",
                    "result": "exit 1",
                    "isError": True,
                },
            )
        )
        call, result = message.content
        assert call.name == "execute_command"
        assert result.is_error is True

    def test_om_markers_become_inline_content(self):
        message = convert_stored_message(
            _stored(
                {"type": "data-om-observation-start", "data": {"tokensToObserve": 900}},
                {
                    "type": "data-om-observation-end",
                    "data": {
                        "tokensObserved": 900,
                        "observationTokens": 120,
                        "durationMs": 40,
                        "operationType": "reflection",
                    },
                },
                {"type": "data-om-observation-failed", "data": {}},
            )
        )
        start, end, failed = message.content
        assert isinstance(start, OMObservationStartContent)
        assert start.tokens_to_observe == 900
        assert isinstance(end, OMObservationEndContent)
        assert end.operation_type == "reflection"
        assert isinstance(failed, OMObservationFailedContent)
        assert failed.error == "Unknown error"

    def test_unknown_parts_are_skipped(self):
        message = convert_stored_message(
            _stored({"type": "step-start"}, {"type": "data-om-status", "data": {}}, role="user")
        )
        assert message.content == []
        assert message.role == "user"


class TestMessage:
    def test_find_tool_call(self):
        message = Message(content=[ToolCallContent(id="c1", name="view")])
        assert message.find_tool_call("c1").name == "view"
        assert message.find_tool_call("c2") is None
