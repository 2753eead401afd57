"""Tests for conduit.types — the conversation data model."""

from __future__ import annotations

import pytest

from conduit.types import (
    Conversation,
    ConversationMessage,
    InvocationRequest,
    InvocationResult,
    ModelReply,
    TextBlock,
)


class TestContentBlocks:

    def test_invocation_result_omits_is_error_when_false(self):
        assert InvocationResult(request_id="t1", text="ok").to_api_format() == {
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": "ok",
        }

    def test_invocation_result_marks_errors(self):
        block = InvocationResult(request_id="t1", text="Error: x", is_error=True).to_api_format()
        assert block["is_error"] is True

    def test_invocation_request_api_format(self):
        request = InvocationRequest(id="t1", name="read-data", arguments={"key": "a"})
        assert request.to_api_format() == {
            "type": "tool_use",
            "id": "t1",
            "name": "read-data",
            "input": {"key": "a"},
        }


class TestConversationMessage:

    def test_rejects_unknown_role(self):
        with pytest.raises(ValueError, match="Invalid message role"):
            ConversationMessage(role="system", content=())

    def test_content_stored_as_tuple(self):
        message = ConversationMessage(role="user", content=[TextBlock("a")])
        assert message.content == (TextBlock("a"),)

    def test_text_joins_only_text_blocks(self):
        message = ConversationMessage(
            role="assistant",
            content=(TextBlock("a"), InvocationRequest(id="t", name="n"), TextBlock("b")),
        )
        assert message.text == "a b"


class TestConversation:

    def test_append_only_history(self):
        conversation = Conversation.from_query("hi")
        snapshot = conversation.messages
        conversation.append(ConversationMessage(role="assistant", content=(TextBlock("hello"),)))

        assert len(snapshot) == 1
        assert len(conversation) == 2
        assert conversation[1].role == "assistant"
        assert [m.role for m in conversation] == ["user", "assistant"]

    def test_to_api_messages(self):
        conversation = Conversation.from_query("hi")
        assert conversation.to_api_messages() == [
            {"role": "user", "content": [{"type": "text", "text": "hi"}]},
        ]


class TestModelReply:

    def test_text_single_space_separated(self):
        assert ModelReply(text_blocks=("a", "b", "c")).text == "a b c"

    def test_empty_reply(self):
        reply = ModelReply()
        assert reply.text == ""
        assert reply.has_invocations is False

    def test_has_invocations(self):
        reply = ModelReply(invocation_requests=(InvocationRequest(id="1", name="x"),))
        assert reply.has_invocations is True
