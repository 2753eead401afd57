"""
Core data types shared across Conduit subsystems.

This module defines the conversation data model (content blocks, messages,
model replies) and the capability record. They live here rather than in a
specific subsystem to avoid circular imports between the registry, the
policy gate, and the conversation driver.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

NO_CONTENT_TEXT = "No content available"
UNKNOWN_ERROR_TEXT = "Unknown error"


@dataclass(frozen=True)
class Capability:
    """A named, schema-described operation or resource a server exposes."""

    name: str
    description: Optional[str] = None
    input_schema: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_api_format(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class InvocationRequest:
    """A model-issued request to execute a capability with given arguments."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_api_format(self) -> dict[str, Any]:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": self.arguments,
        }


@dataclass(frozen=True)
class InvocationResult:
    request_id: str
    text: str
    is_error: bool = False

    def to_api_format(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.request_id,
            "content": self.text,
        }
        if self.is_error:
            block["is_error"] = True
        return block


ContentBlock = Union[TextBlock, InvocationRequest, InvocationResult]


@dataclass(frozen=True)
class ConversationMessage:
    """One message of the conversation: a role plus ordered content blocks."""

    role: str
    content: tuple[ContentBlock, ...]

    def __post_init__(self) -> None:
        if self.role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {self.role!r}")
        # Accept any iterable of blocks but store an immutable tuple.
        object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def user_text(cls, text: str) -> "ConversationMessage":
        return cls(role="user", content=(TextBlock(text),))

    @property
    def text(self) -> str:
        return " ".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_api_format(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": [block.to_api_format() for block in self.content],
        }


class Conversation:
    """
    The ordered message history of one logical conversation.

    History is append-only: messages are never edited, removed or reordered.
    The driver that owns a conversation is its only writer.
    """

    def __init__(self, messages: Optional[list[ConversationMessage]] = None):
        self._messages: list[ConversationMessage] = list(messages or [])

    @classmethod
    def from_query(cls, query: str) -> "Conversation":
        return cls([ConversationMessage.user_text(query)])

    def append(self, message: ConversationMessage) -> None:
        self._messages.append(message)

    @property
    def messages(self) -> tuple[ConversationMessage, ...]:
        return tuple(self._messages)

    def to_api_messages(self) -> list[dict[str, Any]]:
        return [message.to_api_format() for message in self._messages]

    def __iter__(self) -> Iterator[ConversationMessage]:
        return iter(tuple(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> ConversationMessage:
        return self._messages[index]


@dataclass(frozen=True)
class ModelReply:
    """Structured content of one model turn."""

    text_blocks: tuple[str, ...] = ()
    invocation_requests: tuple[InvocationRequest, ...] = ()
    stop_reason: Optional[str] = None

    @property
    def text(self) -> str:
        """Text blocks concatenated in arrival order, single-space separated."""
        return " ".join(self.text_blocks)

    @property
    def has_invocations(self) -> bool:
        return bool(self.invocation_requests)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of executing a capability on the server."""

    is_error: bool = False
    text: Optional[str] = None
