"""
The Conversation Driver — Conduit's tool-use loop.

The pattern:

    while True:
        reply = model.send(history, registry.tool_descriptors())
        if not reply.invocation_requests:
            break
        for request in reply.invocation_requests:      # one at a time, in order
            if gate.authorize(request):
                history += [request, channel.execute(request)]
            else:
                history += [denial]

Requests within a turn are resolved strictly sequentially: the policy gate
shows at most one approval prompt at a time, and the model's request order
is the order the tools take effect in. Each request is followed in history
by its result or denial before the next request is touched.

Failures split two ways. A tool that raises is recovered here: the error
becomes the tool's result and the model sees it next turn. A model call that
fails is not: it propagates to whoever started the conversation.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence, Union

import structlog

from conduit.harness.policy import PolicyDecision, PolicyGate
from conduit.tools.registry import CapabilityChannel, CapabilityRegistry
from conduit.types import (
    NO_CONTENT_TEXT,
    UNKNOWN_ERROR_TEXT,
    Conversation,
    ConversationMessage,
    InvocationRequest,
    InvocationResult,
    ModelReply,
    TextBlock,
)

logger = structlog.get_logger(__name__)


class ModelChannel(Protocol):
    async def send(
        self,
        history: Conversation,
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> ModelReply: ...


class DriverState(str, Enum):
    AWAITING_MODEL_TURN = "awaiting_model_turn"
    PROCESSING_INVOCATIONS = "processing_invocations"
    DONE = "done"


@dataclass(frozen=True)
class InvocationOutcome:
    """How one invocation request was resolved."""
    request: InvocationRequest
    status: str                      # "executed", "failed", "denied"
    text: str
    is_error: bool = False

    @property
    def executed(self) -> bool:
        return self.status != "denied"


def denial_text(name: str, decision: PolicyDecision) -> str:
    if decision.rate_limited:
        return f"Tool call to {name} was not approved: {decision.reason}."
    return f"Tool call to {name} was not approved by the user."


class ConversationDriver:
    """
    Drives one conversation from the first model turn to ``Done``.

    States: AWAITING_MODEL_TURN -> PROCESSING_INVOCATIONS -> AWAITING_MODEL_TURN
    ... -> DONE, reached when a model turn contains no invocation requests (or
    when the optional turn limit stops the loop early).
    """

    def __init__(
        self,
        model: ModelChannel,
        channel: CapabilityChannel,
        registry: CapabilityRegistry,
        gate: PolicyGate,
        max_turns: Optional[int] = None,
        on_text: Optional[Callable[[str], Any]] = None,
        on_invocation: Optional[Callable[[InvocationOutcome], Any]] = None,
    ):
        self._model = model
        self._channel = channel
        self._registry = registry
        self._gate = gate
        self._max_turns = max_turns if max_turns and max_turns > 0 else None
        self._on_text = on_text
        self._on_invocation = on_invocation
        self._state = DriverState.AWAITING_MODEL_TURN

        self._total_runs = 0
        self._total_turns = 0
        self._total_invocations = 0

        logger.info("conversation_driver.initialized", max_turns=self._max_turns)

    @property
    def state(self) -> DriverState:
        return self._state

    async def run(self, conversation: Union[str, Conversation]) -> "ConversationResult":
        """
        Run the conversation to completion.

        Args:
            conversation: A user query to start a new conversation with, or an
                existing conversation to continue (it is appended to in place).

        Returns:
            ConversationResult with the final text and the full history.

        Raises:
            Whatever the Model Channel raised (typically ``ModelCallError``).
        """
        if isinstance(conversation, str):
            conversation = Conversation.from_query(conversation)

        self._total_runs += 1
        self._state = DriverState.AWAITING_MODEL_TURN
        start_time = time.monotonic()
        turns = 0
        outcomes: list[InvocationOutcome] = []
        final_text = ""
        truncated = False

        logger.info("conversation_driver.starting", message_count=len(conversation))

        while True:
            if self._max_turns is not None and turns >= self._max_turns:
                truncated = True
                logger.warning(
                    "conversation_driver.max_turns",
                    max_turns=self._max_turns,
                    invocations=len(outcomes),
                )
                break

            turns += 1
            self._total_turns += 1
            reply = await self.start_turn(conversation)
            final_text = reply.text
            if final_text:
                self._invoke_callback("on_text", self._on_text, final_text)

            if not reply.has_invocations:
                if reply.text_blocks:
                    conversation.append(ConversationMessage(
                        role="assistant",
                        content=tuple(TextBlock(t) for t in reply.text_blocks),
                    ))
                logger.info(
                    "conversation_driver.complete",
                    turns=turns,
                    invocations=len(outcomes),
                    response_length=len(final_text),
                )
                break

            outcomes.extend(
                await self.process_invocations(reply.invocation_requests, conversation)
            )

        self._state = DriverState.DONE
        return ConversationResult(
            text=final_text,
            messages=conversation.messages,
            turns=turns,
            invocations=outcomes,
            elapsed_seconds=time.monotonic() - start_time,
            was_truncated=truncated,
        )

    async def start_turn(self, conversation: Conversation) -> ModelReply:
        """Send the history and the current tool descriptors to the model."""
        self._state = DriverState.AWAITING_MODEL_TURN
        tools = self._registry.tool_descriptors()
        try:
            reply = await self._model.send(conversation, tools)
        except Exception as e:
            logger.error(
                "conversation_driver.model_call_failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        logger.debug(
            "conversation_driver.turn_received",
            text_blocks=len(reply.text_blocks),
            invocation_requests=len(reply.invocation_requests),
        )
        return reply

    async def process_invocations(
        self,
        requests: Sequence[InvocationRequest],
        conversation: Conversation,
    ) -> list[InvocationOutcome]:
        """Resolve each request in order; never two at once."""
        self._state = DriverState.PROCESSING_INVOCATIONS
        outcomes = []
        for request in requests:
            self._total_invocations += 1
            outcome = await self._resolve(request, conversation)
            outcomes.append(outcome)
            self._invoke_callback("on_invocation", self._on_invocation, outcome)
        self._state = DriverState.AWAITING_MODEL_TURN
        return outcomes

    async def _resolve(
        self,
        request: InvocationRequest,
        conversation: Conversation,
    ) -> InvocationOutcome:
        logger.info(
            "conversation_driver.invocation_requested",
            tool=request.name,
            arguments=request.arguments,
        )

        # The approval prompt blocks; keep the event loop free for notifications.
        decision = await asyncio.to_thread(self._gate.check, request.name, request.arguments)
        if not decision.allowed:
            text = denial_text(request.name, decision)
            conversation.append(ConversationMessage(role="user", content=(TextBlock(text),)))
            logger.warning(
                "conversation_driver.invocation_denied",
                tool=request.name,
                reason=decision.reason,
            )
            return InvocationOutcome(request=request, status="denied", text=text)

        conversation.append(ConversationMessage(role="assistant", content=(request,)))
        try:
            result = await self._channel.execute(request.name, request.arguments)
        except Exception as e:
            logger.error(
                "conversation_driver.invocation_failed",
                tool=request.name,
                request_id=request.id,
                error=str(e),
            )
            text = f"Error executing tool {request.name}: {e}"
            conversation.append(ConversationMessage(
                role="user",
                content=(InvocationResult(request_id=request.id, text=text, is_error=True),),
            ))
            return InvocationOutcome(request=request, status="failed", text=text, is_error=True)

        if result.is_error:
            text = f"Error: {result.text or UNKNOWN_ERROR_TEXT}"
        else:
            text = result.text or NO_CONTENT_TEXT
        conversation.append(ConversationMessage(
            role="user",
            content=(InvocationResult(request_id=request.id, text=text, is_error=result.is_error),),
        ))
        logger.debug(
            "conversation_driver.invocation_executed",
            tool=request.name,
            is_error=result.is_error,
        )
        return InvocationOutcome(
            request=request,
            status="failed" if result.is_error else "executed",
            text=text,
            is_error=result.is_error,
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_turns": self._total_turns,
            "total_invocations": self._total_invocations,
            "state": self._state.value,
        }

    @staticmethod
    def _invoke_callback(name: str, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Run callback hooks without letting callback failures crash the loop."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as callback_error:
            logger.warning(
                "conversation_driver.callback_failed",
                callback=name,
                error=str(callback_error),
            )


class ConversationResult:
    """
    The complete result of a conversation run: the final text, every
    invocation outcome in order, and the full message history.
    """

    def __init__(
        self,
        text: str,
        messages: tuple[ConversationMessage, ...] = (),
        turns: int = 0,
        invocations: Optional[list[InvocationOutcome]] = None,
        elapsed_seconds: float = 0.0,
        was_truncated: bool = False,
    ):
        self.text = text
        self.messages = messages
        self.turns = turns
        self.invocations = invocations or []
        self.elapsed_seconds = elapsed_seconds
        self.was_truncated = was_truncated

    @property
    def used_tools(self) -> bool:
        return any(outcome.executed for outcome in self.invocations)

    @property
    def tool_names_used(self) -> list[str]:
        return sorted({o.request.name for o in self.invocations if o.executed})
