"""
Fakes shared by the Conduit test suite.

Provides scripted Model and Capability channels, a controllable clock and a
recording approval surface, so individual test modules can focus on behavior
rather than setup. No test touches the network or spawns a server.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from conduit.types import (
    Capability,
    Conversation,
    ExecutionResult,
    InvocationRequest,
    ModelReply,
)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class ManualClock:
    """A monotonic clock that only moves when a test says so."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------

class RecordingApproval:
    """Approval surface that answers from a script and records every prompt."""

    def __init__(self, answers: Optional[list[bool]] = None, default: bool = True):
        self._answers = list(answers or [])
        self._default = default
        self.prompts: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, name: str, arguments: dict[str, Any]) -> bool:
        self.prompts.append((name, arguments))
        if self._answers:
            return self._answers.pop(0)
        return self._default


# ---------------------------------------------------------------------------
# Model channel
# ---------------------------------------------------------------------------

def text_reply(*texts: str) -> ModelReply:
    return ModelReply(text_blocks=tuple(texts), stop_reason="end_turn")


def tool_reply(*requests: InvocationRequest, texts: tuple[str, ...] = ()) -> ModelReply:
    return ModelReply(
        text_blocks=texts,
        invocation_requests=tuple(requests),
        stop_reason="tool_use",
    )


class ScriptedModelChannel:
    """
    Returns pre-scripted replies in order and records what it was sent.

    An Exception in the script is raised instead of returned.
    """

    def __init__(self, replies: list[ModelReply | Exception]):
        self._replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def send(
        self,
        history: Conversation,
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> ModelReply:
        self.calls.append({"history": list(history), "tools": tools})
        if not self._replies:
            return text_reply("[no more scripted replies]")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


# ---------------------------------------------------------------------------
# Capability channel
# ---------------------------------------------------------------------------

class FakeCapabilityChannel:
    """
    In-memory Capability Channel.

    Listing results are plain attributes tests can swap; ``fail_*`` flags make
    the next listing raise. ``results`` maps tool name to an ExecutionResult,
    an Exception to raise, or a callable producing either.
    """

    def __init__(
        self,
        tools: Optional[list[Capability]] = None,
        resources: Optional[list[Capability]] = None,
        templates: Optional[list[Capability]] = None,
        prompts: Optional[list[Capability]] = None,
        results: Optional[dict[str, Any]] = None,
    ):
        self.tools = list(tools or [])
        self.resources = list(resources or [])
        self.templates = list(templates or [])
        self.prompts = list(prompts or [])
        self.results: dict[str, Any] = dict(results or {})
        self.fail_tools = False
        self.fail_resources = False
        self.fail_prompts = False
        self.list_calls: dict[str, int] = {"tools": 0, "resources": 0, "prompts": 0}
        self.executions: list[tuple[str, dict[str, Any]]] = []
        self.execute_delays: dict[str, float] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._listeners: dict[str, list[Callable[[], None]]] = {
            "tools": [],
            "resources": [],
            "prompts": [],
        }

    async def list_tools(self) -> tuple[Capability, ...]:
        self.list_calls["tools"] += 1
        if self.fail_tools:
            raise ConnectionError("tools/list failed")
        return tuple(self.tools)

    async def list_resources(self) -> tuple[tuple[Capability, ...], tuple[Capability, ...]]:
        self.list_calls["resources"] += 1
        if self.fail_resources:
            raise ConnectionError("resources/list failed")
        return tuple(self.resources), tuple(self.templates)

    async def list_prompts(self) -> tuple[Capability, ...]:
        self.list_calls["prompts"] += 1
        if self.fail_prompts:
            raise ConnectionError("prompts/list failed")
        return tuple(self.prompts)

    async def execute(self, name: str, arguments: dict[str, Any]) -> ExecutionResult:
        self.executions.append((name, arguments))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.execute_delays.get(name, 0.0)
            if delay:
                await asyncio.sleep(delay)
            outcome = self.results.get(name, ExecutionResult(text=f"{name} ok"))
            if callable(outcome) and not isinstance(outcome, ExecutionResult):
                outcome = outcome(arguments)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    def on_tools_changed(self, callback: Callable[[], None]) -> None:
        self._listeners["tools"].append(callback)

    def on_resources_changed(self, callback: Callable[[], None]) -> None:
        self._listeners["resources"].append(callback)

    def on_prompts_changed(self, callback: Callable[[], None]) -> None:
        self._listeners["prompts"].append(callback)

    def fire(self, kind: str) -> None:
        for callback in self._listeners[kind]:
            callback()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


