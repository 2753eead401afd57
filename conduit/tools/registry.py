"""
Capability Registry — Conduit's live catalog of what the server offers.

The registry holds three independent collections fetched from the
Capability Channel: tools, resources (with resource templates) and prompts.
It serves two purposes:

1. DISCOVERY: before every model turn, the driver asks the registry for the
   current tool descriptors to send alongside the conversation.

2. SYNCHRONIZATION: the server announces list changes through notifications;
   each one triggers a refresh of only the affected kind.

Collections are replaced wholesale on refresh and exposed as tuples, so a
reader sees either the old snapshot or the new one, never a half-written
list. Each kind has exactly one writer at a time. Notifications are handed
to a per-kind queue and refreshed by a worker task, so the channel that
delivers them is never blocked waiting for a refresh.

A failed refresh is logged and leaves the previous collection in place: a
transient listing error must not abort a conversation in progress.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import structlog

from conduit.types import Capability, ExecutionResult

logger = structlog.get_logger(__name__)


class CapabilityKind(str, Enum):
    TOOLS = "tools"
    RESOURCES = "resources"
    PROMPTS = "prompts"


class CapabilityChannel(Protocol):
    """The server-side collaborator: listing, execution and change notifications."""

    async def list_tools(self) -> tuple[Capability, ...]: ...

    async def list_resources(
        self,
    ) -> tuple[tuple[Capability, ...], tuple[Capability, ...]]: ...

    async def list_prompts(self) -> tuple[Capability, ...]: ...

    async def execute(self, name: str, arguments: dict[str, Any]) -> ExecutionResult: ...

    def on_tools_changed(self, callback: Callable[[], None]) -> None: ...

    def on_resources_changed(self, callback: Callable[[], None]) -> None: ...

    def on_prompts_changed(self, callback: Callable[[], None]) -> None: ...


def tool_descriptor(tool: Capability) -> dict[str, Any]:
    """
    Convert a tool capability to the shape the Claude Messages API expects:

        {"name": ..., "description": ..., "input_schema": {JSON Schema}}
    """
    return {
        "name": tool.name,
        "description": tool.description or f"Tool: {tool.name}",
        "input_schema": tool.input_schema or {},
    }


class CapabilityRegistry:
    """
    Notification-synchronized snapshots of a server's capabilities.

    Lifecycle:
    1. initialize() - subscribe to change notifications, start the refresh
       workers and fetch all three kinds concurrently
    2. get() / tool_descriptors() - read the current snapshots
    3. notify() - (called by the channel) schedule a refresh of one kind
    4. close() - stop the refresh workers
    """

    def __init__(self, channel: CapabilityChannel):
        self._channel = channel
        self._collections: dict[CapabilityKind, tuple[Capability, ...]] = {
            kind: () for kind in CapabilityKind
        }
        self._resource_templates: tuple[Capability, ...] = ()
        self._write_locks: dict[CapabilityKind, asyncio.Lock] = {}
        self._queues: dict[CapabilityKind, asyncio.Queue[None]] = {}
        self._workers: dict[CapabilityKind, asyncio.Task] = {}
        self._subscribed = False

        self._refresh_count = 0
        self._failure_count = 0

        logger.info("capability_registry.initialized")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> "CapabilityRegistry":
        """Subscribe, start workers, and refresh every kind concurrently."""
        self._subscribe()
        self._start_workers()
        await asyncio.gather(*(self.refresh(kind) for kind in CapabilityKind))
        logger.info(
            "capability_registry.ready",
            tools=len(self._collections[CapabilityKind.TOOLS]),
            resources=len(self._collections[CapabilityKind.RESOURCES]),
            prompts=len(self._collections[CapabilityKind.PROMPTS]),
        )
        return self

    async def close(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    def _subscribe(self) -> None:
        if self._subscribed:
            return
        self._channel.on_tools_changed(lambda: self.notify(CapabilityKind.TOOLS))
        self._channel.on_resources_changed(lambda: self.notify(CapabilityKind.RESOURCES))
        self._channel.on_prompts_changed(lambda: self.notify(CapabilityKind.PROMPTS))
        self._subscribed = True

    def _start_workers(self) -> None:
        for kind in CapabilityKind:
            task = self._workers.get(kind)
            if task is None or task.done():
                self._workers[kind] = asyncio.create_task(
                    self._refresh_worker(kind),
                    name=f"conduit-refresh-{kind.value}",
                )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def notify(self, kind: CapabilityKind) -> None:
        """Schedule a refresh of ``kind`` without waiting for it."""
        logger.info("capability_registry.change_notified", kind=kind.value)
        self._queue(kind).put_nowait(None)

    def _queue(self, kind: CapabilityKind) -> asyncio.Queue[None]:
        queue = self._queues.get(kind)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[kind] = queue
        return queue

    async def _refresh_worker(self, kind: CapabilityKind) -> None:
        queue = self._queue(kind)
        while True:
            await queue.get()
            # Coalesce a burst of notifications into one refresh.
            while not queue.empty():
                queue.get_nowait()
            await self.refresh(kind)

    async def refresh(self, kind: CapabilityKind) -> None:
        """
        Fetch ``kind`` from the channel and replace its snapshot.

        Never raises: on failure the previous snapshot is retained.
        """
        lock = self._write_locks.get(kind)
        if lock is None:
            lock = self._write_locks[kind] = asyncio.Lock()

        async with lock:
            try:
                if kind is CapabilityKind.TOOLS:
                    tools = tuple(await self._channel.list_tools())
                    self._collections[kind] = tools
                elif kind is CapabilityKind.RESOURCES:
                    resources, templates = await self._channel.list_resources()
                    self._collections[kind] = tuple(resources)
                    self._resource_templates = tuple(templates)
                else:
                    prompts = tuple(await self._channel.list_prompts())
                    self._collections[kind] = prompts
            except Exception as e:
                self._failure_count += 1
                logger.error(
                    "capability_registry.refresh_failed",
                    kind=kind.value,
                    error=str(e),
                    retained=len(self._collections[kind]),
                )
                return

            self._refresh_count += 1
            logger.info(
                "capability_registry.refreshed",
                kind=kind.value,
                count=len(self._collections[kind]),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, kind: CapabilityKind) -> tuple[Capability, ...]:
        return self._collections[CapabilityKind(kind)]

    @property
    def tools(self) -> tuple[Capability, ...]:
        return self._collections[CapabilityKind.TOOLS]

    @property
    def resources(self) -> tuple[Capability, ...]:
        return self._collections[CapabilityKind.RESOURCES]

    @property
    def resource_templates(self) -> tuple[Capability, ...]:
        return self._resource_templates

    @property
    def prompts(self) -> tuple[Capability, ...]:
        return self._collections[CapabilityKind.PROMPTS]

    def find_tool(self, name: str) -> Optional[Capability]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def tool_descriptors(self) -> list[dict[str, Any]]:
        """Generate the tools array for the next model turn."""
        return [tool_descriptor(tool) for tool in self.tools]

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "tools": len(self.tools),
            "resources": len(self.resources),
            "resource_templates": len(self._resource_templates),
            "prompts": len(self.prompts),
            "refreshes": self._refresh_count,
            "refresh_failures": self._failure_count,
        }
