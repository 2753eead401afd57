"""
MCP Channel — Conduit's connection to an MCP server.

The wire protocol is handled by the official ``mcp`` client SDK; this module
adapts a ``ClientSession`` to the Capability Channel interface the registry
and the conversation driver consume:

- stdio servers (a subprocess speaking MCP on stdin/stdout)
- streamable HTTP servers

Listing results are converted into ``Capability`` records, tool results into
``ExecutionResult``, and the server's ``list_changed`` notifications are
routed to the callbacks subscribed through ``on_*_changed``.
"""

from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

import structlog
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

from conduit import __version__
from conduit.types import Capability, ExecutionResult

logger = structlog.get_logger(__name__)


class CapabilityChannelError(RuntimeError):
    """Raised when the channel is used without a live MCP session."""


@dataclass
class MCPServerConfig:
    """Configuration for connecting to an MCP server."""

    name: str
    transport: str = "stdio"  # "stdio" or "streamable_http"
    command: Optional[str] = None  # For stdio: command to launch server
    args: list[str] = field(default_factory=list)
    url: Optional[str] = None  # For HTTP: server URL
    api_key: Optional[str] = None  # For HTTP: bearer token
    env: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 20.0

    def __post_init__(self) -> None:
        self.transport = self.transport.strip().lower()
        if self.transport == "stdio":
            if not self.command:
                raise ValueError(f"MCP server '{self.name}' missing 'command' for stdio transport.")
        elif self.transport == "streamable_http":
            if not self.url:
                raise ValueError(
                    f"MCP server '{self.name}' missing URL for streamable_http transport."
                )
        else:
            raise ValueError(
                f"Unsupported MCP transport '{self.transport}' for server '{self.name}'."
            )


def _tool_to_capability(tool: types.Tool) -> Capability:
    return Capability(
        name=tool.name,
        description=tool.description,
        input_schema=dict(tool.inputSchema or {}),
    )


def _resource_to_capability(resource: types.Resource) -> Capability:
    return Capability(
        name=resource.name,
        description=resource.description,
        metadata={"uri": str(resource.uri), "mimeType": resource.mimeType},
    )


def _template_to_capability(template: types.ResourceTemplate) -> Capability:
    return Capability(
        name=template.name,
        description=template.description,
        metadata={"uriTemplate": template.uriTemplate, "mimeType": template.mimeType},
    )


def _prompt_to_capability(prompt: types.Prompt) -> Capability:
    """Prompts carry an argument list; expose it as a flat string-valued schema."""
    arguments = list(prompt.arguments or [])
    schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            arg.name: {"type": "string", "description": arg.description or ""}
            for arg in arguments
        },
    }
    required = [arg.name for arg in arguments if arg.required]
    if required:
        schema["required"] = required
    return Capability(
        name=prompt.name,
        description=prompt.description,
        input_schema=schema,
        metadata={"arguments": [arg.model_dump(exclude_none=True) for arg in arguments]},
    )


def _first_text(content: Any) -> Optional[str]:
    """Return the first text payload of a tool result, if the result has one."""
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, types.TextContent):
            return block.text
        text = getattr(block, "text", None)
        if isinstance(text, str):
            return text
    return None


class MCPCapabilityChannel:
    """
    Capability Channel backed by a single MCP client session.

    Lifecycle:
    1. connect() - launch/attach the transport and run the initialize handshake
    2. list_tools() / list_resources() / list_prompts() - discovery
    3. execute() - proxy a tool call to the server (tools/call)
    4. close() - tear down the session and transport

    Also usable as ``async with MCPCapabilityChannel(config) as channel:``.
    """

    def __init__(self, config: MCPServerConfig):
        self._config = config
        self._session: Optional[ClientSession] = None
        self._exit_stack: Optional[AsyncExitStack] = None
        self._server_capabilities: Optional[types.ServerCapabilities] = None
        self._listeners: dict[str, list[Callable[[], None]]] = {
            "tools": [],
            "resources": [],
            "prompts": [],
        }

        logger.info(
            "mcp_channel.initialized",
            server=config.name,
            transport=config.transport,
        )

    @property
    def server_name(self) -> str:
        return self._config.name

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def __aenter__(self) -> "MCPCapabilityChannel":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the transport and complete the MCP initialize handshake."""
        if self._session is not None:
            return

        stack = AsyncExitStack()
        try:
            if self._config.transport == "stdio":
                params = StdioServerParameters(
                    command=self._config.command,
                    args=list(self._config.args),
                    env={str(k): str(v) for k, v in self._config.env.items()} or None,
                )
                read_stream, write_stream = await stack.enter_async_context(
                    stdio_client(params)
                )
            else:
                headers: dict[str, str] = {}
                if self._config.api_key:
                    headers["Authorization"] = f"Bearer {self._config.api_key}"
                read_stream, write_stream, _ = await stack.enter_async_context(
                    streamablehttp_client(self._config.url, headers=headers or None)
                )

            session = await stack.enter_async_context(
                ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=timedelta(seconds=self._config.timeout_seconds),
                    message_handler=self._handle_message,
                    client_info=types.Implementation(name="conduit", version=__version__),
                )
            )
            init_result = await session.initialize()
        except Exception as e:
            await stack.aclose()
            logger.error(
                "mcp_channel.connection_failed",
                server=self._config.name,
                error=str(e),
            )
            raise

        self._exit_stack = stack
        self._session = session
        self._server_capabilities = init_result.capabilities
        logger.info(
            "mcp_channel.connected",
            server=self._config.name,
            transport=self._config.transport,
            server_info=init_result.serverInfo.name,
        )

    async def close(self) -> None:
        """Gracefully disconnect from the server."""
        stack = self._exit_stack
        self._exit_stack = None
        self._session = None
        self._server_capabilities = None
        if stack is None:
            return
        try:
            await stack.aclose()
            logger.info("mcp_channel.disconnected", server=self._config.name)
        except Exception as e:
            logger.error("mcp_channel.shutdown_error", server=self._config.name, error=str(e))

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise CapabilityChannelError(
                f"MCP server '{self._config.name}' is not connected"
            )
        return self._session

    def _supports(self, kind: str) -> bool:
        """Whether the server advertised ``kind`` during the handshake."""
        caps = self._server_capabilities
        if caps is None:
            return True
        return getattr(caps, kind, None) is not None

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list_tools(self) -> tuple[Capability, ...]:
        session = self._require_session()
        if not self._supports("tools"):
            return ()
        result = await session.list_tools()
        return tuple(_tool_to_capability(tool) for tool in result.tools)

    async def list_resources(self) -> tuple[tuple[Capability, ...], tuple[Capability, ...]]:
        session = self._require_session()
        if not self._supports("resources"):
            return (), ()
        result = await session.list_resources()
        resources = tuple(_resource_to_capability(r) for r in result.resources)
        try:
            templates_result = await session.list_resource_templates()
            templates = tuple(
                _template_to_capability(t) for t in templates_result.resourceTemplates
            )
        except McpError as e:
            logger.debug(
                "mcp_channel.resource_templates_unavailable",
                server=self._config.name,
                error=str(e),
            )
            templates = ()
        return resources, templates

    async def list_prompts(self) -> tuple[Capability, ...]:
        session = self._require_session()
        if not self._supports("prompts"):
            return ()
        result = await session.list_prompts()
        return tuple(_prompt_to_capability(p) for p in result.prompts)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, name: str, arguments: dict[str, Any]) -> ExecutionResult:
        """Execute a tool on the server via tools/call."""
        session = self._require_session()
        logger.info("mcp_channel.executing_tool", server=self._config.name, tool=name)
        result = await session.call_tool(name, arguments)
        return ExecutionResult(
            is_error=bool(result.isError),
            text=_first_text(result.content),
        )

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------

    def on_tools_changed(self, callback: Callable[[], None]) -> None:
        self._listeners["tools"].append(callback)

    def on_resources_changed(self, callback: Callable[[], None]) -> None:
        self._listeners["resources"].append(callback)

    def on_prompts_changed(self, callback: Callable[[], None]) -> None:
        self._listeners["prompts"].append(callback)

    async def _handle_message(self, message: Any) -> None:
        """Session message handler: route list_changed notifications."""
        if isinstance(message, Exception):
            logger.warning(
                "mcp_channel.session_error",
                server=self._config.name,
                error=str(message),
            )
            return
        if not isinstance(message, types.ServerNotification):
            return

        notification = message.root
        if isinstance(notification, types.ToolListChangedNotification):
            self._fire("tools")
        elif isinstance(notification, types.ResourceListChangedNotification):
            self._fire("resources")
        elif isinstance(notification, types.PromptListChangedNotification):
            self._fire("prompts")

    def _fire(self, kind: str) -> None:
        logger.debug("mcp_channel.list_changed", server=self._config.name, kind=kind)
        for callback in list(self._listeners[kind]):
            try:
                callback()
            except Exception as e:
                logger.warning(
                    "mcp_channel.listener_failed",
                    server=self._config.name,
                    kind=kind,
                    error=str(e),
                )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "server": self._config.name,
            "transport": self._config.transport,
            "connected": self.connected,
        }
