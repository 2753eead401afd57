"""
Main — wiring Conduit together for an interactive session.

This module:
  1. Configures logging (structlog over stdlib logging)
  2. Connects to the configured MCP server
  3. Initializes the Capability Registry
  4. Runs the chat loop, one Conversation Driver run per user query
  5. Disconnects cleanly when the session ends

All behavior lives in the components; this file only connects them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import structlog
from rich.console import Console
from rich.markup import escape as markup_escape
from rich.table import Table

from conduit.api.claude import ClaudeModelChannel, ModelCallError
from conduit.config import ConduitConfig
from conduit.harness.loop import ConversationDriver, InvocationOutcome
from conduit.harness.policy import ApprovalSurface, ConsoleApproval, PolicyGate, StaticApproval
from conduit.tools.mcp import MCPCapabilityChannel, MCPServerConfig
from conduit.tools.registry import CapabilityRegistry

EXIT_COMMANDS = frozenset({"exit", "quit"})

_SENSITIVE_KEYS = ("arguments", "query")
_MAX_DISPLAY_LEN = 80


def _redact_sensitive_fields(logger, method_name, event_dict):
    """Structlog processor that keeps tool arguments and user queries in logs short."""
    for key in _SENSITIVE_KEYS:
        if key not in event_dict:
            continue
        val = str(event_dict[key])
        if len(val) > _MAX_DISPLAY_LEN:
            val = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
        event_dict[key] = val
    return event_dict


_logging_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog and standard-library logging. Later calls are no-ops."""
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if verbose else logging.WARNING,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)


def resolve_server_config(
    config: ConduitConfig,
    command: tuple[str, ...] = (),
    url: Optional[str] = None,
    name: Optional[str] = None,
) -> MCPServerConfig:
    """
    Pick the server to connect to: command-line arguments win over the
    CONDUIT_MCP_SERVER setting.
    """
    if url:
        return MCPServerConfig(name=name or "server", transport="streamable_http", url=url)
    if command:
        return MCPServerConfig(
            name=name or command[0],
            transport="stdio",
            command=command[0],
            args=list(command[1:]),
        )
    configured = config.mcp.get_server()
    if configured is None:
        raise ValueError(
            "No MCP server given. Pass a server command, --url, or set CONDUIT_MCP_SERVER."
        )
    configured.setdefault("name", name or "server")
    return MCPServerConfig(**configured)


class ChatSession:
    """
    One interactive session: a connected server, a live registry, and a
    chat loop that runs a fresh conversation per query.
    """

    def __init__(
        self,
        config: ConduitConfig,
        server: MCPServerConfig,
        approval: Optional[ApprovalSurface] = None,
        console: Optional[Console] = None,
        max_turns: Optional[int] = None,
    ):
        self._config = config
        self._server = server
        self._console = console or Console()
        self._approval = approval or ConsoleApproval(console=self._console)
        self._max_turns = max_turns if max_turns is not None else config.conversation.turn_limit

    async def run(self) -> int:
        """Run the session until the user exits. Returns a process exit code."""
        channel = MCPCapabilityChannel(self._server)
        try:
            await channel.connect()
        except Exception as e:
            self._console.print(f"[red]Failed to connect to MCP server: {markup_escape(str(e))}[/red]")
            return 1

        registry = CapabilityRegistry(channel)
        try:
            await registry.initialize()
            self._console.print(
                "Connected to server with tools: "
                + ", ".join(tool.name for tool in registry.tools)
            )
            driver = ConversationDriver(
                model=ClaudeModelChannel(self._config.claude),
                channel=channel,
                registry=registry,
                gate=PolicyGate.from_config(self._config.policy, approval=self._approval),
                max_turns=self._max_turns,
                on_text=self._print_text,
                on_invocation=self._print_invocation,
            )
            return await self._chat_loop(driver)
        finally:
            await registry.close()
            await channel.close()

    async def _chat_loop(self, driver: ConversationDriver) -> int:
        while True:
            query = await self._read_query()
            if query is None:
                return 0
            if not query.strip():
                continue
            logger.debug("chat_session.query_received", query=query)
            try:
                result = await driver.run(query)
            except ModelCallError as e:
                logger.error("chat_session.model_call_failed", error=str(e))
                self._console.print(f"[red]{markup_escape(str(e))}[/red]")
                return 1
            if result.was_truncated:
                self._console.print(
                    "[yellow]Stopped after reaching the turn limit.[/yellow]"
                )

    async def _read_query(self) -> Optional[str]:
        try:
            line = await asyncio.to_thread(
                input, 'Enter your query (or type "exit" to quit): '
            )
        except EOFError:
            return None
        if line.strip().lower() in EXIT_COMMANDS:
            return None
        return line

    def _print_text(self, text: str) -> None:
        self._console.print(f"[bold cyan]LLM Response:[/bold cyan] {markup_escape(text)}")

    def _print_invocation(self, outcome: InvocationOutcome) -> None:
        style = {"executed": "green", "failed": "red", "denied": "yellow"}[outcome.status]
        self._console.print(
            f"[{style}]{outcome.status}[/{style}] {markup_escape(outcome.request.name)}"
        )


async def list_capabilities(server: MCPServerConfig, console: Optional[Console] = None) -> int:
    """Connect, fetch every capability kind, and print them as tables."""
    console = console or Console()
    try:
        async with MCPCapabilityChannel(server) as channel:
            registry = CapabilityRegistry(channel)
            await registry.initialize()
            try:
                for title, items in (
                    ("Tools", registry.tools),
                    ("Resources", registry.resources),
                    ("Resource templates", registry.resource_templates),
                    ("Prompts", registry.prompts),
                ):
                    console.print(_capability_table(title, items))
            finally:
                await registry.close()
    except Exception as e:
        console.print(f"[red]Failed to list capabilities: {markup_escape(str(e))}[/red]")
        return 1
    return 0


def _capability_table(title: str, items: Any) -> Table:
    table = Table(title=f"{title} ({len(items)})")
    table.add_column("Name", style="bold")
    table.add_column("Description")
    for item in items:
        table.add_row(item.name, item.description or "")
    return table


def build_approval(auto_approve: bool, console: Optional[Console] = None) -> ApprovalSurface:
    if auto_approve:
        return StaticApproval(True)
    return ConsoleApproval(console=console)
