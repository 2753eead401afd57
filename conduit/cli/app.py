"""CLI application — Click-based command group for Conduit.

    conduit chat SERVER_COMMAND [ARGS...]   interactive tool-using chat
    conduit tools SERVER_COMMAND [ARGS...]  list the server's capabilities
"""

from __future__ import annotations

import asyncio
import functools
import sys
from typing import Any, Optional

import click
from rich.console import Console
from rich.markup import escape as markup_escape

from conduit.config import ConduitConfig


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


_server_options = [
    click.argument("server_command", nargs=-1, type=click.UNPROCESSED),
    click.option("--url", default=None, help="Streamable HTTP MCP server URL"),
    click.option("--name", default=None, help="Display name for the server"),
]


def server_options(func):
    for option in reversed(_server_options):
        func = option(func)
    return func


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, no_color: bool) -> None:
    """Conduit - drive Claude conversations over an MCP server's tools."""
    from conduit.main import configure_logging

    configure_logging(verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj["console"] = Console(no_color=no_color)


@cli.command("chat", context_settings={"ignore_unknown_options": True})
@server_options
@click.option("--yes", "auto_approve", is_flag=True, help="Approve every tool call without asking")
@click.option("--max-turns", type=int, default=None, help="Stop a conversation after N model turns")
@click.pass_context
@async_cmd
async def chat_cmd(
    ctx: click.Context,
    server_command: tuple[str, ...],
    url: Optional[str],
    name: Optional[str],
    auto_approve: bool,
    max_turns: Optional[int],
) -> None:
    """Start an interactive chat with the server's tools available."""
    from conduit.main import ChatSession, build_approval, resolve_server_config

    console: Console = ctx.obj["console"]
    try:
        config = ConduitConfig()
        server = resolve_server_config(config, server_command, url=url, name=name)
        _ = config.claude  # fail fast on a missing API key
    except (ValueError, TypeError) as e:
        console.print(f"[red]{markup_escape(str(e))}[/red]")
        sys.exit(1)

    session = ChatSession(
        config,
        server,
        approval=build_approval(auto_approve, console=console),
        console=console,
        max_turns=max_turns,
    )
    sys.exit(await session.run())


@cli.command("tools", context_settings={"ignore_unknown_options": True})
@server_options
@click.pass_context
@async_cmd
async def tools_cmd(
    ctx: click.Context,
    server_command: tuple[str, ...],
    url: Optional[str],
    name: Optional[str],
) -> None:
    """List the tools, resources and prompts the server exposes."""
    from conduit.main import list_capabilities, resolve_server_config

    console: Console = ctx.obj["console"]
    try:
        server = resolve_server_config(ConduitConfig(), server_command, url=url, name=name)
    except (ValueError, TypeError) as e:
        console.print(f"[red]{markup_escape(str(e))}[/red]")
        sys.exit(1)
    sys.exit(await list_capabilities(server, console=console))


def main() -> None:
    cli(obj={})
