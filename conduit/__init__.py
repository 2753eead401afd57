"""
Conduit — Tool Invocation Orchestrator for MCP servers.

This package lets a Claude-backed agent discover a remote MCP server's tools,
resources and prompts, and drive a multi-turn conversation in which every tool
call the model requests passes a local rate-limit and approval policy before
it is executed.

Architecture layers (bottom to top):
    1. Capability Channel (MCP client session)
    2. Capability Registry (live, notification-synchronized snapshots)
    3. Policy Gate (rate limits + human approval)
    4. Model Channel (Anthropic Messages API)
    5. Conversation Driver (the tool-use loop)
"""

__version__ = "0.1.0"
