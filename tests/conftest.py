"""
Shared fixtures for the Conduit test suite.

Fakes live in tests/fakes.py; this module wires them into fixtures.
"""

from __future__ import annotations

import pytest

from conduit.config import PolicyConfig
from conduit.types import Capability
from tests.fakes import FakeCapabilityChannel, ManualClock


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def sample_tools() -> list[Capability]:
    return [
        Capability(
            name="read-data",
            description="Read a value from the data store",
            input_schema={
                "type": "object",
                "properties": {"key": {"type": "string"}},
                "required": ["key"],
            },
        ),
        Capability(name="execute-command", input_schema={"type": "object"}),
    ]


@pytest.fixture()
def fake_channel(sample_tools) -> FakeCapabilityChannel:
    return FakeCapabilityChannel(
        tools=sample_tools,
        resources=[Capability(name="notes", metadata={"uri": "file:///notes.txt"})],
        templates=[Capability(name="log", metadata={"uriTemplate": "logs://{day}"})],
        prompts=[Capability(name="summarize")],
    )


@pytest.fixture()
def policy_config() -> PolicyConfig:
    """PolicyConfig with defaults, independent of any .env file.

    Note: pydantic-settings fields with aliases are set here using the alias
    name (the env-var name).
    """
    return PolicyConfig(
        CONDUIT_TOOL_POLICIES={},
        CONDUIT_DEFAULT_REQUIRES_APPROVAL=True,
        CONDUIT_DEFAULT_MAX_CALLS_PER_WINDOW=10,
        CONDUIT_RATE_WINDOW_SECONDS=60.0,
    )
