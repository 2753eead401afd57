"""Tests for conduit.config — environment-driven settings."""

from __future__ import annotations

import pytest

from conduit.config import (
    ClaudeConfig,
    ConduitConfig,
    ConversationConfig,
    MCPConfig,
    PolicyConfig,
    ToolPolicySettings,
)


@pytest.fixture(autouse=True)
def _no_env_file(monkeypatch):
    for cls in (ClaudeConfig, PolicyConfig, ConversationConfig, MCPConfig):
        monkeypatch.setitem(cls.model_config, "env_file", None)


class TestClaudeConfig:

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY is not set"):
            ClaudeConfig()

    def test_blank_api_key_rejected(self):
        with pytest.raises(ValueError):
            ClaudeConfig(ANTHROPIC_API_KEY="   ")

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        monkeypatch.setenv("CONDUIT_MODEL", "claude-custom")
        monkeypatch.setenv("CONDUIT_MAX_TOKENS", "2048")
        cfg = ClaudeConfig()
        assert cfg.api_key == "sk-env"
        assert cfg.model == "claude-custom"
        assert cfg.max_tokens == 2048

    def test_limits_are_clamped(self):
        cfg = ClaudeConfig(
            ANTHROPIC_API_KEY="k",
            CONDUIT_MAX_TOKENS=0,
            CONDUIT_RETRY_MAX_RETRIES=-2,
            CONDUIT_RETRY_JITTER_RANGE=5.0,
        )
        assert cfg.max_tokens == 1
        assert cfg.retry_max_retries == 0
        assert cfg.retry_jitter_range == 1.0


class TestPolicyConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CONDUIT_TOOL_POLICIES", raising=False)
        cfg = PolicyConfig()
        assert cfg.tool_policies == {}
        assert cfg.default_requires_approval is True
        assert cfg.default_max_calls_per_window == 10
        assert cfg.rate_window_seconds == 60.0

    def test_policies_from_json_env(self, monkeypatch):
        monkeypatch.setenv(
            "CONDUIT_TOOL_POLICIES",
            '{"search": {"requires_approval": false, "max_calls_per_window": 30}}',
        )
        cfg = PolicyConfig()
        assert cfg.tool_policies == {
            "search": ToolPolicySettings(requires_approval=False, max_calls_per_window=30)
        }

    def test_blank_policies(self):
        assert PolicyConfig(CONDUIT_TOOL_POLICIES="  ").tool_policies == {}

    @pytest.mark.parametrize("raw", ["", "   "])
    def test_blank_policies_from_env(self, monkeypatch, raw):
        monkeypatch.setenv("CONDUIT_TOOL_POLICIES", raw)
        assert PolicyConfig().tool_policies == {}

    def test_malformed_policies_from_env(self, monkeypatch):
        monkeypatch.setenv("CONDUIT_TOOL_POLICIES", "{not json")
        with pytest.raises(ValueError):
            PolicyConfig()


class TestConversationConfig:

    @pytest.mark.parametrize("raw, expected", [(0, None), (-3, None), (5, 5)])
    def test_turn_limit(self, raw, expected):
        assert ConversationConfig(CONDUIT_MAX_TURNS=raw).turn_limit == expected


class TestMCPConfig:

    def test_unset(self):
        assert MCPConfig(CONDUIT_MCP_SERVER="").get_server() is None

    def test_parses_object(self):
        cfg = MCPConfig(CONDUIT_MCP_SERVER='{"name": "fs", "command": "npx"}')
        assert cfg.get_server() == {"name": "fs", "command": "npx"}

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_rejects_malformed(self, raw):
        assert MCPConfig(CONDUIT_MCP_SERVER=raw).get_server() is None


def test_conduit_config_defers_claude(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    config = ConduitConfig()
    assert config.policy.default_max_calls_per_window == 10
    with pytest.raises(ValueError):
        _ = config.claude
