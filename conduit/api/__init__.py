"""Model Channel implementations."""
from conduit.api.claude import ClaudeModelChannel, ModelCallError

__all__ = ["ClaudeModelChannel", "ModelCallError"]
