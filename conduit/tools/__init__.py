"""Capability discovery: the registry and the MCP channel that feeds it."""
from conduit.tools.registry import CapabilityChannel, CapabilityKind, CapabilityRegistry

__all__ = ["CapabilityChannel", "CapabilityKind", "CapabilityRegistry"]
