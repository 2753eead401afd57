"""Conversation harness — the policy gate, the tool-use loop, and model-call retries."""
