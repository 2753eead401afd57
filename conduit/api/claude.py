"""
Claude API Client — Conduit's Model Channel.

This module wraps the Anthropic SDK behind the narrow interface the
conversation driver needs: send the conversation plus the current tool
descriptors, get back the turn's text blocks and tool-use requests.

Transient API failures are retried with backoff. Whatever remains is raised
as ``ModelCallError``; the driver does not recover from it, the caller of
the conversation does.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional, Sequence

import anthropic
import structlog

from conduit.config import ClaudeConfig
from conduit.harness.retry import RetryConfig, with_retries
from conduit.types import Conversation, ConversationMessage, InvocationRequest, ModelReply

logger = structlog.get_logger(__name__)


class ModelCallError(RuntimeError):
    """Raised when a model turn cannot be obtained (transport, auth, API error)."""


def reply_from_message(response: Any) -> ModelReply:
    """Split a Messages API response into text blocks and tool-use requests."""
    texts: list[str] = []
    requests: list[InvocationRequest] = []
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            arguments = block.input if isinstance(block.input, dict) else {}
            requests.append(InvocationRequest(id=block.id, name=block.name, arguments=arguments))
    return ModelReply(
        text_blocks=tuple(texts),
        invocation_requests=tuple(requests),
        stop_reason=getattr(response, "stop_reason", None),
    )


class ClaudeModelChannel:
    """
    Model Channel backed by the Anthropic Messages API.

    The channel keeps no conversation state: each call receives the full
    history. It only tracks usage telemetry.
    """

    def __init__(self, config: ClaudeConfig, client: Optional[anthropic.AsyncAnthropic] = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=config.api_key)
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._system_prompt = config.system_prompt
        self._request_timeout_seconds = float(config.request_timeout_seconds)
        self._retry_config = RetryConfig.from_claude_config(config)

        self._total_calls = 0
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._last_call_seconds: Optional[float] = None

        logger.info(
            "model_channel.initialized",
            model=self._model,
            max_tokens=self._max_tokens,
        )

    async def send(
        self,
        history: Conversation | Sequence[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> ModelReply:
        """Request one model turn for ``history`` with ``tools`` available."""
        start_time = time.monotonic()

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": [message.to_api_format() for message in history],
        }
        if self._system_prompt:
            kwargs["system"] = self._system_prompt
        if tools:
            kwargs["tools"] = tools

        async def _create() -> anthropic.types.Message:
            return await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._request_timeout_seconds,
            )

        try:
            response = await with_retries(_create, config=self._retry_config)
        except anthropic.APIError as e:
            logger.error(
                "model_channel.api_error",
                error=str(e),
                status=getattr(e, "status_code", None),
            )
            raise ModelCallError(f"Model call failed: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(
                "model_channel.timeout",
                timeout_seconds=self._request_timeout_seconds,
            )
            raise ModelCallError(
                f"Model call timed out after {self._request_timeout_seconds}s"
            ) from e
        except ConnectionError as e:
            logger.error("model_channel.connection_error", error=str(e))
            raise ModelCallError(f"Model call failed: {e}") from e

        elapsed = time.monotonic() - start_time
        self._total_calls += 1
        self._last_call_seconds = elapsed
        usage = getattr(response, "usage", None)
        if usage is not None:
            self._total_input_tokens += usage.input_tokens
            self._total_output_tokens += usage.output_tokens

        reply = reply_from_message(response)
        logger.debug(
            "model_channel.turn_complete",
            elapsed_seconds=round(elapsed, 2),
            stop_reason=reply.stop_reason,
            tool_calls=len(reply.invocation_requests),
        )
        return reply

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
            "last_call_seconds": self._last_call_seconds or 0.0,
        }
