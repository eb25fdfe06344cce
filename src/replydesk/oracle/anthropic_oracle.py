"""Oracle backed by the Anthropic Messages API.

System messages in the conversation are hoisted into the `system`
parameter; the rest are sent as user/assistant turns. SDK-level retries are
disabled so the timeout-only retry policy applies uniformly to every
backend.

Usage:
    from replydesk.oracle.anthropic_oracle import AnthropicOracle

    oracle = AnthropicOracle(api_key="...", model="claude-sonnet-4-5")
    text = oracle.complete(messages, temperature=0.3)
"""

from __future__ import annotations

import math
import time
from collections.abc import Sequence
from typing import Any

import anthropic

from replydesk.core.errors import OracleError, OracleProtocolError, OracleTimeoutError
from replydesk.core.logging import get_logger
from replydesk.core.rate_limiter import TokenBucket
from replydesk.oracle.base import DEFAULT_TEMPERATURE, ChatMessage
from replydesk.oracle.retry import call_with_timeout_retry

logger = get_logger(__name__)


class AnthropicOracle:
    """Oracle that sends conversations to Claude."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-sonnet-4-5",
        max_tokens: int = 2048,
        timeout: float = 90.0,
        max_retries: int = 2,
        retry_delay: float = 2.0,
        requests_per_second: float = 2.0,
        client: anthropic.Anthropic | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = client or anthropic.Anthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )
        self._rate_bucket = TokenBucket(
            rate=requests_per_second,
            capacity=max(1, math.ceil(requests_per_second)),
        )

    def complete(
        self,
        messages: Sequence[ChatMessage],
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> str:
        """Send a conversation to Claude and return its text reply.

        Raises:
            OracleTimeoutError: If every attempt timed out
            OracleProtocolError: On an API status error or an empty reply
            OracleError: On connection failures
        """
        system, turns = split_system_messages(messages)
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": min(temperature, 1.0),
            "messages": turns,
        }
        if system:
            request["system"] = system

        return call_with_timeout_retry(
            lambda: self._send(request),
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
        )

    def _send(self, request: dict[str, Any]) -> str:
        """Perform one rate-limited request attempt."""
        self._rate_bucket.consume()
        start_time = time.monotonic()

        try:
            response = self._client.messages.create(**request)
        except anthropic.APITimeoutError as e:
            logger.warning("oracle_request_timeout", model=self.model, timeout=self.timeout)
            raise OracleTimeoutError(f"Claude request timed out after {self.timeout}s") from e
        except anthropic.APIConnectionError as e:
            logger.error("oracle_connection_error", model=self.model, error=str(e))
            raise OracleError(f"Cannot reach the Anthropic API: {e}") from e
        except anthropic.APIStatusError as e:
            logger.error(
                "oracle_api_error",
                model=self.model,
                status_code=e.status_code,
                error=str(e),
            )
            raise OracleProtocolError(
                f"Anthropic API error {e.status_code}: {e.message}",
                status_code=e.status_code,
            ) from e
        except anthropic.APIError as e:
            # Response validation and any other SDK failure
            logger.error("oracle_api_error", model=self.model, error=str(e))
            raise OracleProtocolError(f"Anthropic API error: {e.message}") from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        text = _extract_text(response)
        if not text:
            raise OracleProtocolError("Claude response contained no text content")

        logger.info(
            "oracle_completion",
            model=self.model,
            duration_ms=duration_ms,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )
        return text


def split_system_messages(
    messages: Sequence[ChatMessage],
) -> tuple[str, list[dict[str, str]]]:
    """Separate system prompts from conversational turns.

    Args:
        messages: Chat-completions style conversation

    Returns:
        Tuple of (joined system text, user/assistant turns)
    """
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    turns = [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m["role"] != "system"
    ]
    return "\n\n".join(system_parts), turns


def _extract_text(response: anthropic.types.Message) -> str:
    """Concatenate the text blocks of a Claude response."""
    parts = []
    for block in response.content:
        if block.type == "text":
            parts.append(block.text)
    return "\n".join(parts)
