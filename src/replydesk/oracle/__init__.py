"""Language-model oracle clients.

Provides the narrow `complete(messages, temperature) -> str` interface and
its backends:
- ChatCompletionsOracle for OpenAI-style HTTP endpoints (default)
- AnthropicOracle for the Anthropic Messages API

Usage:
    from replydesk.oracle import build_oracle

    oracle = build_oracle(config.oracle, resolve_secret(config.oracle.api_key_env))
"""

from replydesk.oracle.anthropic_oracle import AnthropicOracle
from replydesk.oracle.base import (
    ChatMessage,
    Oracle,
    strip_code_fence,
    system_message,
    user_message,
)
from replydesk.oracle.client import ChatCompletionsOracle, build_oracle
from replydesk.oracle.retry import call_with_timeout_retry

__all__ = [
    # Interface
    "ChatMessage",
    "Oracle",
    "strip_code_fence",
    "system_message",
    "user_message",
    # Backends
    "AnthropicOracle",
    "ChatCompletionsOracle",
    "build_oracle",
    # Retry
    "call_with_timeout_retry",
]
