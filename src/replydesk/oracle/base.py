"""The oracle interface shared by every language-model backend.

An oracle turns a list of chat messages into one text completion. The
analyzer and composer depend only on this protocol, so tests drive them
with scripted fakes and production picks a backend from config.

Usage:
    from replydesk.oracle.base import ChatMessage, Oracle

    def summarize(oracle: Oracle, text: str) -> str:
        messages: list[ChatMessage] = [{"role": "user", "content": text}]
        return oracle.complete(messages, temperature=0.3)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal, Protocol, TypedDict, runtime_checkable

import regex

DEFAULT_TEMPERATURE = 0.7

_OPENING_FENCE = regex.compile(r"^```(?:json|yaml)?[ \t]*\n?")
_CLOSING_FENCE = regex.compile(r"\n?```\s*$")


class ChatMessage(TypedDict):
    """One message in a chat-completions conversation."""

    role: Literal["system", "user", "assistant"]
    content: str


@runtime_checkable
class Oracle(Protocol):
    """A black-box text completion service.

    Implementations must be safe to call from several threads at once.
    """

    def complete(
        self,
        messages: Sequence[ChatMessage],
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> str:
        """Return the assistant reply for a conversation.

        Raises:
            OracleTimeoutError: If every attempt timed out
            OracleProtocolError: On a non-2xx status or malformed payload
            OracleError: On any other transport failure
        """
        ...


def user_message(content: str) -> ChatMessage:
    return {"role": "user", "content": content}


def system_message(content: str) -> ChatMessage:
    return {"role": "system", "content": content}


def strip_code_fence(text: str) -> str:
    """Remove a wrapping markdown code fence from an oracle reply.

    Handles ```json, ```yaml and bare ``` openers plus the trailing ```.

    Args:
        text: Raw reply text

    Returns:
        The reply with surrounding whitespace and fences removed
    """
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    stripped = _OPENING_FENCE.sub("", stripped, count=1, timeout=1)
    stripped = _CLOSING_FENCE.sub("", stripped, count=1, timeout=1)
    return stripped.strip()
