"""Email value types shared by the mailbox, preprocessing and responder layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True, slots=True)
class RawEmail:
    """A message as fetched from the mailbox, before cleaning.

    Attributes:
        uid: IMAP UID within the source mailbox
        message_id: RFC 5322 Message-ID header (may be empty)
        sender: Sender address
        sender_name: Sender display name (may be empty)
        subject: Decoded subject line
        text: Plain-text body (HTML bodies are converted by the mailbox)
        is_html: Whether `text` still contains HTML markup
        references: Message-IDs from the References header, oldest first
        received_at: Parsed Date header, if present
    """

    uid: int
    message_id: str
    sender: str
    sender_name: str
    subject: str
    text: str
    is_html: bool = False
    references: tuple[str, ...] = ()
    received_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ProcessedEmail:
    """A cleaned email with extracted support metadata.

    This is the only email shape the analyzer, retriever and composer see.
    It is read-only and safe to share across worker threads.
    """

    uid: int
    sender: str
    subject: str
    text: str
    sender_name: str = ""
    message_id: str = ""
    references: tuple[str, ...] = field(default_factory=tuple)
    received_at: datetime | None = None
    app_version: str | None = None
    device_info: str | None = None
    order_id: str | None = None
    user_id: str | None = None

    @property
    def search_text(self) -> str:
        """Subject and body joined for keyword matching."""
        return f"{self.subject} {self.text}"
