"""RFC 5322 message parsing into RawEmail values.

Used for messages fetched over IMAP and for .eml files given to the CLI.
Prefers the text/plain part; falls back to text/html (flagged is_html so
the preprocessor strips the markup).
"""

from __future__ import annotations

import email
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.utils import getaddresses, parsedate_to_datetime

from replydesk.core.logging import get_logger
from replydesk.mail.models import RawEmail

logger = get_logger(__name__)


def parse_message(data: bytes, uid: int = 0) -> RawEmail:
    """Parse raw message bytes.

    Args:
        data: Full RFC 5322 message
        uid: IMAP UID (0 for messages not from a mailbox)

    Returns:
        RawEmail with decoded headers and body text
    """
    msg = email.message_from_bytes(data, policy=policy.default)
    assert isinstance(msg, EmailMessage)

    sender_name, sender = _first_address(msg.get("From", ""))
    text, is_html = _extract_body(msg)

    return RawEmail(
        uid=uid,
        message_id=str(msg.get("Message-ID", "") or "").strip(),
        sender=sender,
        sender_name=sender_name,
        subject=str(msg.get("Subject", "") or "").strip(),
        text=text,
        is_html=is_html,
        references=tuple(str(msg.get("References", "") or "").split()),
        received_at=_parse_date(msg.get("Date")),
    )


def _first_address(header: str) -> tuple[str, str]:
    """Return (display name, address) of the first address in a header."""
    addresses = getaddresses([str(header)])
    if not addresses:
        return "", ""
    name, address = addresses[0]
    return name.strip(), address.strip()


def _extract_body(msg: EmailMessage) -> tuple[str, bool]:
    """Return (body text, is_html) preferring text/plain."""
    part = msg.get_body(preferencelist=("plain", "html"))
    if part is None:
        return "", False

    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError) as e:
        # Unknown charset: fall back to a lossy decode of the payload
        logger.warning("message_body_decode_failed", error=str(e))
        payload = part.get_payload(decode=True) or b""
        content = payload.decode("utf-8", errors="replace")

    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return content, part.get_content_subtype() == "html"


def _parse_date(value: object) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return None
