"""Reply draft construction.

Builds a threaded plain-text reply (In-Reply-To, References, "Re:" subject)
ready to be appended to the drafts mailbox. Header values are stripped of
control characters so an attacker-controlled subject cannot inject headers;
non-ASCII values are RFC 2047 encoded by the email package.

Usage:
    from replydesk.mail.drafts import build_reply_draft

    draft = build_reply_draft(email, result.response, from_address="support@example.com")
    mailbox.append_draft(draft.as_bytes())
"""

from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage
from email.policy import SMTP
from email.utils import formataddr, formatdate, make_msgid

import regex

from replydesk.mail.models import ProcessedEmail

CONTROL_CHARS = regex.compile(r"[\x00-\x1f\x7f]")
REPLY_PREFIX = regex.compile(r"^\s*re\s*:", regex.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ReplyDraft:
    """A built draft and its generated Message-ID."""

    message: EmailMessage
    message_id: str

    def as_bytes(self) -> bytes:
        return self.message.as_bytes(policy=SMTP)


def sanitize_header(value: str) -> str:
    """Replace control characters (including CR/LF) with spaces."""
    return CONTROL_CHARS.sub(" ", value, timeout=1).strip()


def reply_subject(subject: str) -> str:
    """Prefix a subject with 'Re: ' unless it already has one."""
    cleaned = sanitize_header(subject) or "(no subject)"
    if REPLY_PREFIX.match(cleaned, timeout=1):
        return cleaned
    return f"Re: {cleaned}"


def build_reply_draft(
    email: ProcessedEmail,
    body: str,
    from_address: str,
    from_name: str | None = None,
) -> ReplyDraft:
    """Build a reply draft to an email.

    Args:
        email: The customer email being answered
        body: Reply text
        from_address: Support mailbox address
        from_name: Display name for the From header

    Returns:
        ReplyDraft with the message and its Message-ID

    Raises:
        ValueError: If from_address is empty
    """
    sender = sanitize_header(from_address)
    if not sender:
        raise ValueError(
            "Cannot build a draft without a sender address. "
            "Set reply.sender_address or imap.user in config.yaml."
        )

    domain = sender.rpartition("@")[2] or "localhost"
    message_id = make_msgid(domain=domain)

    msg = EmailMessage()
    msg["From"] = formataddr((sanitize_header(from_name), sender)) if from_name else sender
    msg["To"] = sanitize_header(email.sender)
    msg["Subject"] = reply_subject(email.subject)
    msg["Date"] = formatdate(usegmt=True)
    msg["Message-ID"] = message_id

    original_id = sanitize_header(email.message_id)
    if original_id:
        msg["In-Reply-To"] = original_id
        references = [sanitize_header(r) for r in email.references if r.strip()]
        if original_id not in references:
            references.append(original_id)
        msg["References"] = " ".join(references)

    msg.set_content(body, charset="utf-8")
    return ReplyDraft(message=msg, message_id=message_id)
