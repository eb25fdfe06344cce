"""Mailbox and message handling.

This package moves mail in and out of the responder:
- IMAP fetch, draft append and read marking (Mailbox)
- Message parsing into RawEmail values
- Body cleaning and metadata extraction (EmailPreprocessor)
- Threaded reply draft construction

Usage:
    from replydesk.mail import EmailPreprocessor, Mailbox, build_reply_draft

    with Mailbox(config.imap, password) as mailbox:
        emails = [preprocessor.process(raw) for raw in mailbox.fetch_unread()]
"""

from replydesk.mail.drafts import ReplyDraft, build_reply_draft
from replydesk.mail.imap import Mailbox
from replydesk.mail.models import ProcessedEmail, RawEmail
from replydesk.mail.parser import parse_message
from replydesk.mail.preprocess import EmailPreprocessor, clean_body, extract_metadata

__all__ = [
    # Models
    "ProcessedEmail",
    "RawEmail",
    # Mailbox
    "Mailbox",
    "parse_message",
    # Preprocessing
    "EmailPreprocessor",
    "clean_body",
    "extract_metadata",
    # Drafts
    "ReplyDraft",
    "build_reply_draft",
]
