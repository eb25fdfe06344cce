"""Email preprocessing: body cleaning and support metadata extraction.

Turns a RawEmail into the ProcessedEmail the responder consumes:
1. Strip HTML tags and decode entities (HTML bodies only)
2. Normalize line endings and collapse blank-line runs
3. Truncate to max_length
4. Extract app version, device, order id and user id with regexes

CRITICAL SECURITY NOTE:
All regex operations use the `regex` library with a timeout to prevent
ReDoS from malicious email content. A timed-out pattern is skipped.

Usage:
    from replydesk.mail.preprocess import EmailPreprocessor

    preprocessor = EmailPreprocessor()
    email = preprocessor.process(raw_email)
    print(email.device_info, email.order_id)
"""

from __future__ import annotations

import html
from dataclasses import dataclass

import regex

from replydesk.core.logging import get_logger, redact_address
from replydesk.mail.models import ProcessedEmail, RawEmail

logger = get_logger(__name__)

# Bodies longer than this are cut before reaching any prompt
DEFAULT_MAX_LENGTH = 8000

REGEX_TIMEOUT = 1.0


# =============================================================================
# Compiled Regex Patterns
# Note: timeout is passed at match time (search, sub, etc.), not compile time
# =============================================================================

HTML_BREAK_PATTERN = regex.compile(r"<\s*(?:br|/p|/div|/li|/tr)\s*/?>", regex.IGNORECASE)
HTML_BLOCK_PATTERN = regex.compile(r"<(script|style)[^>]*>.*?</\1>", regex.IGNORECASE | regex.DOTALL)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")

EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
EXCESSIVE_SPACES = regex.compile(r"[ \t]{2,}")

# Metadata patterns (first match wins within each group).
# Device and model captures stay on one line.
VERSION_PATTERN = regex.compile(r"(?:version|ver|v)[:\s]*(\d+\.\d+\.?\d*)", regex.IGNORECASE)
DEVICE_PATTERNS = [
    regex.compile(r"device[: \t]+[\w \t]+", regex.IGNORECASE),
    regex.compile(r"(?:iPhone|iPad|Samsung|Xiaomi|Huawei|OnePlus|Pixel)[ \t]*[\w \t]+", regex.IGNORECASE),
    regex.compile(r"model[: \t]+[\w \t]+", regex.IGNORECASE),
]
ORDER_PATTERNS = [
    regex.compile(r"order[:\s#]+([\w-]+)", regex.IGNORECASE),
    regex.compile(r"transaction[:\s#]+([\w-]+)", regex.IGNORECASE),
    regex.compile(r"receipt[:\s#]+([\w-]+)", regex.IGNORECASE),
    regex.compile(r"purchase[:\s#]+([\w-]+)", regex.IGNORECASE),
]
USER_ID_PATTERN = regex.compile(r"(?:user\s*id|uid|user)[:\s#]+([\w-]+)", regex.IGNORECASE)


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    """Substitute with a timeout; on timeout return the text unchanged."""
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("regex_timeout", pattern=pattern.pattern[:50])
        return text


def _safe_search(pattern: regex.Pattern, text: str) -> regex.Match | None:
    """Search with a timeout; on timeout report no match."""
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("regex_timeout", pattern=pattern.pattern[:50])
        return None


@dataclass(frozen=True, slots=True)
class EmailMetadata:
    """Support details found in an email body."""

    app_version: str | None = None
    device_info: str | None = None
    order_id: str | None = None
    user_id: str | None = None


def clean_body(text: str | None, is_html: bool = False, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Clean an email body for analysis.

    Args:
        text: Raw body (None is treated as empty)
        is_html: True if the body is HTML
        max_length: Maximum length of the result

    Returns:
        Cleaned text
    """
    if not text:
        return ""

    current = text.replace("\r\n", "\n").replace("\r", "\n")

    if is_html:
        current = _safe_sub(HTML_BLOCK_PATTERN, "", current)
        current = _safe_sub(HTML_BREAK_PATTERN, "\n", current)
        current = _safe_sub(HTML_TAG_PATTERN, " ", current)
        current = html.unescape(current)
        current = _safe_sub(EXCESSIVE_SPACES, " ", current)

    current = _safe_sub(EXCESSIVE_NEWLINES, "\n\n", current).strip()

    if len(current) > max_length:
        current = current[:max_length]
    return current


def extract_metadata(text: str) -> EmailMetadata:
    """Extract app version, device, order id and user id from body text.

    Args:
        text: Cleaned body text

    Returns:
        EmailMetadata with the fields that were found
    """
    version_match = _safe_search(VERSION_PATTERN, text)
    app_version = version_match.group(1) if version_match else None

    device_info = None
    for pattern in DEVICE_PATTERNS:
        match = _safe_search(pattern, text)
        if match:
            device_info = match.group(0).strip()
            break

    order_id = None
    for pattern in ORDER_PATTERNS:
        match = _safe_search(pattern, text)
        if match:
            order_id = match.group(1)
            break

    user_match = _safe_search(USER_ID_PATTERN, text)
    user_id = user_match.group(1) if user_match else None

    return EmailMetadata(
        app_version=app_version,
        device_info=device_info or None,
        order_id=order_id,
        user_id=user_id,
    )


class EmailPreprocessor:
    """Converts fetched messages into ProcessedEmail values.

    Attributes:
        max_length: Maximum cleaned body length
    """

    def __init__(self, max_length: int = DEFAULT_MAX_LENGTH):
        self.max_length = max_length

    def process(self, raw: RawEmail) -> ProcessedEmail:
        """Clean one message and attach extracted metadata.

        Args:
            raw: Message as fetched from the mailbox

        Returns:
            ProcessedEmail ready for analysis
        """
        text = clean_body(raw.text, is_html=raw.is_html, max_length=self.max_length)
        metadata = extract_metadata(text)

        logger.debug(
            "email_preprocessed",
            uid=raw.uid,
            sender=redact_address(raw.sender),
            length=len(text),
            has_version=metadata.app_version is not None,
            has_device=metadata.device_info is not None,
            has_order=metadata.order_id is not None,
        )

        return ProcessedEmail(
            uid=raw.uid,
            sender=raw.sender,
            subject=raw.subject,
            text=text,
            sender_name=raw.sender_name,
            message_id=raw.message_id,
            references=raw.references,
            received_at=raw.received_at,
            app_version=metadata.app_version,
            device_info=metadata.device_info,
            order_id=metadata.order_id,
            user_id=metadata.user_id,
        )
