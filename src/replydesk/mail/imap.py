"""IMAP mailbox access: fetch unread mail, append drafts, set \\Seen.

One Mailbox instance wraps one imaplib connection and is NOT thread-safe;
the batch processor serializes all calls through a single instance.

Every imaplib or socket failure is re-raised as MailboxError with the
operation and mailbox in the message.

Usage:
    from replydesk.mail.imap import Mailbox

    with Mailbox(config.imap, password) as mailbox:
        for raw in mailbox.fetch_unread(limit=20):
            ...
        mailbox.append_draft(draft.as_bytes())
        mailbox.mark_as_read(raw.uid)
"""

from __future__ import annotations

import imaplib
import time
from datetime import date
from types import TracebackType
from typing import TYPE_CHECKING

from replydesk.core.errors import MailboxError
from replydesk.core.logging import get_logger
from replydesk.mail.parser import parse_message

if TYPE_CHECKING:
    from replydesk.config_schema import ImapConfig
    from replydesk.mail.models import RawEmail

logger = get_logger(__name__)

DRAFT_FLAG = "\\Draft"
SEEN_FLAG = "\\Seen"

# IMAP SEARCH dates use English month abbreviations regardless of locale
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def imap_date(value: date) -> str:
    """Format a date for IMAP SEARCH (e.g. '05-Mar-2025')."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def _quote(mailbox: str) -> str:
    if mailbox.startswith('"') or " " not in mailbox:
        return mailbox
    return f'"{mailbox}"'


class Mailbox:
    """A logged-in IMAP session bound to one source mailbox."""

    def __init__(self, config: ImapConfig, password: str):
        self._config = config
        self._password = password
        self._conn: imaplib.IMAP4 | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the connection, log in and select the source mailbox.

        Raises:
            MailboxError: If the server is unreachable or rejects the login
        """
        cfg = self._config
        if not cfg.user:
            raise MailboxError("IMAP user is not set. Set imap.user in config.yaml.")

        try:
            if cfg.use_ssl:
                conn: imaplib.IMAP4 = imaplib.IMAP4_SSL(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
            else:
                conn = imaplib.IMAP4(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
            conn.login(cfg.user, self._password)
            status, _ = conn.select(_quote(cfg.mailbox))
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Cannot connect to IMAP server {cfg.host}:{cfg.port}: {e}") from e

        if status != "OK":
            conn.logout()
            raise MailboxError(f"Cannot select mailbox '{cfg.mailbox}' on {cfg.host}")

        self._conn = conn
        logger.info("imap_connected", host=cfg.host, mailbox=cfg.mailbox)

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug("imap_logout_failed", error=str(e))
        finally:
            self._conn = None

    def __enter__(self) -> Mailbox:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def connection(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise MailboxError("Mailbox is not connected. Call connect() or use it as a context manager.")
        return self._conn

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def fetch_unread(self, limit: int = 50, since: date | None = None) -> list[RawEmail]:
        """Fetch unread messages, oldest first.

        Fetching uses BODY.PEEK so messages stay unread until
        mark_as_read() is called.

        Args:
            limit: Maximum number of messages to return
            since: Only messages received on or after this date

        Returns:
            Parsed messages (unparseable ones are logged and skipped)

        Raises:
            MailboxError: If the search or fetch fails
        """
        criteria = ["UNSEEN"]
        if since is not None:
            criteria += ["SINCE", imap_date(since)]

        try:
            status, data = self.connection.uid("search", None, *criteria)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP search failed in '{self._config.mailbox}': {e}") from e
        if status != "OK":
            raise MailboxError(f"IMAP search failed in '{self._config.mailbox}': {status}")

        uids = [int(u) for u in (data[0] or b"").split()][:limit]
        logger.info("imap_unread_found", count=len(uids), limit=limit)

        emails: list[RawEmail] = []
        for uid in uids:
            raw_bytes = self._fetch_message(uid)
            if raw_bytes is None:
                continue
            try:
                emails.append(parse_message(raw_bytes, uid=uid))
            except (ValueError, LookupError) as e:
                logger.warning("imap_message_unparseable", uid=uid, error=str(e))
        return emails

    def _fetch_message(self, uid: int) -> bytes | None:
        try:
            status, data = self.connection.uid("fetch", str(uid), "(BODY.PEEK[])")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP fetch failed for UID {uid}: {e}") from e

        if status != "OK":
            logger.warning("imap_fetch_failed", uid=uid, status=status)
            return None
        for item in data:
            if isinstance(item, tuple) and len(item) >= 2:
                return item[1]
        logger.warning("imap_fetch_empty", uid=uid)
        return None

    def append_draft(self, message: bytes) -> None:
        """Append a message to the drafts mailbox flagged \\Draft.

        Raises:
            MailboxError: If the server rejects the append
        """
        mailbox = self._config.drafts_mailbox
        when = imaplib.Time2Internaldate(time.time())
        try:
            status, data = self.connection.append(_quote(mailbox), f"({DRAFT_FLAG})", when, message)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Cannot append draft to '{mailbox}': {e}") from e
        if status != "OK":
            raise MailboxError(f"Cannot append draft to '{mailbox}': {data!r}")
        logger.info("draft_saved", mailbox=mailbox, size=len(message))

    def mark_as_read(self, uid: int) -> None:
        """Set \\Seen on a message in the source mailbox.

        Raises:
            MailboxError: If the flag cannot be stored
        """
        try:
            status, _ = self.connection.uid("store", str(uid), "+FLAGS", f"({SEEN_FLAG})")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Cannot mark UID {uid} as read: {e}") from e
        if status != "OK":
            raise MailboxError(f"Cannot mark UID {uid} as read: {status}")
        logger.debug("email_marked_read", uid=uid)

