"""Batch processor: fetch unread mail, analyze, compose, save drafts.

Each batch:
1. Generate a batch_id and set it as the logging correlation ID
2. Connect to the mailbox and fetch unread messages
3. Preprocess, analyze and compose each email (bounded concurrency)
4. Append a reply draft per answered email (if save_drafts)
5. Mark handled emails as read (if mark_as_read)
6. Log the batch summary

The analyzer, composer and oracle are blocking, so each email runs in a
worker thread via asyncio.to_thread, at most `processing.concurrency` at a
time. The IMAP connection is not thread-safe: every mailbox call goes
through one asyncio.Lock.

Failure policy: an email whose analysis or composition raises is logged,
counted as failed and left unread so the next batch retries it. A failed
draft append is logged but does not fail the email. Unimportant emails are
skipped and still marked read.

Usage:
    from replydesk.engine.processor import BatchProcessor

    processor = BatchProcessor(
        config=app_config,
        analyzer=analyzer,
        composer=composer,
        preprocessor=EmailPreprocessor(),
        mailbox_factory=lambda: Mailbox(app_config.imap, password),
    )
    result = await processor.run_once()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING

from replydesk.core.errors import MailboxError, ReplydeskError
from replydesk.core.logging import get_logger, redact_address, set_correlation_id
from replydesk.mail.drafts import build_reply_draft
from replydesk.responder.models import ComposerState

if TYPE_CHECKING:
    from replydesk.config_schema import AppConfig
    from replydesk.mail.imap import Mailbox
    from replydesk.mail.models import ProcessedEmail, RawEmail
    from replydesk.mail.preprocess import EmailPreprocessor
    from replydesk.responder.analyzer import IntentAnalyzer
    from replydesk.responder.composer import ResponseComposer
    from replydesk.responder.models import AnalysisResult, ResponseResult

logger = get_logger(__name__)

MailboxFactory = Callable[[], "Mailbox"]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Counts and timing for one batch."""

    batch_id: str
    duration_ms: int = 0
    fetched: int = 0
    processed: int = 0
    skipped: int = 0
    personalized: int = 0
    manual_review: int = 0
    free_form: int = 0
    drafts_saved: int = 0
    failed: int = 0
    marked_read: int = 0


@dataclass
class EmailOutcome:
    """What happened to one email.

    status is 'skipped' (not important), 'replied' or 'failed'.
    """

    uid: int
    status: str
    analysis: AnalysisResult | None = None
    result: ResponseResult | None = None
    draft_message_id: str | None = None
    error: str | None = None


class BatchProcessor:
    """Runs the analyze -> compose -> draft pipeline over unread mail.

    Attributes:
        _config: Application configuration
        _analyzer: IntentAnalyzer
        _composer: ResponseComposer
        _preprocessor: EmailPreprocessor for raw messages
        _mailbox_factory: Returns an unconnected Mailbox
        _use_templates: False drafts every reply free-form
    """

    def __init__(
        self,
        config: AppConfig,
        analyzer: IntentAnalyzer,
        composer: ResponseComposer,
        preprocessor: EmailPreprocessor,
        mailbox_factory: MailboxFactory,
        use_templates: bool = True,
    ):
        self._config = config
        self._analyzer = analyzer
        self._composer = composer
        self._preprocessor = preprocessor
        self._mailbox_factory = mailbox_factory
        self._use_templates = use_templates
        self._mailbox_lock = asyncio.Lock()

    async def run_once(self) -> BatchResult:
        """Process one batch of unread mail.

        Returns:
            BatchResult with counts and timing. Mailbox connection or
            fetch failures are logged and yield an empty batch.
        """
        batch_id = str(uuid.uuid4())
        set_correlation_id(batch_id)
        start_time = time.monotonic()
        result = BatchResult(batch_id=batch_id)
        processing = self._config.processing

        logger.info(
            "batch_start",
            concurrency=processing.concurrency,
            max_emails=processing.max_emails_per_fetch,
            save_drafts=processing.save_drafts,
            mark_as_read=processing.mark_as_read,
        )

        mailbox = self._mailbox_factory()
        try:
            await asyncio.to_thread(mailbox.connect)
            raw_emails = await asyncio.to_thread(
                mailbox.fetch_unread,
                processing.max_emails_per_fetch,
                _parse_since(processing.fetch_since),
            )
            result.fetched = len(raw_emails)

            if not raw_emails:
                logger.info("batch_no_unread_emails")
            else:
                outcomes = await self.process_many(raw_emails, mailbox)
                self._tally(result, outcomes)
                if processing.mark_as_read:
                    result.marked_read = await self._mark_read(mailbox, outcomes)

        except MailboxError as e:
            logger.error("batch_mailbox_error", error=str(e))
        finally:
            await asyncio.to_thread(mailbox.close)
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "batch_complete",
                duration_ms=result.duration_ms,
                fetched=result.fetched,
                processed=result.processed,
                skipped=result.skipped,
                personalized=result.personalized,
                manual_review=result.manual_review,
                free_form=result.free_form,
                drafts_saved=result.drafts_saved,
                failed=result.failed,
                marked_read=result.marked_read,
            )
            set_correlation_id(None)

        return result

    async def process_many(
        self,
        raw_emails: list[RawEmail],
        mailbox: Mailbox | None = None,
    ) -> list[EmailOutcome]:
        """Process emails concurrently, preserving input order.

        Args:
            raw_emails: Fetched messages
            mailbox: Connected mailbox for draft appends (None skips drafts)

        Returns:
            One EmailOutcome per input email
        """
        semaphore = asyncio.Semaphore(self._config.processing.concurrency)

        async def bounded(raw: RawEmail) -> EmailOutcome:
            async with semaphore:
                return await self.process_email(raw, mailbox)

        return list(await asyncio.gather(*(bounded(raw) for raw in raw_emails)))

    async def process_email(self, raw: RawEmail, mailbox: Mailbox | None = None) -> EmailOutcome:
        """Preprocess, analyze and compose one email, then save its draft.

        Args:
            raw: Fetched message
            mailbox: Connected mailbox for the draft append (None skips it)

        Returns:
            EmailOutcome; failures are captured and logged, never raised
        """
        try:
            email = self._preprocessor.process(raw)
            analysis = await asyncio.to_thread(self._analyzer.analyze, email)
            if not analysis.is_important:
                logger.info("email_skipped", uid=email.uid, category=analysis.category)
                return EmailOutcome(uid=email.uid, status="skipped", analysis=analysis)

            response = await asyncio.to_thread(
                self._composer.compose, email, analysis, self._use_templates
            )
        except ReplydeskError as e:
            logger.error(
                "email_processing_failed",
                uid=raw.uid,
                sender=self._sender_for_log(raw),
                error=str(e),
                error_type=type(e).__name__,
            )
            return EmailOutcome(uid=raw.uid, status="failed", error=str(e))
        except Exception as e:
            # One bad email must not abort the batch
            logger.exception(
                "email_processing_crashed",
                uid=raw.uid,
                sender=self._sender_for_log(raw),
                error=str(e),
                error_type=type(e).__name__,
            )
            return EmailOutcome(uid=raw.uid, status="failed", error=f"{type(e).__name__}: {e}")

        outcome = EmailOutcome(uid=email.uid, status="replied", analysis=analysis, result=response)
        if self._config.processing.save_drafts and mailbox is not None:
            outcome.draft_message_id = await self._save_draft(mailbox, email, response)
        return outcome

    # ------------------------------------------------------------------
    # Mailbox writes (serialized)
    # ------------------------------------------------------------------

    async def _save_draft(
        self,
        mailbox: Mailbox,
        email: ProcessedEmail,
        response: ResponseResult,
    ) -> str | None:
        reply = self._config.reply
        from_address = reply.sender_address or self._config.imap.user
        try:
            draft = build_reply_draft(
                email,
                response.response,
                from_address=from_address,
                from_name=reply.sender_name,
            )
            async with self._mailbox_lock:
                await asyncio.to_thread(mailbox.append_draft, draft.as_bytes())
        except (MailboxError, ValueError) as e:
            logger.warning("draft_save_failed", uid=email.uid, error=str(e))
            return None

        logger.info(
            "draft_created",
            uid=email.uid,
            message_id=draft.message_id,
            outcome=response.outcome.value,
        )
        return draft.message_id

    async def _mark_read(self, mailbox: Mailbox, outcomes: list[EmailOutcome]) -> int:
        marked = 0
        for outcome in outcomes:
            if outcome.status == "failed":
                continue
            try:
                async with self._mailbox_lock:
                    await asyncio.to_thread(mailbox.mark_as_read, outcome.uid)
                marked += 1
            except MailboxError as e:
                logger.warning("mark_read_failed", uid=outcome.uid, error=str(e))
        return marked

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _tally(result: BatchResult, outcomes: list[EmailOutcome]) -> None:
        for outcome in outcomes:
            if outcome.status == "skipped":
                result.skipped += 1
                continue
            if outcome.status == "failed":
                result.failed += 1
                continue

            result.processed += 1
            if outcome.draft_message_id:
                result.drafts_saved += 1
            assert outcome.result is not None
            match outcome.result.outcome:
                case ComposerState.PERSONALIZED:
                    result.personalized += 1
                case ComposerState.MANUAL_REVIEW_FLAGGED:
                    result.manual_review += 1
                case ComposerState.FREE_FORM_GENERATED:
                    result.free_form += 1

    def _sender_for_log(self, email: RawEmail | ProcessedEmail) -> str:
        if self._config.logging.redact_pii:
            return redact_address(email.sender)
        return email.sender


def _parse_since(value: str | None) -> date | None:
    """Convert the validated fetch_since setting into a date."""
    if not value:
        return None
    return date.fromisoformat(value)
