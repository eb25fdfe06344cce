"""Intent analyzer: one structured oracle call per email.

The analyzer asks the oracle for category, intent, keywords, importance,
sentiment, priority and language in a single JSON reply, then coerces
every field into the closed types of AnalysisResult.

A reply that cannot be decoded never raises. The analyzer returns a safe
default instead: marked important and routed to the follow-up category, so
an ambiguous email always reaches a human. Transport failures (timeouts,
API errors) are not parse failures and do propagate.

Usage:
    from replydesk.responder.analyzer import IntentAnalyzer

    analyzer = IntentAnalyzer(oracle=oracle, config=config, store=store)
    analysis = analyzer.analyze(email)
    if analysis.is_important:
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from replydesk.config_schema import DEFAULT_CATEGORIES, AppConfig
from replydesk.core.errors import AnalysisParseError
from replydesk.core.logging import get_logger, redact_address
from replydesk.oracle.base import user_message
from replydesk.responder.models import (
    AnalysisResult,
    Intent,
    Priority,
    Sentiment,
    coerce_enum,
)
from replydesk.responder.prompts import (
    LANGUAGE_CODE_PATTERN,
    build_analysis_prompt,
    build_language_prompt,
    parse_analysis_response,
    parse_language_code,
)
from replydesk.templates.retriever import detect_language as detect_language_offline

if TYPE_CHECKING:
    from replydesk.mail.models import ProcessedEmail
    from replydesk.oracle.base import Oracle
    from replydesk.templates.store import TemplateStore

logger = get_logger(__name__)

LANGUAGE_DETECTION_TEMPERATURE = 0.1
MANUAL_REVIEW_ACTION = "Review manually"


class IntentAnalyzer:
    """Classifies emails with a single oracle request.

    Holds no per-email state, so one instance can analyze emails from
    several worker threads at once.

    Attributes:
        categories: Category names offered to the oracle
    """

    def __init__(
        self,
        oracle: Oracle,
        config: AppConfig | None = None,
        store: TemplateStore | None = None,
    ):
        """Initialize the analyzer.

        Args:
            oracle: Completion backend
            config: Application config (defaults apply when None)
            store: Template store supplying categories; None falls back to
                DEFAULT_CATEGORIES
        """
        self._oracle = oracle
        self._config = config or AppConfig()
        self._store = store

        if store is not None and len(store) > 0:
            self.categories: tuple[str, ...] = store.get_categories()
        else:
            self.categories = DEFAULT_CATEGORIES

    def analyze(self, email: ProcessedEmail) -> AnalysisResult:
        """Classify one email.

        Args:
            email: Cleaned email

        Returns:
            AnalysisResult; the safe default if the reply could not be parsed

        Raises:
            OracleError: If the oracle request itself fails
        """
        prompt = build_analysis_prompt(
            email,
            self.categories,
            product_name=self._config.reply.product_name,
        )
        raw_text = self._oracle.complete(
            [user_message(prompt)],
            temperature=self._config.analysis.temperature,
        )

        try:
            data = parse_analysis_response(raw_text)
        except AnalysisParseError as e:
            logger.warning(
                "analysis_parse_failed",
                uid=email.uid,
                sender=self._sender_for_log(email),
                error=str(e),
            )
            return self._safe_default(email, str(e))

        result = self._build_result(data, email)
        logger.info(
            "email_analyzed",
            uid=email.uid,
            sender=self._sender_for_log(email),
            category=result.category,
            intent=result.intent.value,
            priority=result.priority.value,
            is_important=result.is_important,
            language=result.language or None,
        )
        return result

    def detect_language(self, email: ProcessedEmail) -> str:
        """Ask the oracle for the email's ISO 639-1 language code.

        Args:
            email: Cleaned email

        Returns:
            Two-letter code, "en" if the reply contains none
        """
        raw_text = self._oracle.complete(
            [user_message(build_language_prompt(email))],
            temperature=LANGUAGE_DETECTION_TEMPERATURE,
        )
        language = parse_language_code(raw_text)
        logger.debug("language_detected", uid=email.uid, language=language, source="oracle")
        return language

    # ------------------------------------------------------------------
    # Result construction
    # ------------------------------------------------------------------

    def _build_result(self, data: dict[str, Any], email: ProcessedEmail) -> AnalysisResult:
        """Coerce a decoded analysis reply into an AnalysisResult."""
        category = str(data.get("category") or "").strip()
        if not category:
            category = self._config.analysis.follow_up_category
        elif category not in self.categories:
            logger.warning(
                "analysis_category_unknown",
                uid=email.uid,
                category=category[:50],
            )

        suggested = data.get("suggestedTemplate")
        return AnalysisResult(
            language=_normalize_language(data.get("language")),
            category=category,
            intent=coerce_enum(Intent, data.get("intent"), Intent.OTHER, "intent"),
            keywords=_string_tuple(data.get("keywords")),
            sentiment=coerce_enum(Sentiment, data.get("sentiment"), Sentiment.UNKNOWN, "sentiment"),
            priority=coerce_enum(Priority, data.get("priority"), Priority.MEDIUM, "priority"),
            is_important=_coerce_bool(data.get("isImportant"), default=True),
            reasoning=str(data.get("reasoning") or "").strip(),
            suggested_template=(str(suggested).strip() or None) if suggested else None,
            suggested_actions=_string_tuple(data.get("suggestedActions")),
        )

    def _safe_default(self, email: ProcessedEmail, error: str) -> AnalysisResult:
        """Result used when the analysis reply could not be parsed."""
        return AnalysisResult(
            language=detect_language_offline(email.search_text),
            category=self._config.analysis.follow_up_category,
            intent=Intent.OTHER,
            keywords=(),
            sentiment=Sentiment.NEUTRAL,
            priority=Priority.MEDIUM,
            is_important=True,
            reasoning=f"Automatic analysis failed, flagged for manual follow-up: {error}",
            suggested_actions=(MANUAL_REVIEW_ACTION,),
            parse_failed=True,
        )

    def _sender_for_log(self, email: ProcessedEmail) -> str:
        if self._config.logging.redact_pii:
            return redact_address(email.sender)
        return email.sender


def _normalize_language(value: Any) -> str:
    """Reduce an oracle language value to a two-letter code, or ""."""
    if not isinstance(value, str):
        return ""
    match = LANGUAGE_CODE_PATTERN.match(value.strip().lower(), timeout=1)
    return match.group(0) if match else ""


def _string_tuple(value: Any) -> tuple[str, ...]:
    """Coerce a list (or comma-separated string) into non-empty strings."""
    if value is None:
        return ()
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, list | tuple):
        items = list(value)
    else:
        return ()
    return tuple(s for s in (str(item).strip() for item in items if item is not None) if s)


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
    return default
