"""Value types for analysis and reply composition.

Oracle output is coerced into closed enumerations at this boundary. Values
the oracle invents map to an escape-hatch member (Intent.OTHER,
Sentiment.UNKNOWN, Priority.MEDIUM, SelectionConfidence.NONE) and a warning
is logged, so downstream code never branches on free-form strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from replydesk.core.logging import get_logger

logger = get_logger(__name__)

E = TypeVar("E", bound=StrEnum)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Sentiment(StrEnum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    FRUSTRATED = "frustrated"
    UNKNOWN = "unknown"


class Intent(StrEnum):
    """What the customer actually wants, independent of category."""

    REFUND_REQUEST = "refund_request"
    CANCEL_SUBSCRIPTION = "cancel_subscription"
    RESTORE_PURCHASE = "restore_purchase"
    ACTIVATE_MEMBERSHIP = "activate_membership"
    AD_REWARDS = "ad_rewards"
    TECHNICAL_ISSUE = "technical_issue"
    ACCOUNT_ISSUE = "account_issue"
    CONTENT_REQUEST = "content_request"
    FEEDBACK = "feedback"
    INQUIRY = "inquiry"
    OTHER = "other"


class SelectionConfidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class ComposerState(StrEnum):
    """States of the reply composition state machine."""

    START = "start"
    TEMPLATE_CANDIDATES_RETRIEVED = "template_candidates_retrieved"
    TEMPLATE_SELECTED = "template_selected"
    NO_TEMPLATE_SUITABLE = "no_template_suitable"
    CANDIDATES_EMPTY = "candidates_empty"
    PERSONALIZED = "personalized"
    MANUAL_REVIEW_FLAGGED = "manual_review_flagged"
    FREE_FORM_GENERATED = "free_form_generated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        ComposerState.PERSONALIZED,
        ComposerState.MANUAL_REVIEW_FLAGGED,
        ComposerState.FREE_FORM_GENERATED,
    }
)


def coerce_enum(enum_cls: type[E], value: Any, default: E, field_name: str) -> E:
    """Map an oracle-supplied value onto an enum member.

    Matching ignores case, surrounding whitespace, and treats '-' and ' '
    like '_' (so "Refund Request" and "refund-request" both map).

    Args:
        enum_cls: Target StrEnum
        value: Raw value from the oracle (any type)
        default: Escape-hatch member for unknown values
        field_name: Field name for the warning log

    Returns:
        The matching member, or `default`
    """
    if value is None or value == "":
        return default
    if isinstance(value, enum_cls):
        return value

    normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return enum_cls(normalized)
    except ValueError:
        logger.warning(
            "unknown_enum_value",
            field=field_name,
            value=str(value)[:50],
            fallback=default.value,
        )
        return default


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Structured classification of one email.

    Attributes:
        language: ISO 639-1 code of the customer's language ("" if unknown)
        category: One category name from the corpus (or default list)
        intent: The customer's actual request
        keywords: Salient keywords chosen by the oracle
        suggested_template: Scenario hint from the oracle, if any
        sentiment: Customer sentiment
        priority: Handling priority
        is_important: False for notifications, marketing, auto-replies, spam
        suggested_actions: Next steps for the support agent
        reasoning: The oracle's explanation, or a failure note
        parse_failed: True when this is the safe default after a parse failure
    """

    language: str
    category: str
    intent: Intent
    keywords: tuple[str, ...]
    sentiment: Sentiment
    priority: Priority
    is_important: bool
    reasoning: str
    suggested_template: str | None = None
    suggested_actions: tuple[str, ...] = ()
    parse_failed: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "language": self.language,
            "category": self.category,
            "intent": self.intent.value,
            "keywords": list(self.keywords),
            "suggestedTemplate": self.suggested_template,
            "sentiment": self.sentiment.value,
            "priority": self.priority.value,
            "isImportant": self.is_important,
            "suggestedActions": list(self.suggested_actions),
            "reasoning": self.reasoning,
        }


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MatchedTemplate:
    """Summary of the template a personalized reply was built from."""

    id: str
    scenario: str
    score: float


@dataclass(frozen=True, slots=True)
class Selection:
    """The selection oracle's verdict.

    Attributes:
        index: 0-based candidate index, or None when no candidate fits
        reasoning: Short justification
        confidence: Self-reported confidence
        fallback: True when the verdict was synthesized after a parse failure
    """

    index: int | None
    reasoning: str
    confidence: SelectionConfidence = SelectionConfidence.NONE
    fallback: bool = False


@dataclass(frozen=True, slots=True)
class ResponseResult:
    """Final output of reply composition.

    Attributes:
        response: Reply text, or the manual-review notice
        language: Language the reply targets
        outcome: Terminal state reached
        states: Every state visited, in order
        matched_templates: Set only when outcome is PERSONALIZED
        selection_reasoning: The selection verdict's reasoning, if a selection ran
        selection_confidence: The selection verdict's confidence, if a selection ran
    """

    response: str
    language: str
    outcome: ComposerState
    states: tuple[ComposerState, ...] = field(default_factory=tuple)
    matched_templates: tuple[MatchedTemplate, ...] | None = None
    selection_reasoning: str | None = None
    selection_confidence: SelectionConfidence | None = None

    @property
    def needs_manual_review(self) -> bool:
        return self.outcome == ComposerState.MANUAL_REVIEW_FLAGGED

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        result: dict[str, Any] = {
            "response": self.response,
            "language": self.language,
            "outcome": self.outcome.value,
            "states": [s.value for s in self.states],
        }
        if self.matched_templates:
            result["matchedTemplates"] = [
                {"id": m.id, "scenario": m.scenario, "score": m.score}
                for m in self.matched_templates
            ]
        if self.selection_reasoning is not None:
            result["selectionReasoning"] = self.selection_reasoning
        if self.selection_confidence is not None:
            result["selectionConfidence"] = self.selection_confidence.value
        return result
