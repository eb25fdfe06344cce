"""Reply decision components.

This package turns a cleaned email into a reply:
- Intent analysis with a single structured oracle call
- Template selection, personalization and fallbacks (ResponseComposer)
- Intent guard for selected templates
- Prompt templates and oracle reply parsing

Usage:
    from replydesk.responder import IntentAnalyzer, ResponseComposer

    analysis = IntentAnalyzer(oracle, config, store).analyze(email)
    result = ResponseComposer(oracle, config, retriever).compose(email, analysis)
"""

from replydesk.responder.analyzer import IntentAnalyzer
from replydesk.responder.composer import (
    MANUAL_REVIEW_MARKER,
    ResponseComposer,
    build_manual_review_notice,
)
from replydesk.responder.guard import GuardVerdict, check_template_intent
from replydesk.responder.models import (
    AnalysisResult,
    ComposerState,
    Intent,
    MatchedTemplate,
    Priority,
    ResponseResult,
    Selection,
    SelectionConfidence,
    Sentiment,
)

__all__ = [
    # Analysis
    "IntentAnalyzer",
    "AnalysisResult",
    # Composition
    "ResponseComposer",
    "ResponseResult",
    "MatchedTemplate",
    "Selection",
    "ComposerState",
    "MANUAL_REVIEW_MARKER",
    "build_manual_review_notice",
    # Guard
    "GuardVerdict",
    "check_template_intent",
    # Enumerations
    "Intent",
    "Priority",
    "Sentiment",
    "SelectionConfidence",
]
