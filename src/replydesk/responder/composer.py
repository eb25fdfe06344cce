"""Reply composer: template selection, personalization and fallbacks.

Composition is a small state machine. Every run starts at START and ends in
exactly one terminal state:

    START -> TEMPLATE_CANDIDATES_RETRIEVED
          -> CANDIDATES_EMPTY     -> FREE_FORM_GENERATED
          -> TEMPLATE_SELECTED    -> PERSONALIZED
          -> NO_TEMPLATE_SUITABLE -> MANUAL_REVIEW_FLAGGED

The retriever supplies a wide, deterministic candidate list; the oracle then
picks one candidate or declares none suitable. An unusable selection reply
falls back to the best-scoring candidate. A "none suitable" verdict, or a
pick that contradicts the analyzed intent, yields a manual-review notice
rather than a generated reply.

Usage:
    from replydesk.responder.composer import ResponseComposer

    composer = ResponseComposer(oracle=oracle, config=config, retriever=retriever)
    result = composer.compose(email, analysis)
    print(result.outcome, result.response)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from replydesk.config_schema import AppConfig
from replydesk.core.errors import SelectionParseError
from replydesk.core.logging import get_logger
from replydesk.oracle.base import system_message, user_message
from replydesk.responder.analyzer import IntentAnalyzer
from replydesk.responder.guard import check_template_intent
from replydesk.responder.models import (
    ComposerState,
    MatchedTemplate,
    ResponseResult,
    Selection,
    SelectionConfidence,
)
from replydesk.responder.prompts import (
    build_free_form_system_prompt,
    build_free_form_user_prompt,
    build_personalize_prompt,
    build_selection_prompt,
    parse_selection_response,
)
from replydesk.templates.retriever import detect_language

if TYPE_CHECKING:
    from replydesk.mail.models import ProcessedEmail
    from replydesk.oracle.base import Oracle
    from replydesk.responder.models import AnalysisResult
    from replydesk.templates.retriever import TemplateMatch, TemplateRetriever

logger = get_logger(__name__)

MANUAL_REVIEW_MARKER = "[MANUAL REVIEW REQUIRED]"
FALLBACK_REASONING_PREFIX = "fallback: "


def build_manual_review_notice(
    email: ProcessedEmail,
    analysis: AnalysisResult,
    reason: str,
) -> str:
    """Format the notice stored in place of a reply.

    Args:
        email: Cleaned email
        analysis: Analysis of the email
        reason: Why no template reply was produced

    Returns:
        Fixed-format notice starting with MANUAL_REVIEW_MARKER
    """
    return "\n".join(
        [
            MANUAL_REVIEW_MARKER,
            "No suitable template was found for this email. Please reply manually.",
            "",
            f"Category: {analysis.category}",
            f"Intent: {analysis.intent.value}",
            f"Keywords: {', '.join(analysis.keywords) or '(none)'}",
            f"From: {email.sender}",
            f"Subject: {email.subject}",
            f"Reason: {reason or 'not given'}",
        ]
    )


class _Trace:
    """Records visited states in order."""

    def __init__(self) -> None:
        self.states: list[ComposerState] = [ComposerState.START]

    def enter(self, state: ComposerState) -> None:
        self.states.append(state)

    def as_tuple(self) -> tuple[ComposerState, ...]:
        return tuple(self.states)


class ResponseComposer:
    """Turns an analyzed email into a reply, a manual-review notice, or a
    free-form draft.

    Safe to share across worker threads: each compose() call keeps its
    state in locals.
    """

    def __init__(
        self,
        oracle: Oracle,
        config: AppConfig | None = None,
        retriever: TemplateRetriever | None = None,
        analyzer: IntentAnalyzer | None = None,
    ):
        """Initialize the composer.

        Args:
            oracle: Completion backend
            config: Application config (defaults apply when None)
            retriever: Template retriever; None disables template replies
            analyzer: Used for oracle-based language detection (created on
                demand when not given)
        """
        self._oracle = oracle
        self._config = config or AppConfig()
        self._retriever = retriever
        self._analyzer = analyzer

    @property
    def internal_language(self) -> str | None:
        reply = self._config.reply
        return reply.internal_language if reply.internal_translation else None

    def compose(
        self,
        email: ProcessedEmail,
        analysis: AnalysisResult,
        use_templates: bool = True,
    ) -> ResponseResult:
        """Produce the reply for one email.

        Args:
            email: Cleaned email
            analysis: Result of IntentAnalyzer.analyze for this email
            use_templates: False skips retrieval and drafts free-form

        Returns:
            ResponseResult in one of the three terminal states

        Raises:
            OracleError: If a selection, personalization or free-form
                request fails at the transport level
        """
        trace = _Trace()
        language = self.resolve_language(email, analysis)

        matches = self._retrieve(email, analysis, use_templates)
        trace.enter(ComposerState.TEMPLATE_CANDIDATES_RETRIEVED)

        if not matches:
            trace.enter(ComposerState.CANDIDATES_EMPTY)
            return self._free_form(email, language, trace)

        try:
            selection = self._select(email, analysis, matches)
        except SelectionParseError as e:
            logger.warning("template_selection_unparseable", uid=email.uid, error=str(e))
            selection = self._fallback_selection(matches, analysis, str(e))

        if selection.index is None:
            trace.enter(ComposerState.NO_TEMPLATE_SUITABLE)
            return self._manual_review(email, analysis, language, trace, selection, selection.reasoning)

        chosen = matches[selection.index]
        if self._config.composer.intent_guard and not selection.fallback:
            verdict = check_template_intent(chosen.template, analysis.intent)
            if not verdict.allowed:
                logger.warning(
                    "template_selection_rejected",
                    uid=email.uid,
                    template_id=chosen.template.id,
                    intent=analysis.intent.value,
                    reason=verdict.reason,
                )
                trace.enter(ComposerState.NO_TEMPLATE_SUITABLE)
                return self._manual_review(email, analysis, language, trace, selection, verdict.reason)

        template_text = self._template_text(chosen, language)
        if not template_text:
            logger.warning(
                "template_text_missing",
                uid=email.uid,
                template_id=chosen.template.id,
                language=language,
            )
            trace.enter(ComposerState.NO_TEMPLATE_SUITABLE)
            reason = f"template {chosen.template.id} has no text for '{language}' or English"
            return self._manual_review(email, analysis, language, trace, selection, reason)

        trace.enter(ComposerState.TEMPLATE_SELECTED)
        return self._personalize(email, analysis, language, chosen, template_text, selection, trace)

    def resolve_language(self, email: ProcessedEmail, analysis: AnalysisResult) -> str:
        """Pick the reply language.

        Uses the analysis language when present; otherwise the configured
        detector (offline heuristic or oracle).
        """
        if analysis.language:
            return analysis.language

        if self._config.composer.language_detection == "oracle":
            if self._analyzer is None:
                self._analyzer = IntentAnalyzer(self._oracle, self._config)
            return self._analyzer.detect_language(email)

        if self._retriever is not None:
            return self._retriever.detect_language(email)
        return detect_language(email.search_text)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _retrieve(
        self,
        email: ProcessedEmail,
        analysis: AnalysisResult,
        use_templates: bool,
    ) -> list[TemplateMatch]:
        if not use_templates or not self._config.templates.enabled or self._retriever is None:
            return []
        return self._retriever.find_best_matches(
            email,
            analysis.category,
            limit=self._config.composer.candidate_limit,
        )

    def _select(
        self,
        email: ProcessedEmail,
        analysis: AnalysisResult,
        matches: Sequence[TemplateMatch],
    ) -> Selection:
        """Ask the oracle to choose a candidate.

        Raises:
            SelectionParseError: If the reply is unusable
        """
        prompt = build_selection_prompt(email, analysis, matches)
        raw_text = self._oracle.complete(
            [user_message(prompt)],
            temperature=self._config.composer.selection_temperature,
        )
        selection = parse_selection_response(raw_text, len(matches))
        logger.info(
            "template_selection",
            uid=email.uid,
            candidates=len(matches),
            selected_index=selection.index,
            template_id=matches[selection.index].template.id if selection.index is not None else None,
            confidence=selection.confidence.value,
        )
        return selection

    def _fallback_selection(
        self,
        matches: Sequence[TemplateMatch],
        analysis: AnalysisResult,
        error: str,
    ) -> Selection:
        """Choose the best deterministic candidate without an oracle verdict.

        With the intent guard on, candidates that contradict the intent are
        skipped; if none remain the result is "no suitable template".
        """
        for index, match in enumerate(matches):
            if self._config.composer.intent_guard:
                verdict = check_template_intent(match.template, analysis.intent)
                if not verdict.allowed:
                    continue
            return Selection(
                index=index,
                reasoning=(
                    f"{FALLBACK_REASONING_PREFIX}selection reply unusable ({error}); "
                    f"using highest-scoring candidate {match.template.id} "
                    f"(score {match.score:g})"
                ),
                confidence=SelectionConfidence.NONE,
                fallback=True,
            )

        return Selection(
            index=None,
            reasoning=(
                f"{FALLBACK_REASONING_PREFIX}selection reply unusable ({error}) and no "
                f"candidate is consistent with intent {analysis.intent.value}"
            ),
            confidence=SelectionConfidence.NONE,
            fallback=True,
        )

    def _template_text(self, chosen: TemplateMatch, language: str) -> str:
        if self._retriever is not None:
            return self._retriever.get_template_content(chosen.template, language)
        return chosen.template.content_for(language)

    def _personalize(
        self,
        email: ProcessedEmail,
        analysis: AnalysisResult,
        language: str,
        chosen: TemplateMatch,
        template_text: str,
        selection: Selection,
        trace: _Trace,
    ) -> ResponseResult:
        template = chosen.template
        prompt = build_personalize_prompt(
            template_text,
            email,
            language,
            intent=analysis.intent.value,
            internal_language=self.internal_language,
        )
        response = self._oracle.complete(
            [user_message(prompt)],
            temperature=self._config.composer.personalize_temperature,
        ).strip()

        trace.enter(ComposerState.PERSONALIZED)
        logger.info(
            "reply_composed",
            uid=email.uid,
            outcome=ComposerState.PERSONALIZED.value,
            template_id=template.id,
            score=chosen.score,
            language=language,
            fallback=selection.fallback,
        )
        return ResponseResult(
            response=response,
            language=language,
            outcome=ComposerState.PERSONALIZED,
            states=trace.as_tuple(),
            matched_templates=(
                MatchedTemplate(id=template.id, scenario=template.scenario, score=chosen.score),
            ),
            selection_reasoning=selection.reasoning,
            selection_confidence=selection.confidence,
        )

    def _manual_review(
        self,
        email: ProcessedEmail,
        analysis: AnalysisResult,
        language: str,
        trace: _Trace,
        selection: Selection,
        reason: str,
    ) -> ResponseResult:
        trace.enter(ComposerState.MANUAL_REVIEW_FLAGGED)
        logger.info(
            "reply_composed",
            uid=email.uid,
            outcome=ComposerState.MANUAL_REVIEW_FLAGGED.value,
            reason=reason,
        )
        return ResponseResult(
            response=build_manual_review_notice(email, analysis, reason),
            language=language,
            outcome=ComposerState.MANUAL_REVIEW_FLAGGED,
            states=trace.as_tuple(),
            selection_reasoning=selection.reasoning,
            selection_confidence=selection.confidence,
        )

    def _free_form(self, email: ProcessedEmail, language: str, trace: _Trace) -> ResponseResult:
        messages = [
            system_message(build_free_form_system_prompt(self._config.reply.product_name)),
            user_message(build_free_form_user_prompt(email, language, self.internal_language)),
        ]
        response = self._oracle.complete(
            messages,
            temperature=self._config.composer.free_form_temperature,
        ).strip()

        trace.enter(ComposerState.FREE_FORM_GENERATED)
        logger.info(
            "reply_composed",
            uid=email.uid,
            outcome=ComposerState.FREE_FORM_GENERATED.value,
            language=language,
        )
        return ResponseResult(
            response=response,
            language=language,
            outcome=ComposerState.FREE_FORM_GENERATED,
            states=trace.as_tuple(),
        )
