"""Tests for the reply composer state machine.

Covers the three terminal paths (personalized, manual review, free-form),
the deterministic fallback after an unusable selection reply, the intent
guard, and reply-language resolution.
"""

import json
from collections.abc import Callable
from typing import Any

import pytest

from replydesk.config_schema import AppConfig
from replydesk.core.errors import OracleTimeoutError
from replydesk.mail.models import ProcessedEmail
from replydesk.responder.composer import (
    FALLBACK_REASONING_PREFIX,
    MANUAL_REVIEW_MARKER,
    ResponseComposer,
    build_manual_review_notice,
)
from replydesk.responder.models import (
    AnalysisResult,
    ComposerState,
    Intent,
    MatchedTemplate,
    SelectionConfidence,
)
from replydesk.responder.prompts import TRANSLATION_SEPARATOR
from replydesk.templates.models import Template
from replydesk.templates.retriever import TemplateRetriever
from replydesk.templates.store import TemplateStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _selection(index: int | None, reasoning: str = "fits the request", confidence: str = "high") -> str:
    return json.dumps({"selectedIndex": index, "reasoning": reasoning, "confidence": confidence})


def _retriever_for(*templates: Template) -> TemplateRetriever:
    return TemplateRetriever(TemplateStore(templates))


def _template(template_id: str, keywords: tuple[str, ...], scenario: str = "", **languages: str) -> Template:
    return Template(
        id=template_id,
        category="c",
        scenario=scenario,
        keywords=keywords,
        languages=languages or {"en": f"text of {template_id}"},
    )


def _config(**composer: Any) -> AppConfig:
    return AppConfig(composer=composer)


PERSONALIZED_PATH = (
    ComposerState.START,
    ComposerState.TEMPLATE_CANDIDATES_RETRIEVED,
    ComposerState.TEMPLATE_SELECTED,
    ComposerState.PERSONALIZED,
)
MANUAL_REVIEW_PATH = (
    ComposerState.START,
    ComposerState.TEMPLATE_CANDIDATES_RETRIEVED,
    ComposerState.NO_TEMPLATE_SUITABLE,
    ComposerState.MANUAL_REVIEW_FLAGGED,
)
FREE_FORM_PATH = (
    ComposerState.START,
    ComposerState.TEMPLATE_CANDIDATES_RETRIEVED,
    ComposerState.CANDIDATES_EMPTY,
    ComposerState.FREE_FORM_GENERATED,
)


# ===========================================================================
# Personalized path
# ===========================================================================


class TestPersonalized:
    """Tests for the selected-template path."""

    def test_selected_template_is_personalized(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([_selection(0), "  Dear customer, your refund is on its way.\n"])
        composer = ResponseComposer(oracle, AppConfig(), retriever)

        result = composer.compose(make_email(), make_analysis())

        assert result.outcome == ComposerState.PERSONALIZED
        assert result.states == PERSONALIZED_PATH
        assert result.response == "Dear customer, your refund is on its way."
        assert result.language == "en"
        assert result.matched_templates == (
            MatchedTemplate(id="refund_001", scenario="用户申请退款", score=4.0),
        )
        assert result.selection_reasoning == "fits the request"
        assert result.selection_confidence == SelectionConfidence.HIGH
        assert not result.needs_manual_review

    def test_oracle_calls_and_temperatures(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        """Test that selection and personalization each make one low-temperature call."""
        oracle = make_oracle([_selection(1), "reply"])
        ResponseComposer(oracle, AppConfig(), retriever).compose(make_email(), make_analysis())

        assert [temperature for _, temperature in oracle.calls] == [0.3, 0.3]
        selection_prompt, personalize_prompt = oracle.prompts
        assert "[0] scenario: 用户申请退款" in selection_prompt
        assert "[1] scenario: refund processing time" in selection_prompt
        assert "Intent: refund_request" in selection_prompt
        assert "Refunds are usually processed within 5-7 business days." in personalize_prompt

    def test_fenced_selection_reply(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([f"```json\n{_selection(0)}\n```", "reply"])
        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis()
        )
        assert result.outcome == ComposerState.PERSONALIZED

    def test_template_text_in_reply_language(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        """Test that the Chinese variant is used and no translation is requested."""
        oracle = make_oracle([_selection(0), "您好"])
        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis(language="zh")
        )

        personalize_prompt = oracle.prompts[1]
        assert "您好，我们已收到您的退款申请" in personalize_prompt
        assert TRANSLATION_SEPARATOR not in personalize_prompt
        assert result.language == "zh"

    def test_translation_requested_for_foreign_reply(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([_selection(0), "reply"])
        ResponseComposer(oracle, AppConfig(), retriever).compose(make_email(), make_analysis())
        assert TRANSLATION_SEPARATOR in oracle.prompts[1]

    def test_extracted_details_shown_to_personalization(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([_selection(0), "reply"])
        email = make_email(order_id="GPA.1234-5678", app_version="2.3.1")
        ResponseComposer(oracle, AppConfig(), retriever).compose(email, make_analysis())

        assert "Order ID: GPA.1234-5678" in oracle.prompts[1]
        assert "App Version: 2.3.1" in oracle.prompts[1]

    def test_result_serializes(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([_selection(0), "reply"])
        data = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis()
        ).to_dict()

        assert data["outcome"] == "personalized"
        assert data["states"][-1] == "personalized"
        assert data["matchedTemplates"] == [
            {"id": "refund_001", "scenario": "用户申请退款", "score": 4.0}
        ]
        assert data["selectionConfidence"] == "high"


# ===========================================================================
# Manual review path
# ===========================================================================


class TestManualReview:
    """Tests for the no-suitable-template path."""

    def test_null_selection_flags_manual_review(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([_selection(None, reasoning="none of these answer the question")])
        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis()
        )

        assert result.outcome == ComposerState.MANUAL_REVIEW_FLAGGED
        assert result.states == MANUAL_REVIEW_PATH
        assert result.needs_manual_review
        assert result.response.startswith(MANUAL_REVIEW_MARKER)
        assert "Reason: none of these answer the question" in result.response
        assert result.matched_templates is None
        assert len(oracle.calls) == 1

    def test_guard_rejects_contradicting_pick(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        """Test that a refund template picked for a restore request is not used."""
        oracle = make_oracle([_selection(0)])
        analysis = make_analysis(intent=Intent.RESTORE_PURCHASE)

        result = ResponseComposer(oracle, AppConfig(), retriever).compose(make_email(), analysis)

        assert result.outcome == ComposerState.MANUAL_REVIEW_FLAGGED
        assert result.states == MANUAL_REVIEW_PATH
        assert "contradicts intent restore_purchase" in result.response
        assert len(oracle.calls) == 1

    def test_guard_disabled_allows_pick(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([_selection(0), "reply"])
        composer = ResponseComposer(oracle, _config(intent_guard=False), retriever)

        result = composer.compose(make_email(), make_analysis(intent=Intent.RESTORE_PURCHASE))

        assert result.outcome == ComposerState.PERSONALIZED

    def test_missing_template_text(
        self,
        make_oracle: Any,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        """Test that a template without the reply language or English is not personalized."""
        retriever = _retriever_for(_template("t_fr", ("refund",), fr="Bonjour"))
        oracle = make_oracle([_selection(0)])

        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis(category="c", language="de")
        )

        assert result.outcome == ComposerState.MANUAL_REVIEW_FLAGGED
        assert result.states == MANUAL_REVIEW_PATH
        assert "t_fr has no text for 'de'" in result.response

    def test_notice_format(
        self,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        notice = build_manual_review_notice(
            make_email(),
            make_analysis(keywords=()),
            reason="",
        )
        lines = notice.splitlines()
        assert lines[0] == MANUAL_REVIEW_MARKER
        assert "Category: 退款相关" in lines
        assert "Intent: refund_request" in lines
        assert "Keywords: (none)" in lines
        assert "From: customer@example.com" in lines
        assert "Reason: not given" in lines


# ===========================================================================
# Fallback selection
# ===========================================================================


class TestFallbackSelection:
    """Tests for the deterministic fallback after an unusable selection reply."""

    @pytest.mark.parametrize(
        "reply",
        [
            "I think the first one is best",
            '{"selectedIndex": 7, "reasoning": "x"}',
            '{"selectedIndex": -1}',
            '{"selectedIndex": true}',
            '{"reasoning": "no index at all"}',
            "[0]",
            pytest.param("[" * 100_000 + "]" * 100_000, id="deeply_nested"),
        ],
    )
    def test_unusable_reply_uses_top_candidate(
        self,
        reply: str,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([reply, "personalized reply"])
        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis()
        )

        assert result.outcome == ComposerState.PERSONALIZED
        assert result.matched_templates[0].id == "refund_001"
        assert result.selection_confidence == SelectionConfidence.NONE
        assert result.selection_reasoning.startswith(FALLBACK_REASONING_PREFIX)

    def test_fallback_skips_contradicting_candidates(
        self,
        make_oracle: Any,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        retriever = _retriever_for(
            _template("t_refund", ("refund", "purchase")),
            _template("t_restore", ("purchase",), scenario="restore purchase"),
        )
        oracle = make_oracle(["garbage", "reply"])
        email = make_email(subject="Purchase", text="I made a purchase, refund or restore it")

        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            email, make_analysis(category="c", intent=Intent.RESTORE_PURCHASE)
        )

        assert result.outcome == ComposerState.PERSONALIZED
        assert result.matched_templates[0].id == "t_restore"

    def test_fallback_with_no_consistent_candidate(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle(["garbage"])
        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis(intent=Intent.RESTORE_PURCHASE)
        )

        assert result.outcome == ComposerState.MANUAL_REVIEW_FLAGGED
        assert "no candidate is consistent with intent restore_purchase" in result.response
        assert len(oracle.calls) == 1


# ===========================================================================
# Free-form path
# ===========================================================================


class TestFreeForm:
    """Tests for replies drafted without a template."""

    def test_no_candidates_generates_free_form(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle(["Thank you for your kind words!"])
        email = make_email(subject="Hello", text="Just saying thanks for the great app")

        result = ResponseComposer(oracle, AppConfig(), retriever).compose(email, make_analysis())

        assert result.outcome == ComposerState.FREE_FORM_GENERATED
        assert result.states == FREE_FORM_PATH
        assert result.response == "Thank you for your kind words!"
        messages, temperature = oracle.calls[0]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert "Flareflow" in messages[0]["content"]
        assert "Please respond in en language." in messages[1]["content"]
        assert temperature == 0.7

    def test_use_templates_false_skips_retrieval(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle(["reply"])
        result = ResponseComposer(oracle, AppConfig(), retriever).compose(
            make_email(), make_analysis(), use_templates=False
        )
        assert result.states == FREE_FORM_PATH
        assert len(oracle.calls) == 1

    def test_no_retriever(
        self,
        make_oracle: Any,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle(["reply"])
        result = ResponseComposer(oracle).compose(make_email(), make_analysis())
        assert result.outcome == ComposerState.FREE_FORM_GENERATED

    def test_templates_disabled_in_config(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle(["reply"])
        config = AppConfig(templates={"enabled": False})
        result = ResponseComposer(oracle, config, retriever).compose(make_email(), make_analysis())
        assert result.outcome == ComposerState.FREE_FORM_GENERATED

    @pytest.mark.parametrize(
        ("language", "internal_translation", "expect_separator"),
        [
            ("en", True, True),
            ("zh", True, False),
            ("zh-CN", True, False),
            ("en", False, False),
        ],
    )
    def test_translation_separator(
        self,
        language: str,
        internal_translation: bool,
        expect_separator: bool,
        make_oracle: Any,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle(["reply"])
        config = AppConfig(reply={"internal_translation": internal_translation})
        ResponseComposer(oracle, config).compose(make_email(), make_analysis(language=language))

        assert (TRANSLATION_SEPARATOR in oracle.prompts[0]) is expect_separator

    def test_timeout_propagates(
        self,
        make_oracle: Any,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        oracle = make_oracle([OracleTimeoutError("timed out", attempts=3)])
        with pytest.raises(OracleTimeoutError):
            ResponseComposer(oracle).compose(make_email(), make_analysis())


# ===========================================================================
# Language resolution
# ===========================================================================


class TestResolveLanguage:
    """Tests for reply-language resolution."""

    def test_analysis_language_wins(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        composer = ResponseComposer(make_oracle(), AppConfig(), retriever)
        email = make_email(text="Hola, no puedo ver mi video, gracias")
        assert composer.resolve_language(email, make_analysis(language="fr")) == "fr"

    def test_heuristic_when_analysis_has_none(
        self,
        make_oracle: Any,
        retriever: TemplateRetriever,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        composer = ResponseComposer(make_oracle(), AppConfig(), retriever)
        email = make_email(subject="Ayuda", text="Hola, no puedo ver mi video, gracias")
        assert composer.resolve_language(email, make_analysis(language="")) == "es"

    def test_oracle_detection_mode(
        self,
        make_oracle: Any,
        make_email: Callable[..., ProcessedEmail],
        make_analysis: Callable[..., AnalysisResult],
    ) -> None:
        """Test that oracle detection runs before composing and drives the reply language."""
        oracle = make_oracle(["pt", "Olá!"])
        composer = ResponseComposer(oracle, _config(language_detection="oracle"))

        result = composer.compose(make_email(), make_analysis(language=""), use_templates=False)

        assert result.language == "pt"
        assert oracle.calls[0][1] == 0.1
        assert "Please respond in pt language." in oracle.prompts[1]
