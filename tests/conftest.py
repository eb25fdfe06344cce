"""Pytest fixtures and configuration for replydesk tests.

Provides a small multilingual template corpus, email/analysis factories,
a scripted fake oracle, and default configuration.
"""

import json
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from replydesk.config_schema import AppConfig
from replydesk.mail.models import ProcessedEmail, RawEmail
from replydesk.oracle.base import ChatMessage
from replydesk.responder.models import AnalysisResult, Intent, Priority, Sentiment
from replydesk.templates.retriever import TemplateRetriever
from replydesk.templates.store import TemplateStore

# ---------------------------------------------------------------------------
# Fake oracle
# ---------------------------------------------------------------------------


class FakeOracle:
    """Oracle that returns scripted replies in order and records every call.

    A scripted Exception instance is raised instead of returned.
    """

    def __init__(self, replies: Sequence[str | Exception] = ()):
        self.replies: list[str | Exception] = list(replies)
        self.calls: list[tuple[list[ChatMessage], float]] = []

    def complete(self, messages: Sequence[ChatMessage], temperature: float = 0.7) -> str:
        self.calls.append((list(messages), temperature))
        if not self.replies:
            raise AssertionError("FakeOracle ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def prompts(self) -> list[str]:
        """Content of the last message of each call."""
        return [messages[-1]["content"] for messages, _ in self.calls]


@pytest.fixture
def make_oracle() -> type[FakeOracle]:
    """Return the FakeOracle class for building scripted oracles."""
    return FakeOracle


# ---------------------------------------------------------------------------
# Corpus
# ---------------------------------------------------------------------------


@pytest.fixture
def corpus_data() -> dict[str, Any]:
    """Return a small corpus covering refund, restore, technical and rewards cases."""
    return {
        "version": "1.0",
        "generatedAt": "2025-01-01T00:00:00Z",
        "totalTemplates": 6,
        "templates": [
            {
                "id": "refund_001",
                "category": "退款相关",
                "scenario": "用户申请退款",
                "keywords": ["refund", "money back", "退款"],
                "languages": {
                    "en": "Hello, we have received your refund request and will review it.",
                    "zh": "您好，我们已收到您的退款申请，将尽快处理。",
                },
            },
            {
                "id": "refund_002",
                "category": "退款相关",
                "scenario": "refund processing time",
                "keywords": ["refund", "processing", "days"],
                "languages": {
                    "en": "Refunds are usually processed within 5-7 business days.",
                },
            },
            {
                "id": "recharge_001",
                "category": "充值与订阅",
                "scenario": "restore purchase",
                "keywords": ["restore", "purchase", "vip"],
                "languages": {
                    "en": "To restore your purchase, open Settings and tap Restore.",
                    "es": "Para restaurar su compra, abra Ajustes y toque Restaurar.",
                },
            },
            {
                "id": "tech_001",
                "category": "技术问题",
                "scenario": "video playback error",
                "keywords": ["video", "playback", "error", "crash"],
                "languages": {
                    "en": "Please try clearing the app cache and reinstalling.",
                },
            },
            {
                "id": "activity_001",
                "category": "功能与活动",
                "scenario": "ad rewards not received",
                "keywords": ["ads", "reward", "coins"],
                "languages": {
                    "en": "Ad rewards can take a few minutes to appear in your balance.",
                },
            },
            {
                "id": "account_001",
                "category": "账户与登录",
                "scenario": "cannot log in",
                "keywords": ["login", "password", "account"],
                "languages": {
                    "en": "Please reset your password from the login screen.",
                },
            },
        ],
    }


@pytest.fixture
def corpus_file(tmp_path: Path, corpus_data: dict[str, Any]) -> Path:
    """Write the sample corpus to a temporary JSON file."""
    path = tmp_path / "templates.json"
    path.write_text(json.dumps(corpus_data, ensure_ascii=False), encoding="utf-8")
    return path


@pytest.fixture
def store(corpus_file: Path) -> TemplateStore:
    """Return a TemplateStore loaded from the sample corpus."""
    return TemplateStore.load(corpus_file)


@pytest.fixture
def retriever(store: TemplateStore) -> TemplateRetriever:
    """Return a TemplateRetriever over the sample corpus."""
    return TemplateRetriever(store)


# ---------------------------------------------------------------------------
# Emails and analyses
# ---------------------------------------------------------------------------


@pytest.fixture
def make_email() -> Callable[..., ProcessedEmail]:
    """Return a factory for ProcessedEmail values."""

    def _make(
        subject: str = "Refund request",
        text: str = "I want a refund for my subscription, please give my money back.",
        sender: str = "customer@example.com",
        uid: int = 1,
        **kwargs: Any,
    ) -> ProcessedEmail:
        return ProcessedEmail(uid=uid, sender=sender, subject=subject, text=text, **kwargs)

    return _make


@pytest.fixture
def make_raw_email() -> Callable[..., RawEmail]:
    """Return a factory for RawEmail values."""

    def _make(uid: int = 1, **kwargs: Any) -> RawEmail:
        defaults: dict[str, Any] = {
            "message_id": f"<msg-{uid}@example.com>",
            "sender": "customer@example.com",
            "sender_name": "Test Customer",
            "subject": "Refund request",
            "text": "I want a refund for my subscription, please give my money back.",
        }
        defaults.update(kwargs)
        return RawEmail(uid=uid, **defaults)

    return _make


@pytest.fixture
def make_analysis() -> Callable[..., AnalysisResult]:
    """Return a factory for AnalysisResult values."""

    def _make(
        category: str = "退款相关",
        intent: Intent = Intent.REFUND_REQUEST,
        language: str = "en",
        keywords: tuple[str, ...] = ("refund",),
        is_important: bool = True,
        **kwargs: Any,
    ) -> AnalysisResult:
        return AnalysisResult(
            language=language,
            category=category,
            intent=intent,
            keywords=keywords,
            sentiment=kwargs.pop("sentiment", Sentiment.NEUTRAL),
            priority=kwargs.pop("priority", Priority.MEDIUM),
            is_important=is_important,
            reasoning=kwargs.pop("reasoning", "test analysis"),
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def app_config() -> AppConfig:
    """Return a default AppConfig."""
    return AppConfig()


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

oracle:
  provider: chat_completions
  base_url: "https://api.example.com/v1/"
  model: "test-model"

templates:
  path: "templates.json"

imap:
  host: "imap.example.com"
  user: "support@example.com"

processing:
  concurrency: 2
  fetch_since: "2025-01-15"
"""


@pytest.fixture
def config_file(tmp_path: Path, sample_config_yaml: str) -> Path:
    """Write the sample config to a temporary file."""
    path = tmp_path / "config.yaml"
    path.write_text(sample_config_yaml, encoding="utf-8")
    return path
