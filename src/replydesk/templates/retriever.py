"""Deterministic template retrieval and scoring.

The retriever narrows the corpus to a short, ranked candidate list before
any oracle call. Scoring is cheap and fully reproducible:

- +2 per template keyword found among the email's extracted tokens
- +1 per template keyword found anywhere in the email text (substring)
- +0.5 per scenario word (longer than 2 chars) found in the email text

Both keyword bonuses can apply to the same keyword. Zero-score templates
are dropped and ties keep corpus order.

All regex operations use the `regex` library with a timeout, since the
email text is untrusted input.

Usage:
    from replydesk.templates.retriever import TemplateRetriever

    retriever = TemplateRetriever(store)
    matches = retriever.find_best_matches(email, "技术问题", limit=10)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import regex

from replydesk.core.logging import get_logger
from replydesk.templates.models import Template

if TYPE_CHECKING:
    from replydesk.mail.models import ProcessedEmail
    from replydesk.templates.store import TemplateStore

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# Scoring weights
TOKEN_MATCH_SCORE = 2.0
SUBSTRING_MATCH_SCORE = 1.0
SCENARIO_WORD_SCORE = 0.5
MIN_WORD_LENGTH = 3

# Anything other than ASCII word characters, whitespace and CJK ideographs
NON_TOKEN_CHARS = regex.compile(r"[^0-9A-Za-z_\s一-龥]")
SCENARIO_SEPARATORS = regex.compile(r"[\s,，、]+")
WORD_PATTERN = regex.compile(r"\b\w+\b")

# Script detection, checked in this order
SCRIPT_PATTERNS: tuple[tuple[str, regex.Pattern], ...] = (
    ("zh", regex.compile(r"[一-龥]")),
    ("ar", regex.compile(r"[؀-ۿ]")),
    ("th", regex.compile(r"[฀-๿]")),
    ("ja", regex.compile(r"[぀-ゟ゠-ヿ]")),
    ("ko", regex.compile(r"[가-힯]")),
)

# Latin-script stopwords; the language with the most hits wins, ties go to
# the earlier entry. Lists are kept disjoint so one word never counts twice.
STOPWORDS: tuple[tuple[str, frozenset[str]], ...] = (
    ("en", frozenset({"the", "and", "you", "my", "to", "for", "have", "this", "please",
                      "can", "with", "is", "not", "it", "i"})),
    ("de", frozenset({"der", "die", "das", "und", "ist", "nicht", "ich", "mein",
                      "bitte", "kann", "mit", "für", "ein", "eine"})),
    ("fr", frozenset({"le", "les", "une", "est", "pas", "je", "mon", "merci",
                      "avec", "pour", "vous", "mes", "du"})),
    ("es", frozenset({"el", "los", "las", "es", "no", "mi", "por", "gracias",
                      "con", "para", "que", "yo", "una", "la"})),
    ("pt", frozenset({"os", "um", "uma", "não", "meu", "minha", "obrigado",
                      "obrigada", "você", "eu", "com"})),
    ("it", frozenset({"il", "lo", "gli", "non", "di", "mio", "grazie", "per",
                      "sono", "che"})),
    ("nl", frozenset({"het", "een", "niet", "van", "ik", "mijn", "bedankt",
                      "voor", "de"})),
)

DEFAULT_LANGUAGE = "en"


@dataclass(frozen=True, slots=True)
class TemplateMatch:
    """A scored candidate template.

    Attributes:
        template: Shared reference to the store's Template
        score: Relevance score (> 0 for returned matches)
        matched_keywords: Template keywords found in the email, de-duplicated,
            in template keyword order
    """

    template: Template
    score: float
    matched_keywords: tuple[str, ...] = ()


class TemplateRetriever:
    """Ranks a store's templates against an email.

    Holds no mutable state beyond the read-only store reference, so one
    instance can serve concurrent callers.
    """

    def __init__(self, store: TemplateStore):
        self._store = store

    @property
    def store(self) -> TemplateStore:
        return self._store

    def find_best_matches(
        self,
        email: ProcessedEmail,
        category: str | None,
        limit: int = 3,
    ) -> list[TemplateMatch]:
        """Return the best-scoring templates for an email.

        Args:
            email: Cleaned email
            category: Category from the analysis (used to scope candidates);
                None ranks the whole corpus
            limit: Maximum number of matches to return

        Returns:
            Up to `limit` matches sorted by score descending; ties keep
            corpus order. Zero-score templates are never included.
        """
        if limit <= 0:
            return []

        candidates = self.get_candidates(category)
        email_text = email.search_text.lower()
        email_tokens = self.extract_keywords(email_text)

        matches: list[TemplateMatch] = []
        for template in candidates:
            score, matched = self._score(template, email_tokens, email_text)
            if score > 0:
                matches.append(TemplateMatch(template=template, score=score, matched_keywords=matched))

        # sorted() is stable, so equal scores stay in corpus order
        ranked = sorted(matches, key=lambda m: m.score, reverse=True)[:limit]

        logger.debug(
            "templates_ranked",
            category=category,
            candidates=len(candidates),
            scored=len(matches),
            returned=len(ranked),
            top_score=ranked[0].score if ranked else 0,
        )
        return ranked

    def get_candidates(self, category: str | None) -> Sequence[Template]:
        """Pick the candidate pool for a category.

        1. Exact category match
        2. First indexed category where either name contains the other
           (case-insensitive)
        3. The whole corpus

        Args:
            category: Requested category name, or None for the whole corpus.
                An empty name is contained in every category, so it
                resolves to the first indexed one.

        Returns:
            Templates in corpus order
        """
        if category is None:
            return self._store.templates

        exact = self._store.templates_by_category(category)
        if exact:
            return exact

        needle = category.lower()
        for name, templates in self._store.iter_categories():
            key = name.lower()
            if needle in key or key in needle:
                logger.debug("category_fuzzy_match", requested=category, matched=name)
                return templates

        logger.debug("category_unscoped_fallback", requested=category)
        return self._store.templates

    def score(self, template: Template, email: ProcessedEmail) -> float:
        """Score a single template against an email.

        Args:
            template: Template to score
            email: Cleaned email

        Returns:
            Non-negative relevance score
        """
        email_text = email.search_text.lower()
        score, _ = self._score(template, self.extract_keywords(email_text), email_text)
        return score

    def _score(
        self,
        template: Template,
        email_tokens: frozenset[str],
        email_text: str,
    ) -> tuple[float, tuple[str, ...]]:
        """Compute (score, matched_keywords) for a template."""
        score = 0.0
        matched: list[str] = []

        for keyword in template.keywords:
            normalized = keyword.lower()
            hit = False

            if normalized in email_tokens:
                score += TOKEN_MATCH_SCORE
                hit = True

            if normalized and normalized in email_text:
                score += SUBSTRING_MATCH_SCORE
                hit = True

            if hit and keyword not in matched:
                matched.append(keyword)

        for word in _split_scenario(template.scenario):
            if len(word) >= MIN_WORD_LENGTH and word in email_text:
                score += SCENARIO_WORD_SCORE

        return score, tuple(matched)

    @staticmethod
    def extract_keywords(text: str) -> frozenset[str]:
        """Tokenize text into distinct lowercase keywords.

        Characters other than ASCII letters/digits/underscore, whitespace and
        CJK ideographs are treated as separators; tokens of 2 characters or
        fewer are dropped.

        Args:
            text: Any text

        Returns:
            Set of tokens
        """
        try:
            cleaned = NON_TOKEN_CHARS.sub(" ", text.lower(), timeout=REGEX_TIMEOUT)
        except TimeoutError:
            logger.warning("keyword_extraction_timeout", length=len(text))
            return frozenset()
        return frozenset(word for word in cleaned.split() if len(word) >= MIN_WORD_LENGTH)

    def detect_language(self, email: ProcessedEmail) -> str:
        """Guess an email's language offline.

        Script ranges decide CJK, Arabic, Thai, Japanese and Korean. Latin
        text is scored against stopword lists. Defaults to English.

        Args:
            email: Cleaned email

        Returns:
            ISO 639-1 language code
        """
        return detect_language(email.search_text)

    def get_template_content(self, template: Template, language: str = DEFAULT_LANGUAGE) -> str:
        """Return template text in a language (English fallback)."""
        return template.content_for(language)


def detect_language(text: str) -> str:
    """Guess the language of a text with script ranges and stopwords.

    Args:
        text: Text to inspect

    Returns:
        ISO 639-1 language code, "en" when nothing matches
    """
    try:
        for code, pattern in SCRIPT_PATTERNS:
            if pattern.search(text, timeout=REGEX_TIMEOUT):
                return code
        words = WORD_PATTERN.findall(text.lower(), timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("language_detection_timeout", length=len(text))
        return DEFAULT_LANGUAGE

    best_code = DEFAULT_LANGUAGE
    best_hits = 0
    for code, stopwords in STOPWORDS:
        hits = sum(1 for word in words if word in stopwords)
        if hits > best_hits:
            best_code, best_hits = code, hits
    return best_code


def _split_scenario(scenario: str) -> list[str]:
    """Split a scenario description into lowercase words."""
    try:
        parts = SCENARIO_SEPARATORS.split(scenario.lower(), timeout=REGEX_TIMEOUT)
    except TimeoutError:
        return []
    return [p for p in parts if p]
