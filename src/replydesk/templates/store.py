"""Template store: loads the corpus once and indexes it.

The store is built once at startup and never mutated afterwards, so a
single instance can be shared by every worker thread without locking.

Usage:
    from replydesk.templates.store import TemplateStore

    store = TemplateStore.load("templates.json")
    store.get_categories()               # ('充值与订阅', '退款相关', ...)
    store.templates_by_category("技术问题")
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from pathlib import Path

from pydantic import ValidationError

from replydesk.core.errors import CorpusLoadError
from replydesk.core.logging import get_logger
from replydesk.templates.models import CorpusFile, Template

logger = get_logger(__name__)


class TemplateStore:
    """In-memory template corpus with category and keyword indexes.

    Attributes:
        version: Corpus version string
        generated_at: Corpus generation timestamp (if recorded)
    """

    def __init__(
        self,
        templates: Iterable[Template],
        version: str = "unversioned",
        generated_at: str | None = None,
    ):
        """Build a store from already-validated templates.

        Args:
            templates: Templates in corpus order
            version: Corpus version string
            generated_at: Corpus generation timestamp

        Raises:
            CorpusLoadError: If two templates share an id
        """
        self.version = version
        self.generated_at = generated_at
        self._templates: tuple[Template, ...] = tuple(templates)
        self._by_id: dict[str, Template] = {}
        self._category_index: dict[str, list[Template]] = {}
        self._keyword_index: dict[str, list[Template]] = {}
        self._build_indexes()

    @classmethod
    def load(cls, path: str | Path) -> TemplateStore:
        """Load and validate a corpus file.

        Args:
            path: Path to the JSON corpus

        Returns:
            A fully indexed TemplateStore

        Raises:
            CorpusLoadError: If the file is missing, unreadable, not JSON,
                or does not match the corpus schema
        """
        corpus_path = Path(path)

        try:
            raw = corpus_path.read_text(encoding="utf-8-sig")
        except FileNotFoundError:
            raise CorpusLoadError(
                f"Template corpus not found: {corpus_path}. "
                "Generate one with 'replydesk convert-templates' or fix templates.path in config.yaml.",
                path=str(corpus_path),
            ) from None
        except OSError as e:
            raise CorpusLoadError(
                f"Cannot read template corpus {corpus_path}: {e}",
                path=str(corpus_path),
            ) from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorpusLoadError(
                f"Template corpus {corpus_path} is not valid JSON "
                f"(line {e.lineno}, column {e.colno}): {e.msg}",
                path=str(corpus_path),
            ) from e

        if not isinstance(data, dict):
            raise CorpusLoadError(
                f"Template corpus {corpus_path} must be a JSON object with "
                f"'version' and 'templates', got {type(data).__name__}",
                path=str(corpus_path),
            )

        try:
            corpus = CorpusFile.model_validate(data)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise CorpusLoadError(
                f"Template corpus {corpus_path} does not match the expected schema: {details}",
                path=str(corpus_path),
            ) from e

        if (
            corpus.total_templates is not None
            and corpus.total_templates != len(corpus.templates)
        ):
            logger.warning(
                "corpus_count_mismatch",
                path=str(corpus_path),
                declared=corpus.total_templates,
                actual=len(corpus.templates),
            )

        store = cls(
            (entry.to_template() for entry in corpus.templates),
            version=corpus.version,
            generated_at=corpus.generated_at,
        )

        logger.info(
            "corpus_loaded",
            path=str(corpus_path),
            version=store.version,
            templates=len(store),
            categories=len(store.get_categories()),
        )
        return store

    def _build_indexes(self) -> None:
        """Build id, category and keyword indexes in corpus order."""
        for template in self._templates:
            if template.id in self._by_id:
                raise CorpusLoadError(
                    f"Duplicate template id '{template.id}' in corpus. "
                    "Template ids must be unique."
                )
            self._by_id[template.id] = template

            self._category_index.setdefault(template.category, []).append(template)

            for keyword in template.keywords:
                bucket = self._keyword_index.setdefault(keyword.lower(), [])
                # A template listing the same keyword twice is indexed once
                if not bucket or bucket[-1] is not template:
                    bucket.append(template)

    def __len__(self) -> int:
        return len(self._templates)

    @property
    def templates(self) -> Sequence[Template]:
        """All templates in corpus order."""
        return self._templates

    def get_categories(self) -> tuple[str, ...]:
        """Return the distinct category names in first-seen order."""
        return tuple(self._category_index)

    def has_category(self, category: str) -> bool:
        """Check whether a category name is indexed exactly."""
        return category in self._category_index

    def templates_by_category(self, category: str) -> tuple[Template, ...]:
        """Return a category's templates in corpus order (empty if unknown)."""
        return tuple(self._category_index.get(category, ()))

    def iter_categories(self) -> Iterable[tuple[str, tuple[Template, ...]]]:
        """Yield (category, templates) pairs in first-seen order."""
        for category, templates in self._category_index.items():
            yield category, tuple(templates)

    def get_template(self, template_id: str) -> Template | None:
        """Look up a template by id."""
        return self._by_id.get(template_id)

    def search_by_keyword(self, keyword: str) -> tuple[Template, ...]:
        """Return templates listing a keyword (case-insensitive exact match)."""
        return tuple(self._keyword_index.get(keyword.lower(), ()))
