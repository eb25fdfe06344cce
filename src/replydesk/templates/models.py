"""Template records and the on-disk corpus schema.

The corpus file is validated with Pydantic (CorpusFile) and then frozen into
plain Template records, which are what the rest of the application shares.

Corpus format:
    {
      "version": "1.0",
      "generatedAt": "2025-01-01T00:00:00Z",
      "totalTemplates": 2,
      "templates": [
        {"id": "...", "category": "...", "scenario": "...",
         "keywords": ["..."], "languages": {"en": "...", "zh": "..."}}
      ]
    }
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

FALLBACK_LANGUAGE = "en"


@dataclass(frozen=True, slots=True, eq=False)
class Template:
    """A pre-approved multilingual canned response.

    Compared by identity: every match and result refers to the single
    instance owned by the TemplateStore.

    Attributes:
        id: Unique identifier within the corpus
        category: Category name (several templates may share one)
        scenario: Short description of the situation the template answers
        keywords: Keywords in corpus order
        languages: Read-only mapping of language code to template text
    """

    id: str
    category: str
    scenario: str
    keywords: tuple[str, ...]
    languages: Mapping[str, str]

    def content_for(self, language: str) -> str:
        """Return the template text in a language, falling back to English.

        Args:
            language: ISO 639-1 language code

        Returns:
            Template text, or an empty string if neither variant exists
        """
        return self.languages.get(language) or self.languages.get(FALLBACK_LANGUAGE) or ""


class TemplateEntry(BaseModel):
    """One template as stored in the corpus file."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    category: str = Field(min_length=1)
    scenario: str = ""
    keywords: list[str] = Field(default_factory=list)
    languages: dict[str, str] = Field(default_factory=dict)

    @field_validator("keywords")
    @classmethod
    def drop_blank_keywords(cls, v: list[str]) -> list[str]:
        """Strip keywords and drop empty ones."""
        return [k.strip() for k in v if k and k.strip()]

    def to_template(self) -> Template:
        """Freeze this entry into a shared Template record."""
        return Template(
            id=self.id,
            category=self.category.strip(),
            scenario=self.scenario.strip(),
            keywords=tuple(self.keywords),
            languages=MappingProxyType(dict(self.languages)),
        )


class CorpusFile(BaseModel):
    """Top-level corpus document."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: str
    generated_at: str | None = Field(default=None, alias="generatedAt")
    total_templates: int | None = Field(default=None, alias="totalTemplates", ge=0)
    templates: list[TemplateEntry]

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        """Accept numeric versions such as 1 or 1.0."""
        if isinstance(v, int | float) and not isinstance(v, bool):
            return str(v)
        return v
