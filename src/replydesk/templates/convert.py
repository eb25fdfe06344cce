"""Convert the support team's template spreadsheet (CSV export) to a JSON corpus.

The spreadsheet has one row per scenario. The category column is only
filled on the first row of each group, so blank cells inherit the last
category seen. Rows without a scenario or English text are skipped.

Usage:
    from replydesk.templates.convert import convert_csv_to_corpus, write_corpus

    corpus, stats = convert_csv_to_corpus(Path("templates.csv"))
    write_corpus(corpus, Path("templates.json"))
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import regex

from replydesk.core.errors import CorpusLoadError
from replydesk.core.logging import get_logger

logger = get_logger(__name__)

CORPUS_VERSION = "1.0"

CATEGORY_COLUMN = "分类"
SCENARIO_COLUMN = "场景 (中文)"
ENGLISH_COLUMN = "英语 (English)"

# Spreadsheet header -> language code
LANGUAGE_COLUMNS: dict[str, str] = {
    ENGLISH_COLUMN: "en",
    "葡萄牙语 (Português)": "pt",
    "西班牙语 (Español)": "es",
    "法语 (Français)": "fr",
    "印度尼西亚语 (Bahasa Indonesia)": "id",
    "泰语 (ไทย)": "th",
    "韩语 (한국어)": "ko",
    "日语 (日本語)": "ja",
    "意大利语 (Italiano)": "it",
    "德语 (Deutsch)": "de",
    "马来语 (Bahasa Melayu)": "ms",
    "斯瓦希里语 (Kiswahili)": "sw",
    "荷兰语 (Nederlands)": "nl",
    "阿拉伯语 (العربية)": "ar",
    "丹麦语 (Dansk)": "da",
}

# Support vocabulary promoted to keywords when it appears in the English text
SUPPORT_TERMS: tuple[str, ...] = (
    "subscription", "purchase", "payment", "restore", "refund",
    "video", "playback", "streaming", "buffer", "loading",
    "account", "login", "password", "profile", "settings",
    "bug", "error", "crash", "issue", "problem",
    "feature", "request", "feedback", "suggestion",
    "cancel", "delete", "remove", "update", "upgrade",
)

ID_SLUG_PATTERN = regex.compile(r"[^a-z0-9一-龥]+")
ID_SLUG_LENGTH = 20


@dataclass
class ConversionStats:
    """Summary of a conversion run."""

    rows: int = 0
    converted: int = 0
    skipped: int = 0
    per_category: dict[str, int] = field(default_factory=dict)


def derive_keywords(category: str, scenario: str, english_text: str) -> list[str]:
    """Build a template's keyword list.

    Args:
        category: Category name
        scenario: Scenario description
        english_text: English template text

    Returns:
        Lowercased keywords, de-duplicated, category and scenario first
    """
    keywords: list[str] = []

    def add(word: str) -> None:
        if word and word not in keywords:
            keywords.append(word)

    add(category.lower())
    add(scenario.lower())

    lowered = english_text.lower()
    for term in SUPPORT_TERMS:
        if term in lowered:
            add(term)
    return keywords


def make_template_id(category: str, index: int) -> str:
    """Build an id such as '技术问题_007' from the category and a 1-based index."""
    slug = ID_SLUG_PATTERN.sub("_", category.lower(), timeout=1)[:ID_SLUG_LENGTH]
    return f"{slug}_{index:03d}"


def convert_rows(rows: list[dict[str, str]]) -> tuple[list[dict[str, Any]], ConversionStats]:
    """Convert parsed spreadsheet rows into corpus template entries.

    Args:
        rows: Rows keyed by header, as produced by csv.DictReader

    Returns:
        Tuple of (template entries, conversion stats)
    """
    stats = ConversionStats(rows=len(rows))
    templates: list[dict[str, Any]] = []
    current_category = ""

    for row in rows:
        category_cell = (row.get(CATEGORY_COLUMN) or "").strip()
        if category_cell:
            current_category = category_cell

        scenario = (row.get(SCENARIO_COLUMN) or "").strip()
        english = (row.get(ENGLISH_COLUMN) or "").strip()
        if not scenario or not english:
            stats.skipped += 1
            continue

        languages = {
            code: (row.get(header) or "").strip()
            for header, code in LANGUAGE_COLUMNS.items()
            if (row.get(header) or "").strip()
        }

        templates.append(
            {
                "id": make_template_id(current_category, len(templates) + 1),
                "category": current_category,
                "scenario": scenario,
                "keywords": derive_keywords(current_category, scenario, english),
                "languages": languages,
            }
        )
        stats.per_category[current_category] = stats.per_category.get(current_category, 0) + 1

    stats.converted = len(templates)
    return templates, stats


def convert_csv_to_corpus(csv_path: Path) -> tuple[dict[str, Any], ConversionStats]:
    """Read a spreadsheet export and build a corpus document.

    Args:
        csv_path: Path to the CSV file (UTF-8, BOM allowed)

    Returns:
        Tuple of (corpus document, conversion stats)

    Raises:
        CorpusLoadError: If the CSV cannot be read or lacks required columns
    """
    try:
        with open(csv_path, encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            headers = reader.fieldnames or []
            rows = [row for row in reader if any((v or "").strip() for v in row.values() if isinstance(v, str))]
    except FileNotFoundError:
        raise CorpusLoadError(f"Template spreadsheet not found: {csv_path}", path=str(csv_path)) from None
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise CorpusLoadError(f"Cannot read template spreadsheet {csv_path}: {e}", path=str(csv_path)) from e

    missing = [col for col in (SCENARIO_COLUMN, ENGLISH_COLUMN) if col not in headers]
    if missing:
        raise CorpusLoadError(
            f"Template spreadsheet {csv_path} is missing column(s): {', '.join(missing)}. "
            f"Expected headers include '{CATEGORY_COLUMN}', '{SCENARIO_COLUMN}' and '{ENGLISH_COLUMN}'.",
            path=str(csv_path),
        )

    templates, stats = convert_rows(rows)
    corpus = {
        "version": CORPUS_VERSION,
        "generatedAt": datetime.now(UTC).isoformat(),
        "totalTemplates": len(templates),
        "templates": templates,
    }

    logger.info(
        "templates_converted",
        source=str(csv_path),
        rows=stats.rows,
        converted=stats.converted,
        skipped=stats.skipped,
        categories=len(stats.per_category),
    )
    return corpus, stats


def write_corpus(corpus: dict[str, Any], output_path: Path) -> None:
    """Write a corpus document as pretty-printed UTF-8 JSON."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(corpus, ensure_ascii=False, indent=2), encoding="utf-8")
