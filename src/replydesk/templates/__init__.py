"""Template corpus components.

This package provides the template side of reply composition:
- Corpus loading and indexing (TemplateStore)
- Deterministic candidate scoring (TemplateRetriever)
- Spreadsheet to JSON corpus conversion

Usage:
    from replydesk.templates import TemplateRetriever, TemplateStore

    store = TemplateStore.load("templates.json")
    retriever = TemplateRetriever(store)
    matches = retriever.find_best_matches(email, "退款相关")
"""

from replydesk.templates.convert import convert_csv_to_corpus, write_corpus
from replydesk.templates.models import Template
from replydesk.templates.retriever import TemplateMatch, TemplateRetriever, detect_language
from replydesk.templates.store import TemplateStore

__all__ = [
    # Models
    "Template",
    # Store
    "TemplateStore",
    # Retrieval
    "TemplateMatch",
    "TemplateRetriever",
    "detect_language",
    # Conversion
    "convert_csv_to_corpus",
    "write_corpus",
]
