"""Email processing engine.

This package provides the batch driver that connects the mailbox to the
responder:
- BatchProcessor: fetch -> analyze -> compose -> draft with bounded concurrency
"""

from replydesk.engine.processor import BatchProcessor, BatchResult, EmailOutcome

__all__ = [
    "BatchProcessor",
    "BatchResult",
    "EmailOutcome",
]
