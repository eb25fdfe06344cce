"""Custom exception types for the support reply assistant.

All exceptions follow the same message standard:
- What failed (specific operation or component)
- Where it failed (file, method, context)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)
"""


class ReplydeskError(Exception):
    """Base exception for all replydesk errors."""

    pass


class ConfigValidationError(ReplydeskError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(ReplydeskError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class CorpusLoadError(ReplydeskError):
    """Raised when the template corpus is missing, unreadable, or malformed.

    Fatal at startup: callers must either stop or run without a template
    store (falling back to the default category list).

    Attributes:
        path: Corpus file path that failed to load
    """

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class OracleError(ReplydeskError):
    """Raised when a language-model request fails."""

    pass


class OracleTimeoutError(OracleError):
    """Raised when an oracle request timed out on every attempt.

    Attributes:
        attempts: Number of attempts made before giving up
    """

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class OracleProtocolError(OracleError):
    """Raised on a non-2xx oracle response or a payload missing expected fields.

    Never retried.

    Attributes:
        status_code: HTTP status code (None for malformed payloads)
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AnalysisParseError(ReplydeskError):
    """Raised when the analysis reply is not a JSON object.

    Recovered inside IntentAnalyzer, which substitutes a safe default result.

    Attributes:
        raw_text: The oracle reply that failed to parse
    """

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class SelectionParseError(ReplydeskError):
    """Raised when the template-selection reply cannot be used.

    Recovered inside ResponseComposer, which falls back to the top
    deterministic candidate.

    Attributes:
        raw_text: The oracle reply that failed to parse
    """

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class MailboxError(ReplydeskError):
    """Raised when an IMAP operation (login, fetch, append, store) fails."""

    pass


class RateLimitExceeded(OracleError):
    """Raised when the oracle rate limiter would require an excessive wait.

    The bucket raises instead of blocking once a wait would exceed its
    max_wait, so callers handle it like any other failed oracle request.
    """

    pass
