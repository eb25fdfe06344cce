"""Pydantic configuration schema for replydesk.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup.

Secrets are never stored in the YAML file: the schema only names the
environment variables that hold them (see OracleConfig.api_key_env and
ImapConfig.password_env).

Usage:
    from replydesk.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# Fallback category list used when no template corpus is configured
DEFAULT_CATEGORIES: tuple[str, ...] = (
    "充值与订阅",
    "退款相关",
    "技术问题",
    "账户与登录",
    "内容与功能",
    "信息收集与跟进",
    "功能与活动",
    "查询与状态确认",
    "问题解决与关闭",
)

# Category used for emails whose analysis could not be parsed
DEFAULT_FOLLOW_UP_CATEGORY = "信息收集与跟进"


class OracleConfig(BaseModel):
    """Language-model provider configuration."""

    provider: Literal["chat_completions", "anthropic"] = Field(
        default="chat_completions",
        description="'chat_completions' for OpenAI-style endpoints, 'anthropic' for Claude",
    )
    base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="Base URL of the chat-completions API (ignored for anthropic)",
    )
    model: str = Field(default="glm-4.6", description="Model name sent with every request")
    api_key_env: str = Field(
        default="ORACLE_API_KEY",
        description="Environment variable holding the API key",
    )
    timeout_seconds: float = Field(
        default=90.0,
        gt=0,
        le=600,
        description="Per-request timeout in seconds",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        le=5,
        description="Retries after a timeout (other errors are never retried)",
    )
    retry_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="Fixed delay between timeout retries",
    )
    max_tokens: int = Field(
        default=2048,
        ge=64,
        le=16384,
        description="Completion token cap (required by the anthropic provider)",
    )
    requests_per_second: float = Field(
        default=2.0,
        gt=0,
        le=100,
        description="Client-side request rate limit shared by all workers",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class TemplatesConfig(BaseModel):
    """Template corpus configuration."""

    enabled: bool = Field(default=True, description="Use the template corpus for replies")
    path: str = Field(default="templates.json", description="Path to the JSON template corpus")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the corpus path is not empty."""
        if not v or not v.strip():
            raise ValueError("Template corpus path cannot be empty")
        return v


class AnalysisConfig(BaseModel):
    """Intent analysis configuration."""

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    follow_up_category: str = Field(
        default=DEFAULT_FOLLOW_UP_CATEGORY,
        description="Category assigned when the analysis reply cannot be parsed",
    )


class ComposerConfig(BaseModel):
    """Response composer configuration."""

    candidate_limit: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Candidates shown to the selection oracle",
    )
    display_limit: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Candidates shown by the match command",
    )
    language_detection: Literal["heuristic", "oracle"] = Field(
        default="heuristic",
        description="Language source when the analysis did not provide one",
    )
    intent_guard: bool = Field(
        default=True,
        description="Reject selected templates that contradict the analyzed intent",
    )
    selection_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    personalize_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    free_form_temperature: float = Field(default=0.7, ge=0.0, le=2.0)


class ReplyConfig(BaseModel):
    """Reply and draft settings."""

    product_name: str = Field(default="Flareflow", description="Product named in prompts")
    sender_address: str | None = Field(
        default=None,
        description="From address for drafts (defaults to imap.user)",
    )
    sender_name: str = Field(default="Flareflow Support")
    internal_translation: bool = Field(
        default=True,
        description="Append a translation for internal review to non-internal-language replies",
    )
    internal_language: str = Field(default="zh", min_length=2, max_length=5)


class ImapConfig(BaseModel):
    """IMAP mailbox configuration."""

    host: str = Field(default="imap.secureserver.net")
    port: int = Field(default=993, ge=1, le=65535)
    user: str = Field(default="", description="Login user (usually the mailbox address)")
    password_env: str = Field(
        default="IMAP_PASSWORD",
        description="Environment variable holding the IMAP password",
    )
    use_ssl: bool = Field(default=True)
    mailbox: str = Field(default="INBOX")
    drafts_mailbox: str = Field(default="Drafts")
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)


class ProcessingConfig(BaseModel):
    """Batch processing configuration."""

    concurrency: int = Field(
        default=3,
        ge=1,
        le=5,
        description="Emails processed in parallel (bounded by oracle rate limits)",
    )
    max_emails_per_fetch: int = Field(default=50, ge=1, le=500)
    fetch_interval_minutes: int = Field(default=5, ge=1, le=1440)
    fetch_since: str | None = Field(
        default=None,
        description="Only fetch mail on/after this date (YYYY-MM-DD); None for all unread",
    )
    save_drafts: bool = Field(default=False)
    mark_as_read: bool = Field(default=False)

    @field_validator("fetch_since")
    @classmethod
    def validate_fetch_since(cls, v: str | None) -> str | None:
        """Validate fetch_since is a YYYY-MM-DD date."""
        if v is None or v.strip().lower() in ("", "all", "none"):
            return None
        import regex

        if not regex.match(r"^\d{4}-\d{2}-\d{2}$", v.strip(), timeout=1):
            raise ValueError("fetch_since must be in YYYY-MM-DD format or 'all'")
        return v.strip()


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    redact_pii: bool = Field(
        default=True,
        description="Mask sender addresses in log output",
    )


class AppConfig(BaseModel):
    """Root configuration schema for replydesk.

    This model validates the entire config.yaml structure. If validation
    fails on startup, the application exits with a clear error.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    oracle: OracleConfig = Field(default_factory=OracleConfig)
    templates: TemplatesConfig = Field(default_factory=TemplatesConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    composer: ComposerConfig = Field(default_factory=ComposerConfig)
    reply: ReplyConfig = Field(default_factory=ReplyConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
