"""Chat-completions oracle over HTTP.

Talks to any OpenAI-style `/chat/completions` endpoint (the default points
at Zhipu's GLM API). Each attempt is rate limited by a token bucket and
bounded by a request timeout; timeouts are retried with a fixed delay and
everything else fails immediately.

Usage:
    from replydesk.oracle.client import ChatCompletionsOracle, build_oracle

    oracle = ChatCompletionsOracle(api_key="...", model="glm-4.6")
    text = oracle.complete([{"role": "user", "content": "Hello"}], temperature=0.3)

    # Or from config:
    oracle = build_oracle(config.oracle, api_key)
"""

from __future__ import annotations

import json
import math
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import requests

from replydesk.core.errors import (
    ConfigValidationError,
    OracleError,
    OracleProtocolError,
    OracleTimeoutError,
)
from replydesk.core.logging import get_logger
from replydesk.core.rate_limiter import TokenBucket
from replydesk.oracle.anthropic_oracle import AnthropicOracle
from replydesk.oracle.base import DEFAULT_TEMPERATURE, ChatMessage, Oracle
from replydesk.oracle.retry import call_with_timeout_retry

if TYPE_CHECKING:
    from replydesk.config_schema import OracleConfig

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://open.bigmodel.cn/api/paas/v4"
DEFAULT_MODEL = "glm-4.6"
DEFAULT_TIMEOUT_SECONDS = 90.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_SECONDS = 2.0
DEFAULT_REQUESTS_PER_SECOND = 2.0
CONNECT_TIMEOUT_SECONDS = 10.0
BODY_CHUNK_BYTES = 8192


class ChatCompletionsOracle:
    """Oracle backed by an OpenAI-compatible chat-completions endpoint.

    Attributes:
        base_url: API base URL without trailing slash
        model: Model name sent with every request
        timeout: Per-attempt deadline in seconds (connect, headers and body)
        max_retries: Retries after a timed-out attempt
        retry_delay: Seconds between timeout retries
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
        session: requests.Session | None = None,
    ):
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        # Session for connection pooling across the batch
        self.session = session or requests.Session()
        self._rate_bucket = TokenBucket(
            rate=requests_per_second,
            capacity=max(1, math.ceil(requests_per_second)),
        )

        logger.debug(
            "chat_completions_oracle_initialized",
            base_url=self.base_url,
            model=self.model,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def complete(
        self,
        messages: Sequence[ChatMessage],
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> str:
        """Send a conversation and return the first choice's content.

        Args:
            messages: Conversation in chat-completions format
            temperature: Sampling temperature

        Returns:
            Assistant reply text

        Raises:
            OracleTimeoutError: If every attempt timed out
            OracleProtocolError: On a non-2xx status or malformed payload
            OracleError: On connection failures
        """
        payload = {
            "model": self.model,
            "messages": list(messages),
            "temperature": temperature,
            "stream": False,
        }
        return call_with_timeout_retry(
            lambda: self._send(payload),
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
        )

    def _send(self, payload: dict[str, Any]) -> str:
        """Perform one rate-limited request attempt.

        requests applies `timeout` per socket read, so the body is streamed
        and checked against a deadline for the whole attempt.
        """
        self._rate_bucket.consume()
        start_time = time.monotonic()
        deadline = start_time + self.timeout

        try:
            response = self.session.post(
                self.endpoint,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                timeout=(min(CONNECT_TIMEOUT_SECONDS, self.timeout), self.timeout),
                stream=True,
            )
        except requests.Timeout as e:
            logger.warning("oracle_request_timeout", model=self.model, timeout=self.timeout)
            raise OracleTimeoutError(f"Oracle request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            logger.error("oracle_connection_error", model=self.model, error=str(e))
            raise OracleError(
                f"Cannot reach oracle endpoint {self.endpoint}: {e}. "
                "Check oracle.base_url in config.yaml and network connectivity."
            ) from e

        body = self._read_body(response, deadline)
        duration_ms = int((time.monotonic() - start_time) * 1000)

        if not response.ok:
            excerpt = body[:200]
            logger.error(
                "oracle_api_error",
                model=self.model,
                status_code=response.status_code,
                error_message=excerpt,
            )
            hint = ""
            if response.status_code in (401, 403):
                hint = " Check that the API key environment variable is set correctly."
            elif response.status_code == 429:
                hint = " Lower oracle.requests_per_second or processing.concurrency."
            raise OracleProtocolError(
                f"Oracle API error {response.status_code}: {excerpt}.{hint}",
                status_code=response.status_code,
            )

        try:
            data = json.loads(body)
        except (ValueError, RecursionError) as e:
            raise OracleProtocolError(
                f"Oracle returned a non-JSON body (status {response.status_code})",
                status_code=response.status_code,
            ) from e

        content = _extract_content(data)

        usage = data.get("usage") or {}
        logger.info(
            "oracle_completion",
            model=self.model,
            duration_ms=duration_ms,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        )
        return content

    def _read_body(self, response: requests.Response, deadline: float) -> str:
        """Read the response body, giving up once the attempt deadline passes."""
        chunks: list[bytes] = []
        try:
            for chunk in response.iter_content(chunk_size=BODY_CHUNK_BYTES):
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    logger.warning(
                        "oracle_request_timeout",
                        model=self.model,
                        timeout=self.timeout,
                        stage="body",
                    )
                    raise OracleTimeoutError(
                        f"Oracle response not complete after {self.timeout}s"
                    )
        except requests.RequestException as e:
            logger.warning("oracle_body_read_failed", model=self.model, error=str(e))
            raise OracleTimeoutError(f"Oracle response interrupted: {e}") from e
        finally:
            response.close()
        return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")


def _extract_content(data: Any) -> str:
    """Pull choices[0].message.content out of a response body.

    Raises:
        OracleProtocolError: If the body lacks a text completion
    """
    if not isinstance(data, dict):
        raise OracleProtocolError("Oracle response body is not a JSON object")

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise OracleProtocolError("Oracle response contains no choices")

    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise OracleProtocolError("Oracle response choice has no text content")
    return content


def build_oracle(config: OracleConfig, api_key: str | None) -> Oracle:
    """Construct the oracle backend named in config.

    Args:
        config: Oracle section of the app config
        api_key: Key resolved from config.api_key_env

    Returns:
        A ready-to-use Oracle

    Raises:
        ConfigValidationError: If no API key is available
    """
    if not api_key:
        raise ConfigValidationError(
            f"No API key for the {config.provider} oracle. "
            f"Set the {config.api_key_env} environment variable (or add it to .env)."
        )

    if config.provider == "anthropic":
        return AnthropicOracle(
            api_key=api_key,
            model=config.model,
            max_tokens=config.max_tokens,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay_seconds,
            requests_per_second=config.requests_per_second,
        )

    return ChatCompletionsOracle(
        api_key=api_key,
        base_url=config.base_url,
        model=config.model,
        timeout=config.timeout_seconds,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay_seconds,
        requests_per_second=config.requests_per_second,
    )
