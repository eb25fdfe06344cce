"""Tests for the oracle backends, timeout retry and backend selection.

HTTP and SDK clients are mocked; retry delays are zero and the rate limit
is high so no test sleeps.
"""

import json
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import anthropic
import pytest
import requests

from replydesk.config_schema import OracleConfig
from replydesk.core import rate_limiter
from replydesk.core.errors import (
    ConfigValidationError,
    OracleError,
    OracleProtocolError,
    OracleTimeoutError,
    RateLimitExceeded,
)
from replydesk.oracle.anthropic_oracle import AnthropicOracle, split_system_messages
from replydesk.oracle import client as client_module
from replydesk.oracle.base import strip_code_fence, system_message, user_message
from replydesk.oracle.client import ChatCompletionsOracle, build_oracle
from replydesk.oracle.retry import call_with_timeout_retry

MESSAGES = [system_message("Be brief."), user_message("Hello")]

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _http_response(status_code: int = 200, body: Any = None, text: str = "") -> MagicMock:
    """Streamed response whose body is `body` as JSON, or `text` verbatim."""
    raw = json.dumps(body) if body is not None else text
    response = MagicMock()
    response.ok = 200 <= status_code < 300
    response.status_code = status_code
    response.encoding = "utf-8"
    response.iter_content.return_value = [raw.encode("utf-8")] if raw else []
    return response


def _completion(content: Any = "Hi there") -> dict[str, Any]:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    }


def _chat_oracle(
    session: MagicMock, max_retries: int = 2, requests_per_second: float = 100
) -> ChatCompletionsOracle:
    return ChatCompletionsOracle(
        api_key="test-key",
        base_url="https://api.example.com/v1/",
        model="test-model",
        timeout=5.0,
        max_retries=max_retries,
        retry_delay=0,
        requests_per_second=requests_per_second,
        session=session,
    )


def _claude_reply(*texts: str) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=t) for t in texts],
        usage=SimpleNamespace(input_tokens=10, output_tokens=4),
    )


def _anthropic_oracle(client: MagicMock) -> AnthropicOracle:
    return AnthropicOracle(
        model="claude-test",
        max_tokens=256,
        max_retries=2,
        retry_delay=0,
        requests_per_second=100,
        client=client,
    )


# ===========================================================================
# Retry
# ===========================================================================


class TestCallWithTimeoutRetry:
    def test_success_first_try(self) -> None:
        calls = []

        def send() -> str:
            calls.append(1)
            return "ok"

        assert call_with_timeout_retry(send, max_retries=2, retry_delay=0) == "ok"
        assert len(calls) == 1

    def test_retries_timeouts_then_succeeds(self) -> None:
        outcomes: list[Any] = [OracleTimeoutError("slow"), OracleTimeoutError("slow"), "ok"]

        def send() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert call_with_timeout_retry(send, max_retries=2, retry_delay=0) == "ok"

    def test_gives_up_with_attempt_count(self) -> None:
        send = MagicMock(side_effect=OracleTimeoutError("slow"))

        with pytest.raises(OracleTimeoutError, match="all 3 attempt") as exc_info:
            call_with_timeout_retry(send, max_retries=2, retry_delay=0)

        assert exc_info.value.attempts == 3
        assert send.call_count == 3

    def test_zero_retries(self) -> None:
        send = MagicMock(side_effect=OracleTimeoutError("slow"))
        with pytest.raises(OracleTimeoutError) as exc_info:
            call_with_timeout_retry(send, max_retries=0, retry_delay=0)
        assert exc_info.value.attempts == 1

    @pytest.mark.parametrize(
        "error",
        [OracleProtocolError("500", status_code=500), OracleError("refused")],
    )
    def test_other_errors_not_retried(self, error: Exception) -> None:
        send = MagicMock(side_effect=error)
        with pytest.raises(type(error)):
            call_with_timeout_retry(send, max_retries=2, retry_delay=0)
        assert send.call_count == 1


# ===========================================================================
# Chat-completions backend
# ===========================================================================


class TestChatCompletionsOracle:
    def test_returns_first_choice(self) -> None:
        session = MagicMock()
        session.post.return_value = _http_response(body=_completion("Hi there"))

        assert _chat_oracle(session).complete(MESSAGES, temperature=0.3) == "Hi there"

    def test_request_shape(self) -> None:
        session = MagicMock()
        session.post.return_value = _http_response(body=_completion())

        _chat_oracle(session).complete(MESSAGES, temperature=0.3)

        args, kwargs = session.post.call_args
        assert args[0] == "https://api.example.com/v1/chat/completions"
        assert kwargs["json"] == {
            "model": "test-model",
            "messages": MESSAGES,
            "temperature": 0.3,
            "stream": False,
        }
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert kwargs["timeout"] == (5.0, 5.0)
        assert kwargs["stream"] is True

    def test_timeouts_are_retried(self) -> None:
        session = MagicMock()
        session.post.side_effect = [requests.Timeout("slow"), _http_response(body=_completion("late"))]

        assert _chat_oracle(session).complete(MESSAGES) == "late"
        assert session.post.call_count == 2

    def test_timeouts_exhausted(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")

        with pytest.raises(OracleTimeoutError) as exc_info:
            _chat_oracle(session, max_retries=2).complete(MESSAGES)

        assert exc_info.value.attempts == 3
        assert session.post.call_count == 3

    def test_server_error_not_retried(self) -> None:
        session = MagicMock()
        session.post.return_value = _http_response(500, text="internal error")

        with pytest.raises(OracleProtocolError, match="500") as exc_info:
            _chat_oracle(session).complete(MESSAGES)

        assert exc_info.value.status_code == 500
        assert session.post.call_count == 1

    def test_auth_error_hint(self) -> None:
        session = MagicMock()
        session.post.return_value = _http_response(401, text="invalid key")

        with pytest.raises(OracleProtocolError, match="API key"):
            _chat_oracle(session).complete(MESSAGES)

    def test_connection_error(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(OracleError, match="Cannot reach oracle endpoint") as exc_info:
            _chat_oracle(session).complete(MESSAGES)

        assert not isinstance(exc_info.value, OracleTimeoutError)
        assert session.post.call_count == 1

    def test_non_json_body(self) -> None:
        session = MagicMock()
        session.post.return_value = _http_response(text="<html>Bad gateway</html>")

        with pytest.raises(OracleProtocolError, match="non-JSON"):
            _chat_oracle(session).complete(MESSAGES)

    def test_body_read_past_deadline_times_out(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a slowly trickling body is bounded by the attempt timeout."""
        clock = iter([0.0, 1.0, 10.0])
        monkeypatch.setattr(client_module, "time", SimpleNamespace(monotonic=lambda: next(clock)))
        response = _http_response(body=_completion())
        response.iter_content.return_value = [b'{"choices": ', b"[]}"]
        session = MagicMock()
        session.post.return_value = response

        with pytest.raises(OracleTimeoutError, match="not complete after 5.0s"):
            _chat_oracle(session, max_retries=0).complete(MESSAGES)
        response.close.assert_called_once()

    def test_interrupted_body_is_retried(self) -> None:
        broken = _http_response()
        broken.iter_content.side_effect = requests.ConnectionError("read timed out")
        session = MagicMock()
        session.post.side_effect = [broken, _http_response(body=_completion("again"))]

        assert _chat_oracle(session).complete(MESSAGES) == "again"
        assert session.post.call_count == 2

    def test_slow_rate_limit_throttles_instead_of_failing(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        sleep = MagicMock()
        monkeypatch.setattr(rate_limiter.time, "sleep", sleep)
        session = MagicMock()
        session.post.side_effect = [
            _http_response(body=_completion("first")),
            _http_response(body=_completion("second")),
        ]
        oracle = _chat_oracle(session, requests_per_second=0.04)

        assert oracle.complete(MESSAGES) == "first"
        assert oracle.complete(MESSAGES) == "second"
        sleep.assert_called_once()

    def test_rate_limit_error_is_an_oracle_error(self) -> None:
        session = MagicMock()
        oracle = _chat_oracle(session)
        oracle._rate_bucket = rate_limiter.TokenBucket(
            rate=1.0, capacity=1, initial_tokens=0, max_wait=0.1
        )

        with pytest.raises(OracleError) as exc_info:
            oracle.complete(MESSAGES)

        assert isinstance(exc_info.value, RateLimitExceeded)
        session.post.assert_not_called()

    @pytest.mark.parametrize(
        "body",
        [
            [],
            {},
            {"choices": []},
            {"choices": ["text"]},
            {"choices": [{"message": {}}]},
            _completion(content=None),
        ],
    )
    def test_malformed_payload(self, body: Any) -> None:
        session = MagicMock()
        session.post.return_value = _http_response(body=body)

        with pytest.raises(OracleProtocolError):
            _chat_oracle(session).complete(MESSAGES)
        assert session.post.call_count == 1


# ===========================================================================
# Anthropic backend
# ===========================================================================


class TestAnthropicOracle:
    def test_returns_text_and_hoists_system(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = _claude_reply("Hello", "World")

        text = _anthropic_oracle(client).complete(MESSAGES, temperature=0.3)

        assert text == "Hello\nWorld"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["max_tokens"] == 256
        assert kwargs["system"] == "Be brief."
        assert kwargs["messages"] == [{"role": "user", "content": "Hello"}]

    def test_temperature_capped(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = _claude_reply("ok")

        _anthropic_oracle(client).complete([user_message("hi")], temperature=1.7)

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["temperature"] == 1.0
        assert "system" not in kwargs

    def test_timeout_retried_then_raised(self) -> None:
        client = MagicMock()
        client.messages.create.side_effect = anthropic.APITimeoutError(request=MagicMock())

        with pytest.raises(OracleTimeoutError) as exc_info:
            _anthropic_oracle(client).complete(MESSAGES)

        assert exc_info.value.attempts == 3
        assert client.messages.create.call_count == 3

    def test_connection_error(self) -> None:
        client = MagicMock()
        client.messages.create.side_effect = anthropic.APIConnectionError(request=MagicMock())

        with pytest.raises(OracleError, match="Anthropic API"):
            _anthropic_oracle(client).complete(MESSAGES)
        assert client.messages.create.call_count == 1

    def test_status_error(self) -> None:
        client = MagicMock()
        client.messages.create.side_effect = anthropic.APIStatusError(
            "bad request",
            response=MagicMock(status_code=400, headers={}),
            body=None,
        )

        with pytest.raises(OracleProtocolError) as exc_info:
            _anthropic_oracle(client).complete(MESSAGES)

        assert exc_info.value.status_code == 400
        assert client.messages.create.call_count == 1

    def test_response_validation_error(self) -> None:
        client = MagicMock()
        client.messages.create.side_effect = anthropic.APIResponseValidationError(
            response=MagicMock(status_code=200, headers={}),
            body=None,
        )

        with pytest.raises(OracleProtocolError, match="Anthropic API error"):
            _anthropic_oracle(client).complete(MESSAGES)
        assert client.messages.create.call_count == 1

    def test_other_sdk_errors_are_typed(self) -> None:
        client = MagicMock()
        client.messages.create.side_effect = anthropic.APIError(
            "stream ended unexpectedly", request=MagicMock(), body=None
        )

        with pytest.raises(OracleProtocolError, match="stream ended unexpectedly"):
            _anthropic_oracle(client).complete(MESSAGES)

    def test_empty_reply(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = _claude_reply()

        with pytest.raises(OracleProtocolError, match="no text"):
            _anthropic_oracle(client).complete(MESSAGES)

    def test_split_system_messages(self) -> None:
        system, turns = split_system_messages(
            [system_message("a"), user_message("q"), system_message("b")]
        )
        assert system == "a\n\nb"
        assert turns == [{"role": "user", "content": "q"}]


# ===========================================================================
# Backend selection and helpers
# ===========================================================================


class TestBuildOracle:
    def test_requires_api_key(self) -> None:
        with pytest.raises(ConfigValidationError, match="ORACLE_API_KEY"):
            build_oracle(OracleConfig(), None)

    def test_chat_completions_default(self) -> None:
        oracle = build_oracle(
            OracleConfig(base_url="https://api.example.com/v1/", model="m", timeout_seconds=12),
            "key",
        )
        assert isinstance(oracle, ChatCompletionsOracle)
        assert oracle.endpoint == "https://api.example.com/v1/chat/completions"
        assert oracle.model == "m"
        assert oracle.timeout == 12

    def test_anthropic_provider(self) -> None:
        oracle = build_oracle(OracleConfig(provider="anthropic", model="claude-test"), "key")
        assert isinstance(oracle, AnthropicOracle)
        assert oracle.model == "claude-test"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('{"a": 1}', '{"a": 1}'),
        ('```json\n{"a": 1}\n```', '{"a": 1}'),
        ('```\n{"a": 1}\n```  ', '{"a": 1}'),
        ('  ```yaml\na: 1\n```', "a: 1"),
    ],
)
def test_strip_code_fence(raw: str, expected: str) -> None:
    assert strip_code_fence(raw) == expected
