"""Tests for the remote call client: retries, error mapping, and reasoning-variant handling."""

import asyncio
from typing import List

import httpx
import pytest

from conftest import error_response
from core.errors import CallTimeout, ProviderError, RateLimited, Unauthorized
from core.openai_client import ClientConfig, ModelVariant, extract_final_answer

MESSAGES = [{"role": "system", "content": "You are terse."}, {"role": "user", "content": "What is ARR?"}]


def _call(client, model_name: str = "test/model", **kwargs) -> str:
    async def _go() -> str:
        try:
            return await client.call(MESSAGES, client.config.model(model_name), **kwargs)
        finally:
            await client.aclose()

    return asyncio.run(_go())


def test_returns_message_content_and_sends_chat_payload(provider, make_client) -> None:
    provider.script = lambda body: "ARR is 12.3M USD."
    client = make_client(referer="https://memo.example", title="Memo Review")

    assert _call(client, temperature=0.2, max_tokens=300) == "ARR is 12.3M USD."

    body = provider.requests[0]
    assert body["model"] == "test/model"
    assert body["messages"] == MESSAGES
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 300
    assert "top_p" not in body and "reasoning" not in body
    headers = provider.headers[0]
    assert headers["authorization"] == "Bearer test-key"
    assert headers["http-referer"] == "https://memo.example"
    assert headers["x-title"] == "Memo Review"
    assert client.telemetry["input_tokens"] == 10
    assert client.telemetry["output_tokens"] == 5


def test_reasoning_variant_returns_terminal_answer_block(provider, make_client) -> None:
    provider.script = lambda body: "<rambling><answer>Final text</answer>"
    client = make_client(reasoning_models={"vendor/thinker": "high"})

    assert _call(client, model_name="vendor/thinker") == "Final text"

    body = provider.requests[0]
    assert body["top_p"] == 0.95
    assert body["reasoning"] == {"effort": "high"}


def test_unauthorized_is_not_retried(provider, make_client) -> None:
    provider.script = lambda body: error_response(401, "bad key")
    client = make_client(max_retries=2)

    with pytest.raises(Unauthorized) as excinfo:
        _call(client)

    assert excinfo.value.attempts == 1
    assert excinfo.value.status_code == 401
    assert len(provider.requests) == 1


def test_bad_request_is_not_retried(provider, make_client) -> None:
    provider.script = lambda body: error_response(400, "unknown model")
    client = make_client()

    with pytest.raises(ProviderError) as excinfo:
        _call(client)

    assert excinfo.value.retryable is False
    assert len(provider.requests) == 1


def test_server_error_is_retried_until_success(provider, make_client) -> None:
    replies = [error_response(500, "boom"), "recovered"]
    provider.script = lambda body: replies.pop(0)
    client = make_client()

    assert _call(client) == "recovered"
    assert client.telemetry["attempts"] == 2


def test_rate_limit_exhausts_retry_bound_with_capped_backoff(provider, make_client) -> None:
    delays: List[float] = []

    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    provider.script = lambda body: error_response(429, "slow down")
    client = make_client(sleep=record_sleep, max_retries=3, backoff_base=1.0, backoff_cap=3.0)

    with pytest.raises(RateLimited) as excinfo:
        _call(client)

    assert excinfo.value.attempts == 4
    assert len(provider.requests) == 4
    assert delays == [1.0, 2.0, 3.0]


def test_transport_timeouts_are_retried(provider, make_client) -> None:
    outcomes = ["timeout", "timeout", "done"]

    def script(body):
        outcome = outcomes.pop(0)
        if outcome == "timeout":
            raise httpx.ReadTimeout("read timed out")
        return outcome

    provider.script = script
    client = make_client(max_retries=2)

    assert _call(client) == "done"
    assert len(provider.requests) == 3


def test_timeouts_past_the_bound_raise_call_timeout(provider, make_client) -> None:
    def script(body):
        raise httpx.ReadTimeout("read timed out")

    provider.script = script
    client = make_client(max_retries=1)

    with pytest.raises(CallTimeout) as excinfo:
        _call(client)

    assert excinfo.value.attempts == 2


def test_empty_content_is_a_provider_error(provider, make_client) -> None:
    provider.script = lambda body: ""
    client = make_client(max_retries=0)

    with pytest.raises(ProviderError):
        _call(client)


def test_extract_final_answer_passes_plain_text_through() -> None:
    assert extract_final_answer("no delimiters here") == "no delimiters here"
    assert extract_final_answer("<answer>draft</answer> more <ANSWER> last </ANSWER>") == "last"
    assert extract_final_answer("thinking... <answer>unterminated") == "unterminated"


def test_extract_final_answer_keeps_offsets_after_non_ascii_text() -> None:
    assert extract_final_answer("Düşünce İstanbul<answer>Final text</answer>") == "Final text"
    assert extract_final_answer("İİİ <Answer>first</Answer> İ <answer>Son cevap</ANSWER> İ") == "Son cevap"


def test_config_from_env_resolves_reasoning_models_once(monkeypatch) -> None:
    monkeypatch.setenv("OPENROUTER_API_KEY", "env-key")
    monkeypatch.setenv("DILIGENCE_MAX_RETRIES", "4")
    monkeypatch.setenv("DILIGENCE_REASONING_MODELS", "vendor/thinker, other/slow ")
    monkeypatch.setenv("DILIGENCE_REASONING_EFFORT", "low")

    config = ClientConfig.from_env(timeout_seconds=5.0)

    assert config.api_key == "env-key"
    assert config.max_retries == 4
    assert config.timeout_seconds == 5.0
    spec = config.model("other/slow")
    assert spec.variant is ModelVariant.REASONING
    assert spec.reasoning_effort == "low"
    assert not config.model("vendor/thinker-mini").is_reasoning


def test_config_from_env_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

    with pytest.raises(RuntimeError):
        ClientConfig.from_env()
