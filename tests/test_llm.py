import json

import httpx
import pytest

from config import Config
from llm import (
    END_TURN,
    MAX_TOKENS,
    CompletionError,
    LLMService,
    RateLimitError,
    _vendor_messages,
    create_completion_service,
    generate_conversational_prompt,
    generate_system_prompt,
    is_rate_limited,
)

MESSAGES = [
    {"role": "user", "content": "Initial logs"},
    {"role": "assistant", "content": "Searching"},
    {"role": "tool", "content": 'Tool "searchLogs" executed: Result: {}'},
    {"role": "user", "content": "Anything else?"},
]


def service_with(handler, provider="gemini", **kwargs):
    return LLMService(
        provider=provider,
        api_key="test-key",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestVendorMessages:
    def test_tool_results_become_user_turns(self):
        merged = _vendor_messages(MESSAGES)
        assert [m["role"] for m in merged] == ["user", "assistant", "user"]
        assert merged[2]["content"].startswith('Tool "searchLogs" executed')
        assert merged[2]["content"].endswith("Anything else?")

    def test_input_is_not_mutated(self):
        original = [dict(m) for m in MESSAGES]
        _vendor_messages(MESSAGES)
        assert MESSAGES == original


@pytest.mark.asyncio
async def test_gemini_request_and_response():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-goog-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "candidates": [{"content": {"parts": [{"text": "Investigation complete."}]}, "finishReason": "STOP"}],
        })

    completion = await service_with(handler).complete("system prompt", MESSAGES)

    assert completion.text == "Investigation complete."
    assert completion.stop_reason == END_TURN
    assert "gemini-2.0-flash:generateContent" in seen["url"]
    assert seen["key"] == "test-key"
    assert seen["body"]["systemInstruction"]["parts"][0]["text"] == "system prompt"
    assert [c["role"] for c in seen["body"]["contents"]] == ["user", "model", "user"]


@pytest.mark.asyncio
async def test_claude_request_and_response():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
            "stop_reason": "max_tokens",
        })

    completion = await service_with(handler, provider="claude", max_tokens=123).complete("sys", MESSAGES)

    assert completion.text == "Hello there"
    assert completion.stop_reason == MAX_TOKENS
    assert seen["headers"]["x-api-key"] == "test-key"
    assert seen["body"]["max_tokens"] == 123
    assert seen["body"]["system"] == "sys"
    assert all(m["role"] in ("user", "assistant") for m in seen["body"]["messages"])


@pytest.mark.asyncio
@pytest.mark.parametrize("provider", ["openai", "perplexity"])
async def test_openai_compatible(provider):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}],
        })

    completion = await service_with(handler, provider=provider).complete("sys", MESSAGES)

    assert completion.text == "ok"
    assert completion.stop_reason == END_TURN
    assert seen["body"]["messages"][0]["role"] == "system"
    assert provider in seen["url"]


@pytest.mark.asyncio
async def test_http_429_is_rate_limit():
    service = service_with(lambda request: httpx.Response(429, text="slow down"))
    with pytest.raises(RateLimitError):
        await service.complete("sys", MESSAGES)


@pytest.mark.asyncio
async def test_rate_limit_text_in_error_body():
    service = service_with(lambda request: httpx.Response(503, text="Rate limit reached for requests"))
    with pytest.raises(RateLimitError):
        await service.complete("sys", MESSAGES)


@pytest.mark.asyncio
async def test_server_error_is_completion_error():
    service = service_with(lambda request: httpx.Response(500, text="internal"), provider="openai")
    with pytest.raises(CompletionError) as excinfo:
        await service.complete("sys", MESSAGES)
    assert not isinstance(excinfo.value, RateLimitError)
    assert "500" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unexpected_structure():
    service = service_with(lambda request: httpx.Response(200, json={"unexpected": True}))
    with pytest.raises(CompletionError, match="Unexpected Gemini response structure"):
        await service.complete("sys", MESSAGES)


@pytest.mark.asyncio
async def test_transport_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(CompletionError, match="request failed"):
        await service_with(handler).complete("sys", MESSAGES)


@pytest.mark.asyncio
async def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    service = LLMService(provider="openai")
    with pytest.raises(CompletionError, match="OPENAI_API_KEY|not set"):
        await service.complete("sys", MESSAGES)


def test_unsupported_provider():
    with pytest.raises(CompletionError):
        LLMService(provider="oracle")


def test_is_rate_limited():
    assert is_rate_limited(RateLimitError("x"))
    assert is_rate_limited(CompletionError("HTTP 429"))
    assert is_rate_limited(CompletionError("Rate limit exceeded"))
    assert not is_rate_limited(CompletionError("bad request"))


def test_factory_uses_config(monkeypatch):
    monkeypatch.delenv("AI_PROVIDER", raising=False)
    config = Config(None)
    service = create_completion_service(config=config)
    assert service.provider == "gemini"
    assert service.model == "gemini-2.0-flash"

    other = create_completion_service("perplexity", config=config)
    assert other.provider == "perplexity"
    assert other.model == "sonar"


def test_prompts():
    assert "Log Set #5" in generate_system_prompt(5)
    assert "investigation complete" in generate_system_prompt(5)
    assert "searchLogs" in generate_conversational_prompt()


def test_prompts_carry_tool_call_format():
    for prompt in (generate_system_prompt(5), generate_conversational_prompt()):
        assert "AVAILABLE TOOLS:" in prompt
        assert "<TOOL_CALL>" in prompt
        assert "</TOOL_CALL>" in prompt
