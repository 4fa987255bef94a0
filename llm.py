import json
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from config import get_api_key
from tool_dispatch import describe_tools

logger = logging.getLogger(__name__)

END_TURN = "end_turn"
MAX_TOKENS = "max_tokens"

DEFAULT_MODELS = {
    "gemini": "gemini-2.0-flash",
    "claude": "claude-3-opus-20240229",
    "openai": "gpt-4o-mini",
    "perplexity": "sonar",
}

OPENAI_COMPATIBLE_URLS = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "perplexity": "https://api.perplexity.ai/chat/completions",
}
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

# Vendor finish reasons that mean "the model finished its turn".
NATURAL_STOPS = {"end_turn", "stop", "STOP", "stop_sequence"}
LENGTH_STOPS = {"max_tokens", "length", "MAX_TOKENS"}


class CompletionError(Exception):
    """The completion service could not produce a response."""


class RateLimitError(CompletionError):
    pass


@dataclass
class Completion:
    text: str
    stop_reason: str | None = None


class CompletionService(Protocol):
    async def complete(self, system_prompt: str, messages: list[dict[str, str]]) -> Completion: ...


def is_rate_limited(error: Exception) -> bool:
    if isinstance(error, RateLimitError):
        return True
    text = str(error).lower()
    return "rate limit" in text or "429" in text


def _normalize_stop_reason(reason: str | None) -> str | None:
    if reason in NATURAL_STOPS:
        return END_TURN
    if reason in LENGTH_STOPS:
        return MAX_TOKENS
    return reason


def _vendor_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    """Fold tool results into user turns and merge consecutive same-role turns."""
    merged = []
    for message in messages:
        role = "assistant" if message["role"] == "assistant" else "user"
        if merged and merged[-1]["role"] == role:
            merged[-1]["content"] += "\n\n" + message["content"]
        else:
            merged.append({"role": role, "content": message["content"]})
    return merged


class LLMService:
    """Completion calls over plain HTTP for Gemini, Claude, OpenAI and Perplexity."""

    def __init__(
        self,
        provider: str = "gemini",
        model: str | None = None,
        api_key: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if provider not in DEFAULT_MODELS:
            raise CompletionError(f"Unsupported AI provider: {provider}")
        self.provider = provider
        self.model = model or DEFAULT_MODELS[provider]
        self.api_key = api_key or get_api_key(provider)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._transport = transport

    async def complete(self, system_prompt: str, messages: list[dict[str, str]]) -> Completion:
        if not self.api_key:
            raise CompletionError(f"API key for provider '{self.provider}' is not set in environment")

        vendor_messages = _vendor_messages(messages)

        if self.provider == "claude":
            return await self._call_claude(system_prompt, vendor_messages)
        if self.provider == "gemini":
            return await self._call_gemini(system_prompt, vendor_messages)
        return await self._call_openai_compatible(system_prompt, vendor_messages)

    async def _post(self, url: str, headers: dict, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise CompletionError(f"{self.provider} request failed: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError(f"{self.provider} rate limit exceeded (429)")
        if resp.status_code >= 400:
            body = resp.text[:500]
            if "rate limit" in body.lower():
                raise RateLimitError(f"{self.provider} rate limit: {body}")
            raise CompletionError(f"{self.provider} API error: {resp.status_code} - {body}")

        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise CompletionError(f"Failed to parse {self.provider} response: {resp.text[:200]}") from e

    async def _call_claude(self, system: str, messages: list[dict]) -> Completion:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "system": system,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        data = await self._post(ANTHROPIC_URL, headers, payload)
        try:
            text = "".join(block.get("text", "") for block in data["content"] if block.get("type") == "text")
        except (KeyError, TypeError) as e:
            raise CompletionError(f"Unexpected Claude response structure: {json.dumps(data)[:500]}") from e
        return Completion(text=text, stop_reason=_normalize_stop_reason(data.get("stop_reason")))

    async def _call_gemini(self, system: str, messages: list[dict]) -> Completion:
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        payload = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [
                {
                    "role": "model" if m["role"] == "assistant" else "user",
                    "parts": [{"text": m["content"]}],
                }
                for m in messages
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }
        data = await self._post(GEMINI_URL.format(model=self.model), headers, payload)
        try:
            candidate = data["candidates"][0]
            parts = candidate.get("content", {}).get("parts", [])
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Unexpected Gemini response structure: {json.dumps(data)[:500]}") from e
        return Completion(text=text, stop_reason=_normalize_stop_reason(candidate.get("finishReason")))

    async def _call_openai_compatible(self, system: str, messages: list[dict]) -> Completion:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        data = await self._post(OPENAI_COMPATIBLE_URLS[self.provider], headers, payload)
        try:
            choice = data["choices"][0]
            text = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Unexpected {self.provider} response structure: {json.dumps(data)[:500]}") from e
        return Completion(text=text, stop_reason=_normalize_stop_reason(choice.get("finish_reason")))


def create_completion_service(provider: str | None = None, model: str | None = None, config=None) -> LLMService:
    settings = config["llm"] if config is not None else {}
    provider = provider or settings.get("provider") or "gemini"
    # A model configured for one provider means nothing to another.
    if model is None and provider == settings.get("provider"):
        model = settings.get("model")
    return LLMService(
        provider=provider,
        model=model,
        temperature=settings.get("temperature", 0.7),
        max_tokens=settings.get("max_tokens", 2000),
        timeout=settings.get("timeout_seconds", 60.0),
    )


def generate_system_prompt(log_set_id) -> str:
    return f"""You are an intelligent production log triage agent. Your job is to analyze production logs, identify issues, find root causes, and create tickets with developer suggestions.

You have access to the following tools:
- searchLogs: Deep search through logs with recursive capability
- checkRecentChanges: Correlate system changes with errors
- createTicket: Create support tickets for issues found
- alertTeam: Send alerts about critical issues

INSTRUCTIONS:
1. Start by analyzing the provided logs for ERROR and WARN level entries
2. Use searchLogs to investigate patterns and correlations
3. Use checkRecentChanges to identify potential causes (deployments, config changes, etc.)
4. For each significant issue, create a ticket with clear description and developer suggestions
5. For critical issues, also call alertTeam
6. Provide your final summary with findings and action items

Log Set #{log_set_id} Analysis:
- Stop when you have fully investigated and taken appropriate actions
- When you are done, say "investigation complete" in your final message
- Create tickets for issues that need developer attention
- Alert the team for critical severity issues
- Be thorough but efficient in your investigation

{describe_tools()}"""


def generate_conversational_prompt() -> str:
    return f"""You are a production log triage assistant talking with an engineer. The logs and recent changes you were given are in the first message of the conversation.

Answer the engineer's questions about those logs. Use the tools when they help:
- searchLogs to find related log lines (use recursive=true with a batchId to trace a batch to its users and sources)
- checkRecentChanges to correlate errors with deployments, config changes or migrations
- createTicket only when the engineer asks for one or an issue clearly needs developer attention
- alertTeam only for critical issues

Keep answers short and point to the exact log lines that support your conclusions.

{describe_tools()}"""
