"""LLM client: HTTP connection to a chat-completion provider.

Sessions and the summary scheduler take an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str,
                       token: CancellationToken | None = None) -> str: ...

`stage` identifies the caller ("chat_reply", "chat_summary", "book_summary")
and is used for logging. `token` makes the call abortable: when it fires the
request is abandoned and AbortError is raised.

HttpLLM is the real client. Each provider returns a differently shaped JSON
body; they are validated into the ProviderReply union right at the boundary
and reduced to plain text before anything else sees them.

Production code builds an HttpLLM per ApiConfig via HttpLLM.from_config.
Tests inject their own callables through the llm_factory seams instead.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

import httpx
from pydantic import BaseModel, ValidationError

from reader_companion.cancellation import CancellationToken, await_cancellable
from reader_companion.conversation import compact_text
from reader_companion.errors import ConfigurationError, ProviderError
from reader_companion.models import ApiConfig, Provider

logger = logging.getLogger(__name__)

GEMINI_DEFAULT_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta"
CLAUDE_API_VERSION = "2023-06-01"


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self, stage: str, prompt: str, token: CancellationToken | None = None
    ) -> str: ...


# ---------------------------------------------------------------------------
# ProviderReply: one tagged union for the three response shapes
# ---------------------------------------------------------------------------

class _OpenAIMessage(BaseModel):
    content: str | None = None


class _OpenAIChoice(BaseModel):
    message: _OpenAIMessage


class OpenAIReply(BaseModel):
    choices: list[_OpenAIChoice]

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


class _ClaudeBlock(BaseModel):
    type: str = "text"
    text: str = ""


class ClaudeReply(BaseModel):
    content: list[_ClaudeBlock]

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if block.type == "text").strip()


class _GeminiPart(BaseModel):
    text: str = ""


class _GeminiContent(BaseModel):
    parts: list[_GeminiPart] = []


class _GeminiCandidate(BaseModel):
    content: _GeminiContent


class GeminiReply(BaseModel):
    candidates: list[_GeminiCandidate]

    @property
    def text(self) -> str:
        if not self.candidates:
            return ""
        return "".join(part.text for part in self.candidates[0].content.parts).strip()


ProviderReply = OpenAIReply | ClaudeReply | GeminiReply

_REPLY_MODELS: dict[Provider, type[OpenAIReply] | type[ClaudeReply] | type[GeminiReply]] = {
    "openai": OpenAIReply,
    "claude": ClaudeReply,
    "gemini": GeminiReply,
}


def parse_provider_reply(provider: Provider, data: object) -> ProviderReply:
    """Validate a raw response body into the provider's reply model."""
    try:
        return _REPLY_MODELS[provider].model_validate(data)
    except ValidationError as e:
        raise ProviderError(f"Unexpected response format from {provider} backend") from e


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------

def normalize_endpoint(endpoint: str) -> str:
    return (endpoint or "").strip().rstrip("/")


def validate_api_config(config: ApiConfig) -> None:
    """Raise ConfigurationError if key, model or endpoint is missing."""
    if not config.api_key.strip():
        raise ConfigurationError("API key is not set")
    if not config.model.strip():
        raise ConfigurationError("Model name is not set")
    if config.provider != "gemini" and not normalize_endpoint(config.endpoint):
        raise ConfigurationError("API endpoint is not set")


def is_same_api_config(left: ApiConfig, right: ApiConfig) -> bool:
    """True when both configs would hit the same provider credentials."""
    return (
        left.provider == right.provider
        and normalize_endpoint(left.endpoint) == normalize_endpoint(right.endpoint)
        and left.api_key.strip() == right.api_key.strip()
        and left.model.strip() == right.model.strip()
    )


def _error_detail(resp: httpx.Response) -> str:
    """Pull a short human-readable message out of an error body."""
    raw = compact_text(resp.text)
    if not raw:
        return ""
    try:
        data = json.loads(raw)
    except ValueError:
        return raw[:180]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        for candidate in (error, data.get("message"), data.get("detail")):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
    return raw[:180]


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for chat-completion providers.

    Supported providers:
      "openai"  - POST {endpoint}/chat/completions   Bearer auth
                  Response: {"choices": [{"message": {"content": "..."}}]}
      "claude"  - POST {endpoint}/v1/messages        x-api-key auth
                  Response: {"content": [{"type": "text", "text": "..."}]}
      "gemini"  - POST {endpoint}/models/{model}:generateContent?key=...
                  Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

    Args:
        endpoint:    Base URL, e.g. "https://api.openai.com/v1".
        api_key:     Provider credential.
        provider:    Wire format to use. Defaults to "openai".
        model:       Model identifier.
        temperature: Sampling temperature, omitted when None.
        max_tokens:  Reply cap, used by the claude format.
        timeout:     HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        provider: Provider = "openai",
        model: str = "",
        temperature: float | None = None,
        max_tokens: int = 800,
        timeout: float = 120.0,
    ) -> None:
        self._provider = provider
        self._base_url = normalize_endpoint(endpoint) or (
            GEMINI_DEFAULT_ENDPOINT if provider == "gemini" else ""
        )
        self._api_key = api_key.strip()
        self._model = model.strip()
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: ApiConfig, **kwargs) -> HttpLLM:
        validate_api_config(config)
        return cls(
            endpoint=config.endpoint,
            api_key=config.api_key,
            provider=config.provider,
            model=config.model,
            **kwargs,
        )

    def _build_request(self, prompt: str) -> tuple[str, dict[str, str], dict]:
        """Return (url, headers, body) for the configured provider."""
        if self._provider == "claude":
            body: dict = {
                "model": self._model,
                "max_tokens": self._max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            }
            if self._temperature is not None:
                body["temperature"] = self._temperature
            headers = {
                "x-api-key": self._api_key,
                "anthropic-version": CLAUDE_API_VERSION,
                "content-type": "application/json",
            }
            return f"{self._base_url}/v1/messages", headers, body

        if self._provider == "gemini":
            body = {"contents": [{"parts": [{"text": prompt}]}]}
            if self._temperature is not None:
                body["generationConfig"] = {"temperature": self._temperature}
            url = f"{self._base_url}/models/{self._model}:generateContent?key={self._api_key}"
            return url, {"Content-Type": "application/json"}, body

        # openai (default)
        body = {"model": self._model, "messages": [{"role": "user", "content": prompt}]}
        if self._temperature is not None:
            body["temperature"] = self._temperature
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return f"{self._base_url}/chat/completions", headers, body

    async def _post(self, prompt: str) -> str:
        url, headers, body = self._build_request(prompt)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ProviderError(f"Cannot connect to {self._provider} backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            message = f"{self._provider} backend returned HTTP {e.response.status_code}"
            raise ProviderError(f"{message}: {detail}" if detail else message) from e
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self._provider} backend timed out after {self._timeout}s") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"Unexpected response format from {self._provider} backend") from e
        return parse_provider_reply(self._provider, data).text

    async def __call__(
        self, stage: str, prompt: str, token: CancellationToken | None = None
    ) -> str:
        logger.debug(
            "llm call stage=%s provider=%s prompt_len=%d", stage, self._provider, len(prompt)
        )
        text = await await_cancellable(self._post(prompt), token)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text
