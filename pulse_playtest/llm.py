"""LLM client: HTTP connection to a chat-completion backend.

Every component that needs generated text receives an LLM callable matching
the protocol:

    async def __call__(self, stage: str, request: GenerationRequest) -> Generation: ...

`stage` names the calling role ("narrator", "player", "spokesperson",
"discussion", "classifier", "payoff", "feedback"). Implementations may use it
for logging or routing; HttpLLM only logs it. The model to use travels inside
the request, so one client serves every agent in a session.

Components never call an LLM directly. They go through
`fallback.FallbackGenerator`, which owns retries and model fallback and feeds
the cost ledger. Tests inject a StubLLM (see tests/stub_llm.py).
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field

from pulse_playtest.models import TokenUsage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------

class GenerationRequest(BaseModel):
    model: str
    system: str = ""
    messages: list[dict[str, str]] = Field(default_factory=list)  # {"role", "content"}
    json_schema: dict[str, Any] | None = None
    temperature: float = 0.7
    max_tokens: int = 1000


class Generation(BaseModel):
    content: str
    data: dict[str, Any] | None = None  # parsed JSON when a schema was requested
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, request: GenerationRequest) -> Generation: ...


# ---------------------------------------------------------------------------
# HttpLLM
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "koboldcpp"]

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_output(text: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating markdown fences."""
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise LLMError(f"Model returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise LLMError(f"Model returned JSON {type(data).__name__}, expected object")
    return data


class HttpLLM:
    """Async HTTP client for chat-completion backends.

    Supported formats:
      "openai"     POST /v1/chat/completions  {"model", "messages", ...}
                   Response: {"choices": [{"message": {"content": "..."}}], "usage": {...}}
                   Works with OpenRouter, vLLM, llama.cpp server and friends.
      "koboldcpp"  POST /api/v1/generate  {"prompt": ...}
                   Response: {"results": [{"text": "..."}]}
                   Chat messages are flattened into a single prompt. No usage
                   accounting; structured output relies on the prompt alone.

    Args:
        provider_url:    Base URL of the backend, e.g. "https://openrouter.ai/api".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, request: GenerationRequest) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "koboldcpp":
            url = f"{self._base_url}/api/v1/generate"
            return url, {
                "prompt": _flatten(request),
                "max_length": request.max_tokens,
                "temperature": request.temperature,
            }

        url = f"{self._base_url}/v1/chat/completions"
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(request.messages)
        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.json_schema is not None:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "strict": True, "schema": request.json_schema},
            }
        return url, body

    def _parse_response(self, data: dict) -> tuple[str, TokenUsage]:
        """Extract completion text and token usage from the response body."""
        if self._format == "koboldcpp":
            results = data.get("results")
            if not results or "text" not in results[0]:
                raise LLMError("Unexpected response format from KoboldCpp backend")
            return results[0]["text"], TokenUsage()

        choices = data.get("choices")
        if not choices or not isinstance(choices[0].get("message"), dict):
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        content = choices[0]["message"].get("content") or ""
        raw_usage = data.get("usage") or {}
        usage = TokenUsage(
            input_tokens=raw_usage.get("prompt_tokens", 0),
            output_tokens=raw_usage.get("completion_tokens", 0),
            total_tokens=raw_usage.get("total_tokens", 0),
        )
        return content, usage

    async def __call__(self, stage: str, request: GenerationRequest) -> Generation:
        url, body = self._build_request(request)
        logger.debug(
            "llm call stage=%s model=%s url=%s messages=%d",
            stage, request.model, url, len(request.messages),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM backend request failed: {e}") from e

        try:
            payload = resp.json()
        except ValueError as e:
            raise LLMError(f"LLM backend returned a non-JSON body: {e}") from e
        text, usage = self._parse_response(payload)
        data = parse_json_output(text) if request.json_schema is not None else None
        logger.debug("llm response stage=%s model=%s len=%d", stage, request.model, len(text))
        return Generation(content=text, data=data, usage=usage, model=request.model)


def _flatten(request: GenerationRequest) -> str:
    parts: list[str] = []
    if request.system:
        parts.append(request.system)
    for msg in request.messages:
        parts.append(f"{msg['role'].capitalize()}: {msg['content']}")
    if request.json_schema is not None:
        parts.append("Respond with a single JSON object matching this schema:\n"
                     + json.dumps(request.json_schema))
    else:
        parts.append("Assistant:")
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
