"""Provider adapters for the supported AI backends.

Each adapter translates the canonical message list into one backend's wire
format, attaches that backend's credential, calls it with a bounded timeout,
and pulls the first completion's text out of the response envelope. Three
wire formats cover all configured providers:

- ``openai``: OpenAI-compatible ``/chat/completions`` (OpenAI, DeepSeek,
  Perplexity, xAI)
- ``anthropic``: Anthropic ``/messages``
- ``gemini``: Google ``:generateContent`` with role-annotated ``contents``
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from uplift_gateway.config import ProviderConfig
from uplift_gateway.errors import (
    ProviderMalformedResponse,
    ProviderRejected,
    ProviderUnavailable,
)
from uplift_gateway.models import CanonicalRequest, CanonicalResponse, ChatMessage

ANTHROPIC_VERSION = "2023-06-01"

# Upstream statuses meaning the backend refused this request, as opposed to
# being overloaded or down.
_REJECTED_STATUSES = frozenset({400, 401, 403, 404})

_MAX_CAPTURED_BODY = 2000


@dataclass
class WireRequest:
    """A fully built HTTP request for one provider call."""

    url: str
    payload: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)


class ProviderAdapter:
    """Base adapter: transport, error mapping, and the call template.

    Subclasses implement ``build_request`` and ``parse_response``.
    """

    def __init__(
        self,
        config: ProviderConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def configured(self) -> bool:
        return bool(self.config.api_key)

    def build_request(self, messages: List[ChatMessage], api_key: str) -> WireRequest:
        raise NotImplementedError

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Return (text, usage) from a decoded 2xx response body."""
        raise NotImplementedError

    async def call(self, request: CanonicalRequest) -> CanonicalResponse:
        """Call the backend and return the normalized response.

        Raises:
            ProviderUnavailable: Missing API key, transport error, timeout,
                or a non-2xx status (ProviderRejected for 400/401/403/404).
            ProviderMalformedResponse: A 2xx body without a usable completion.
        """
        api_key = self.config.api_key
        if not api_key:
            raise ProviderUnavailable(
                self.name, "API key not configured ({})".format(self.config.api_key_env)
            )

        wire = self.build_request(request.messages, api_key)
        headers = {"Content-Type": "application/json"}
        headers.update(wire.headers)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    wire.url, json=wire.payload, headers=headers, params=wire.params
                )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(
                self.name, "Request timed out after {}s: {}".format(self.timeout, exc)
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(self.name, "Transport error: {}".format(exc))

        if not resp.is_success:
            error_cls = (
                ProviderRejected
                if resp.status_code in _REJECTED_STATUSES
                else ProviderUnavailable
            )
            raise error_cls(
                self.name,
                "Provider returned HTTP {}".format(resp.status_code),
                upstream_status=resp.status_code,
                upstream_body=resp.text[:_MAX_CAPTURED_BODY],
            )

        try:
            data = resp.json()
            text, usage = self.parse_response(data)
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ProviderMalformedResponse(
                self.name,
                "Unparseable response: {!r}".format(exc),
                upstream_status=resp.status_code,
                upstream_body=resp.text[:_MAX_CAPTURED_BODY],
            )
        if not isinstance(text, str):
            raise ProviderMalformedResponse(
                self.name,
                "Completion text is {}".format(type(text).__name__),
                upstream_status=resp.status_code,
            )

        return CanonicalResponse(
            provider=self.name,
            text=text,
            model=self.config.default_model,
            usage=usage if isinstance(usage, dict) else {},
        )


class ChatCompletionsAdapter(ProviderAdapter):
    """OpenAI-compatible chat completion APIs."""

    def build_request(self, messages: List[ChatMessage], api_key: str) -> WireRequest:
        return WireRequest(
            url="{}/chat/completions".format(self.config.base_url.rstrip("/")),
            headers={"Authorization": "Bearer {}".format(api_key)},
            payload={
                "model": self.config.default_model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "max_tokens": self.config.max_tokens,
            },
        )

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        return data["choices"][0]["message"]["content"], data.get("usage") or {}


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API.

    System prompts are not allowed in the message list; they are joined into
    the top-level ``system`` field.
    """

    def build_request(self, messages: List[ChatMessage], api_key: str) -> WireRequest:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: Dict[str, Any] = {
            "model": self.config.default_model,
            "max_tokens": self.config.max_tokens,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in messages
                if m.role != "system"
            ],
        }
        if system:
            payload["system"] = system
        return WireRequest(
            url="{}/messages".format(self.config.base_url.rstrip("/")),
            headers={"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
            payload=payload,
        )

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        texts = [b["text"] for b in data["content"] if b.get("type", "text") == "text"]
        return texts[0], data.get("usage") or {}


class GeminiAdapter(ProviderAdapter):
    """Google Gemini generateContent API."""

    def build_request(self, messages: List[ChatMessage], api_key: str) -> WireRequest:
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
            if m.role != "system"
        ]
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"maxOutputTokens": self.config.max_tokens},
        }
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return WireRequest(
            url="{}/{}:generateContent".format(
                self.config.base_url.rstrip("/"), self.config.default_model
            ),
            params={"key": api_key},
            payload=payload,
        )

    def parse_response(self, data: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
        return text, data.get("usageMetadata") or {}


ADAPTER_KINDS = {
    "openai": ChatCompletionsAdapter,
    "anthropic": AnthropicAdapter,
    "gemini": GeminiAdapter,
}
