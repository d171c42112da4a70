"""
agent-foreman: OpenAI-compatible chat completions producer

File: src/agent_foreman/producer/openai_compatible.py

Purpose
- Generate artifacts through any OpenAI-compatible chat completions endpoint.
  OpenRouter is the default target; plain OpenAI works by switching
  ``base_url``.

Functional requirements
- The ``openai`` SDK is optional and imported lazily; its absence raises
  ``ProducerUnavailableError`` only when a call is made.
- The API key is read from the configured environment variable, never from
  configuration files.
- SDK exceptions are mapped onto the producer error hierarchy.
"""

from __future__ import annotations

import importlib
from collections.abc import Mapping
from typing import Final, Protocol, cast

import structlog

from agent_foreman.producer.base import (
    ProducerAuthenticationError,
    ProducerError,
    ProducerResult,
    ProducerUnavailableError,
    ProducerUsage,
    require_credential,
)

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOKENS: Final[int] = 4000
_OPENROUTER_HEADERS: Final[Mapping[str, str]] = {
    "HTTP-Referer": "https://github.com/agent-foreman/agent-foreman",
    "X-Title": "agent-foreman",
}


class _Completions(Protocol):
    def create(self, **kwargs: object) -> object: ...


class _Chat(Protocol):
    completions: _Completions


class _ChatClient(Protocol):
    chat: _Chat


class OpenAICompatibleProducer:
    """Synchronous chat-completions adapter with an injectable client."""

    def __init__(
        self,
        *,
        default_model: str,
        api_key_env: str = "OPENROUTER_API_KEY",
        base_url: str | None = "https://openrouter.ai/api/v1",
        provider: str = "openrouter",
        temperature: float = 0.2,
        timeout_seconds: float | None = 120.0,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: _ChatClient | None = None,
    ) -> None:
        if not default_model.strip():
            raise ValueError("default_model must be a non-empty string")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.default_model = default_model.strip()
        self.provider = provider
        self._api_key_env = api_key_env
        self._base_url = base_url
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds
        self._max_tokens = max_tokens
        self._client = client

    @classmethod
    def from_config(cls, producer: Mapping[str, object]) -> OpenAICompatibleProducer:
        return cls(
            default_model=str(producer["default_model"]),
            api_key_env=str(producer["api_key_env"]),
            base_url=str(producer["base_url"]) or None,
            provider=str(producer["provider"]),
            temperature=float(producer["temperature"]),  # type: ignore[arg-type]
            timeout_seconds=float(producer["timeout_seconds"]),  # type: ignore[arg-type]
        )

    def generate(self, role: str, instructions: str, *, model: str | None = None) -> ProducerResult:
        model_name = model or self.default_model
        client = self._ensure_client()
        try:
            response = client.chat.completions.create(
                model=model_name,
                messages=[
                    {"role": "system", "content": f"You are the {role} agent of a multi-agent development team."},
                    {"role": "user", "content": instructions},
                ],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except ProducerError:
            raise
        except Exception as exc:
            raise self._map_exception(exc) from exc

        text = _extract_text(response)
        if text is None:
            raise ProducerError("response carried no message content", provider=self.provider)
        usage = ProducerUsage(
            model=_read_str(response, "model") or model_name,
            input_tokens=_read_int(getattr(response, "usage", None), "prompt_tokens"),
            output_tokens=_read_int(getattr(response, "usage", None), "completion_tokens"),
        )
        logger.info(
            "artifact_generated",
            role=role,
            model=usage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return ProducerResult(text=text, usage=usage)

    def _ensure_client(self) -> _ChatClient:
        if self._client is None:
            self._client = self._create_default_client()
        return self._client

    def _create_default_client(self) -> _ChatClient:
        try:
            openai_module = importlib.import_module("openai")
        except ImportError as exc:
            raise ProducerUnavailableError(
                "openai SDK is not installed; install agent-foreman[providers]",
                provider=self.provider,
            ) from exc

        client_cls = getattr(openai_module, "OpenAI", None)
        if client_cls is None:
            raise ProducerUnavailableError("openai SDK does not expose OpenAI", provider=self.provider)

        init_kwargs: dict[str, object] = {
            "api_key": require_credential(self._api_key_env, provider=self.provider),
        }
        if self._base_url:
            init_kwargs["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            init_kwargs["timeout"] = self._timeout_seconds
        if self.provider == "openrouter":
            init_kwargs["default_headers"] = dict(_OPENROUTER_HEADERS)
        return cast("_ChatClient", client_cls(**init_kwargs))

    def _map_exception(self, exc: Exception) -> ProducerError:
        status_code = getattr(exc, "status_code", None)
        class_name = exc.__class__.__name__.lower()
        detail = str(exc) or exc.__class__.__name__
        if status_code in {401, 403} or "auth" in class_name or "permission" in class_name:
            return ProducerAuthenticationError(detail, provider=self.provider)
        if "connection" in class_name or "timeout" in class_name:
            return ProducerUnavailableError(detail, provider=self.provider)
        return ProducerError(detail, provider=self.provider)


def _extract_text(response: object) -> str | None:
    choices = getattr(response, "choices", None)
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    return content if isinstance(content, str) else None


def _read_str(source: object, name: str) -> str | None:
    value = getattr(source, name, None)
    return value if isinstance(value, str) and value else None


def _read_int(source: object, name: str) -> int:
    value = getattr(source, name, None)
    return value if isinstance(value, int) and value >= 0 else 0


__all__ = ["DEFAULT_MAX_TOKENS", "OpenAICompatibleProducer"]
