"""Producer contract, credential handling and the OpenAI-compatible adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from agent_foreman.producer import openai_compatible
from agent_foreman.producer.base import (
    ArtifactProducer,
    ProducerAuthenticationError,
    ProducerError,
    ProducerUnavailableError,
    ProducerUsage,
    require_credential,
    strip_code_fences,
)
from agent_foreman.producer.openai_compatible import OpenAICompatibleProducer

if TYPE_CHECKING:
    from conftest import StaticProducer


@dataclass(slots=True)
class _ScriptedCompletions:
    outcomes: list[object]
    calls: list[dict[str, object]] = field(default_factory=list)

    def create(self, **kwargs: object) -> object:
        self.calls.append(dict(kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(*outcomes: object) -> tuple[SimpleNamespace, _ScriptedCompletions]:
    completions = _ScriptedCompletions(list(outcomes))
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def _response(content: str | None, *, prompt_tokens: int = 11, completion_tokens: int = 7) -> SimpleNamespace:
    return SimpleNamespace(
        model="openai/gpt-4.1-mini",
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


class AuthenticationError(Exception):
    status_code = 401


class APIConnectionError(Exception):
    pass


class BadRequestError(Exception):
    status_code = 400


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("```tsx\nexport const A = 1;\n```", "export const A = 1;\n"),
        ("```\nplain\n```\n", "plain\n"),
        ("no fences here", "no fences here\n"),
        ("   ", ""),
    ],
)
def test_strip_code_fences(raw: str, expected: str) -> None:
    assert strip_code_fences(raw) == expected


def test_require_credential_names_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FOREMAN_TEST_KEY", raising=False)

    with pytest.raises(ProducerAuthenticationError, match="FOREMAN_TEST_KEY"):
        require_credential("FOREMAN_TEST_KEY")

    monkeypatch.setenv("FOREMAN_TEST_KEY", " sk-or-test ")
    assert require_credential("FOREMAN_TEST_KEY") == "sk-or-test"


def test_usage_rejects_negative_tokens() -> None:
    with pytest.raises(ValueError, match="input_tokens"):
        ProducerUsage(model="m", input_tokens=-1)
    assert ProducerUsage(model="m", input_tokens=3, output_tokens=4).total_tokens == 7


def test_static_producer_satisfies_the_protocol(static_producer: StaticProducer) -> None:
    assert isinstance(static_producer, ArtifactProducer)
    assert isinstance(OpenAICompatibleProducer(default_model="m", client=_client()[0]), ArtifactProducer)


def test_generate_sends_role_and_instructions() -> None:
    client, completions = _client(_response("export const x = 1;"))
    producer = OpenAICompatibleProducer(default_model="openai/gpt-4.1-mini", temperature=0.3, client=client)

    result = producer.generate("frontend", "Build the thing", model="anthropic/claude-sonnet-4")

    assert result.text == "export const x = 1;"
    assert result.usage == ProducerUsage(model="openai/gpt-4.1-mini", input_tokens=11, output_tokens=7)
    call = completions.calls[0]
    assert call["model"] == "anthropic/claude-sonnet-4"
    assert call["temperature"] == 0.3
    messages = call["messages"]
    assert isinstance(messages, list)
    assert "frontend" in messages[0]["content"]
    assert messages[1] == {"role": "user", "content": "Build the thing"}


def test_generate_falls_back_to_default_model() -> None:
    client, completions = _client(_response("ok"))
    OpenAICompatibleProducer(default_model="google/gemini-2.5-flash", client=client).generate("database", "x")

    assert completions.calls[0]["model"] == "google/gemini-2.5-flash"


def test_empty_response_is_a_producer_error() -> None:
    client, _ = _client(_response(None))

    with pytest.raises(ProducerError, match="no message content"):
        OpenAICompatibleProducer(default_model="m", client=client).generate("backend", "x")


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (AuthenticationError("invalid key"), ProducerAuthenticationError),
        (APIConnectionError("connection reset"), ProducerUnavailableError),
        (BadRequestError("bad model"), ProducerError),
    ],
)
def test_sdk_errors_map_onto_producer_errors(exc: Exception, expected: type[ProducerError]) -> None:
    client, _ = _client(exc)

    with pytest.raises(expected) as excinfo:
        OpenAICompatibleProducer(default_model="m", client=client).generate("backend", "x")

    assert excinfo.value.__cause__ is exc


def test_missing_sdk_is_reported_lazily(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(name: str) -> object:
        raise ImportError(f"No module named {name!r}")

    monkeypatch.setattr(openai_compatible.importlib, "import_module", refuse)
    producer = OpenAICompatibleProducer(default_model="m")

    with pytest.raises(ProducerUnavailableError, match="openai SDK is not installed"):
        producer.generate("backend", "x")


def test_default_client_targets_openrouter(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[dict[str, object]] = []

    class FakeOpenAI:
        def __init__(self, **kwargs: object) -> None:
            created.append(kwargs)
            self.chat = _client(_response("done"))[0].chat

    monkeypatch.setattr(openai_compatible.importlib, "import_module", lambda name: SimpleNamespace(OpenAI=FakeOpenAI))
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-v1-test")
    producer = OpenAICompatibleProducer.from_config(
        {
            "provider": "openrouter",
            "api_key_env": "OPENROUTER_API_KEY",
            "base_url": "https://openrouter.ai/api/v1",
            "default_model": "openai/gpt-4.1-mini",
            "temperature": 0.2,
            "timeout_seconds": 30.0,
        }
    )

    assert producer.generate("backend", "x").text == "done"
    assert created[0]["api_key"] == "sk-or-v1-test"
    assert created[0]["base_url"] == "https://openrouter.ai/api/v1"
    assert created[0]["timeout"] == 30.0
    assert "X-Title" in created[0]["default_headers"]  # type: ignore[operator]


def test_default_client_requires_the_credential(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(openai_compatible.importlib, "import_module", lambda name: SimpleNamespace(OpenAI=object))
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

    with pytest.raises(ProducerAuthenticationError, match="OPENROUTER_API_KEY"):
        OpenAICompatibleProducer(default_model="m").generate("backend", "x")
