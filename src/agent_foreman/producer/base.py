"""
agent-foreman: artifact producer contract

File: src/agent_foreman/producer/base.py

Purpose
- Define the single contract the foreman consumes from a code-generation
  backend: ``generate(role, instructions) -> artifact`` plus token usage for
  cost accounting.

Functional requirements
- Producer failures surface as ``ProducerError`` subclasses so the CLI can map
  them to a dedicated exit code.
- A missing credential is reported with the environment variable to set.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Final, Protocol, runtime_checkable

_FENCE_RE: Final[re.Pattern[str]] = re.compile(r"^```[\w.+-]*[ \t]*\n(?P<body>.*?)\n?```[ \t]*$", re.DOTALL)


class ProducerError(RuntimeError):
    """Base error for artifact producer failures."""

    def __init__(self, detail: str, *, provider: str = "producer") -> None:
        self.provider = provider
        self.detail = detail.strip() or "unknown producer failure"
        super().__init__(f"{provider}: {self.detail}")


class ProducerUnavailableError(ProducerError):
    """Raised when the producer SDK or service cannot be reached."""


class ProducerAuthenticationError(ProducerError):
    """Raised when the producer credential is missing or rejected."""


@dataclass(frozen=True, slots=True)
class ProducerUsage:
    """Token accounting for one producer call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    def __post_init__(self) -> None:
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class ProducerResult:
    text: str
    usage: ProducerUsage


@runtime_checkable
class ArtifactProducer(Protocol):
    """Anything that turns role-scoped instructions into artifact text."""

    def generate(self, role: str, instructions: str, *, model: str | None = None) -> ProducerResult: ...


def require_credential(api_key_env: str, *, provider: str = "producer") -> str:
    """Return the credential from ``api_key_env`` or fail with guidance naming the variable."""

    value = os.environ.get(api_key_env, "").strip()
    if not value:
        raise ProducerAuthenticationError(
            f"{api_key_env} is not set; export {api_key_env}=<your key> to enable generation",
            provider=provider,
        )
    return value


def strip_code_fences(text: str) -> str:
    """Drop one surrounding Markdown code fence, which models add despite instructions."""

    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    body = match.group("body") if match else stripped
    return body.rstrip() + "\n" if body.strip() else ""


__all__ = [
    "ArtifactProducer",
    "ProducerAuthenticationError",
    "ProducerError",
    "ProducerResult",
    "ProducerUnavailableError",
    "ProducerUsage",
    "require_credential",
    "strip_code_fences",
]
