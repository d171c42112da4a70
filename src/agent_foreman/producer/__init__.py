"""Artifact producers: the code-generation backend behind ``generate(role, instructions)``."""

from agent_foreman.producer.base import (
    ArtifactProducer,
    ProducerAuthenticationError,
    ProducerError,
    ProducerResult,
    ProducerUnavailableError,
    ProducerUsage,
    require_credential,
    strip_code_fences,
)
from agent_foreman.producer.openai_compatible import OpenAICompatibleProducer
from agent_foreman.producer.prompts import PromptRenderer, PromptTemplateError

__all__ = [
    "ArtifactProducer",
    "OpenAICompatibleProducer",
    "ProducerAuthenticationError",
    "ProducerError",
    "ProducerResult",
    "ProducerUnavailableError",
    "ProducerUsage",
    "PromptRenderer",
    "PromptTemplateError",
    "require_credential",
    "strip_code_fences",
]
