"""Render producer instructions from the Jinja2 templates shipped with the package."""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from agent_foreman.dispatch.dispatcher import TaskInstructions
    from agent_foreman.dispatch.tickets import Ticket
    from agent_foreman.validation.rules import ValidationIssue

TEMPLATE_NAMES: Final[tuple[str, ...]] = ("generate", "repair", "tests")


class PromptTemplateError(RuntimeError):
    """Raised when a prompt template is missing or references an unknown variable."""


class PromptRenderer:
    """Strict renderer: every variable a template names must be supplied."""

    def __init__(self, environment: Environment | None = None) -> None:
        self._environment = environment or Environment(
            loader=PackageLoader("agent_foreman.producer", "templates"),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def render(self, name: str, **variables: object) -> str:
        if name not in TEMPLATE_NAMES:
            raise PromptTemplateError(f"unknown prompt template {name!r}")
        try:
            template = self._environment.get_template(f"{name}.j2")
            return template.render(**variables)
        except TemplateError as exc:
            raise PromptTemplateError(f"{name}.j2: {exc}") from exc

    def generate(
        self,
        *,
        persona: str,
        ticket: Ticket,
        path: str,
        instructions: TaskInstructions,
        existing: str | None = None,
    ) -> str:
        return self.render(
            "generate",
            persona=persona,
            ticket=ticket,
            path=path,
            instructions=instructions,
            existing=existing,
        )

    def repair(self, *, persona: str, path: str, artifact: str, issues: Sequence[ValidationIssue]) -> str:
        return self.render("repair", persona=persona, path=path, artifact=artifact.rstrip(), issues=list(issues))

    def tests(self, *, persona: str, path: str, test_path: str, artifact: str) -> str:
        return self.render("tests", persona=persona, path=path, test_path=test_path, artifact=artifact.rstrip())


__all__ = ["TEMPLATE_NAMES", "PromptRenderer", "PromptTemplateError"]
