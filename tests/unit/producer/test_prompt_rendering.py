"""Packaged prompt templates render strictly."""

from __future__ import annotations

import pytest

from agent_foreman.dispatch.dispatcher import TaskInstructions
from agent_foreman.dispatch.tickets import Ticket
from agent_foreman.producer.prompts import PromptRenderer, PromptTemplateError
from agent_foreman.validation.rules import ValidationIssue

INSTRUCTIONS = TaskInstructions(
    allowed_paths=("src/components/", "public/"),
    excluded_paths=("prisma/",),
    guidelines=("Follow existing code patterns", "Commit format: feat(TICKET-4): description"),
    suggested_model="openai/gpt-4.1-mini",
)


def test_generate_prompt_carries_ticket_boundaries_and_guidelines() -> None:
    ticket = Ticket("TICKET-4", "Create a progress bar component", notes=("Support themes",))

    prompt = PromptRenderer().generate(
        persona="You are a senior React/Next.js developer.",
        ticket=ticket,
        path="src/components/progress.tsx",
        instructions=INSTRUCTIONS,
    )

    assert prompt.startswith("You are a senior React/Next.js developer.")
    assert "TICKET-4: Create a progress bar component" in prompt
    assert "- Support themes" in prompt
    assert "Generate production-ready code for: src/components/progress.tsx" in prompt
    assert "Allowed paths: src/components/, public/" in prompt
    assert "Do not modify: prisma/" in prompt
    assert "- Follow existing code patterns" in prompt
    assert "This is a new file." in prompt


def test_generate_prompt_includes_existing_code() -> None:
    prompt = PromptRenderer().generate(
        persona="p",
        ticket=Ticket("TICKET-5", "Tweak"),
        path="src/components/a.tsx",
        instructions=INSTRUCTIONS,
        existing="export const A = 1;",
    )

    assert "Existing code to modify:" in prompt
    assert "export const A = 1;" in prompt
    assert "This is a new file." not in prompt
    assert "Notes:" not in prompt


def test_repair_prompt_lists_each_error() -> None:
    issues = [
        ValidationIssue("syntax", "Unexpected token", "high", line=3),
        ValidationIssue("security", "Hardcoded credential", "high"),
    ]

    prompt = PromptRenderer().repair(persona="p", path="src/lib/a.ts", artifact="const x = ;\n", issues=issues)

    assert "- [syntax] line 3: Unexpected token" in prompt
    assert "- [security] Hardcoded credential" in prompt
    assert "const x = ;" in prompt


def test_tests_prompt_names_the_test_file() -> None:
    prompt = PromptRenderer().tests(
        persona="You are a QA engineer.",
        path="src/lib/a.ts",
        test_path="src/lib/a.test.ts",
        artifact="export const a = 1;",
    )

    assert "write them as src/lib/a.test.ts" in prompt
    assert "File: src/lib/a.ts" in prompt


def test_missing_variables_fail_loudly() -> None:
    with pytest.raises(PromptTemplateError, match=r"generate\.j2"):
        PromptRenderer().render("generate", persona="p")


def test_unknown_template_is_rejected() -> None:
    with pytest.raises(PromptTemplateError, match="unknown prompt template"):
        PromptRenderer().render("review")
