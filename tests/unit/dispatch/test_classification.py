"""Role scoring, complexity inference and model suggestion."""

from __future__ import annotations

import pytest

from agent_foreman.dispatch.roles import DEFAULT_ROLES
from agent_foreman.dispatch.rules import classify, infer_complexity, score_roles, suggest_model
from agent_foreman.dispatch.tickets import Ticket

try:
    from hypothesis import given
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


def test_login_form_with_api_auth_goes_to_backend() -> None:
    result = classify(Ticket("TICKET-1", "Add login form with API auth"))

    assert result.scores["backend"] == 20
    assert result.scores["frontend"] == 10
    assert result.role == "backend"
    assert result.confidence == 100


def test_path_notes_outweigh_keywords() -> None:
    ticket = Ticket("TICKET-2", "Adjust the order", notes=("edit prisma/seed.ts", "check prisma/dev.db"))

    result = classify(ticket)

    assert result.scores["database"] == 30
    assert result.role == "database"
    assert result.confidence == 100


def test_keyword_counts_once_and_matches_word_start() -> None:
    scores = score_roles(Ticket("TICKET-3", "Buttons, buttons and more buttons"))

    assert scores["frontend"] == 10


def test_tie_resolves_to_backend() -> None:
    result = classify(Ticket("TICKET-4", "button table"))

    assert result.scores["frontend"] == result.scores["database"] == 10
    assert result.role == "backend"
    assert any("Tie between" in line for line in result.reasoning)


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ("Refactor billing", "high"),
        ("Major rework of the api", "high"),
        ("Quick copy fix", "low"),
        ("Minor tweak", "low"),
        ("Add endpoint", "medium"),
        ("Simple refactor", "high"),
    ],
)
def test_complexity_first_rule_wins(description: str, expected: str) -> None:
    assert infer_complexity(Ticket("TICKET-5", description)) == expected


def test_suggest_model_keyword_overrides() -> None:
    testing = DEFAULT_ROLES["testing"]
    frontend = DEFAULT_ROLES["frontend"]

    assert suggest_model(Ticket("T-1", "Optimize render loop"), frontend, "low", testing=testing) == frontend.models.complex
    assert suggest_model(Ticket("T-2", "Add tests for cart"), frontend, "medium", testing=testing) == testing.models.fast
    assert suggest_model(Ticket("T-3", "Add a banner"), frontend, "high", testing=testing) == frontend.models.complex
    assert suggest_model(Ticket("T-4", "Add a banner"), frontend, "medium", testing=testing) == frontend.models.standard


if _HYPOTHESIS_AVAILABLE:
    _NEUTRAL_TEXT = st.text(alphabet="0123456789 .,;!?()", max_size=60)

    @given(description=_NEUTRAL_TEXT, notes=st.lists(_NEUTRAL_TEXT, max_size=3))
    def test_unscored_tickets_default_to_backend(description: str, notes: list[str]) -> None:
        result = classify(Ticket("TICKET-99", description, tuple(notes)))

        assert all(score == 0 for score in result.scores.values())
        assert result.role == "backend"
        assert result.confidence == 0

else:

    def test_unscored_tickets_default_to_backend() -> None:
        pytest.skip("hypothesis is not installed")
