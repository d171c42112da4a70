"""YAML role table overrides and path boundaries."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_foreman.dispatch.roles import DEFAULT_ROLES, RoleTableError, load_role_table


def test_defaults_when_file_is_absent(tmp_path: Path) -> None:
    assert load_role_table(tmp_path / "missing.yaml") == dict(DEFAULT_ROLES)
    assert load_role_table(None) == dict(DEFAULT_ROLES)


def test_overrides_merge_per_role(tmp_path: Path) -> None:
    roles_file = tmp_path / "foreman-roles.yaml"
    roles_file.write_text(
        "roles:\n"
        "  frontend:\n"
        "    working_paths: [web/]\n"
        "    models:\n"
        "      complex: openai/gpt-4.1\n",
        encoding="utf-8",
    )

    table = load_role_table(roles_file)

    assert table["frontend"].working_paths == ("web/",)
    assert table["frontend"].models.complex == "openai/gpt-4.1"
    assert table["frontend"].models.fast == DEFAULT_ROLES["frontend"].models.fast
    assert table["frontend"].persona == DEFAULT_ROLES["frontend"].persona
    assert table["backend"] == DEFAULT_ROLES["backend"]


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("roles: [unclosed", "invalid YAML"),
        ("roles:\n  designer: {}\n", "unknown role 'designer'"),
        ("roles:\n  backend:\n    colour: blue\n", "unknown field"),
        ("roles:\n  backend:\n    working_paths: src/\n", "list of non-empty strings"),
        ("roles:\n  backend:\n    models:\n      huge: x\n", "unknown tier"),
        ("- just a list\n", "top-level 'roles' mapping"),
    ],
)
def test_invalid_role_tables_are_rejected(tmp_path: Path, content: str, message: str) -> None:
    roles_file = tmp_path / "roles.yaml"
    roles_file.write_text(content, encoding="utf-8")

    with pytest.raises(RoleTableError, match=message):
        load_role_table(roles_file)


def test_permits_honours_exclusions_and_globs() -> None:
    frontend = DEFAULT_ROLES["frontend"]
    testing = DEFAULT_ROLES["testing"]

    assert frontend.permits("src/components/Button.tsx")
    assert frontend.permits("./src/pages/index.tsx")
    assert not frontend.permits("src/app/api/users/route.ts")
    assert not frontend.permits("prisma/schema.prisma")
    assert not frontend.permits("README.md")
    assert testing.permits("src/lib/cart/__tests__/cart.test.ts")
