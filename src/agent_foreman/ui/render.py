"""Output rendering abstraction for the foreman CLI.

File: src/agent_foreman/ui/render.py

Purpose
- Provide a thin rendering layer for CLI output, styled with ``rich`` when the
  terminal allows it.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Plain rendering is deterministic: no ANSI codes, no wrapping, ASCII tables.
- All public methods must be safe to call in any environment.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence


def _color_allowed(no_color_flag: bool) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Plain mode prints exactly the text it is given. Color mode routes the same
    calls through a ``rich`` console.
    """

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)
        self._console = Console(
            color_system="auto" if self._color else None,
            highlight=False,
            soft_wrap=True,
            emoji=False,
        )

    @property
    def color(self) -> bool:
        return self._color

    def _print(self, line: str, style: str | None = None) -> None:
        if self._color and style:
            self._console.print(Text(line, style=style))
        else:
            self._console.print(line, markup=False)

    def heading(self, text: str) -> None:
        """Print a heading line."""

        self._print(text, "bold")

    def kv(self, key: str, value: object) -> None:
        """Print a key: value pair."""

        if self._color:
            self._console.print(Text.assemble((f"{key}:", "cyan"), f" {value}"))
        else:
            self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self.blank()
        self._print(title, "bold underline")

    def warning(self, text: str) -> None:
        self._print(f"  Warning: {text}", "yellow")

    def error(self, text: str) -> None:
        self._print(f"  Error: {text}", "bold red")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        """Print a bulleted list."""

        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table: ``rich`` in color mode, aligned ASCII otherwise."""

        if not rows:
            return
        if title:
            self.section(title)

        if self._color:
            table = Table(show_edge=False, header_style="bold")
            for header in headers:
                table.add_column(header)
            for row in rows:
                table.add_row(*(str(cell) for cell in row))
            self._console.print(table)
            return

        columns = len(headers)
        cells = [([str(cell) for cell in row] + [""] * columns)[:columns] for row in rows]
        widths = [max(len(text) for text in column) for column in zip(headers, *cells, strict=True)]
        for line in (list(headers), ["-" * width for width in widths], *cells):
            padded = (text.ljust(width) for text, width in zip(line, widths, strict=True))
            self._print("  " + "  ".join(padded).rstrip())

    def next_steps(self, steps: Sequence[str]) -> None:
        """Print actionable next-step hints."""

        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._print(f"  $ {step}", "dim")

    def ok(self, label: str) -> None:
        self._print(f"  OK  {label}", "green")

    def fail(self, label: str) -> None:
        self._print(f"  FAIL  {label}", "red")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
