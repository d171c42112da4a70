"""Module entrypoint for ``python -m agent_foreman``."""

from __future__ import annotations

from agent_foreman.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
