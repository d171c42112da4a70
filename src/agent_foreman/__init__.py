"""
agent-foreman

File: src/agent_foreman/__init__.py

Purpose
- Package root for the agent foreman: dispatches tickets to agent roles,
  runs integration workflows, and gates generated changes behind recovery,
  oversight, resource and validation checks.

Import boundary rules
- No config loading or logging initialization at import time.
- Subsystems are imported explicitly by callers.
"""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = ["__version__"]
