"""
agent-foreman: syntax checks

File: src/agent_foreman/validation/syntax.py

Purpose
- Structural checks for generated artifacts, chosen by file extension.

Functional requirements
- Python, JSON and YAML are parsed in-process.
- JavaScript and TypeScript are handed to the external toolchain (ESLint,
  ``tsc``, ``node --check``) on a temporary copy of the artifact. ESLint
  severity 2 maps to errors and severity 1 to warnings.
- A missing external tool skips that check; it is never reported as an
  artifact defect.
"""

from __future__ import annotations

import ast
import json
import re
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Final

import structlog
import yaml

from agent_foreman.integration.commands import run_command
from agent_foreman.validation.rules import CheckOutcome, ValidationIssue

logger = structlog.get_logger(__name__)

_JS_SUFFIXES: Final[frozenset[str]] = frozenset({".js", ".jsx", ".mjs", ".cjs"})
_TS_SUFFIXES: Final[frozenset[str]] = frozenset({".ts", ".tsx"})
_TSC_ERROR_RE: Final[re.Pattern[str]] = re.compile(r"\((\d+),\d+\): error (TS\d+: .*)$")


def check_syntax(
    text: str,
    file_path: str,
    *,
    run_external_tools: bool = True,
    timeout_seconds: float = 120.0,
) -> CheckOutcome:
    suffix = PurePosixPath(file_path).suffix.lower()
    if suffix == ".py":
        return _check_python(text, file_path)
    if suffix == ".json":
        return _check_json(text)
    if suffix in {".yaml", ".yml"}:
        return _check_yaml(text)
    if not run_external_tools or suffix not in _JS_SUFFIXES | _TS_SUFFIXES:
        return CheckOutcome()
    return _check_with_toolchain(text, suffix, timeout_seconds=timeout_seconds)


def _check_python(text: str, file_path: str) -> CheckOutcome:
    outcome = CheckOutcome()
    try:
        ast.parse(text, filename=file_path)
    except SyntaxError as exc:
        outcome.errors.append(
            ValidationIssue("syntax", f"SyntaxError: {exc.msg}", "high", line=exc.lineno)
        )
    return outcome


def _check_json(text: str) -> CheckOutcome:
    outcome = CheckOutcome()
    try:
        json.loads(text)
    except json.JSONDecodeError as exc:
        outcome.errors.append(ValidationIssue("syntax", f"invalid JSON: {exc.msg}", "high", line=exc.lineno))
    return outcome


def _check_yaml(text: str) -> CheckOutcome:
    outcome = CheckOutcome()
    try:
        yaml.safe_load(text)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        outcome.errors.append(ValidationIssue("syntax", f"invalid YAML: {exc}", "high", line=line))
    return outcome


def _check_with_toolchain(text: str, suffix: str, *, timeout_seconds: float) -> CheckOutcome:
    outcome = CheckOutcome()
    npx = shutil.which("npx")
    node = shutil.which("node")
    if npx is None and node is None:
        logger.debug("syntax_toolchain_unavailable", suffix=suffix)
        return outcome

    with tempfile.TemporaryDirectory(prefix="foreman-validate-") as temp_dir:
        temp_file = Path(temp_dir) / f"artifact{suffix}"
        temp_file.write_text(text, encoding="utf-8")

        if npx is not None:
            outcome.extend(_run_eslint(npx, temp_file, timeout_seconds=timeout_seconds))
            if suffix in _TS_SUFFIXES:
                outcome.extend(_run_tsc(npx, temp_file, timeout_seconds=timeout_seconds))
        if node is not None and suffix in {".js", ".cjs", ".mjs"} and not outcome.errors:
            outcome.extend(_run_node_check(node, temp_file, timeout_seconds=timeout_seconds))
    return outcome


def _run_eslint(npx: str, target: Path, *, timeout_seconds: float) -> CheckOutcome:
    outcome = CheckOutcome()
    result = run_command(
        (npx, "--no-install", "eslint", "--format", "json", str(target)),
        cwd=target.parent,
        timeout_seconds=timeout_seconds,
    )
    if result.ok or not result.stdout.strip():
        return outcome
    try:
        files = json.loads(result.stdout)
    except json.JSONDecodeError:
        logger.debug("eslint_output_unparseable", returncode=result.returncode)
        return outcome
    for file_report in files if isinstance(files, list) else []:
        for message in file_report.get("messages", []):
            issue = ValidationIssue(
                "syntax",
                str(message.get("message", "eslint error")),
                "high" if message.get("severity") == 2 else "medium",
                line=message.get("line") if isinstance(message.get("line"), int) else None,
            )
            if message.get("severity") == 2:
                outcome.errors.append(issue)
            else:
                outcome.warnings.append(issue)
    return outcome


def _run_tsc(npx: str, target: Path, *, timeout_seconds: float) -> CheckOutcome:
    outcome = CheckOutcome()
    result = run_command(
        (npx, "--no-install", "tsc", str(target), "--noEmit", "--skipLibCheck"),
        cwd=target.parent,
        timeout_seconds=timeout_seconds,
    )
    if result.ok:
        return outcome
    for raw_line in result.stdout.splitlines():
        if "error TS" not in raw_line:
            continue
        match = _TSC_ERROR_RE.search(raw_line)
        if match is not None:
            outcome.errors.append(ValidationIssue("syntax", match.group(2), "high", line=int(match.group(1))))
        else:
            outcome.errors.append(ValidationIssue("syntax", raw_line.strip(), "high"))
    return outcome


def _run_node_check(node: str, target: Path, *, timeout_seconds: float) -> CheckOutcome:
    outcome = CheckOutcome()
    result = run_command((node, "--check", str(target)), cwd=target.parent, timeout_seconds=timeout_seconds)
    if result.returncode not in (None, 0):
        detail = next(
            (line for line in result.stderr.splitlines() if "Error" in line),
            result.stderr.strip() or "node --check failed",
        )
        outcome.errors.append(ValidationIssue("syntax", detail.strip(), "high"))
    return outcome


__all__ = ["check_syntax"]
