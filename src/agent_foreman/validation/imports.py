"""
agent-foreman: hallucination detection

File: src/agent_foreman/validation/imports.py

Purpose
- Flag references in generated code that point at nothing: relative imports
  without a target file, packages missing from the project's dependency
  manifest, and calls to suspiciously generic method names that are never
  defined.

Functional requirements
- Relative imports are resolved from the artifact's directory, trying the
  candidate extensions and index files of the artifact's language. A miss is
  an error.
- Bare imports that are neither builtin nor declared are warnings. When the
  project has no manifest for the language, bare imports are not checked.
- Phantom method calls are warnings unless the same text defines the method.
"""

from __future__ import annotations

import json
import re
import sys
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final

import structlog

from agent_foreman.validation.rules import CheckOutcome, ValidationIssue

logger = structlog.get_logger(__name__)

_JS_IMPORT_RE: Final[re.Pattern[str]] = re.compile(
    r"""import\s+(?:[\w*\s{},]+?\s+from\s+)?['"]([^'"\x00\n]+)['"]|require\(\s*['"]([^'"\x00\n]+)['"]\s*\)"""
)
_PY_IMPORT_RE: Final[re.Pattern[str]] = re.compile(
    r"^\s*(?:from\s+(\.*[\w.]*)\s+import\s+[\w*(]|import\s+([\w.]+(?:\s*,\s*[\w.]+)*))",
    re.MULTILINE,
)
_METHOD_CALL_RE: Final[re.Pattern[str]] = re.compile(r"(\w+)\.(\w+)\(")
# ``def name``, ``function name``, ``async name(`` methods and ``name:`` / ``name =`` members.
_DEFINITION_RE: Final[re.Pattern[str]] = re.compile(
    r"(?:\bdef|\bfunction)\s+(\w+)|^\s*(?:async\s+)?(\w+)\s*\([^)]*\)\s*\{|\b(\w+)\s*[:=]",
    re.MULTILINE,
)
_REQUIREMENT_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")

_JS_EXTENSIONS: Final[tuple[str, ...]] = (".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs")
_JS_INDEX_FILES: Final[tuple[str, ...]] = ("index.js", "index.ts", "index.jsx", "index.tsx")

PHANTOM_METHODS: Final[frozenset[str]] = frozenset(
    {
        "processAsync",
        "transformData",
        "validateInput",
        "executeQuery",
        "performAction",
        "handleResponse",
        "updateState",
        "fetchData",
        "process_async",
        "transform_data",
        "perform_action",
    }
)

NODE_BUILTINS: Final[frozenset[str]] = frozenset(
    {
        "assert",
        "buffer",
        "child_process",
        "crypto",
        "events",
        "fs",
        "http",
        "https",
        "net",
        "os",
        "path",
        "querystring",
        "readline",
        "stream",
        "timers",
        "url",
        "util",
        "worker_threads",
        "zlib",
    }
)

# Import names that differ from their distribution names.
_PY_IMPORT_ALIASES: Final[dict[str, str]] = {
    "yaml": "pyyaml",
    "bs4": "beautifulsoup4",
    "PIL": "pillow",
    "dateutil": "python-dateutil",
    "sklearn": "scikit-learn",
    "cv2": "opencv-python",
    "dotenv": "python-dotenv",
    "jwt": "pyjwt",
}


@dataclass(frozen=True, slots=True)
class ImportReference:
    module: str
    relative: bool


def _normalize_dist(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def extract_imports(text: str, file_path: str) -> list[ImportReference]:
    suffix = PurePosixPath(file_path).suffix.lower()
    references: list[ImportReference] = []
    if suffix == ".py":
        for match in _PY_IMPORT_RE.finditer(text):
            from_module, plain = match.group(1), match.group(2)
            if from_module is not None:
                references.append(ImportReference(from_module, from_module.startswith(".")))
            elif plain is not None:
                for item in plain.split(","):
                    references.append(ImportReference(item.strip(), False))
        return references
    for match in _JS_IMPORT_RE.finditer(text):
        module = match.group(1) or match.group(2)
        references.append(ImportReference(module, module.startswith(".")))
    return references


class DependencyManifest:
    """Declared dependencies of the project under ``root``, loaded lazily."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._js: frozenset[str] | None = None
        self._py: frozenset[str] | None = None
        self._js_loaded = False
        self._py_loaded = False

    def js_packages(self) -> frozenset[str] | None:
        if not self._js_loaded:
            self._js_loaded = True
            manifest = self.root / "package.json"
            if manifest.is_file():
                try:
                    payload = json.loads(manifest.read_text(encoding="utf-8"))
                except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
                    logger.warning("dependency_manifest_unreadable", path=str(manifest), error=str(exc))
                else:
                    names: set[str] = set()
                    for key in ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies"):
                        section = payload.get(key)
                        if isinstance(section, dict):
                            names.update(section)
                    self._js = frozenset(names)
        return self._js

    def py_packages(self) -> frozenset[str] | None:
        if not self._py_loaded:
            self._py_loaded = True
            names: set[str] = set()
            found = False
            pyproject = self.root / "pyproject.toml"
            if pyproject.is_file():
                found = True
                try:
                    with pyproject.open("rb") as handle:
                        project = tomllib.load(handle).get("project", {})
                except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
                    logger.warning("dependency_manifest_unreadable", path=str(pyproject), error=str(exc))
                    project = {}
                requirements = list(project.get("dependencies", []))
                for extra in project.get("optional-dependencies", {}).values():
                    requirements.extend(extra)
                names.update(_requirement_names(requirements))
            requirements_txt = self.root / "requirements.txt"
            if requirements_txt.is_file():
                try:
                    lines = requirements_txt.read_text(encoding="utf-8").splitlines()
                except (OSError, UnicodeDecodeError) as exc:
                    logger.warning("dependency_manifest_unreadable", path=str(requirements_txt), error=str(exc))
                else:
                    found = True
                    names.update(
                        _requirement_names(line for line in lines if not line.strip().startswith(("#", "-")))
                    )
            if found:
                names.update(_local_python_packages(self.root))
                self._py = frozenset(names)
        return self._py


def _requirement_names(requirements: Iterable[str]) -> set[str]:
    names: set[str] = set()
    for requirement in requirements:
        match = _REQUIREMENT_NAME_RE.match(str(requirement))
        if match is not None:
            names.add(_normalize_dist(match.group(1)))
    return names


def _local_python_packages(root: Path) -> set[str]:
    local: set[str] = set()
    for base in (root, root / "src"):
        if not base.is_dir():
            continue
        for child in base.iterdir():
            if child.is_dir() and (child / "__init__.py").is_file():
                local.add(_normalize_dist(child.name))
            elif child.suffix == ".py":
                local.add(_normalize_dist(child.stem))
    return local


def check_hallucinations(text: str, file_path: str, *, project_root: Path) -> CheckOutcome:
    outcome = CheckOutcome()
    artifact_path = Path(file_path)
    if not artifact_path.is_absolute():
        artifact_path = project_root / artifact_path
    manifest = DependencyManifest(project_root)
    is_python = artifact_path.suffix.lower() == ".py"

    for reference in extract_imports(text, file_path):
        if reference.relative:
            if not _relative_target_exists(reference.module, artifact_path, python=is_python):
                outcome.errors.append(
                    ValidationIssue(
                        "hallucination",
                        f"Import references non-existent file: {reference.module}",
                        "high",
                    )
                )
            continue
        if is_python:
            _check_python_package(reference.module, manifest, outcome)
        else:
            _check_js_package(reference.module, manifest, outcome)

    defined = {name for match in _DEFINITION_RE.finditer(text) for name in match.groups() if name}
    seen: set[tuple[str, str]] = set()
    for match in _METHOD_CALL_RE.finditer(text):
        owner, method = match.group(1), match.group(2)
        if method not in PHANTOM_METHODS or method in defined or (owner, method) in seen:
            continue
        seen.add((owner, method))
        outcome.warnings.append(
            ValidationIssue("hallucination", f"Possible phantom method call: {owner}.{method}()", "medium")
        )
    return outcome


def _relative_target_exists(module: str, artifact_path: Path, *, python: bool) -> bool:
    base_dir = artifact_path.parent
    if python:
        dots = len(module) - len(module.lstrip("."))
        for _ in range(dots - 1):
            base_dir = base_dir.parent
        remainder = module.lstrip(".")
        if not remainder:
            return (base_dir / "__init__.py").exists() or base_dir.is_dir()
        target = base_dir.joinpath(*remainder.split("."))
        return (
            target.with_suffix(".py").exists()
            or (target / "__init__.py").exists()
            or target.is_dir()
        )

    target = (base_dir / module).resolve()
    candidates = [target, *(Path(f"{target}{ext}") for ext in _JS_EXTENSIONS)]
    candidates.extend(target / index for index in _JS_INDEX_FILES)
    return any(candidate.is_file() for candidate in candidates)


def _check_python_package(module: str, manifest: DependencyManifest, outcome: CheckOutcome) -> None:
    top_level = module.split(".", 1)[0]
    if top_level in sys.stdlib_module_names or top_level == "__future__":
        return
    declared = manifest.py_packages()
    if declared is None:
        return
    distribution = _normalize_dist(_PY_IMPORT_ALIASES.get(top_level, top_level))
    if distribution not in declared and _normalize_dist(top_level) not in declared:
        outcome.warnings.append(
            ValidationIssue(
                "hallucination",
                f"Import references package not declared in the dependency manifest: {top_level}",
                "medium",
            )
        )


def _check_js_package(module: str, manifest: DependencyManifest, outcome: CheckOutcome) -> None:
    if module.startswith("node:"):
        return
    parts = module.split("/")
    package = "/".join(parts[:2]) if module.startswith("@") else parts[0]
    if package in NODE_BUILTINS:
        return
    declared = manifest.js_packages()
    if declared is None:
        return
    if package not in declared:
        outcome.warnings.append(
            ValidationIssue(
                "hallucination",
                f"Import references package not in package.json: {package}",
                "medium",
            )
        )


__all__ = [
    "NODE_BUILTINS",
    "PHANTOM_METHODS",
    "DependencyManifest",
    "ImportReference",
    "check_hallucinations",
    "extract_imports",
]
