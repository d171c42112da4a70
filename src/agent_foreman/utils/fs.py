"""
agent-foreman: filesystem utilities

File: src/agent_foreman/utils/fs.py

Purpose
- Atomic writes for task files, generated artifacts and exports.
- Containment checks so generated paths cannot escape the repository.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = ["atomic_write", "is_within", "resolve_inside"]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Atomically write ``data`` to ``path`` via a temp file and ``os.replace``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    temp_path = Path(temp_name)
    try:
        mode = "wb" if isinstance(data, bytes) else "w"
        with os.fdopen(fd, mode, **({} if isinstance(data, bytes) else {"encoding": encoding})) as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if ``child`` resolves inside ``parent`` (need not exist yet)."""

    resolved_parent = Path(parent).resolve()
    resolved_child = Path(child).resolve()
    return resolved_child == resolved_parent or resolved_parent in resolved_child.parents


def resolve_inside(root: PathLike, relative: str) -> Path:
    """Join ``relative`` onto ``root`` and refuse results outside ``root``."""

    candidate = Path(root) / relative
    if Path(relative).is_absolute() or not is_within(candidate, root):
        raise ValueError(f"path escapes repository root: {relative}")
    return candidate
