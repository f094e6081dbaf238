"""JSON serialization and atomic file replacement."""

from __future__ import annotations

import hashlib
import json
import os
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


def pretty_dumps(obj: Any) -> str:
    """Serialize with stable two-space formatting and a trailing newline."""
    return json.dumps(obj, indent=2, ensure_ascii=False) + "\n"


def sha256_text(text: str) -> str:
    """Compute SHA-256 for UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def temp_sibling(path: Path) -> Path:
    return path.with_name(f".{path.name}.vtm.tmp")


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to a hidden sibling, then rename it over ``path``.

    The rename is atomic on a single volume: readers see either the old file
    or the new one. On failure the sibling is removed and ``OSError``
    propagates with ``path`` untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_sibling(path)
    try:
        with open(tmp, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
