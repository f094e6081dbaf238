"""Schema registry backed exclusively by the ``vtm_schemas`` package data.

Schemas resolve the same way from an editable checkout and from an installed
wheel; nothing is read relative to the current working directory.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from importlib.resources import files
from typing import Any

SCHEMA_PACKAGE = "vtm_schemas"
SCHEMA_SUFFIX = ".schema.json"


@dataclass(frozen=True)
class SchemaRegistry:
    """Registry of available schemas.

    Attributes:
        available: Sorted tuple of canonical schema names (without suffix)
    """

    available: tuple[str, ...] = ()

    def __init__(self) -> None:
        object.__setattr__(self, "available", tuple(sorted(self._discover_schemas())))

    def _discover_schemas(self) -> list[str]:
        return [
            item.name[: -len(SCHEMA_SUFFIX)]
            for item in files(SCHEMA_PACKAGE).iterdir()
            if item.name.endswith(SCHEMA_SUFFIX)
        ]

    def _normalize_name(self, name: str) -> str:
        if name.endswith(SCHEMA_SUFFIX):
            return name[: -len(SCHEMA_SUFFIX)]
        return name

    def get_text(self, name: str) -> str:
        """Load schema text from package data.

        Raises:
            KeyError: If the schema is unknown (message lists what is available)
        """
        canonical_name = self._normalize_name(name)
        if canonical_name not in self.available:
            raise KeyError(
                f"Schema '{canonical_name}' not found in {SCHEMA_PACKAGE} package data.\n"
                f"Available schemas: {', '.join(self.available)}"
            )
        schema_file = files(SCHEMA_PACKAGE) / f"{canonical_name}{SCHEMA_SUFFIX}"
        return schema_file.read_text(encoding="utf-8")

    def get_json(self, name: str) -> dict[str, Any]:
        """Load schema as a parsed dictionary.

        Raises:
            KeyError: If schema not found
            ValueError: If the packaged schema is malformed JSON
        """
        canonical_name = self._normalize_name(name)
        text = self.get_text(canonical_name)
        try:
            res: dict[str, Any] = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Schema '{canonical_name}' contains invalid JSON: {e}\n"
                f"This may indicate a broken installation. Try reinstalling vtm."
            ) from e
        return res


@lru_cache(maxsize=1)
def get_registry() -> SchemaRegistry:
    """Return the process-wide schema registry."""
    return SchemaRegistry()


def get_schema_json(schema_name: str) -> dict[str, Any]:
    return get_registry().get_json(schema_name)
