"""Configuration loader.

Supports .vtm/config.toml or .vtm/config.json, with ``VTM_*`` environment
variables taking precedence over either file.
"""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from vtm.research_cache import DEFAULT_TTL_MINUTES, MAX_TTL_MINUTES

DEFAULT_MANIFEST = "vtm.json"
DEFAULT_CACHE_DIR = ".vtm/cache/research"

ENV_MANIFEST = "VTM_MANIFEST"
ENV_CACHE_DIR = "VTM_CACHE_DIR"
ENV_CACHE_TTL = "VTM_CACHE_TTL"


@dataclass(frozen=True)
class VtmConfig:
    """Resolved paths and cache TTL for one invocation."""

    manifest_path: Path
    cache_dir: Path
    cache_ttl_minutes: int = DEFAULT_TTL_MINUTES

    @classmethod
    def from_dict(cls, data: dict[str, Any], root: Path) -> VtmConfig:
        """Parse a config mapping; relative paths resolve against ``root``."""
        manifest = data.get("manifest", {}).get("path", DEFAULT_MANIFEST)
        cache = data.get("cache", {})
        cache_dir = cache.get("dir", DEFAULT_CACHE_DIR)
        ttl = cache.get("ttl_minutes", DEFAULT_TTL_MINUTES)
        if not isinstance(manifest, str) or not isinstance(cache_dir, str):
            raise TypeError("manifest.path and cache.dir must be strings")
        if isinstance(ttl, bool) or not isinstance(ttl, int) or not 0 <= ttl <= MAX_TTL_MINUTES:
            raise ValueError(f"cache.ttl_minutes must be an integer in 0..{MAX_TTL_MINUTES}, got {ttl!r}")
        return cls(
            manifest_path=root / manifest,
            cache_dir=root / cache_dir,
            cache_ttl_minutes=ttl,
        )


def _read_config_file(root: Path) -> dict[str, Any]:
    config_dir = root / ".vtm"

    toml_path = config_dir / "config.toml"
    if toml_path.exists():
        try:
            with open(toml_path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise RuntimeError(f"Malformed TOML config at {toml_path}: {e}") from e

    json_path = config_dir / "config.json"
    if json_path.exists():
        try:
            with open(json_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise RuntimeError(f"Malformed JSON config at {json_path}: {e}") from e
        if not isinstance(data, dict):
            raise RuntimeError(f"Invalid config structure in {json_path}: expected an object")
        return data

    return {}


def load_config(root: Path | None = None) -> VtmConfig:
    """Resolve configuration for the project rooted at ``root`` (default: cwd).

    Raises:
        RuntimeError: If a config file or environment override is malformed
    """
    root = (root or Path.cwd()).resolve()
    data = _read_config_file(root)

    try:
        config = VtmConfig.from_dict(data, root)
    except (TypeError, ValueError, AttributeError) as e:
        raise RuntimeError(f"Invalid config structure under {root / '.vtm'}: {e}") from e

    manifest_env = os.getenv(ENV_MANIFEST)
    cache_dir_env = os.getenv(ENV_CACHE_DIR)
    ttl_env = os.getenv(ENV_CACHE_TTL)

    ttl = config.cache_ttl_minutes
    if ttl_env:
        try:
            ttl = int(ttl_env)
        except ValueError as e:
            raise RuntimeError(f"{ENV_CACHE_TTL} must be an integer number of minutes, got {ttl_env!r}") from e
        if not 0 <= ttl <= MAX_TTL_MINUTES:
            raise RuntimeError(f"{ENV_CACHE_TTL} must be between 0 and {MAX_TTL_MINUTES} minutes, got {ttl}")

    return VtmConfig(
        manifest_path=root / manifest_env if manifest_env else config.manifest_path,
        cache_dir=root / cache_dir_env if cache_dir_env else config.cache_dir,
        cache_ttl_minutes=ttl,
    )
