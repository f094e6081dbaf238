"""TTL and tag keyed cache of free-text research results.

One JSON file per entry. Queries are normalized before hashing so that
case and whitespace variants of the same question share an entry. Expiry is
lazy: stale entries are ignored on read and only removed by an explicit
``clear_expired`` call.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from vtm.artifacts.canonical_json import atomic_write_text, pretty_dumps, sha256_text
from vtm.errors import WriteError
from vtm.models import CacheEntry
from vtm.schemas.validator import validate_data

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30 * 24 * 60
MAX_TTL_MINUTES = int(timedelta.max.total_seconds() // 60)
_SLUG_MAX = 50


def normalize_query(query: str) -> str:
    """Case-fold, collapse internal whitespace and trim."""
    return " ".join(query.casefold().split())


def cache_key(query: str) -> str:
    normalized = normalize_query(query)
    slug = re.sub(r"[^a-z0-9]+", "-", normalized).strip("-")[:_SLUG_MAX].strip("-")
    digest = sha256_text(normalized)[:12]
    return f"{slug}-{digest}" if slug else digest


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    hit_rate: float
    total_size: int
    entries_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": self.hit_rate,
            "totalSize": self.total_size,
            "entriesCount": self.entries_count,
        }


class ResearchCache:
    """File-backed research cache with in-memory hit/miss counters."""

    def __init__(
        self,
        cache_dir: Path,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        *,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.cache_dir = cache_dir
        self.ttl_minutes = ttl_minutes
        self.now_fn = now_fn
        self.hits = 0
        self.misses = 0

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def _read(self, path: Path) -> CacheEntry | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None
        errors = validate_data(raw, "cache_entry")
        if errors:
            logger.warning("Ignoring invalid cache entry %s: %s", path, "; ".join(errors))
            return None
        try:
            datetime.fromisoformat(raw["timestamp"])
        except ValueError as exc:
            logger.warning("Ignoring cache entry %s with bad timestamp: %s", path, exc)
            return None
        return CacheEntry.from_dict(raw)

    def _entries(self) -> Iterable[tuple[Path, CacheEntry]]:
        if not self.cache_dir.is_dir():
            return []
        found = []
        for path in sorted(self.cache_dir.glob("*.json")):
            entry = self._read(path)
            if entry is not None:
                found.append((path, entry))
        return found

    def is_expired(self, entry: CacheEntry) -> bool:
        created = datetime.fromisoformat(entry.timestamp)
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        # ttl may exceed timedelta.max; compare plain minutes
        age_minutes = (self.now_fn() - created).total_seconds() / 60
        return age_minutes > entry.ttl

    def set(self, query: str, result: str, tags: Iterable[str] = ()) -> CacheEntry:
        key = cache_key(query)
        entry = CacheEntry(
            key=key,
            query=normalize_query(query),
            result=result,
            tags=tuple(dict.fromkeys(tags)),
            timestamp=self.now_fn().isoformat(),
            ttl=self.ttl_minutes,
        )
        try:
            atomic_write_text(self._path(key), pretty_dumps(entry.to_dict()))
        except OSError as exc:
            raise WriteError(
                f"Failed to write cache entry in {self.cache_dir}: {exc}",
                remedy="Check permissions and free space for the cache directory.",
            ) from exc
        logger.debug("Cached research for %r as %s", entry.query, key)
        return entry

    def get(self, query: str) -> str | None:
        entry = self._read(self._path(cache_key(query)))
        if entry is None or self.is_expired(entry):
            self.misses += 1
            logger.debug("Research cache miss for %r", query)
            return None
        self.hits += 1
        logger.debug("Research cache hit for %r", query)
        return entry.result

    def has(self, query: str) -> bool:
        """Like ``get`` but leaves the hit/miss counters alone."""
        entry = self._read(self._path(cache_key(query)))
        return entry is not None and not self.is_expired(entry)

    def search(self, tags: Iterable[str] = ()) -> list[CacheEntry]:
        """Unexpired entries carrying every one of ``tags``."""
        wanted = set(tags)
        return [
            entry
            for _, entry in self._entries()
            if wanted.issubset(entry.tags) and not self.is_expired(entry)
        ]

    def clear(self) -> int:
        removed = 0
        if not self.cache_dir.is_dir():
            return removed
        for path in self.cache_dir.glob("*.json"):
            _unlink(path)
            removed += 1
        logger.info("Cleared %d research cache entries", removed)
        return removed

    def clear_expired(self) -> int:
        removed = 0
        for path, entry in self._entries():
            if self.is_expired(entry):
                _unlink(path)
                removed += 1
        logger.info("Removed %d expired research cache entries", removed)
        return removed

    def get_stats(self) -> CacheStats:
        total_size = 0
        count = 0
        for path, _ in self._entries():
            total_size += path.stat().st_size
            count += 1
        requests = self.hits + self.misses
        hit_rate = round(self.hits / requests * 100, 2) if requests else 0.0
        return CacheStats(
            hits=self.hits,
            misses=self.misses,
            hit_rate=hit_rate,
            total_size=total_size,
            entries_count=count,
        )


def _unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise WriteError(
            f"Failed to remove cache entry {path}: {exc}",
            remedy="Check permissions for the cache directory.",
        ) from exc
