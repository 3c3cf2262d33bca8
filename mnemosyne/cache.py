"""
Local item cache.

An in-memory map of id -> Item, mirrored to a JSON snapshot file so the
archive can be shown instantly (and offline) at the next start. Every
mutation writes the whole map through to the snapshot.

The snapshot carries one collection-level timestamp: the time of the last
full synchronization with the remote store. Snapshots older than the
freshness window are not trusted by load().
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional

from .types import Item, utc_now

logger = logging.getLogger(__name__)

CACHE_FILENAME = "items-cache.json"
CACHE_TTL = 60 * 5  # seconds


class ItemCache:
    """
    Read-through, write-through cache of archive items.

    Single-threaded use only: the map is mutated synchronously and the
    snapshot is rewritten on every change.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            path: Snapshot file, or None for a memory-only cache
            ttl: Freshness window in seconds
            clock: Time source returning epoch seconds
        """
        self._path = path
        self._ttl = ttl
        self._clock = clock
        self._items: dict[str, Item] = {}
        self._last_sync = 0  # epoch millis of the last full sync
        self._hydrated = False

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def last_sync(self) -> int:
        return self._last_sync

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def load(self, *, allow_stale: bool = False) -> Optional[list[Item]]:
        """
        Load the persisted snapshot into memory.

        Returns None if there is no snapshot, it cannot be read, it holds no
        items, or (unless allow_stale) it is older than the freshness window.
        An empty snapshot is never valid: it would hide a failed fetch
        behind "zero items".
        """
        if self._path is None:
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            timestamp = int(raw.get("timestamp", 0))
            records = raw.get("items") or []
            items = [Item.from_dict(r) for r in records]
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError, AttributeError) as e:
            # ItemParseError is a ValueError
            logger.debug("Ignoring unreadable cache snapshot %s: %s", self._path, e)
            return None

        if not allow_stale and self._now_ms() - timestamp > self._ttl * 1000:
            return None
        if not items:
            return None

        self._items = {item.id: item for item in items}
        self._last_sync = timestamp
        self._hydrated = True
        return items

    def save(self, items: list[Item]) -> None:
        """Replace the whole map and snapshot, stamping the sync time."""
        self._items = {item.id: item for item in items}
        self._last_sync = self._now_ms()
        self._hydrated = True
        self._persist()

    def _hydrate(self) -> None:
        """Adopt the snapshot before the first single-item write.

        A fresh process starts with an empty map; writing one item through
        would otherwise replace the snapshot with just that item.
        """
        if not self._hydrated and not self._items:
            self.load(allow_stale=True)
        self._hydrated = True

    def _persist(self) -> None:
        """Write the current map to the snapshot file.

        Failures are logged; the in-memory map stays authoritative.
        """
        if self._path is None:
            return
        data = {
            "items": [item.to_dict() for item in self._items.values()],
            "timestamp": self._last_sync,
        }
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.warning("Failed to persist cache to %s: %s", self._path, e)

    # -------------------------------------------------------------------------
    # Single items
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[Item]:
        return self._items.get(id)

    def set(self, item: Item) -> None:
        self._hydrate()
        self._items[item.id] = item
        self._persist()

    def update(self, id: str, changes: dict[str, Any]) -> Optional[Item]:
        """Merge changes into a cached item and stamp updated_at.

        Returns the merged item, or None if the id is not cached.
        """
        self._hydrate()
        existing = self._items.get(id)
        if existing is None:
            return None
        merged = Item.from_dict({
            **existing.to_dict(),
            **_wire_keys(changes),
            "updatedAt": utc_now(),
        })
        self._items[id] = merged
        self._persist()
        return merged

    def delete(self, id: str) -> bool:
        self._hydrate()
        if id not in self._items:
            return False
        del self._items[id]
        self._persist()
        return True

    def get_all(self) -> list[Item]:
        return list(self._items.values())

    def clear(self) -> None:
        """Forget everything, including the snapshot file."""
        self._items.clear()
        self._last_sync = 0
        self._hydrated = True
        if self._path is not None:
            try:
                self._path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove cache %s: %s", self._path, e)

    def is_stale(self) -> bool:
        """True if the last full sync is older than the freshness window."""
        return self._now_ms() - self._last_sync > self._ttl * 1000


_ATTR_TO_WIRE = {
    "updated_at": "updatedAt",
    "asset_path": "assetPath",
}


def _wire_keys(changes: dict[str, Any]) -> dict[str, Any]:
    """Map Item attribute names to wire keys for merging."""
    fixed = {"id", "kind", "created_at"} & changes.keys()
    if fixed:
        raise ValueError(f"Cannot change {', '.join(sorted(fixed))} of an existing item")
    return {_ATTR_TO_WIRE.get(k, k): v for k, v in changes.items()}
