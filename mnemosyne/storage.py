"""
Storage coordinator for the archive.

StorageService is the single source of truth exposed to callers:
- fetch_all(): cache first, else list + parallel fetch from the remote store
- save() / apply_update() / remove(): remote write, then cache update
- stage_optimistic*(): cache-only changes shown before the remote confirms

It owns the index from item id to remote location (path + version token).
The index is volatile: on a cold start it is empty, which means "unknown",
not "absent".
"""

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional, Union

from .cache import ItemCache
from .errors import (
    ArchiveError,
    AssetDeletionError,
    ItemParseError,
    NotFoundError,
    NotInitializedError,
)
from .protocol import ObjectStoreProtocol, RemoteEntry
from .types import (
    ASSETS_PREFIX,
    DATA_PREFIX,
    FLAGS,
    Item,
    item_path,
    normalize_tags,
    sort_items,
    utc_now,
)

logger = logging.getLogger(__name__)

REPO_NAME = "mnemosyne-db"

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
}
DEFAULT_MIME_TYPE = "image/png"
DEFAULT_ASSET_EXT = "png"

ASSET_ID_LENGTH = 13

# Fields an edit may change; id, kind and created_at are fixed at creation
EDITABLE_FIELDS = frozenset({"content", "title", "note", "tags"})


@dataclass
class Location:
    """Where an item lives remotely, and the version token last seen there."""
    path: str
    sha: Optional[str] = None


def mime_type_for(path: str) -> str:
    """MIME type from a path's extension (image/png if unrecognised)."""
    ext = PurePosixPath(path).suffix.lstrip(".").lower()
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


class StorageService:
    """
    Coordinates the remote object store and the local cache.

    Remote operations require a successful initialize(). Cache-only
    operations (read_cached, stage_optimistic, stage_optimistic_delete)
    do not, so a cached archive can be shown while offline.

    Calls for the same item are not serialized. If two writers race, the
    one holding the current version token wins and the other gets a
    ConflictError; fetch_all(force_refresh=True) then retry.
    """

    def __init__(
        self,
        remote: ObjectStoreProtocol,
        cache: ItemCache,
        *,
        repo_name: str = REPO_NAME,
    ):
        self._remote = remote
        self._cache = cache
        self._repo_name = repo_name
        self._locations: dict[str, Location] = {}
        self._ready = False
        self._remote.use_repo(repo_name)

    async def __aenter__(self) -> "StorageService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def repo_name(self) -> str:
        return self._repo_name

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def cache(self) -> ItemCache:
        return self._cache

    async def initialize(self) -> None:
        """Ensure the backing repository exists, creating it if absent."""
        if self._ready:
            logger.debug("Storage already initialized")
            return
        await self._remote.get_user()
        if not await self._remote.repo_exists(self._repo_name):
            logger.info("Repository %s not found, creating it", self._repo_name)
            await self._remote.create_repo(self._repo_name)
        self._ready = True

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotInitializedError("Storage is not initialized; call initialize() first")

    def location_of(self, id: str) -> Optional[Location]:
        """The indexed remote location of an item, if known."""
        return self._locations.get(id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch_all(self, force_refresh: bool = False) -> list[Item]:
        """
        All items in canonical order.

        Unless forced, a fresh non-empty cache is returned without touching
        the remote store. Otherwise every object under data/ is fetched in
        parallel; objects that cannot be read or parsed are dropped.
        """
        self._require_ready()

        if not force_refresh:
            cached = self._fresh_cached()
            if cached:
                logger.debug("Using cached items: %d", len(cached))
                return sort_items(cached)

        logger.debug("Fetching items from the remote store")
        entries = await self._remote.list(DATA_PREFIX)
        entries = sorted(
            (e for e in entries if e.name.endswith(".json")),
            key=lambda e: e.name,
            reverse=True,
        )
        logger.debug("JSON objects to fetch: %d", len(entries))

        results = await asyncio.gather(*(self._fetch_one(e) for e in entries))
        items = [item for item in results if item is not None]
        logger.info("Loaded %d of %d items", len(items), len(entries))

        if items:
            self._cache.save(items)
        else:
            # Known discrepancy: an archive whose last item was deleted
            # elsewhere keeps showing the old cache until it expires.
            logger.info("Remote returned no items; keeping existing cache")

        return sort_items(items)

    def _fresh_cached(self) -> Optional[list[Item]]:
        if not self._cache.is_stale():
            items = self._cache.get_all()
            if items:
                return items
        loaded = self._cache.load()
        if loaded and not self._cache.is_stale():
            return loaded
        return None

    async def _fetch_one(self, entry: RemoteEntry) -> Optional[Item]:
        try:
            obj = await self._remote.read(entry.path)
            if obj is None:
                return None
            item = Item.from_json(obj.text)
        except ItemParseError as e:
            logger.error("Failed to parse %s: %s", entry.path, e)
            return None
        except Exception as e:
            # One unreadable object must not sink the whole fan-out
            logger.warning("Failed to fetch %s: %s", entry.path, e)
            return None
        self._locations[item.id] = Location(entry.path, obj.sha)
        return item

    def read_cached(self) -> list[Item]:
        """Whatever the cache holds, without remote access.

        Falls back to the persisted snapshot (even an expired one) when
        the in-memory map is empty.
        """
        items = self._cache.get_all()
        if not items:
            items = self._cache.load(allow_stale=True) or []
        return sort_items(items)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def save(self, item: Item) -> Item:
        """Create the remote object for a new item, then cache and index it."""
        self._require_ready()
        path = item_path(item)
        sha = await self._remote.create(
            path, item.to_json().encode("utf-8"), f"Save {item.kind}: {item.label}",
        )
        self._cache.set(item)
        self._locations[item.id] = Location(path, sha)
        return item

    async def apply_update(self, item: Item) -> Item:
        """
        Overwrite an item's remote object, stamping updated_at.

        Uses the indexed path and version token (falling back to the path
        derived from created_at/id). Raises ConflictError if the token is
        stale and NotFoundError if the object is gone.
        """
        self._require_ready()
        location = self._locations.get(item.id) or Location(item_path(item))
        sha = location.sha or await self._current_sha(location.path)

        updated = dataclasses.replace(item, updated_at=utc_now())
        new_sha = await self._remote.update(
            location.path,
            updated.to_json().encode("utf-8"),
            f"Update {updated.kind}: {updated.label}",
            sha,
        )
        self._cache.set(updated)
        self._locations[item.id] = Location(location.path, new_sha)
        return updated

    async def _current_sha(self, path: str) -> str:
        obj = await self._remote.read(path)
        if obj is None:
            raise NotFoundError(f"File not found: {path}")
        return obj.sha

    async def remove(self, item_or_id: Union[Item, str]) -> None:
        """
        Delete an item remotely and from the cache.

        The remote path comes from the index, else is derived from the
        item's created_at/id (a cold index means "unknown", not "absent").
        A bare id that is neither indexed nor cached is only dropped from
        the cache; a missing index entry never blocks a delete. The item's
        asset, if any, is deleted on a best-effort basis.
        """
        self._require_ready()
        if isinstance(item_or_id, Item):
            id, item = item_or_id.id, item_or_id
        else:
            id, item = item_or_id, self._cache.get(item_or_id)

        location = self._locations.get(id)
        if location is None and item is not None:
            location = Location(item_path(item))
        if location is None:
            logger.error("No remote path known for item %s; removing from cache only", id)
            self._cache.delete(id)
            return

        sha = location.sha
        if not sha:
            obj = await self._remote.read(location.path)
            if obj is None:
                logger.warning("No remote object at %s; removing %s from cache only", location.path, id)
                self._cache.delete(id)
                return
            sha = obj.sha
        await self._remote.delete(location.path, f"Delete item: {id}", sha)

        self._cache.delete(id)
        self._locations.pop(id, None)

        if item is not None and item.asset_path:
            try:
                await self._delete_asset(id, item.asset_path)
            except AssetDeletionError as e:
                logger.warning("%s", e)

    async def _delete_asset(self, id: str, path: str) -> None:
        try:
            sha = await self._current_sha(path)
            await self._remote.delete(path, f"Delete asset for {id}", sha)
        except ArchiveError as e:
            raise AssetDeletionError(f"Could not delete asset {path} of {id}: {e}") from e

    async def toggle_flag(self, item: Item, flag: str) -> Item:
        """Invert one boolean flag and write the item back."""
        if flag not in FLAGS:
            raise ValueError(f"Unknown flag: {flag!r} (expected one of {', '.join(FLAGS)})")
        toggled = dataclasses.replace(item, **{flag: not getattr(item, flag)})
        return await self.apply_update(toggled)

    async def toggle_pinned(self, item: Item) -> Item:
        return await self.toggle_flag(item, "pinned")

    async def toggle_starred(self, item: Item) -> Item:
        return await self.toggle_flag(item, "starred")

    async def toggle_archived(self, item: Item) -> Item:
        return await self.toggle_flag(item, "archived")

    async def edit(self, item: Item, **changes) -> Item:
        """Change mutable fields (content, title, note, tags) and write back."""
        fixed = changes.keys() - EDITABLE_FIELDS
        if fixed:
            raise ValueError(f"Cannot edit {', '.join(sorted(fixed))}")
        if "tags" in changes:
            changes["tags"] = normalize_tags(changes["tags"])
        return await self.apply_update(dataclasses.replace(item, **changes))

    # -------------------------------------------------------------------------
    # Optimistic staging (cache only)
    # -------------------------------------------------------------------------

    def stage_optimistic(self, item: Item) -> None:
        self._cache.set(item)

    def stage_optimistic_delete(self, id: str) -> None:
        self._cache.delete(id)

    # -------------------------------------------------------------------------
    # Assets
    # -------------------------------------------------------------------------

    async def upload_asset(self, data: bytes, name: str) -> str:
        """Store binary data under assets/ with a random name; return its path.

        Assets are never cached.
        """
        self._require_ready()
        ext = PurePosixPath(name).suffix.lstrip(".").lower() or DEFAULT_ASSET_EXT
        path = f"{ASSETS_PREFIX}/{uuid.uuid4().hex[:ASSET_ID_LENGTH]}.{ext}"
        await self._remote.create(path, data, f"Upload asset: {name}")
        logger.info("Uploaded asset %s as %s (%d bytes)", name, path, len(data))
        return path

    async def get_asset(self, path: str) -> Optional[bytes]:
        self._require_ready()
        obj = await self._remote.read(path)
        return obj.data if obj is not None else None

    async def get_asset_base64(self, path: str) -> Optional[str]:
        self._require_ready()
        obj = await self._remote.read(path)
        return obj.base64 if obj is not None else None

    async def get_asset_as_data_uri(self, path: str) -> Optional[str]:
        """A data: URI for an asset, MIME type from its extension."""
        encoded = await self.get_asset_base64(path)
        if encoded is None:
            return None
        return f"data:{mime_type_for(path)};base64,{encoded}"

    async def close(self) -> None:
        await self._remote.close()

