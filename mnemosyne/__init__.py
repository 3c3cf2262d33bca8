"""
mnemosyne: a personal archive of notes, links and images.

Items are stored as individual JSON objects in a private GitHub repository
and mirrored into a local cache for instant, offline-capable reads.

Quick start:
    from mnemosyne import GitHubObjectStore, ItemCache, Item, StorageService

    async with StorageService(GitHubObjectStore(token), ItemCache(path)) as storage:
        await storage.initialize()
        await storage.save(Item.create("note", "hello"))
        items = await storage.fetch_all()
"""

__version__ = "0.1.0"

from .cache import ItemCache
from .errors import (
    ArchiveError,
    AssetDeletionError,
    ConflictError,
    ItemParseError,
    NotFoundError,
    NotInitializedError,
    RemoteUnavailableError,
)
from .github import GitHubObjectStore
from .protocol import ObjectStoreProtocol, RemoteEntry, RemoteObject
from .storage import StorageService
from .types import Item, sort_items

__all__ = [
    "ArchiveError",
    "AssetDeletionError",
    "ConflictError",
    "GitHubObjectStore",
    "Item",
    "ItemCache",
    "ItemParseError",
    "NotFoundError",
    "NotInitializedError",
    "ObjectStoreProtocol",
    "RemoteEntry",
    "RemoteObject",
    "RemoteUnavailableError",
    "StorageService",
    "sort_items",
]
