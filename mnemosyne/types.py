"""
Data types for the archive.

An Item is one captured note, link or image. Items are stored remotely as
one JSON object each, at a path derived from their creation time and id.
"""

import json
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Optional

from .errors import ItemParseError


ItemKind = Literal["note", "link", "image"]
KINDS: tuple[str, ...] = ("note", "link", "image")

# Boolean flags toggled by dedicated operations
FLAGS: tuple[str, ...] = ("pinned", "starred", "archived")

DATA_PREFIX = "data"
ASSETS_PREFIX = "assets"

ID_LENGTH = 26
_ID_ALPHABET = string.digits + string.ascii_lowercase

# A capture is a link only if the whole text is one http(s) URL
_LINK_RE = re.compile(r'^(http|https)://[^ "]+$')

# Earlier versions of the archive wrote these key names
_LEGACY_KEYS = {"type": "kind", "description": "note", "image": "assetPath"}


def utc_now() -> str:
    """Current UTC timestamp: ISO 8601 with milliseconds and a 'Z' suffix.

    This is the single source of truth for timestamp formatting; the
    string is used verbatim in remote paths.
    """
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts 'Z' or '+00:00' suffixes and naive timestamps (taken as UTC).
    """
    ts = ts.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_id() -> str:
    """Random base-36 id, unique in practice without coordination."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(ID_LENGTH))


def detect_kind(text: str, has_file: bool = False) -> str:
    """Classify a capture: attached file -> image, bare URL -> link, else note."""
    if has_file:
        return "image"
    if _LINK_RE.match(text.strip()):
        return "link"
    return "note"


def normalize_tags(tags: Optional[Iterable[str]]) -> list[str]:
    """Strip and de-duplicate tags, keeping first-seen order."""
    result: list[str] = []
    for tag in tags or ():
        tag = tag.strip()
        if tag and tag not in result:
            result.append(tag)
    return result


@dataclass
class Item:
    """
    A stored archive entry.

    ``id``, ``kind`` and ``created_at`` are fixed at creation. ``created_at``
    together with ``id`` names the remote object, so it is never recomputed.
    """
    id: str
    kind: ItemKind
    content: str
    created_at: str
    tags: list[str] = field(default_factory=list)
    title: Optional[str] = None
    note: Optional[str] = None
    asset_path: Optional[str] = None
    updated_at: Optional[str] = None
    pinned: bool = False
    starred: bool = False
    archived: bool = False

    @classmethod
    def create(
        cls,
        kind: ItemKind,
        content: str,
        *,
        title: Optional[str] = None,
        note: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        asset_path: Optional[str] = None,
    ) -> "Item":
        """Build a new item with a fresh id and creation time."""
        if kind not in KINDS:
            raise ValueError(f"Unknown item kind: {kind!r} (expected one of {', '.join(KINDS)})")
        if asset_path and kind != "image":
            raise ValueError("Only image items carry an asset path")
        return cls(
            id=generate_id(),
            kind=kind,
            content=content,
            created_at=utc_now(),
            tags=normalize_tags(tags),
            title=title or None,
            note=note or None,
            asset_path=asset_path or None,
        )

    @property
    def created(self) -> datetime:
        """Creation time as an aware datetime (oldest possible if unparseable)."""
        try:
            return parse_utc_timestamp(self.created_at)
        except (ValueError, OverflowError):
            return datetime.min.replace(tzinfo=timezone.utc)

    @property
    def label(self) -> str:
        """Short human label used in commit messages."""
        return self.title or self.id

    def to_dict(self) -> dict[str, Any]:
        """Wire representation; optional fields are omitted when absent."""
        d: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind,
            "content": self.content,
        }
        if self.title is not None:
            d["title"] = self.title
        if self.note is not None:
            d["note"] = self.note
        if self.asset_path is not None:
            d["assetPath"] = self.asset_path
        d["createdAt"] = self.created_at
        if self.updated_at is not None:
            d["updatedAt"] = self.updated_at
        d["tags"] = list(self.tags)
        for flag in FLAGS:
            if getattr(self, flag):
                d[flag] = True
        return d

    def to_json(self) -> str:
        """Pretty-printed JSON, as stored remotely."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> "Item":
        """Parse a wire record. Raises ItemParseError for malformed input."""
        if not isinstance(data, dict):
            raise ItemParseError(f"Expected an object, got {type(data).__name__}")
        data = {_LEGACY_KEYS.get(k, k): v for k, v in data.items()}

        id = data.get("id")
        if not isinstance(id, str) or not id:
            raise ItemParseError("Item is missing an id")
        kind = data.get("kind")
        if kind not in KINDS:
            raise ItemParseError(f"Item {id} has unknown kind {kind!r}")
        content = data.get("content")
        if not isinstance(content, str):
            raise ItemParseError(f"Item {id} has no content")
        created_at = data.get("createdAt")
        if not isinstance(created_at, str) or not created_at:
            raise ItemParseError(f"Item {id} has no createdAt")
        tags = data.get("tags", [])
        if tags is None:
            tags = []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ItemParseError(f"Item {id} has malformed tags")

        return cls(
            id=id,
            kind=kind,
            content=content,
            created_at=created_at,
            tags=list(tags),
            title=_optional_str(data.get("title")),
            note=_optional_str(data.get("note")),
            asset_path=_optional_str(data.get("assetPath")),
            updated_at=_optional_str(data.get("updatedAt")),
            pinned=bool(data.get("pinned", False)),
            starred=bool(data.get("starred", False)),
            archived=bool(data.get("archived", False)),
        )

    @classmethod
    def from_json(cls, text: str) -> "Item":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ItemParseError(f"Invalid JSON: {e}") from e
        return cls.from_dict(data)


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def item_path(item: Item) -> str:
    """Deterministic remote path for an item: data/<createdAt>-<id>.json"""
    return f"{DATA_PREFIX}/{item.created_at}-{item.id}.json"


def sort_items(items: Iterable[Item]) -> list[Item]:
    """Canonical order: pinned first, then newest first within each group."""
    by_date = sorted(items, key=lambda i: i.created, reverse=True)
    return sorted(by_date, key=lambda i: not i.pinned)
