"""
Protocol definition for the remote object store.

StorageService talks to the remote store only through this interface:
- GitHubObjectStore (GitHub contents API, one write = one commit)
- the in-memory store used by the test suite
"""

import base64
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@dataclass
class RemoteObject:
    """An object read from the remote store, with its current version token."""
    path: str
    data: bytes
    sha: str

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class RemoteEntry:
    """A directory listing entry."""
    path: str
    name: str


@runtime_checkable
class ObjectStoreProtocol(Protocol):
    """
    Create/read/update/delete of named blobs in a versioned store.

    Overwrite and delete require the object's current version token (sha).
    A stale or missing token fails instead of silently replacing a newer
    revision.
    """

    # -- Container --

    async def get_user(self) -> str: ...

    def use_repo(self, name: str) -> None: ...

    async def repo_exists(self, name: str) -> bool: ...

    async def create_repo(self, name: str) -> None: ...

    # -- Objects --

    async def read(self, path: str) -> Optional[RemoteObject]: ...

    async def create(self, path: str, data: bytes, message: str) -> str: ...

    async def update(
        self, path: str, data: bytes, message: str, sha: Optional[str],
    ) -> str: ...

    async def delete(self, path: str, message: str, sha: Optional[str]) -> None: ...

    async def list(self, prefix: str) -> list[RemoteEntry]: ...

    async def close(self) -> None: ...
