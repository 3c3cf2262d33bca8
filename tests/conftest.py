"""
Shared pytest fixtures for mnemosyne tests.

Provides an in-memory versioned object store so storage tests run without
network access, and a controllable clock for cache freshness.
"""

import hashlib
from pathlib import Path
from typing import Optional

import pytest

from mnemosyne.cache import ItemCache
from mnemosyne.errors import ConflictError, NotFoundError, RemoteUnavailableError
from mnemosyne.protocol import RemoteEntry, RemoteObject
from mnemosyne.storage import StorageService


class MemoryObjectStore:
    """
    In-memory stand-in for GitHubObjectStore.

    Objects are kept with a sha that changes on every write, and writes
    check the caller's sha the way the GitHub contents API does.
    """

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}  # path -> (data, sha)
        self.repos: set[str] = set()
        self.repo: Optional[str] = None
        self.commits: list[str] = []
        self.fail_reads: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.fail_user = False
        self.list_calls = 0
        self.read_calls = 0
        self.closed = False
        self._counter = 0

    def _next_sha(self, path: str, data: bytes) -> str:
        self._counter += 1
        return hashlib.sha1(f"{path}:{self._counter}:".encode() + data).hexdigest()

    # -- Container --

    async def get_user(self) -> str:
        if self.fail_user:
            raise RemoteUnavailableError("GitHub refused access (401): Bad credentials")
        return "tester"

    def use_repo(self, name: str) -> None:
        self.repo = name

    async def repo_exists(self, name: str) -> bool:
        return name in self.repos

    async def create_repo(self, name: str) -> None:
        self.repos.add(name)

    # -- Objects --

    async def read(self, path: str) -> Optional[RemoteObject]:
        self.read_calls += 1
        if path in self.fail_reads:
            raise RemoteUnavailableError(f"GET {path} failed: timed out")
        if path not in self.objects:
            return None
        data, sha = self.objects[path]
        return RemoteObject(path=path, data=data, sha=sha)

    async def create(self, path: str, data: bytes, message: str) -> str:
        if path in self.objects:
            raise ConflictError(f"Version conflict on {path}: sha wasn't supplied")
        sha = self._next_sha(path, data)
        self.objects[path] = (data, sha)
        self.commits.append(message)
        return sha

    async def update(self, path: str, data: bytes, message: str, sha: Optional[str]) -> str:
        if not sha:
            raise ConflictError(f"No version token for {path}")
        if path not in self.objects:
            raise NotFoundError(f"Not found: {path}")
        if self.objects[path][1] != sha:
            raise ConflictError(f"Version conflict on {path}: does not match")
        new_sha = self._next_sha(path, data)
        self.objects[path] = (data, new_sha)
        self.commits.append(message)
        return new_sha

    async def delete(self, path: str, message: str, sha: Optional[str]) -> None:
        if path in self.fail_deletes:
            raise RemoteUnavailableError(f"DELETE {path} failed")
        if not sha or path not in self.objects:
            raise NotFoundError(f"Not found: {path}")
        if self.objects[path][1] != sha:
            raise ConflictError(f"Version conflict on {path}: does not match")
        del self.objects[path]
        self.commits.append(message)

    async def list(self, prefix: str) -> list[RemoteEntry]:
        self.list_calls += 1
        prefix = prefix.rstrip("/") + "/"
        return [
            RemoteEntry(path=p, name=p[len(prefix):])
            for p in self.objects
            if p.startswith(prefix) and "/" not in p[len(prefix):]
        ]

    async def close(self) -> None:
        self.closed = True

    # -- Test helpers --

    def put_raw(self, path: str, text: str) -> None:
        """Place an object directly, bypassing version checks."""
        data = text.encode("utf-8")
        self.objects[path] = (data, self._next_sha(path, data))

    def text(self, path: str) -> str:
        return self.objects[path][0].decode("utf-8")


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return MemoryObjectStore()


@pytest.fixture
def cache_path(tmp_path) -> Path:
    return tmp_path / "items-cache.json"


@pytest.fixture
def cache(cache_path, clock):
    return ItemCache(cache_path, clock=clock)


@pytest.fixture
def storage(remote, cache):
    """StorageService over the in-memory store (not yet initialized)."""
    return StorageService(remote, cache)
