"""
HTTP client for the GitHub contents API.

Stores each archive object as a file in a private repository. Every write
is one commit. Overwrites and deletes carry the blob sha the caller last
saw, so GitHub rejects them if someone else committed in between.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Optional
from urllib.parse import quote, urlparse

import httpx

from .errors import (
    ConflictError,
    NotFoundError,
    NotInitializedError,
    RemoteUnavailableError,
)
from .protocol import RemoteEntry, RemoteObject

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
REPO_DESCRIPTION = "Mnemosyne Memory Storage"

# Retry config for reads (writes are never retried)
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds
MAX_RETRY_AFTER = 60.0

# Timeouts
DEFAULT_TIMEOUT = 30.0


class GitHubObjectStore:
    """Versioned object store on top of a GitHub repository."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str = DEFAULT_API_URL,
        owner: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not token:
            raise ValueError(
                "A GitHub token is required. "
                "Set MNEMOSYNE_GITHUB_TOKEN or GITHUB_TOKEN."
            )
        self._api_url = api_url.rstrip("/")
        self._owner = owner
        self._repo: str | None = None

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"GitHub API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect credentials, or use localhost for local development."
                )

        headers: dict[str, str] = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
        )

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def repo(self) -> str | None:
        return self._repo

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request, mapping transport failures to RemoteUnavailableError.

        GET requests are retried with exponential backoff on 5xx, 429,
        timeouts and connection errors.
        """
        attempts = MAX_RETRIES if method == "GET" else 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                last_error = e
            else:
                if resp.status_code == 429 and attempt < attempts - 1:
                    retry_after = min(float(resp.headers.get("Retry-After", "5")), MAX_RETRY_AFTER)
                    logger.info("Rate limited, retrying after %.1fs", retry_after)
                    await asyncio.sleep(retry_after)
                    continue
                if resp.status_code < 500 or attempt == attempts - 1:
                    return resp
                last_error = RemoteUnavailableError(
                    f"GitHub returned {resp.status_code} for {method} {url}"
                )

            if attempt < attempts - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "%s %s attempt %d failed, retrying in %.1fs: %s",
                    method, url, attempt + 1, delay, last_error,
                )
                await asyncio.sleep(delay)

        raise RemoteUnavailableError(
            f"{method} {url} failed: {last_error}"
        ) from last_error

    @staticmethod
    def _check(resp: httpx.Response, path: str) -> None:
        """Raise the archive error matching an unsuccessful response."""
        status = resp.status_code
        if status < 400:
            return
        if status == 404:
            raise NotFoundError(f"Not found: {path}")
        if status in (409, 422):
            raise ConflictError(f"Version conflict on {path}: {_error_message(resp)}")
        if status in (401, 403):
            raise RemoteUnavailableError(
                f"GitHub refused access ({status}): {_error_message(resp)}"
            )
        raise RemoteUnavailableError(
            f"GitHub request for {path} failed ({status}): {_error_message(resp)}"
        )

    def _contents_url(self, path: str) -> str:
        if not self._owner or not self._repo:
            raise NotInitializedError("Repo not set")
        return f"/repos/{self._owner}/{self._repo}/contents/{quote(path, safe='/:@')}"

    # -------------------------------------------------------------------------
    # Repository
    # -------------------------------------------------------------------------

    async def get_user(self) -> str:
        """GET /user -> login of the token's owner (remembered as repo owner)."""
        resp = await self._send("GET", "/user")
        self._check(resp, "/user")
        self._owner = resp.json()["login"]
        return self._owner

    def use_repo(self, name: str) -> None:
        self._repo = name

    async def repo_exists(self, name: str) -> bool:
        if not self._owner:
            await self.get_user()
        resp = await self._send("GET", f"/repos/{self._owner}/{name}")
        if resp.status_code == 404:
            return False
        self._check(resp, name)
        return True

    async def create_repo(self, name: str) -> None:
        """Create a private, auto-initialised repository for the archive."""
        resp = await self._send("POST", "/user/repos", json={
            "name": name,
            "private": True,
            "auto_init": True,
            "description": REPO_DESCRIPTION,
        })
        self._check(resp, name)
        logger.info("Created repository %s/%s", self._owner, name)

    # -------------------------------------------------------------------------
    # Objects
    # -------------------------------------------------------------------------

    async def read(self, path: str) -> Optional[RemoteObject]:
        """GET contents -> RemoteObject, or None if the path does not exist."""
        url = self._contents_url(path)
        resp = await self._send("GET", url)
        if resp.status_code == 404:
            return None
        self._check(resp, path)
        data = resp.json()
        if isinstance(data, list) or data.get("type") != "file":
            return None

        sha = data["sha"]
        encoded = data.get("content") or ""
        if not encoded and data.get("size", 0) > 0:
            # Contents API omits bodies above its inline limit
            return RemoteObject(path=path, data=await self._read_blob(sha), sha=sha)
        return RemoteObject(path=path, data=_b64decode(encoded), sha=sha)

    async def _read_blob(self, sha: str) -> bytes:
        url = f"/repos/{self._owner}/{self._repo}/git/blobs/{sha}"
        resp = await self._send("GET", url)
        self._check(resp, sha)
        return _b64decode(resp.json().get("content") or "")

    async def create(self, path: str, data: bytes, message: str) -> str:
        """PUT contents without a sha -> new sha. Fails if the path is occupied."""
        return await self._put(path, data, message, None)

    async def update(
        self, path: str, data: bytes, message: str, sha: Optional[str],
    ) -> str:
        """PUT contents with the caller's sha -> new sha."""
        if not sha:
            raise ConflictError(f"No version token for {path}; re-fetch before updating")
        return await self._put(path, data, message, sha)

    async def _put(self, path: str, data: bytes, message: str, sha: Optional[str]) -> str:
        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(data).decode("ascii"),
        }
        if sha:
            payload["sha"] = sha
        resp = await self._send("PUT", self._contents_url(path), json=payload)
        self._check(resp, path)
        new_sha = resp.json()["content"]["sha"]
        logger.debug("Committed %s (%s)", path, new_sha)
        return new_sha

    async def delete(self, path: str, message: str, sha: Optional[str]) -> None:
        """DELETE contents; requires the current sha."""
        if not sha:
            raise NotFoundError(f"No version token for {path}")
        resp = await self._send(
            "DELETE", self._contents_url(path),
            json={"message": message, "sha": sha},
        )
        self._check(resp, path)
        logger.debug("Deleted %s", path)

    async def list(self, prefix: str) -> list[RemoteEntry]:
        """List a directory. A missing directory is empty, not an error."""
        url = self._contents_url(prefix)
        logger.debug("Listing %s/%s/%s", self._owner, self._repo, prefix)
        resp = await self._send("GET", url)
        if resp.status_code == 404:
            logger.debug("Path %s does not exist yet", prefix)
            return []
        self._check(resp, prefix)
        data = resp.json()
        if not isinstance(data, list):
            logger.debug("Path %s exists but is not a directory", prefix)
            return []
        return [RemoteEntry(path=e["path"], name=e["name"]) for e in data]

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


def _b64decode(encoded: str) -> bytes:
    # GitHub wraps base64 bodies at 60 columns
    return base64.b64decode("".join(encoded.split()))


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("message", "") or resp.text
    except ValueError:
        return resp.text
