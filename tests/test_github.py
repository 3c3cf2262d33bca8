"""Tests for mnemosyne.github: GitHub contents API client."""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from mnemosyne.errors import (
    ConflictError,
    NotFoundError,
    NotInitializedError,
    RemoteUnavailableError,
)
from mnemosyne.github import MAX_RETRIES, GitHubObjectStore

CONTENTS = "/repos/me/mnemosyne-db/contents"


class FakeResponse:
    """Minimal httpx.Response stand-in."""

    def __init__(self, status_code=200, json_data=None, text="", headers=None):
        self.status_code = status_code
        self._json = {} if json_data is None else json_data
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._json


def _file(path, data, sha="sha1"):
    return FakeResponse(json_data={
        "type": "file",
        "path": path,
        "sha": sha,
        "size": len(data),
        "content": base64.encodebytes(data).decode("ascii"),
    })


@pytest.fixture
def mock_client():
    """GitHubObjectStore with a mocked httpx.AsyncClient and no real sleeps."""
    with patch("mnemosyne.github.httpx.AsyncClient") as MockClient, \
            patch("mnemosyne.github.asyncio.sleep", new_callable=AsyncMock) as sleep:
        client_instance = MagicMock()
        client_instance.request = AsyncMock()
        client_instance.aclose = AsyncMock()
        MockClient.return_value = client_instance
        store = GitHubObjectStore("test-token", owner="me")
        store.use_repo("mnemosyne-db")
        yield store, client_instance.request, sleep


class TestConstruction:
    def test_requires_token(self):
        with pytest.raises(ValueError, match="token is required"):
            GitHubObjectStore("")

    def test_sends_bearer_token(self):
        with patch("mnemosyne.github.httpx.AsyncClient") as MockClient:
            GitHubObjectStore("abc")
            headers = MockClient.call_args[1]["headers"]
            assert headers["Authorization"] == "Bearer abc"
            assert MockClient.call_args[1]["base_url"] == "https://api.github.com"

    def test_allows_localhost(self):
        with patch("mnemosyne.github.httpx.AsyncClient"):
            store = GitHubObjectStore("key", api_url="http://localhost:8000/")
            assert store._api_url == "http://localhost:8000"

    def test_rejects_plain_http(self):
        with pytest.raises(ValueError, match="must use HTTPS"):
            GitHubObjectStore("key", api_url="http://github.example.com")

    @pytest.mark.asyncio
    async def test_contents_need_repo(self):
        with patch("mnemosyne.github.httpx.AsyncClient"):
            store = GitHubObjectStore("key")
            with pytest.raises(NotInitializedError):
                await store.read("data/x.json")


class TestRepository:
    @pytest.mark.asyncio
    async def test_get_user_sets_owner(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(json_data={"login": "octo"})

        assert await store.get_user() == "octo"
        assert store.owner == "octo"
        request.assert_awaited_once_with("GET", "/user")

    @pytest.mark.asyncio
    async def test_bad_credentials(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(401, json_data={"message": "Bad credentials"})

        with pytest.raises(RemoteUnavailableError, match="Bad credentials"):
            await store.get_user()

    @pytest.mark.asyncio
    async def test_repo_exists(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(json_data={"name": "mnemosyne-db"})
        assert await store.repo_exists("mnemosyne-db") is True
        request.assert_awaited_once_with("GET", "/repos/me/mnemosyne-db")

    @pytest.mark.asyncio
    async def test_repo_missing(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(404)
        assert await store.repo_exists("mnemosyne-db") is False

    @pytest.mark.asyncio
    async def test_create_repo_is_private(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(201)

        await store.create_repo("mnemosyne-db")

        method, url = request.call_args[0]
        payload = request.call_args[1]["json"]
        assert (method, url) == ("POST", "/user/repos")
        assert payload["private"] is True
        assert payload["auto_init"] is True
        assert payload["name"] == "mnemosyne-db"


class TestRead:
    @pytest.mark.asyncio
    async def test_read_decodes_content(self, mock_client):
        store, request, _ = mock_client
        request.return_value = _file("data/a.json", b'{"id": "a"}', sha="abc")

        obj = await store.read("data/a.json")

        assert obj.data == b'{"id": "a"}'
        assert obj.sha == "abc"
        assert obj.text == '{"id": "a"}'
        request.assert_awaited_once_with("GET", f"{CONTENTS}/data/a.json")

    @pytest.mark.asyncio
    async def test_path_is_quoted(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(404)

        await store.read("data/2024-01-01T00:00:00Z-a 1.json")

        url = request.call_args[0][1]
        assert url == f"{CONTENTS}/data/2024-01-01T00:00:00Z-a%201.json"

    @pytest.mark.asyncio
    async def test_missing_is_none(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(404)
        assert await store.read("data/none.json") is None

    @pytest.mark.asyncio
    async def test_directory_is_none(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(json_data=[{"name": "a.json", "path": "data/a.json"}])
        assert await store.read("data") is None

    @pytest.mark.asyncio
    async def test_large_file_read_from_blob(self, mock_client):
        store, request, _ = mock_client
        body = b"\x89PNG" * 1000
        request.side_effect = [
            FakeResponse(json_data={"type": "file", "sha": "big", "size": len(body), "content": ""}),
            FakeResponse(json_data={"content": base64.b64encode(body).decode()}),
        ]

        obj = await store.read("assets/x.png")

        assert obj.data == body
        assert request.call_args[0] == ("GET", "/repos/me/mnemosyne-db/git/blobs/big")

    @pytest.mark.asyncio
    async def test_empty_file(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(json_data={"type": "file", "sha": "e", "size": 0, "content": ""})
        obj = await store.read("data/empty.json")
        assert obj.data == b""


class TestRetry:
    @pytest.mark.asyncio
    async def test_get_retries_on_5xx(self, mock_client):
        store, request, sleep = mock_client
        request.side_effect = [
            FakeResponse(502, text="Bad Gateway"),
            _file("data/a.json", b"{}"),
        ]

        obj = await store.read("data/a.json")

        assert obj.data == b"{}"
        assert request.await_count == 2
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_get_backoff_doubles(self, mock_client):
        store, request, sleep = mock_client
        request.side_effect = httpx.ConnectError("down")

        with pytest.raises(RemoteUnavailableError, match="down"):
            await store.read("data/a.json")

        assert request.await_count == MAX_RETRIES
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_get_persistent_5xx(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(503, json_data={"message": "unavailable"})

        with pytest.raises(RemoteUnavailableError, match="503"):
            await store.read("data/a.json")

        assert request.await_count == MAX_RETRIES

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, mock_client):
        store, request, sleep = mock_client
        request.side_effect = [
            FakeResponse(429, headers={"Retry-After": "7"}),
            FakeResponse(json_data={"login": "me"}),
        ]

        await store.get_user()

        sleep.assert_awaited_once_with(7.0)

    @pytest.mark.asyncio
    async def test_writes_not_retried(self, mock_client):
        store, request, sleep = mock_client
        request.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(RemoteUnavailableError):
            await store.create("data/a.json", b"{}", "Save note: a")

        assert request.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_write_5xx_not_retried(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(500, text="oops")

        with pytest.raises(RemoteUnavailableError):
            await store.delete("data/a.json", "Delete item: a", "sha")

        assert request.await_count == 1


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_omits_sha(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(201, json_data={"content": {"sha": "new"}})

        sha = await store.create("data/a.json", b'{"id": "a"}', "Save note: a")

        assert sha == "new"
        method, url = request.call_args[0]
        payload = request.call_args[1]["json"]
        assert (method, url) == ("PUT", f"{CONTENTS}/data/a.json")
        assert payload["message"] == "Save note: a"
        assert base64.b64decode(payload["content"]) == b'{"id": "a"}'
        assert "sha" not in payload

    @pytest.mark.asyncio
    async def test_create_on_occupied_path_conflicts(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(422, json_data={"message": "\"sha\" wasn't supplied."})

        with pytest.raises(ConflictError, match="sha"):
            await store.create("data/a.json", b"{}", "Save note: a")

    @pytest.mark.asyncio
    async def test_update_sends_sha(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(json_data={"content": {"sha": "v2"}})

        assert await store.update("data/a.json", b"{}", "Update note: a", "v1") == "v2"
        assert request.call_args[1]["json"]["sha"] == "v1"

    @pytest.mark.asyncio
    async def test_update_without_sha(self, mock_client):
        store, request, _ = mock_client
        with pytest.raises(ConflictError):
            await store.update("data/a.json", b"{}", "Update note: a", None)
        request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_stale_sha(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(409, json_data={"message": "does not match"})

        with pytest.raises(ConflictError, match="does not match"):
            await store.update("data/a.json", b"{}", "Update note: a", "old")

    @pytest.mark.asyncio
    async def test_delete(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(json_data={"commit": {}})

        await store.delete("data/a.json", "Delete item: a", "v1")

        assert request.call_args[0] == ("DELETE", f"{CONTENTS}/data/a.json")
        assert request.call_args[1]["json"] == {"message": "Delete item: a", "sha": "v1"}

    @pytest.mark.asyncio
    async def test_delete_missing(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(404, json_data={"message": "Not Found"})

        with pytest.raises(NotFoundError):
            await store.delete("data/a.json", "Delete item: a", "v1")

    @pytest.mark.asyncio
    async def test_delete_without_sha(self, mock_client):
        store, request, _ = mock_client
        with pytest.raises(NotFoundError):
            await store.delete("data/a.json", "Delete item: a", None)
        request.assert_not_awaited()


class TestList:
    @pytest.mark.asyncio
    async def test_list_entries(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(json_data=[
            {"name": "a.json", "path": "data/a.json", "type": "file"},
            {"name": "b.json", "path": "data/b.json", "type": "file"},
        ])

        entries = await store.list("data")

        assert [(e.path, e.name) for e in entries] == [
            ("data/a.json", "a.json"),
            ("data/b.json", "b.json"),
        ]

    @pytest.mark.asyncio
    async def test_missing_directory_is_empty(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(404)
        assert await store.list("data") == []

    @pytest.mark.asyncio
    async def test_file_instead_of_directory(self, mock_client):
        store, request, _ = mock_client
        request.return_value = _file("data", b"x")
        assert await store.list("data") == []

    @pytest.mark.asyncio
    async def test_forbidden(self, mock_client):
        store, request, _ = mock_client
        request.return_value = FakeResponse(403, json_data={"message": "rate limit exceeded"})
        with pytest.raises(RemoteUnavailableError, match="403"):
            await store.list("data")


@pytest.mark.asyncio
async def test_close(mock_client):
    store, _, _ = mock_client
    await store.close()
    store._client.aclose.assert_awaited_once()
