"""Tests for the remote store adapters.

The GitHub store runs against an in-process fake of the contents API served
through httpx.MockTransport.
"""

import base64
import json
from pathlib import Path

import httpx
import pytest

from notesync.context import SyncContext
from notesync.exceptions import (
    AuthenticationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    PartialRenameError,
    RemoteError,
    SyncDisabledError,
)
from notesync.models import RepositoryBinding
from notesync.remote import GitHubContentsStore, MemoryRemoteStore, git_blob_hash

PREFIX = "/repos/alice/notes/contents"


class FakeGitHub:
    """Minimal in-memory GitHub contents API."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files: dict[str, str] = dict(files or {})
        self.requests: list[httpx.Request] = []
        self.failing_dirs: set[str] = set()
        self.fail_puts = False
        self.status_override: int | None = None
        self.blobs: dict[str, bytes] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override is not None:
            return httpx.Response(self.status_override, json={"message": "nope"})

        path = request.url.path[len(PREFIX):].strip("/")
        if request.method == "GET":
            return self._get(path)
        body = json.loads(request.content)
        if request.method == "PUT":
            return self._put(path, body)
        if request.method == "DELETE":
            return self._delete(path, body)
        return httpx.Response(405)

    def _children(self, directory: str) -> list[dict]:
        prefix = f"{directory}/" if directory else ""
        seen = {}
        for file_path, content in self.files.items():
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            name = rest.split("/")[0]
            if "/" in rest:
                seen[name] = {"type": "dir", "name": name, "path": prefix + name, "sha": "tree"}
            else:
                seen[name] = {
                    "type": "file",
                    "name": name,
                    "path": file_path,
                    "sha": git_blob_hash(content),
                    "download_url": f"https://raw.example/{file_path}",
                }
        return list(seen.values())

    def _get(self, path: str) -> httpx.Response:
        if path in self.blobs:
            return httpx.Response(
                200,
                json={
                    "type": "file",
                    "name": path.rsplit("/", 1)[-1],
                    "path": path,
                    "sha": "0" * 40,
                    "encoding": "base64",
                    "content": base64.b64encode(self.blobs[path]).decode(),
                },
            )
        if path in self.files:
            content = self.files[path]
            encoded = base64.b64encode(content.encode()).decode()
            wrapped = "\n".join(encoded[i:i + 60] for i in range(0, len(encoded), 60))
            return httpx.Response(
                200,
                json={
                    "type": "file",
                    "name": path.rsplit("/", 1)[-1],
                    "path": path,
                    "sha": git_blob_hash(content),
                    "encoding": "base64",
                    "content": wrapped,
                },
            )
        if path in self.failing_dirs:
            return httpx.Response(500, json={"message": "Server Error"})
        children = self._children(path)
        if children or not path:
            if not self.files:
                return httpx.Response(404, json={"message": "This repository is empty."})
            return httpx.Response(200, json=children)
        return httpx.Response(404, json={"message": "Not Found"})

    def _put(self, path: str, body: dict) -> httpx.Response:
        if self.fail_puts:
            return httpx.Response(500, json={"message": "Server Error"})
        content = base64.b64decode(body["content"]).decode()
        current = self.files.get(path)
        sha = body.get("sha")

        if current is not None and sha is None:
            return httpx.Response(
                422, json={"message": "Invalid request.\n\n\"sha\" wasn't supplied."}
            )
        if current is not None and sha != git_blob_hash(current):
            return httpx.Response(409, json={"message": f"{path} does not match {sha}"})
        if current is None and sha is not None:
            return httpx.Response(404, json={"message": "Not Found"})

        self.files[path] = content
        return httpx.Response(
            201 if current is None else 200,
            json={"content": {"path": path, "sha": git_blob_hash(content)}, "commit": {}},
        )

    def _delete(self, path: str, body: dict) -> httpx.Response:
        current = self.files.get(path)
        if current is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if body.get("sha") != git_blob_hash(current):
            return httpx.Response(409, json={"message": f"{path} does not match"})
        del self.files[path]
        return httpx.Response(200, json={"commit": {}})


@pytest.fixture
def context(tmp_path: Path):
    return SyncContext(
        notes_dir=tmp_path / "notes",
        state_dir=tmp_path / "state",
        binding=RepositoryBinding(owner="alice", name="notes", credential="ghp_secret"),
    )


@pytest.fixture
def github():
    return FakeGitHub({"notes/a.md": "# A\n", "notes/sub/b.md": "# B\n", "README.md": "hi"})


@pytest.fixture
def store(context, github):
    return GitHubContentsStore(context, transport=httpx.MockTransport(github.handler))


class TestGitBlobHash:
    def test_matches_git(self):
        # git hash-object of an empty file / of "hello\n"
        assert git_blob_hash("") == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"
        assert git_blob_hash("hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"


class TestGitHubRead:
    @pytest.mark.asyncio
    async def test_read_existing(self, store):
        remote = await store.read("notes/a.md")

        assert remote.content == "# A\n"
        assert remote.content_hash == git_blob_hash("# A\n")

    @pytest.mark.asyncio
    async def test_read_missing_returns_none(self, store):
        assert await store.read("notes/missing.md") is None

    @pytest.mark.asyncio
    async def test_undecodable_blob_is_remote_error(self, store, github):
        github.blobs["notes/bad.md"] = b"\xff\xfe broken"

        with pytest.raises(RemoteError) as exc_info:
            await store.read("notes/bad.md")
        assert "not valid UTF-8" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, store, github):
        await store.read("notes/a.md")

        request = github.requests[-1]
        assert request.headers["Authorization"] == "Bearer ghp_secret"
        assert request.url.path == f"{PREFIX}/notes/a.md"

    @pytest.mark.asyncio
    async def test_branch_is_passed_as_ref(self, store, github, context):
        context.bind(RepositoryBinding("alice", "notes", "ghp_secret", branch="drafts"))

        await store.read("notes/a.md")

        assert github.requests[-1].url.params["ref"] == "drafts"

    @pytest.mark.asyncio
    async def test_unauthorized(self, store, github):
        github.status_override = 401

        with pytest.raises(AuthenticationError):
            await store.read("notes/a.md")

    @pytest.mark.asyncio
    async def test_server_error(self, store, github):
        github.status_override = 502

        with pytest.raises(RemoteError) as exc_info:
            await store.read("notes/a.md")
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_transport_error_is_network_error(self, context):
        def fail(request):
            raise httpx.ConnectError("connection refused")

        store = GitHubContentsStore(context, transport=httpx.MockTransport(fail))

        with pytest.raises(NetworkError):
            await store.read("notes/a.md")

    @pytest.mark.asyncio
    async def test_requires_binding(self, store, context, github):
        context.unbind()

        with pytest.raises(SyncDisabledError):
            await store.read("notes/a.md")
        assert github.requests == []


class TestGitHubWrite:
    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        """Writing then reading yields the same bytes and the write's hash."""
        content = "# Café\n\nunicode ✓ and CRLF\r\n"

        result = await store.write("notes/new.md", content, None, "Add note")
        remote = await store.read("notes/new.md")

        assert result.created
        assert remote.content == content
        assert remote.content_hash == result.content_hash

    @pytest.mark.asyncio
    async def test_update_with_matching_hash(self, store, github):
        current = git_blob_hash("# A\n")

        result = await store.write("notes/a.md", "# A v2\n", current)

        assert not result.created
        assert github.files["notes/a.md"] == "# A v2\n"
        body = json.loads(github.requests[-1].content)
        assert body["sha"] == current
        assert body["message"] == "Update note"

    @pytest.mark.asyncio
    async def test_stale_hash_is_conflict(self, store, github):
        with pytest.raises(ConflictError) as exc_info:
            await store.write("notes/a.md", "mine", "0" * 40)

        assert exc_info.value.path == "notes/a.md"
        assert github.files["notes/a.md"] == "# A\n"

    @pytest.mark.asyncio
    async def test_create_over_existing_is_conflict(self, store):
        with pytest.raises(ConflictError):
            await store.write("notes/a.md", "mine", None)

    @pytest.mark.asyncio
    async def test_update_missing_file_is_conflict(self, store):
        with pytest.raises(ConflictError):
            await store.write("notes/gone.md", "mine", "0" * 40)

    @pytest.mark.asyncio
    async def test_branch_is_sent_in_body(self, store, github, context):
        context.bind(RepositoryBinding("alice", "notes", "ghp_secret", branch="drafts"))

        await store.write("notes/new.md", "x")

        assert json.loads(github.requests[-1].content)["branch"] == "drafts"


class TestGitHubDelete:
    @pytest.mark.asyncio
    async def test_delete(self, store, github):
        await store.delete("notes/a.md", git_blob_hash("# A\n"))

        assert "notes/a.md" not in github.files
        assert github.requests[-1].method == "DELETE"

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.delete("notes/missing.md", "0" * 40)

    @pytest.mark.asyncio
    async def test_delete_stale_hash(self, store, github):
        with pytest.raises(ConflictError):
            await store.delete("notes/a.md", "0" * 40)
        assert "notes/a.md" in github.files


class TestGitHubListTree:
    @pytest.mark.asyncio
    async def test_lists_markdown_recursively(self, store):
        tree = await store.list_tree()

        assert sorted(d.path for d in tree) == ["README.md", "notes/a.md", "notes/sub/b.md"]
        assert tree.complete
        by_path = tree.by_path()
        assert by_path["notes/sub/b.md"].content_hash == git_blob_hash("# B\n")

    @pytest.mark.asyncio
    async def test_skips_non_markdown(self, store, github):
        github.files["image.png"] = "png"

        tree = await store.list_tree()

        assert "image.png" not in tree.by_path()

    @pytest.mark.asyncio
    async def test_failing_subdirectory_is_skipped(self, store, github):
        github.failing_dirs.add("notes/sub")

        tree = await store.list_tree()

        assert sorted(d.path for d in tree) == ["README.md", "notes/a.md"]
        assert tree.skipped_dirs == ["notes/sub"]
        assert not tree.covers("notes/sub/b.md")
        assert tree.covers("notes/a.md")

    @pytest.mark.asyncio
    async def test_failing_root_propagates(self, store, github):
        github.failing_dirs.add("")

        with pytest.raises(RemoteError):
            await store.list_tree()

    @pytest.mark.asyncio
    async def test_empty_repository(self, context):
        github = FakeGitHub()
        store = GitHubContentsStore(context, transport=httpx.MockTransport(github.handler))

        tree = await store.list_tree()

        assert len(tree) == 0


class TestRename:
    @pytest.mark.asyncio
    async def test_rename(self, store, github):
        result = await store.rename(
            "notes/a.md", "notes/renamed.md", "# A\n", git_blob_hash("# A\n")
        )

        assert "notes/a.md" not in github.files
        assert github.files["notes/renamed.md"] == "# A\n"
        assert result.content_hash == git_blob_hash("# A\n")

    @pytest.mark.asyncio
    async def test_create_failure_after_delete_is_partial_rename(self, store, github):
        github.fail_puts = True

        with pytest.raises(PartialRenameError) as exc_info:
            await store.rename(
                "notes/a.md", "notes/renamed.md", "# A\n", git_blob_hash("# A\n")
            )

        error = exc_info.value
        assert (error.old_path, error.new_path, error.content) == (
            "notes/a.md",
            "notes/renamed.md",
            "# A\n",
        )
        assert isinstance(error.cause, RemoteError)
        assert "notes/a.md" not in github.files
        assert "notes/renamed.md" not in github.files

    @pytest.mark.asyncio
    async def test_rejected_delete_changes_nothing(self, store, github):
        with pytest.raises(ConflictError):
            await store.rename("notes/a.md", "notes/renamed.md", "# A\n", "0" * 40)

        assert github.files["notes/a.md"] == "# A\n"
        assert "notes/renamed.md" not in github.files


class TestMemoryRemoteStore:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = MemoryRemoteStore()

        result = await store.write("a.md", "content")
        remote = await store.read("a.md")

        assert remote.content == "content"
        assert remote.content_hash == result.content_hash == git_blob_hash("content")

    @pytest.mark.asyncio
    async def test_optimistic_concurrency(self):
        store = MemoryRemoteStore({"a.md": "v1"})
        stale = git_blob_hash("v1")
        store.put("a.md", "v2 from another device")

        with pytest.raises(ConflictError) as exc_info:
            await store.write("a.md", "mine", stale)
        assert exc_info.value.current_hash == git_blob_hash("v2 from another device")

        with pytest.raises(ConflictError):
            await store.delete("a.md", stale)

    @pytest.mark.asyncio
    async def test_delete_missing(self):
        with pytest.raises(NotFoundError):
            await MemoryRemoteStore().delete("a.md", "h")

    @pytest.mark.asyncio
    async def test_records_operations(self):
        store = MemoryRemoteStore({"a.md": "v1"})

        await store.rename("a.md", "b.md", "v1", git_blob_hash("v1"))

        assert store.operations == [("delete", "a.md"), ("write", "b.md")]

    @pytest.mark.asyncio
    async def test_list_tree_only_notes(self):
        store = MemoryRemoteStore({"b.md": "b", "a/c.md": "c", "x.txt": "x"})

        tree = await store.list_tree()

        assert [d.path for d in tree] == ["a/c.md", "b.md"]

    @pytest.mark.asyncio
    async def test_requires_binding_when_context_given(self, context):
        store = MemoryRemoteStore({"a.md": "v1"}, context=context)
        context.unbind()

        with pytest.raises(SyncDisabledError):
            await store.read("a.md")
