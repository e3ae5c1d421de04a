"""Remote note storage.

The remote is treated as a flat key-value store of path -> (content, hash)
with optimistic concurrency: writes and deletes carry the hash the caller
believes is current and are rejected with ConflictError when it has moved.

Implementations:
- GitHubContentsStore: the GitHub repository contents API
- MemoryRemoteStore: in-process store with the same semantics
"""

import asyncio
import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx

from .context import SyncContext
from .exceptions import (
    AuthenticationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    PartialRenameError,
    RemoteError,
)
from .models import RemoteFile, RemoteFileDescriptor, RemoteTree, WriteResult
from .notes import is_note

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_ACCEPT = "application/vnd.github+json"
GITHUB_RAW_ACCEPT = "application/vnd.github.raw+json"


def git_blob_hash(content: str) -> str:
    """Hash text the way git (and therefore GitHub) hashes a blob."""
    data = content.encode("utf-8")
    header = f"blob {len(data)}\0".encode("utf-8")
    return hashlib.sha1(header + data).hexdigest()


class RemoteStore(ABC):
    """Abstract interface for the remote note store."""

    @abstractmethod
    async def read(self, path: str) -> RemoteFile | None:
        """
        Fetch the current remote state of a note.

        Returns:
            The remote file, or None if the path does not exist remotely

        Raises:
            NetworkError: If the remote cannot be reached
            RemoteError: For other remote failures
        """

    @abstractmethod
    async def write(
        self,
        path: str,
        content: str,
        expected_hash: str | None = None,
        message: str = "Update note",
    ) -> WriteResult:
        """
        Create or update a note.

        Args:
            path: Note path
            content: New content
            expected_hash: Hash the caller believes is current; None to create
            message: Commit message

        Returns:
            WriteResult with the new remote hash

        Raises:
            ConflictError: If the remote hash is not ``expected_hash``
        """

    @abstractmethod
    async def delete(self, path: str, content_hash: str, message: str = "Delete note") -> None:
        """
        Delete a note.

        Raises:
            NotFoundError: If the path does not exist remotely
            ConflictError: If the remote hash is not ``content_hash``
        """

    @abstractmethod
    async def list_tree(self) -> RemoteTree:
        """
        List every remote note, depth-first.

        Directories that fail to list are skipped and reported in
        ``RemoteTree.skipped_dirs``.
        """

    async def rename(
        self,
        old_path: str,
        new_path: str,
        content: str,
        old_hash: str,
        message: str = "Rename note",
    ) -> WriteResult:
        """
        Rename a note as delete-then-create.

        The remote has no atomic rename. If the create fails after the
        delete succeeded, neither path exists remotely and
        PartialRenameError is raised so the caller can re-create the note
        from ``content``.

        Raises:
            ConflictError: If the delete is rejected (nothing was changed)
            PartialRenameError: If the create failed after the delete
        """
        await self.delete(
            old_path, old_hash, message=f"{message} (rename from {old_path})"
        )
        logger.debug(f"Deleted {old_path} for rename to {new_path}")

        try:
            result = await self.write(
                new_path, content, None, message=f"{message} (rename from {old_path})"
            )
        except RemoteError as e:
            logger.error(f"Rename {old_path} -> {new_path} left neither file remotely: {e}")
            raise PartialRenameError(old_path, new_path, content, e) from e

        logger.info(f"Renamed {old_path} -> {new_path} ({result.content_hash[:7]})")
        return result

    async def aclose(self) -> None:
        """Release any resources held by the store."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class GitHubContentsStore(RemoteStore):
    """Remote store backed by the GitHub repository contents API.

    The repository and credential are read from the SyncContext on every
    request, so clearing the binding stops in-flight work at its next call.
    """

    def __init__(
        self,
        context: SyncContext,
        base_url: str = GITHUB_API_URL,
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the store.

        Args:
            context: Sync context holding the repository binding
            base_url: GitHub API root (GitHub Enterprise uses another host)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.context = context
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": GITHUB_ACCEPT, "X-GitHub-Api-Version": "2022-11-28"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _contents_url(self, path: str) -> str:
        binding = self.context.require_binding()
        url = f"{self.base_url}/repos/{binding.owner}/{binding.name}/contents"
        path = path.strip("/")
        return f"{url}/{quote(path)}" if path else url

    async def _request(
        self, method: str, path: str, accept: str | None = None, **kwargs
    ) -> httpx.Response:
        binding = self.context.require_binding()
        url = self._contents_url(path)
        headers = {"Authorization": f"Bearer {binding.credential}"}
        if accept:
            headers["Accept"] = accept
        if binding.branch:
            if method == "GET":
                kwargs.setdefault("params", {})["ref"] = binding.branch
            else:
                kwargs.setdefault("json", {})["branch"] = binding.branch

        try:
            return await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"GitHub {method} {path or '/'} failed: {e}")
            raise NetworkError(f"GitHub {method} {path or '/'} failed: {e}") from e

    async def read(self, path: str) -> RemoteFile | None:
        response = await self._request("GET", path)

        if response.status_code == 404:
            logger.debug(f"Remote file not found: {path}")
            return None
        _raise_for_status(response, path)

        data = response.json()
        if isinstance(data, list) or data.get("type") != "file":
            raise RemoteError(f"Remote path is not a file: {path}", response.status_code)

        if data.get("encoding") == "base64":
            content = _decode_content(data.get("content", ""), path)
        else:
            # Files over 1 MB come back without inline content
            raw = await self._request("GET", path, accept=GITHUB_RAW_ACCEPT)
            _raise_for_status(raw, path)
            content = raw.text

        return RemoteFile(path=data.get("path", path), content_hash=data["sha"], content=content)

    async def write(
        self,
        path: str,
        content: str,
        expected_hash: str | None = None,
        message: str = "Update note",
    ) -> WriteResult:
        body = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if expected_hash:
            body["sha"] = expected_hash

        response = await self._request("PUT", path, json=body)

        if response.status_code in (409, 422) or (
            response.status_code == 404 and expected_hash
        ):
            logger.warning(f"Write rejected for {path}: {_error_message(response)}")
            raise ConflictError(path, expected_hash, message=_conflict_message(response, path))
        _raise_for_status(response, path)

        data = response.json()
        new_hash = data["content"]["sha"]
        created = response.status_code == 201
        logger.info(f"{'Created' if created else 'Updated'} {path} ({new_hash[:7]})")
        return WriteResult(path=path, content_hash=new_hash, created=created)

    async def delete(self, path: str, content_hash: str, message: str = "Delete note") -> None:
        response = await self._request(
            "DELETE", path, json={"message": message, "sha": content_hash}
        )

        if response.status_code == 404:
            raise NotFoundError(path)
        if response.status_code in (409, 422):
            logger.warning(f"Delete rejected for {path}: {_error_message(response)}")
            raise ConflictError(path, content_hash, message=_conflict_message(response, path))
        _raise_for_status(response, path)

        logger.info(f"Deleted remote file {path}")

    async def list_tree(self) -> RemoteTree:
        tree = RemoteTree()

        # A root listing failure fails the whole listing
        root_items = await self._list_dir("")
        await self._walk(root_items, tree)

        logger.debug(
            f"Listed {len(tree.files)} remote notes"
            + (f", skipped {len(tree.skipped_dirs)} directories" if tree.skipped_dirs else "")
        )
        return tree

    async def _walk(self, items: list[dict], tree: RemoteTree) -> None:
        for item in items:
            item_type = item.get("type")
            if item_type == "dir":
                try:
                    children = await self._list_dir(item["path"])
                except (NetworkError, RemoteError) as e:
                    logger.warning(f"Skipping remote directory {item['path']}: {e}")
                    tree.skipped_dirs.append(item["path"])
                    continue
                await self._walk(children, tree)
            elif item_type == "file" and is_note(item.get("name", item["path"])):
                tree.files.append(
                    RemoteFileDescriptor(
                        path=item["path"],
                        content_hash=item["sha"],
                        download_url=item.get("download_url"),
                    )
                )

    async def _list_dir(self, path: str) -> list[dict]:
        response = await self._request("GET", path)
        if response.status_code == 404 and not path:
            # Empty repositories have no contents yet
            return []
        _raise_for_status(response, path or "/")

        items = response.json()
        if not isinstance(items, list):
            raise RemoteError(f"Remote path is not a directory: {path}", response.status_code)
        return sorted(items, key=lambda item: item.get("name", ""))


class MemoryRemoteStore(RemoteStore):
    """In-process remote store with GitHub's concurrency semantics.

    Hashes are git blob hashes, so they match what GitHub would return for
    the same content. Every mutating call is recorded in ``operations``.
    """

    def __init__(self, files: dict[str, str] | None = None, context: SyncContext | None = None):
        """Initialize the store.

        Args:
            files: Initial path -> content mapping
            context: Optional sync context; when given, every call requires a binding
        """
        self.context = context
        self._files: dict[str, str] = dict(files or {})
        self.operations: list[tuple[str, str]] = []

    def _check(self) -> None:
        if self.context is not None:
            self.context.require_binding()

    def hash_of(self, path: str) -> str | None:
        content = self._files.get(path)
        return git_blob_hash(content) if content is not None else None

    def content_of(self, path: str) -> str | None:
        return self._files.get(path)

    def put(self, path: str, content: str) -> str:
        """Change a file out of band, as another device would."""
        self._files[path] = content
        return git_blob_hash(content)

    def remove(self, path: str) -> None:
        """Delete a file out of band."""
        self._files.pop(path, None)

    async def read(self, path: str) -> RemoteFile | None:
        self._check()
        await asyncio.sleep(0)
        content = self._files.get(path)
        if content is None:
            return None
        return RemoteFile(path=path, content_hash=git_blob_hash(content), content=content)

    async def write(
        self,
        path: str,
        content: str,
        expected_hash: str | None = None,
        message: str = "Update note",
    ) -> WriteResult:
        self._check()
        await asyncio.sleep(0)
        current = self.hash_of(path)

        if current != expected_hash:
            raise ConflictError(path, expected_hash, current)

        self._files[path] = content
        self.operations.append(("write", path))
        return WriteResult(path=path, content_hash=git_blob_hash(content), created=current is None)

    async def delete(self, path: str, content_hash: str, message: str = "Delete note") -> None:
        self._check()
        await asyncio.sleep(0)
        current = self.hash_of(path)

        if current is None:
            raise NotFoundError(path)
        if current != content_hash:
            raise ConflictError(path, content_hash, current)

        del self._files[path]
        self.operations.append(("delete", path))

    async def list_tree(self) -> RemoteTree:
        self._check()
        await asyncio.sleep(0)
        return RemoteTree(
            files=[
                RemoteFileDescriptor(
                    path=path,
                    content_hash=git_blob_hash(content),
                    download_url=f"memory://{path}",
                )
                for path, content in sorted(self._files.items())
                if is_note(path)
            ]
        )


def _decode_content(encoded: str, path: str) -> str:
    # GitHub wraps base64 content at 60 columns
    try:
        return base64.b64decode("".join(encoded.split())).decode("utf-8")
    except ValueError as e:
        raise RemoteError(f"Remote file {path} is not valid UTF-8 text: {e}") from e


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", response.text)
    except ValueError:
        return response.text


def _conflict_message(response: httpx.Response, path: str) -> str:
    return f"Remote rejected change to {path} ({response.status_code}): {_error_message(response)}"


def _raise_for_status(response: httpx.Response, path: str) -> None:
    if response.is_success:
        return

    message = f"GitHub API error for {path}: {response.status_code} {_error_message(response)}"
    if response.status_code in (401, 403):
        raise AuthenticationError(message, response.status_code)
    if response.status_code == 404:
        raise NotFoundError(path, message)
    raise RemoteError(message, response.status_code)
