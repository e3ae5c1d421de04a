"""Data types shared by the sync components."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator


@dataclass
class TrackedFile:
    """Last known synced state of a note.

    ``content_hash`` is the remote hash of the last committed or pulled
    version and ``cached_content`` is the local text at that point.
    """

    path: str
    content_hash: str
    cached_content: str

    def to_dict(self) -> dict:
        return {"hash": self.content_hash, "content": self.cached_content}

    @classmethod
    def from_dict(cls, path: str, data: dict) -> "TrackedFile":
        return cls(path=path, content_hash=data["hash"], cached_content=data["content"])


class ChangeKind(str, Enum):
    """Kind of divergence between the filesystem and the tracked state."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass
class FileChange:
    """A detected local change, consumed once per sync cycle."""

    path: str
    kind: ChangeKind
    old_path: str | None = None  # Only for renamed files
    known_hash: str | None = None  # Tracked remote hash, if any


@dataclass
class RemoteFile:
    """Current content and hash of a remote note."""

    path: str
    content_hash: str
    content: str


@dataclass
class RemoteFileDescriptor:
    """A remote note as seen in a directory listing."""

    path: str
    content_hash: str
    download_url: str | None = None


@dataclass
class RemoteTree:
    """Result of a recursive remote listing.

    Directories whose listing failed are reported in ``skipped_dirs`` so
    callers do not mistake their files for remote deletions.
    """

    files: list[RemoteFileDescriptor] = field(default_factory=list)
    skipped_dirs: list[str] = field(default_factory=list)

    def __iter__(self) -> Iterator[RemoteFileDescriptor]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    @property
    def complete(self) -> bool:
        return not self.skipped_dirs

    def by_path(self) -> dict[str, RemoteFileDescriptor]:
        return {descriptor.path: descriptor for descriptor in self.files}

    def covers(self, path: str) -> bool:
        """Check whether ``path`` lies in a directory that was actually listed."""
        for skipped in self.skipped_dirs:
            if path == skipped or path.startswith(skipped.rstrip("/") + "/"):
                return False
        return True


@dataclass
class WriteResult:
    """Outcome of a successful remote write."""

    path: str
    content_hash: str
    created: bool = False


@dataclass(frozen=True)
class RepositoryBinding:
    """Repository the engine syncs against, plus the credential to reach it."""

    owner: str
    name: str
    credential: str = field(repr=False)
    branch: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class SyncOperationRecord:
    """Record of a single sync operation, as stored in the operation log."""

    op_id: str
    op_type: str  # "upload", "download", "delete_local", "delete_remote", "rename"
    path: str
    status: str  # "success", "failed", "conflict", "deferred"
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict = field(default_factory=dict)
