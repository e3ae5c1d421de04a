"""Markdown note synchronization with a GitHub repository.

This package provides:
- ContentHashTracker: last synced state of every note and local change detection
- RemoteStore: hash-checked read/write/delete of notes (GitHub contents API)
- ConflictResolver: conflict detection with asynchronous decisions
- CommitScheduler: debounced, coalesced commits per note
- SyncOrchestrator: incremental sync, full reconciliation and lifecycle triggers
"""

from notesync.config import NoteSyncConfig, parse_repo_url
from notesync.conflicts import (
    ConflictDecision,
    ConflictOutcome,
    ConflictResolver,
    ConflictState,
    DecisionChannel,
    Resolution,
    StaticDecider,
)
from notesync.context import SyncContext
from notesync.exceptions import (
    AuthenticationError,
    ConfigError,
    ConflictError,
    LocalIOError,
    NetworkError,
    NoteSyncError,
    NotFoundError,
    PartialRenameError,
    RemoteError,
    SyncDisabledError,
)
from notesync.models import (
    ChangeKind,
    FileChange,
    RemoteFile,
    RemoteFileDescriptor,
    RemoteTree,
    RepositoryBinding,
    TrackedFile,
    WriteResult,
)
from notesync.notes import LocalNotes
from notesync.oplog import SyncOperationLog
from notesync.orchestrator import SyncOrchestrator, SyncReport, SyncState
from notesync.remote import (
    GitHubContentsStore,
    MemoryRemoteStore,
    RemoteStore,
    git_blob_hash,
)
from notesync.scheduler import (
    CommitOutcome,
    CommitScheduler,
    CommitStatus,
    FlushResult,
    PendingCommit,
)
from notesync.tracker import ContentHashTracker

__all__ = [
    # Orchestration
    "SyncOrchestrator",
    "SyncReport",
    "SyncState",
    "SyncContext",
    # Tracker
    "ContentHashTracker",
    "LocalNotes",
    # Remote
    "RemoteStore",
    "GitHubContentsStore",
    "MemoryRemoteStore",
    "git_blob_hash",
    # Conflicts
    "ConflictResolver",
    "ConflictState",
    "ConflictOutcome",
    "ConflictDecision",
    "DecisionChannel",
    "Resolution",
    "StaticDecider",
    # Scheduler
    "CommitScheduler",
    "CommitOutcome",
    "CommitStatus",
    "FlushResult",
    "PendingCommit",
    # Config and logging
    "NoteSyncConfig",
    "parse_repo_url",
    "SyncOperationLog",
    # Models
    "TrackedFile",
    "FileChange",
    "ChangeKind",
    "RemoteFile",
    "RemoteFileDescriptor",
    "RemoteTree",
    "RepositoryBinding",
    "WriteResult",
    # Exceptions
    "NoteSyncError",
    "RemoteError",
    "NotFoundError",
    "ConflictError",
    "NetworkError",
    "AuthenticationError",
    "PartialRenameError",
    "LocalIOError",
    "SyncDisabledError",
    "ConfigError",
]
