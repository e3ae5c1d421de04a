"""Sync orchestration.

The SyncOrchestrator owns one repository's sync components and drives them:

- sync(): incremental, from the tracker's detected local changes
- reconcile(): full bidirectional pass against the whole remote tree
- clone(): first download of a repository into an empty notes directory

Only one pass runs at a time; a pass requested while another is running is
dropped, not queued. App lifecycle events map onto passes: foreground and
pull-to-refresh reconcile, the periodic timer syncs incrementally and going
to the background only flushes pending commits.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from .config import NoteSyncConfig
from .conflicts import ConflictResolver, Decider, DecisionChannel
from .context import SyncContext
from .exceptions import (
    ConflictError,
    NoteSyncError,
    NotFoundError,
    PartialRenameError,
    SyncDisabledError,
)
from .models import ChangeKind, FileChange, RemoteFileDescriptor, TrackedFile, WriteResult
from .notes import LocalNotes
from .oplog import (
    OP_CONFLICT,
    OP_DELETE_LOCAL,
    OP_DELETE_REMOTE,
    OP_DOWNLOAD,
    OP_RENAME,
    STATUS_CONFLICT,
    STATUS_FAILED,
    STATUS_SUCCESS,
    SyncOperationLog,
)
from .remote import GitHubContentsStore, RemoteStore
from .scheduler import CommitOutcome, CommitScheduler, CommitStatus, FlushResult, PendingCommit
from .tracker import ContentHashTracker

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 300.0


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class SyncReport:
    """What a sync pass did.

    ``skipped`` is set when the pass was dropped because another was running,
    ``disabled`` when no repository is bound.
    """

    kind: str  # "incremental", "reconcile" or "clone"
    trigger: str = "manual"
    skipped: bool = False
    disabled: bool = False
    uploaded: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    deleted_local: list[str] = field(default_factory=list)
    deleted_remote: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    tracked: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped_dirs: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped and not self.disabled

    @property
    def changed(self) -> int:
        return (
            len(self.uploaded)
            + len(self.downloaded)
            + len(self.deleted_local)
            + len(self.deleted_remote)
            + len(self.renamed)
        )

    def add_commit(self, outcome: CommitOutcome) -> None:
        if outcome.status is CommitStatus.COMMITTED:
            self.uploaded.append(outcome.path)
        elif outcome.status is CommitStatus.PULLED:
            self.downloaded.append(outcome.path)
        elif outcome.status is CommitStatus.DEFERRED:
            self.deferred.append(outcome.path)
        elif outcome.status is CommitStatus.UNCHANGED:
            self.tracked.append(outcome.path)
        else:
            self.failed[outcome.path] = str(outcome.error)

    def summary(self) -> str:
        if self.disabled:
            return "Sync disabled: no repository configured"
        if self.skipped:
            return "Sync already in progress, skipped"
        parts = [
            f"{len(self.uploaded)} uploaded",
            f"{len(self.downloaded)} downloaded",
            f"{len(self.deleted_local) + len(self.deleted_remote)} deleted",
        ]
        if self.renamed:
            parts.append(f"{len(self.renamed)} renamed")
        if self.deferred or self.conflicts:
            parts.append(f"{len(self.deferred) + len(self.conflicts)} conflicts pending")
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        return ", ".join(parts)


class SyncOrchestrator:
    """Drive sync passes for one repository."""

    def __init__(
        self,
        context: SyncContext,
        remote: RemoteStore,
        tracker: ContentHashTracker,
        notes: LocalNotes,
        scheduler: CommitScheduler,
        resolver: ConflictResolver,
        oplog: SyncOperationLog | None = None,
        interval: float = DEFAULT_SYNC_INTERVAL,
    ):
        self.context = context
        self.remote = remote
        self.tracker = tracker
        self.notes = notes
        self.scheduler = scheduler
        self.resolver = resolver
        self.oplog = oplog
        self.interval = interval

        self._state = SyncState.IDLE
        self._periodic_task: asyncio.Task | None = None

    @classmethod
    def build(
        cls,
        context: SyncContext,
        remote: RemoteStore,
        debounce: float = 30.0,
        interval: float = DEFAULT_SYNC_INTERVAL,
        channel: DecisionChannel | None = None,
        decider: Decider | None = None,
        decision_timeout: float | None = None,
        on_error: Callable[[str, Exception], None] | None = None,
    ) -> "SyncOrchestrator":
        """Wire up the sync components for a context and remote store."""
        notes = LocalNotes(context.notes_dir)
        tracker = ContentHashTracker(notes, context.tracking_file)
        oplog = SyncOperationLog(context.log_file)
        resolver = ConflictResolver(
            remote,
            tracker,
            notes,
            channel=channel,
            decider=decider,
            decision_timeout=decision_timeout,
            oplog=oplog,
        )
        scheduler = CommitScheduler(
            resolver, remote, tracker, delay=debounce, oplog=oplog, on_error=on_error
        )
        return cls(context, remote, tracker, notes, scheduler, resolver, oplog, interval)

    @classmethod
    def create(
        cls,
        config: NoteSyncConfig,
        remote: RemoteStore | None = None,
        channel: DecisionChannel | None = None,
        decider: Decider | None = None,
        decision_timeout: float | None = None,
    ) -> "SyncOrchestrator":
        """Create an orchestrator from configuration.

        Args:
            config: Loaded configuration
            remote: Remote store (default: GitHub contents API)
            channel: Channel conflict decisions are published on
            decider: Optional callback answering conflict decisions
            decision_timeout: Seconds before an unanswered conflict is deferred
        """
        context = config.context()
        if remote is None:
            remote = GitHubContentsStore(context, timeout=config.request_timeout)
        return cls.build(
            context,
            remote,
            debounce=config.debounce_seconds,
            interval=config.sync_interval_seconds,
            channel=channel,
            decider=decider,
            decision_timeout=decision_timeout,
        )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state is SyncState.SYNCING

    @property
    def channel(self) -> DecisionChannel:
        return self.resolver.channel

    async def _run_pass(self, kind: str, trigger: str, body) -> SyncReport:
        report = SyncReport(kind=kind, trigger=trigger)

        if not self.context.enabled:
            logger.debug(f"Skipping {kind} ({trigger}): sync disabled")
            report.disabled = True
            return report

        if self._state is SyncState.SYNCING:
            logger.info(f"Sync already in progress, dropping {kind} ({trigger})")
            report.skipped = True
            return report

        self._state = SyncState.SYNCING
        logger.info(f"Starting {kind} sync ({trigger})")
        try:
            await body(report)
        except SyncDisabledError:
            logger.warning(f"{kind} sync stopped: repository binding was removed")
            raise
        finally:
            self._state = SyncState.IDLE
            report.finished_at = datetime.now(timezone.utc)

        logger.info(f"Finished {kind} sync: {report.summary()}")
        return report

    # Passes

    async def sync(self, trigger: str = "manual") -> SyncReport:
        """Push local changes detected since the last sync.

        Raises:
            SyncDisabledError: If the binding is cleared during the pass
        """
        return await self._run_pass("incremental", trigger, self._sync_changes)

    async def reconcile(self, trigger: str = "manual") -> SyncReport:
        """Diff the whole remote tree against local and tracked state and repair both sides.

        Raises:
            SyncDisabledError: If the binding is cleared during the pass
        """
        return await self._run_pass("reconcile", trigger, self._reconcile)

    async def clone(self, force: bool = False) -> SyncReport:
        """Download every remote note and start tracking them.

        Args:
            force: Overwrite existing local notes

        Raises:
            NoteSyncError: If the notes directory already holds notes and
                ``force`` is not set
        """
        if not force and await self.notes.list_notes():
            raise NoteSyncError(
                f"{self.context.notes_dir} already contains notes; use reconcile or force"
            )
        return await self._run_pass("clone", "manual", self._clone)

    # Triggers

    async def on_foreground(self) -> SyncReport:
        return await self.reconcile(trigger="foreground")

    async def refresh(self) -> SyncReport:
        """Pull-to-refresh."""
        return await self.reconcile(trigger="refresh")

    async def on_background(self) -> FlushResult:
        """Flush pending commits; timers do not fire while the app is suspended."""
        return await self.scheduler.flush_all()

    def start(self, interval: float | None = None) -> None:
        """Start periodic incremental sync. Must be called from a running event loop."""
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        interval = self.interval if interval is None else interval
        self._periodic_task = asyncio.get_running_loop().create_task(
            self._periodic(interval)
        )
        logger.info(f"Periodic sync every {interval}s")

    async def stop(self) -> None:
        task, self._periodic_task = self._periodic_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Periodic sync stopped")

    async def _periodic(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sync(trigger="periodic")
            except SyncDisabledError:
                logger.info("Periodic sync skipped: sync disabled")
            except NoteSyncError as e:
                logger.error(f"Periodic sync failed: {e}")

    async def close(self) -> None:
        await self.stop()
        await self.remote.aclose()

    # Note operations

    async def save_note(
        self, path: str, content: str, delay: float | None = None
    ) -> PendingCommit | None:
        """Write a note locally, then schedule its commit.

        Returns:
            The pending commit, or None while sync is disabled
        """
        await self.notes.write(path, content)
        if not self.context.enabled:
            return None
        return self.scheduler.schedule(path, content, delay=delay)

    async def delete_note(self, path: str) -> None:
        """Delete a note remotely, then locally.

        Untracked notes are only deleted locally. A rejected remote delete
        leaves the local note in place.

        Raises:
            ConflictError: If the remote note changed since the last sync
        """
        self.scheduler.cancel(path)
        tracked = await self.tracker.get(path)

        if tracked is not None and self.context.enabled:
            try:
                await self.remote.delete(path, tracked.content_hash, message=f"Delete {path}")
                self._log(OP_DELETE_REMOTE, path, STATUS_SUCCESS)
            except NotFoundError:
                logger.debug(f"{path} was already deleted remotely")
            await self.tracker.forget(path)

        await self.notes.delete(path)
        logger.info(f"Deleted note {path}")

    async def rename_note(self, old_path: str, new_path: str) -> WriteResult | None:
        """Move a note locally, then rename it remotely.

        Raises:
            PartialRenameError: If the remote create failed after the delete;
                see recover_partial_rename
            ConflictError: If the remote note changed since the last sync
        """
        self.scheduler.cancel(old_path)
        await self.notes.move(old_path, new_path)
        tracked = await self.tracker.get(old_path)

        if tracked is None or not self.context.enabled:
            return None

        content = await self.notes.read(new_path)
        result = await self._rename_remote(old_path, new_path, content, tracked.content_hash)
        logger.info(f"Renamed note {old_path} -> {new_path}")
        return result

    async def recover_partial_rename(self, error: PartialRenameError) -> WriteResult:
        """Re-create the new path of a failed rename from its content."""
        content = await self.notes.read_if_exists(error.new_path)
        if content is None:
            content = error.content

        result = await self.remote.write(
            error.new_path, content, None, message=f"Recover rename of {error.old_path}"
        )
        await self.tracker.record(error.new_path, result.content_hash, content)
        self._log(OP_RENAME, error.new_path, STATUS_SUCCESS, metadata={"recovered": True})
        logger.info(f"Recovered {error.new_path} after partial rename")
        return result

    async def remove_repository(self) -> None:
        """Stop syncing and delete the local notes and sync state."""
        name = self.context.binding.full_name if self.context.binding else "repository"
        self.context.unbind()
        self.scheduler.cancel_all()
        self.channel.cancel_all()
        await self.stop()

        await self.tracker.clear()
        await self.notes.remove_all()
        if self.oplog is not None:
            self.oplog.clear()
        logger.info(f"Removed {name} and its local notes")

    # Pass bodies

    async def _sync_changes(self, report: SyncReport) -> None:
        changes = await self.tracker.detect_changes()

        for change in changes:
            try:
                await self._apply_change(change, report)
            except SyncDisabledError:
                raise
            except NoteSyncError as e:
                logger.error(f"Failed to sync {change.path}: {e}")
                report.failed[change.path] = str(e)

    async def _apply_change(self, change: FileChange, report: SyncReport) -> None:
        if change.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            content = await self.notes.read(change.path)
            await self._commit(change.path, content, report)

        elif change.kind is ChangeKind.DELETED:
            await self._delete_remote(change.path, change.known_hash, report)

        elif change.kind is ChangeKind.RENAMED:
            content = await self.notes.read(change.path)
            try:
                await self._rename_remote(change.old_path, change.path, content, change.known_hash)
            except NotFoundError:
                logger.info(f"{change.old_path} is gone remotely, uploading {change.path} as new")
                await self.tracker.forget(change.old_path)
                await self._commit(change.path, content, report)
                return
            except ConflictError as e:
                # Nothing changed remotely; reconcile restores the old note
                logger.warning(f"Rename {change.old_path} -> {change.path} rejected: {e}")
                report.conflicts.append(change.old_path)
                return
            report.renamed.append((change.old_path, change.path))

    async def _reconcile(self, report: SyncReport) -> None:
        tree = await self.remote.list_tree()
        report.skipped_dirs = list(tree.skipped_dirs)
        remote_files = tree.by_path()
        tracked = await self.tracker.entries()
        local_paths = set(await self.notes.list_notes())

        for path, descriptor in remote_files.items():
            try:
                await self._reconcile_remote_path(
                    path, descriptor, tracked.get(path), path in local_paths, report
                )
            except SyncDisabledError:
                raise
            except NoteSyncError as e:
                logger.error(f"Failed to reconcile {path}: {e}")
                report.failed[path] = str(e)

        for path in sorted(local_paths - remote_files.keys()):
            if not tree.covers(path):
                logger.debug(f"Leaving {path} alone: its remote directory was not listed")
                continue
            try:
                await self._reconcile_local_only(path, tracked.get(path), report)
            except SyncDisabledError:
                raise
            except NoteSyncError as e:
                logger.error(f"Failed to reconcile {path}: {e}")
                report.failed[path] = str(e)

        for path in tracked.keys() - remote_files.keys() - local_paths:
            if tree.covers(path):
                await self.tracker.forget(path)

    async def _reconcile_remote_path(
        self,
        path: str,
        descriptor: RemoteFileDescriptor,
        entry: TrackedFile | None,
        local_exists: bool,
        report: SyncReport,
    ) -> None:
        if not local_exists:
            if entry is not None and entry.content_hash == descriptor.content_hash:
                # Deleted locally, unchanged remotely
                await self._delete_remote(path, entry.content_hash, report)
            else:
                await self._download(path, report)
            return

        content = await self.notes.read(path)

        if (
            entry is not None
            and entry.content_hash == descriptor.content_hash
            and entry.cached_content == content
        ):
            return

        # Untracked, or diverged from the last sync
        self.scheduler.cancel(path)
        await self._commit(path, content, report)

    async def _reconcile_local_only(
        self, path: str, entry: TrackedFile | None, report: SyncReport
    ) -> None:
        content = await self.notes.read(path)

        if entry is None:
            self.scheduler.cancel(path)
            await self._commit(path, content, report)
            return

        if content != entry.cached_content:
            # Deleted remotely but edited locally; keep the edit as a new note
            logger.warning(f"{path} was deleted remotely but changed locally, re-creating")
            await self.tracker.forget(path)
            self.scheduler.cancel(path)
            await self._commit(path, content, report)
            return

        self.scheduler.cancel(path)
        await self.notes.delete(path)
        await self.tracker.forget(path)
        self._log(OP_DELETE_LOCAL, path, STATUS_SUCCESS)
        report.deleted_local.append(path)
        logger.info(f"Deleted {path} locally (deleted remotely)")

    async def _clone(self, report: SyncReport) -> None:
        tree = await self.remote.list_tree()
        report.skipped_dirs = list(tree.skipped_dirs)
        files: list[tuple[str, str]] = []

        for descriptor in tree:
            try:
                remote_file = await self.remote.read(descriptor.path)
                if remote_file is None:
                    continue
                await self.notes.write(descriptor.path, remote_file.content)
                files.append((descriptor.path, remote_file.content_hash))
                report.downloaded.append(descriptor.path)
            except SyncDisabledError:
                raise
            except NoteSyncError as e:
                logger.error(f"Failed to download {descriptor.path}: {e}")
                report.failed[descriptor.path] = str(e)

        await self.tracker.initialize(files, reset=True)

    # Steps

    async def _commit(self, path: str, content: str, report: SyncReport) -> None:
        outcome = await self.scheduler.commit_now(path, content)
        if isinstance(outcome.error, SyncDisabledError):
            raise outcome.error
        report.add_commit(outcome)

    async def _download(self, path: str, report: SyncReport) -> None:
        remote_file = await self.remote.read(path)
        if remote_file is None:
            logger.debug(f"{path} disappeared from the remote before download")
            return

        await self.notes.write(path, remote_file.content)
        await self.tracker.record(path, remote_file.content_hash, remote_file.content)
        self._log(OP_DOWNLOAD, path, STATUS_SUCCESS, metadata={"hash": remote_file.content_hash})
        report.downloaded.append(path)
        logger.info(f"Downloaded {path} ({remote_file.content_hash[:7]})")

    async def _delete_remote(self, path: str, known_hash: str | None, report: SyncReport) -> None:
        try:
            if known_hash is not None:
                await self.remote.delete(path, known_hash, message=f"Delete {path}")
        except NotFoundError:
            logger.debug(f"{path} was already deleted remotely")
        except ConflictError as e:
            # Changed remotely after the local delete; reconcile downloads it again
            logger.warning(f"Remote delete of {path} rejected: {e}")
            self._log(OP_CONFLICT, path, STATUS_CONFLICT, metadata={"op": OP_DELETE_REMOTE})
            report.conflicts.append(path)
            return

        await self.tracker.forget(path)
        self._log(OP_DELETE_REMOTE, path, STATUS_SUCCESS)
        report.deleted_remote.append(path)

    async def _rename_remote(
        self, old_path: str, new_path: str, content: str, old_hash: str
    ) -> WriteResult:
        try:
            result = await self.remote.rename(
                old_path, new_path, content, old_hash, message=f"Rename {old_path}"
            )
        except PartialRenameError as e:
            # The old note is gone remotely; the new one is not tracked yet
            await self.tracker.forget(old_path)
            self._log(
                OP_RENAME, new_path, STATUS_FAILED, error=str(e), metadata={"old_path": old_path}
            )
            raise

        await self.tracker.forget(old_path)
        await self.tracker.record(new_path, result.content_hash, content)
        self._log(OP_RENAME, new_path, STATUS_SUCCESS, metadata={"old_path": old_path})
        return result

    def _log(
        self,
        op_type: str,
        path: str,
        status: str,
        error: str | None = None,
        metadata: dict | None = None,
    ) -> None:
        if self.oplog is not None:
            self.oplog.log_operation(op_type, path, status, error=error, metadata=metadata)
