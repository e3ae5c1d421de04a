"""Debounced commit scheduling.

Each path has at most one pending commit. Scheduling a path again cancels
its timer and replaces the content, so only the latest content within the
debounce window is ever committed. When a timer fires the commit runs
through the conflict resolver, the remote write and the tracker update.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .conflicts import ConflictOutcome, ConflictResolver, ConflictState
from .exceptions import ConflictError, NoteSyncError, SyncDisabledError
from .oplog import OP_UPLOAD, STATUS_FAILED, STATUS_SUCCESS, SyncOperationLog
from .remote import RemoteStore
from .tracker import ContentHashTracker

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 30.0


@dataclass
class PendingCommit:
    """A scheduled, not yet fired commit."""

    path: str
    content: str
    scheduled_at: float  # loop time
    handle: asyncio.TimerHandle | None = field(default=None, repr=False)
    message: str | None = None


class CommitStatus(str, Enum):
    COMMITTED = "committed"  # written to the remote
    PULLED = "pulled"  # remote version replaced the local note
    UNCHANGED = "unchanged"  # remote already had this content
    DEFERRED = "deferred"  # conflict left for a later cycle
    FAILED = "failed"


@dataclass
class CommitOutcome:
    path: str
    status: CommitStatus
    content_hash: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status is not CommitStatus.FAILED


@dataclass
class FlushResult:
    """Outcomes of every commit run by a flush."""

    outcomes: list[CommitOutcome] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def committed(self) -> list[CommitOutcome]:
        return [o for o in self.outcomes if o.status is CommitStatus.COMMITTED]

    @property
    def failed(self) -> list[CommitOutcome]:
        return [o for o in self.outcomes if o.status is CommitStatus.FAILED]

    @property
    def deferred(self) -> list[CommitOutcome]:
        return [o for o in self.outcomes if o.status is CommitStatus.DEFERRED]


_STATUS_FOR_STATE = {
    ConflictState.RESOLVED_REMOTE: CommitStatus.PULLED,
    ConflictState.DEFERRED: CommitStatus.DEFERRED,
}


class CommitScheduler:
    """Coalesce note edits into one debounced remote write per path."""

    def __init__(
        self,
        resolver: ConflictResolver,
        remote: RemoteStore,
        tracker: ContentHashTracker,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
        oplog: SyncOperationLog | None = None,
        on_error: Callable[[str, Exception], None] | None = None,
    ):
        """Initialize scheduler.

        Args:
            resolver: Conflict resolver consulted before every write
            remote: Remote store to write to
            tracker: Tracker updated after every successful write
            delay: Default debounce delay in seconds
            oplog: Optional operation log
            on_error: Called with (path, error) when a commit fails
        """
        self.resolver = resolver
        self.remote = remote
        self.tracker = tracker
        self.delay = delay
        self.oplog = oplog
        self.on_error = on_error

        self._pending: dict[str, PendingCommit] = {}
        self._committing: set[str] = set()
        self._path_locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()

    def schedule(
        self,
        path: str,
        content: str,
        delay: float | None = None,
        message: str | None = None,
    ) -> PendingCommit:
        """Schedule a commit of ``content`` to ``path`` after the debounce delay.

        Replaces any commit already pending for the path and restarts its timer.
        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        delay = self.delay if delay is None else delay

        previous = self._pending.pop(path, None)
        if previous is not None:
            previous.handle.cancel()
            logger.debug(f"Replaced pending commit for {path}")

        pending = PendingCommit(
            path=path,
            content=content,
            scheduled_at=loop.time(),
            message=message,
        )
        pending.handle = loop.call_later(delay, self._fire, pending)
        self._pending[path] = pending
        logger.debug(f"Scheduled commit for {path} in {delay}s")
        return pending

    def _fire(self, pending: PendingCommit) -> None:
        if self._pending.get(pending.path) is not pending:
            return
        del self._pending[pending.path]

        task = asyncio.get_running_loop().create_task(
            self.commit_now(pending.path, pending.content, pending.message)
        )
        self._tasks.add(task)
        task.add_done_callback(self._commit_done)

    def _commit_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Scheduled commit crashed: {error!r}", exc_info=error)

    async def flush_all(self) -> FlushResult:
        """Run every pending commit now and wait for all in-flight commits.

        With nothing pending or in flight this does nothing.
        """
        pending = list(self._pending.values())
        self._pending.clear()
        for commit in pending:
            commit.handle.cancel()

        in_flight = list(self._tasks)
        if not pending and not in_flight:
            return FlushResult()

        logger.info(f"Flushing {len(pending)} pending commits")
        outcomes = await asyncio.gather(
            *(self.commit_now(c.path, c.content, c.message) for c in pending),
            *in_flight,
        )
        result = FlushResult(outcomes=list(outcomes))
        if result.failed:
            logger.warning(f"{len(result.failed)} commits failed during flush")
        return result

    def is_committing(self, path: str) -> bool:
        """True while a write for ``path`` is in flight."""
        return path in self._committing

    def has_pending(self, path: str) -> bool:
        return path in self._pending

    def pending_paths(self) -> list[str]:
        return list(self._pending)

    def cancel(self, path: str) -> bool:
        """Cancel the pending commit for ``path``. In-flight writes are not affected."""
        pending = self._pending.pop(path, None)
        if pending is None:
            return False
        pending.handle.cancel()
        logger.debug(f"Cancelled pending commit for {path}")
        return True

    def cancel_all(self) -> int:
        count = len(self._pending)
        for pending in self._pending.values():
            pending.handle.cancel()
        self._pending.clear()
        return count

    async def commit_now(
        self, path: str, content: str, message: str | None = None
    ) -> CommitOutcome:
        """Commit ``content`` to ``path`` immediately.

        Commits to the same path run one at a time. Failures are logged,
        recorded and returned, never raised.
        """
        lock = self._path_locks.setdefault(path, asyncio.Lock())
        async with lock:
            self._committing.add(path)
            try:
                return await self._commit(path, content, message or f"Update {path}")
            except NoteSyncError as e:
                return self._failed(path, e)
            finally:
                self._committing.discard(path)

    async def _commit(self, path: str, content: str, message: str) -> CommitOutcome:
        tracked = await self.tracker.get(path)
        known_hash = tracked.content_hash if tracked is not None else None

        outcome = await self.resolver.resolve(path, content, known_hash)
        if not outcome.should_write:
            return self._unwritten(path, outcome)

        try:
            result = await self.remote.write(path, content, outcome.expected_hash, message)
        except ConflictError:
            logger.warning(f"Remote base of {path} moved before write, checking again")
            outcome = await self.resolver.resolve(path, content, known_hash)
            if not outcome.should_write:
                return self._unwritten(path, outcome)
            result = await self.remote.write(path, content, outcome.expected_hash, message)

        await self.tracker.record(path, result.content_hash, content)
        if self.oplog is not None:
            self.oplog.log_operation(
                OP_UPLOAD, path, STATUS_SUCCESS, metadata={"hash": result.content_hash}
            )
        logger.info(f"Committed {path} ({result.content_hash[:7]})")
        return CommitOutcome(path, CommitStatus.COMMITTED, result.content_hash)

    def _unwritten(self, path: str, outcome: ConflictOutcome) -> CommitOutcome:
        status = _STATUS_FOR_STATE.get(outcome.state, CommitStatus.UNCHANGED)
        content_hash = outcome.remote.content_hash if outcome.remote is not None else None
        logger.debug(f"Nothing written for {path}: {outcome.state.value}")
        return CommitOutcome(path, status, content_hash)

    def _failed(self, path: str, error: NoteSyncError) -> CommitOutcome:
        if isinstance(error, SyncDisabledError):
            logger.info(f"Commit of {path} stopped: {error}")
        else:
            logger.error(f"Commit of {path} failed: {error}")

        if self.oplog is not None:
            self.oplog.log_operation(OP_UPLOAD, path, STATUS_FAILED, error=str(error))
        if self.on_error is not None:
            self.on_error(path, error)
        return CommitOutcome(path, CommitStatus.FAILED, error=error)
