"""Conflict detection and resolution for note commits.

Before every remote write the resolver compares the tracked hash of a note
with the remote's current hash:

    CHECKING -> CLEAN            remote absent or unchanged, write may proceed
    CHECKING -> RESOLVED_REMOTE  only the remote changed, pull it down
    CHECKING -> CONFLICT         both sides changed since the last sync

A CONFLICT needs an explicit decision:

    CONFLICT -> RESOLVED_LOCAL   overwrite remote, based on its current hash
    CONFLICT -> RESOLVED_REMOTE  replace the local note with the remote one
    CONFLICT -> DEFERRED         leave both sides alone until the next cycle

Decisions are not taken inside the sync flow. The resolver publishes a
ConflictDecision on a DecisionChannel and awaits its future; a UI, a decider
callback or a StaticDecider answers it. An unanswered decision never writes.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from .models import RemoteFile
from .notes import LocalNotes
from .oplog import (
    OP_CONFLICT,
    OP_DOWNLOAD,
    STATUS_CONFLICT,
    STATUS_DEFERRED,
    STATUS_SUCCESS,
    SyncOperationLog,
)
from .remote import RemoteStore
from .tracker import ContentHashTracker

logger = logging.getLogger(__name__)


class ConflictState(str, Enum):
    CHECKING = "checking"
    CLEAN = "clean"
    CONFLICT = "conflict"
    RESOLVED_LOCAL = "resolved_local"
    RESOLVED_REMOTE = "resolved_remote"
    DEFERRED = "deferred"


class Resolution(str, Enum):
    """Answer to a conflict decision."""

    KEEP_LOCAL = "local"
    TAKE_REMOTE = "remote"
    DEFER = "defer"


@dataclass
class ConflictCheck:
    """Result of comparing a note against the remote.

    ``expected_hash`` is the base for the write: the remote's current hash,
    or None when the note does not exist remotely. ``in_sync`` is set when
    the remote already holds exactly the local content.
    """

    path: str
    state: ConflictState
    expected_hash: str | None = None
    remote: RemoteFile | None = None
    in_sync: bool = False


@dataclass
class ConflictOutcome:
    """Final state of a resolution and whether the caller should write."""

    path: str
    state: ConflictState
    expected_hash: str | None = None
    remote: RemoteFile | None = None
    in_sync: bool = False

    @property
    def should_write(self) -> bool:
        return (
            self.state in (ConflictState.CLEAN, ConflictState.RESOLVED_LOCAL)
            and not self.in_sync
        )


@dataclass
class ConflictDecision:
    """A conflict waiting for a decision.

    Answer it with ``DecisionChannel.submit(path, resolution)``.
    """

    path: str
    local_content: str
    remote_content: str
    remote_hash: str
    known_hash: str | None
    future: asyncio.Future = field(repr=False)

    @property
    def resolved(self) -> bool:
        return self.future.done()


Decider = Callable[[ConflictDecision], Resolution | Awaitable[Resolution]]


class DecisionChannel:
    """Pending conflict decisions, one per path.

    Listeners are called synchronously with each newly published decision,
    which is how a UI learns it has to prompt.
    """

    def __init__(self):
        self._pending: dict[str, ConflictDecision] = {}
        self._listeners: list[Callable[[ConflictDecision], None]] = []

    def subscribe(self, listener: Callable[[ConflictDecision], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(
        self,
        path: str,
        local_content: str,
        remote: RemoteFile,
        known_hash: str | None,
    ) -> ConflictDecision:
        previous = self._pending.pop(path, None)
        if previous is not None and not previous.future.done():
            # Superseded by a newer attempt on the same note
            previous.future.set_result(Resolution.DEFER)

        decision = ConflictDecision(
            path=path,
            local_content=local_content,
            remote_content=remote.content,
            remote_hash=remote.content_hash,
            known_hash=known_hash,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[path] = decision
        logger.debug(f"Published conflict decision for {path}")

        for listener in list(self._listeners):
            listener(decision)
        return decision

    def pending(self) -> list[ConflictDecision]:
        return [d for d in self._pending.values() if not d.resolved]

    def get(self, path: str) -> ConflictDecision | None:
        decision = self._pending.get(path)
        return decision if decision is not None and not decision.resolved else None

    def submit(self, path: str, resolution: Resolution | str) -> bool:
        """Answer the pending decision for ``path``.

        Returns:
            False if no decision is pending for the path
        """
        resolution = Resolution(resolution)
        decision = self._pending.pop(path, None)
        if decision is None or decision.future.done():
            logger.debug(f"No pending conflict decision for {path}")
            return False

        decision.future.set_result(resolution)
        logger.info(f"Conflict on {path} answered: {resolution.value}")
        return True

    def expire(self, decision: ConflictDecision) -> None:
        """Defer a decision nobody answered in time."""
        if self._pending.get(decision.path) is decision:
            del self._pending[decision.path]
        if not decision.future.done():
            decision.future.set_result(Resolution.DEFER)

    def cancel_all(self) -> int:
        """Defer every pending decision. Returns how many were pending."""
        decisions = list(self._pending.values())
        self._pending.clear()
        count = 0
        for decision in decisions:
            if not decision.future.done():
                decision.future.set_result(Resolution.DEFER)
                count += 1
        return count


class StaticDecider:
    """Decider that answers every conflict the same way.

    Used by the CLI's ``--prefer`` option and by tests.
    """

    def __init__(self, resolution: Resolution | str = Resolution.DEFER):
        """Initialize decider.

        Args:
            resolution: One of "local", "remote" or "defer"
        """
        try:
            self.resolution = Resolution(resolution)
        except ValueError:
            raise ValueError(f"Invalid resolution: {resolution}")
        self.decisions: list[ConflictDecision] = []

    def __call__(self, decision: ConflictDecision) -> Resolution:
        self.decisions.append(decision)
        return self.resolution


class ConflictResolver:
    """Decide, per commit attempt, whether a local note may be written."""

    def __init__(
        self,
        remote: RemoteStore,
        tracker: ContentHashTracker,
        notes: LocalNotes,
        channel: DecisionChannel | None = None,
        decider: Decider | None = None,
        decision_timeout: float | None = None,
        oplog: SyncOperationLog | None = None,
    ):
        """Initialize resolver.

        Args:
            remote: Remote store to read current state from
            tracker: Tracker holding the last synced snapshots
            notes: Local notes, written when the remote version wins
            channel: Channel conflicts are published on
            decider: Optional callback answering every published decision
            decision_timeout: Seconds to wait for a decision before deferring;
                None waits indefinitely
            oplog: Optional operation log
        """
        self.remote = remote
        self.tracker = tracker
        self.notes = notes
        self.channel = channel or DecisionChannel()
        self.decider = decider
        self.decision_timeout = decision_timeout
        self.oplog = oplog

    async def check(
        self, path: str, local_content: str, known_hash: str | None
    ) -> ConflictCheck:
        """Compare a note's tracked hash with the remote's current hash."""
        remote_file = await self.remote.read(path)

        if remote_file is None:
            logger.debug(f"{path}: not on remote, clean")
            return ConflictCheck(path=path, state=ConflictState.CLEAN)

        in_sync = remote_file.content == local_content

        if remote_file.content_hash == known_hash or in_sync:
            return ConflictCheck(
                path=path,
                state=ConflictState.CLEAN,
                expected_hash=remote_file.content_hash,
                remote=remote_file,
                in_sync=in_sync,
            )

        tracked = await self.tracker.get(path)
        if tracked is not None and tracked.cached_content == local_content:
            logger.info(f"{path}: only the remote changed")
            return ConflictCheck(
                path=path,
                state=ConflictState.RESOLVED_REMOTE,
                expected_hash=remote_file.content_hash,
                remote=remote_file,
            )

        logger.warning(
            f"{path}: conflict (known {known_hash[:7] if known_hash else 'none'}, "
            f"remote {remote_file.content_hash[:7]})"
        )
        return ConflictCheck(
            path=path,
            state=ConflictState.CONFLICT,
            expected_hash=remote_file.content_hash,
            remote=remote_file,
        )

    async def resolve(
        self, path: str, local_content: str, known_hash: str | None
    ) -> ConflictOutcome:
        """Check a note and carry the check through to a final state.

        RESOLVED_REMOTE pulls the remote note into the local file and the
        tracker. CONFLICT waits for a decision. Nothing here writes to the
        remote; the caller writes when ``should_write`` is set.
        """
        check = await self.check(path, local_content, known_hash)

        if check.state is ConflictState.CLEAN:
            if check.in_sync:
                await self.tracker.record(path, check.remote.content_hash, local_content)
            return self._outcome(check, check.state)

        if check.state is ConflictState.RESOLVED_REMOTE:
            return await self._take_remote(check, local_content)

        self._log(OP_CONFLICT, path, STATUS_CONFLICT, {"remote_hash": check.expected_hash})
        resolution = await self.decide(path, local_content, check.remote, known_hash)

        if resolution is Resolution.KEEP_LOCAL:
            logger.info(f"{path}: keeping local version")
            return self._outcome(check, ConflictState.RESOLVED_LOCAL)

        if resolution is Resolution.TAKE_REMOTE:
            logger.info(f"{path}: taking remote version")
            return await self._take_remote(check, local_content)

        logger.info(f"{path}: conflict deferred")
        self._log(OP_CONFLICT, path, STATUS_DEFERRED)
        return self._outcome(check, ConflictState.DEFERRED)

    async def decide(
        self,
        path: str,
        local_content: str,
        remote: RemoteFile,
        known_hash: str | None,
    ) -> Resolution:
        """Publish a decision and wait for its answer."""
        decision = self.channel.publish(path, local_content, remote, known_hash)

        if self.decider is not None:
            answer = self.decider(decision)
            if inspect.isawaitable(answer):
                answer = await answer
            self.channel.submit(path, answer)

        if self.decision_timeout is None:
            return await decision.future

        try:
            return await asyncio.wait_for(
                asyncio.shield(decision.future), self.decision_timeout
            )
        except TimeoutError:
            logger.warning(
                f"No decision for {path} after {self.decision_timeout}s, deferring"
            )
            self.channel.expire(decision)
            return Resolution.DEFER

    async def _take_remote(self, check: ConflictCheck, local_content: str) -> ConflictOutcome:
        remote_file = check.remote
        current = await self.notes.read_if_exists(check.path)

        if current is not None and current != local_content:
            # Edited again while we were checking; keep the newer edit
            logger.warning(f"{check.path} changed locally during resolution, deferring")
            return self._outcome(check, ConflictState.DEFERRED)

        await self.notes.write(check.path, remote_file.content)
        await self.tracker.record(check.path, remote_file.content_hash, remote_file.content)
        self._log(
            OP_DOWNLOAD, check.path, STATUS_SUCCESS, {"hash": remote_file.content_hash}
        )
        logger.info(f"Pulled {check.path} ({remote_file.content_hash[:7]})")
        return self._outcome(check, ConflictState.RESOLVED_REMOTE)

    def _outcome(self, check: ConflictCheck, state: ConflictState) -> ConflictOutcome:
        return ConflictOutcome(
            path=check.path,
            state=state,
            expected_hash=check.expected_hash,
            remote=check.remote,
            in_sync=check.in_sync,
        )

    def _log(self, op_type: str, path: str, status: str, metadata: dict | None = None) -> None:
        if self.oplog is not None:
            self.oplog.log_operation(op_type, path, status, metadata=metadata)
