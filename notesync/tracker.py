"""Content hash tracker.

Keeps, for every synced note, the remote hash of its last committed or pulled
version together with the note's text at that point, and finds local changes
by comparing the notes directory against that cache.

Stored as: <state_dir>/file_tracking.json

    {"notes/a.md": {"hash": "<remote sha>", "content": "<text>"}, ...}

The file is loaded once and rewritten wholesale after every mutation.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable

from .exceptions import LocalIOError
from .models import ChangeKind, FileChange, TrackedFile
from .notes import LocalNotes

logger = logging.getLogger(__name__)


class ContentHashTracker:
    """Track the last synced state of every note.

    Change detection compares file content byte-for-byte against the cached
    snapshot rather than hashing it, so the result does not depend on how the
    remote computes its hashes, and an edit that restores the original text
    is never reported as a change.

    Every mutation and its write to disk happen under one lock, so concurrent
    commits never interleave their persistence.
    """

    def __init__(self, notes: LocalNotes, tracking_file: str | Path):
        """Initialize tracker.

        Args:
            notes: Local note storage to scan and read
            tracking_file: JSON file holding the tracked table
        """
        self.notes = notes
        self.tracking_file = Path(tracking_file)
        self._files: dict[str, TrackedFile] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def load(self) -> dict[str, TrackedFile]:
        """Load the tracking table from disk (once).

        A missing file means nothing is tracked yet. A corrupt file is logged
        and treated as empty.

        Returns:
            Dictionary mapping note paths to tracked state
        """
        if self._loaded:
            return self._files

        async with self._lock:
            if not self._loaded:
                self._files = await asyncio.to_thread(self._read_table)
                self._loaded = True
                logger.debug(f"Loaded tracking data for {len(self._files)} files")
        return self._files

    async def get(self, path: str) -> TrackedFile | None:
        await self.load()
        return self._files.get(path)

    async def entries(self) -> dict[str, TrackedFile]:
        """Get a copy of all tracked files."""
        await self.load()
        return dict(self._files)

    async def initialize(
        self, files: Iterable[tuple[str, str]], reset: bool = False
    ) -> int:
        """Start tracking notes at the given remote hashes.

        For each (path, hash) whose local file exists, the current local text
        becomes the cached snapshot. Missing or unreadable files are logged
        and skipped without failing the batch.

        Args:
            files: (path, remote hash) pairs
            reset: Clear every existing entry first

        Returns:
            Number of files tracked by this call

        Raises:
            LocalIOError: If the table cannot be written
        """
        await self.load()
        tracked = 0

        async with self._lock:
            if reset:
                logger.info("Resetting file tracking state")
                self._files.clear()

            for path, content_hash in files:
                try:
                    content = await self.notes.read_if_exists(path)
                except LocalIOError as e:
                    logger.error(f"Error initializing tracking for {path}: {e}")
                    continue

                if content is None:
                    logger.debug(f"File not found, skipping: {path}")
                    continue

                self._files[path] = TrackedFile(
                    path=path, content_hash=content_hash, cached_content=content
                )
                tracked += 1

            await self._persist()

        logger.info(
            f"Tracking state updated ({tracked} initialized). "
            f"Total tracked files: {len(self._files)}"
        )
        return tracked

    async def record(self, path: str, content_hash: str, content: str) -> None:
        """Store the state of a note after a successful commit or pull."""
        await self.load()
        async with self._lock:
            self._files[path] = TrackedFile(
                path=path, content_hash=content_hash, cached_content=content
            )
            await self._persist()
        logger.debug(f"Tracking {path} at {content_hash[:7]}")

    async def forget(self, path: str) -> None:
        """Stop tracking a note whose deletion has been acknowledged."""
        await self.load()
        async with self._lock:
            if self._files.pop(path, None) is None:
                return
            await self._persist()
        logger.debug(f"Removed {path} from tracking")

    async def clear(self) -> None:
        """Drop all tracked state and delete the table from disk."""
        async with self._lock:
            self._files = {}
            self._loaded = True
            try:
                await asyncio.to_thread(self.tracking_file.unlink, missing_ok=True)
            except OSError as e:
                raise LocalIOError(str(self.tracking_file), e) from e
        logger.debug("Cleared tracking state")

    async def is_unchanged(self, path: str, content: str) -> bool:
        """True if ``content`` equals the cached snapshot for ``path``."""
        tracked = await self.get(path)
        return tracked is not None and tracked.cached_content == content

    async def detect_changes(self) -> list[FileChange]:
        """Diff the notes directory against the tracked state.

        Untracked notes are ``added``, notes whose text differs from the
        snapshot are ``modified``, tracked notes no longer on disk are
        ``deleted``. An added note whose text exactly matches a deleted
        note's snapshot is reported once, as ``renamed``.

        Returns:
            Changes in directory traversal order
        """
        await self.load()
        tracked = dict(self._files)
        changes: list[FileChange] = []
        seen: set[str] = set()

        for path in await self.notes.list_notes():
            seen.add(path)
            last_known = tracked.get(path)

            if last_known is None:
                logger.debug(f"{path} appears to be a new file")
                changes.append(FileChange(path=path, kind=ChangeKind.ADDED))
                continue

            try:
                content = await self.notes.read(path)
            except LocalIOError as e:
                logger.warning(f"Skipping unreadable note {path}: {e}")
                continue

            if content != last_known.cached_content:
                logger.debug(f"{path} appears to be modified")
                changes.append(
                    FileChange(
                        path=path,
                        kind=ChangeKind.MODIFIED,
                        known_hash=last_known.content_hash,
                    )
                )

        deleted = [
            FileChange(path=path, kind=ChangeKind.DELETED, known_hash=entry.content_hash)
            for path, entry in tracked.items()
            if path not in seen
        ]

        if deleted:
            changes = await self._pair_renames(changes, deleted, tracked)

        if changes:
            logger.info(f"Detected {len(changes)} local changes")
        else:
            logger.debug("No changes detected")
        return changes

    async def _pair_renames(
        self,
        changes: list[FileChange],
        deleted: list[FileChange],
        tracked: dict[str, TrackedFile],
    ) -> list[FileChange]:
        unmatched = {change.path: change for change in deleted}
        result: list[FileChange] = []

        for change in changes:
            if change.kind is ChangeKind.ADDED and unmatched:
                try:
                    content = await self.notes.read(change.path)
                except LocalIOError:
                    content = None

                old_path = next(
                    (
                        old
                        for old in unmatched
                        if content is not None and tracked[old].cached_content == content
                    ),
                    None,
                )
                if old_path is not None:
                    gone = unmatched.pop(old_path)
                    logger.debug(f"{old_path} appears to be renamed to {change.path}")
                    change = FileChange(
                        path=change.path,
                        kind=ChangeKind.RENAMED,
                        old_path=old_path,
                        known_hash=gone.known_hash,
                    )
            result.append(change)

        result.extend(unmatched.values())
        return result

    async def _persist(self) -> None:
        # Caller holds self._lock
        data = {path: entry.to_dict() for path, entry in self._files.items()}
        try:
            await asyncio.to_thread(self._write_table, data)
        except OSError as e:
            logger.error(f"Error saving tracking data: {e}")
            raise LocalIOError(str(self.tracking_file), e) from e
        logger.debug(f"Saved tracking data for {len(data)} files")

    def _read_table(self) -> dict[str, TrackedFile]:
        if not self.tracking_file.exists():
            logger.debug(f"No tracking data found at {self.tracking_file}")
            return {}

        try:
            with open(self.tracking_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            return {
                path: TrackedFile.from_dict(path, entry) for path, entry in data.items()
            }
        except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Failed to load tracking data: {e}")
            return {}

    def _write_table(self, data: dict) -> None:
        self.tracking_file.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.tracking_file.parent,
            prefix=f".{self.tracking_file.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(temp_path, self.tracking_file)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
