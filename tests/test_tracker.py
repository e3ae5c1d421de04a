"""Tests for the content hash tracker."""

import asyncio
import json
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from notesync.exceptions import LocalIOError
from notesync.models import ChangeKind
from notesync.notes import LocalNotes
from notesync.tracker import ContentHashTracker


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def notes(temp_dir):
    return LocalNotes(temp_dir / "notes")


@pytest.fixture
def tracker(notes, temp_dir):
    return ContentHashTracker(notes, temp_dir / "state" / "file_tracking.json")


def write_note(notes: LocalNotes, path: str, content: str) -> None:
    full_path = notes.root / path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    full_path.write_text(content, encoding="utf-8")


class TestLoad:
    """Tests for loading the tracking table."""

    @pytest.mark.asyncio
    async def test_load_missing_file(self, tracker):
        """No tracking file means nothing is tracked."""
        assert await tracker.load() == {}
        assert tracker._loaded

    @pytest.mark.asyncio
    async def test_load_existing_file(self, tracker):
        tracker.tracking_file.parent.mkdir(parents=True)
        tracker.tracking_file.write_text(
            json.dumps({"notes/a.md": {"hash": "abc123", "content": "# A\n"}})
        )

        entries = await tracker.load()

        assert set(entries) == {"notes/a.md"}
        assert entries["notes/a.md"].content_hash == "abc123"
        assert entries["notes/a.md"].cached_content == "# A\n"

    @pytest.mark.asyncio
    async def test_load_corrupt_file(self, tracker):
        """A corrupt tracking file is treated as empty."""
        tracker.tracking_file.parent.mkdir(parents=True)
        tracker.tracking_file.write_text("{not json")

        assert await tracker.load() == {}

    @pytest.mark.asyncio
    async def test_load_only_once(self, tracker):
        await tracker.load()
        tracker.tracking_file.parent.mkdir(parents=True)
        tracker.tracking_file.write_text(
            json.dumps({"a.md": {"hash": "h", "content": "x"}})
        )

        assert await tracker.load() == {}


class TestInitialize:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_initialize_tracks_existing_files(self, tracker, notes):
        write_note(notes, "notes/a.md", "alpha")
        write_note(notes, "notes/b.md", "beta")

        count = await tracker.initialize([("notes/a.md", "ha"), ("notes/b.md", "hb")])

        assert count == 2
        entry = await tracker.get("notes/a.md")
        assert entry.content_hash == "ha"
        assert entry.cached_content == "alpha"

    @pytest.mark.asyncio
    async def test_initialize_skips_missing_files(self, tracker, notes):
        write_note(notes, "a.md", "alpha")

        count = await tracker.initialize([("a.md", "ha"), ("missing.md", "hm")])

        assert count == 1
        assert await tracker.get("missing.md") is None

    @pytest.mark.asyncio
    async def test_initialize_skips_invalid_paths(self, tracker, notes):
        """One bad entry does not fail the batch."""
        write_note(notes, "a.md", "alpha")

        count = await tracker.initialize([("../escape.md", "hx"), ("a.md", "ha")])

        assert count == 1
        assert set(await tracker.entries()) == {"a.md"}

    @pytest.mark.asyncio
    async def test_initialize_persists_table(self, tracker, notes):
        write_note(notes, "a.md", "alpha")

        await tracker.initialize([("a.md", "ha")])

        data = json.loads(tracker.tracking_file.read_text())
        assert data == {"a.md": {"hash": "ha", "content": "alpha"}}

    @pytest.mark.asyncio
    async def test_initialize_reset_clears_existing(self, tracker, notes):
        write_note(notes, "a.md", "alpha")
        write_note(notes, "b.md", "beta")
        await tracker.initialize([("a.md", "ha")])

        await tracker.initialize([("b.md", "hb")], reset=True)

        assert set(await tracker.entries()) == {"b.md"}

    @pytest.mark.asyncio
    async def test_initialize_without_reset_keeps_existing(self, tracker, notes):
        write_note(notes, "a.md", "alpha")
        write_note(notes, "b.md", "beta")
        await tracker.initialize([("a.md", "ha")])

        await tracker.initialize([("b.md", "hb")])

        assert set(await tracker.entries()) == {"a.md", "b.md"}


class TestRecordAndForget:
    """Tests for post-commit updates."""

    @pytest.mark.asyncio
    async def test_record_persists(self, tracker, notes, temp_dir):
        await tracker.record("a.md", "h1", "content")

        reloaded = ContentHashTracker(notes, tracker.tracking_file)
        entry = await reloaded.get("a.md")
        assert entry.content_hash == "h1"
        assert entry.cached_content == "content"

    @pytest.mark.asyncio
    async def test_forget(self, tracker):
        await tracker.record("a.md", "h1", "content")

        await tracker.forget("a.md")

        assert await tracker.get("a.md") is None
        assert json.loads(tracker.tracking_file.read_text()) == {}

    @pytest.mark.asyncio
    async def test_forget_unknown_path(self, tracker):
        await tracker.forget("never.md")
        assert not tracker.tracking_file.exists()

    @pytest.mark.asyncio
    async def test_clear_removes_file(self, tracker):
        await tracker.record("a.md", "h1", "content")

        await tracker.clear()

        assert await tracker.entries() == {}
        assert not tracker.tracking_file.exists()

    @pytest.mark.asyncio
    async def test_is_unchanged(self, tracker):
        await tracker.record("a.md", "h1", "content")

        assert await tracker.is_unchanged("a.md", "content")
        assert not await tracker.is_unchanged("a.md", "content!")
        assert not await tracker.is_unchanged("b.md", "content")

    @pytest.mark.asyncio
    async def test_concurrent_records_are_all_persisted(self, tracker):
        await asyncio.gather(
            *(tracker.record(f"n{i}.md", f"h{i}", f"c{i}") for i in range(20))
        )

        data = json.loads(tracker.tracking_file.read_text())
        assert len(data) == 20

    @pytest.mark.asyncio
    async def test_persist_failure_raises_local_io_error(self, tracker, temp_dir):
        # The tracking file's parent is a regular file, so it cannot be created
        blocker = temp_dir / "blocker"
        blocker.write_text("x")
        tracker.tracking_file = blocker / "file_tracking.json"

        with pytest.raises(LocalIOError):
            await tracker.record("a.md", "h1", "content")


class TestDetectChanges:
    """Tests for detect_changes()."""

    @pytest.mark.asyncio
    async def test_no_changes(self, tracker, notes):
        """Files identical to their snapshot are never reported."""
        write_note(notes, "notes/a.md", "alpha")
        await tracker.initialize([("notes/a.md", "ha")])

        assert await tracker.detect_changes() == []

    @pytest.mark.asyncio
    async def test_edit_restoring_original_is_not_a_change(self, tracker, notes):
        write_note(notes, "a.md", "alpha")
        await tracker.initialize([("a.md", "ha")])

        write_note(notes, "a.md", "alpha edited")
        write_note(notes, "a.md", "alpha")

        assert await tracker.detect_changes() == []

    @pytest.mark.asyncio
    async def test_added(self, tracker, notes):
        write_note(notes, "new.md", "new")

        changes = await tracker.detect_changes()

        assert len(changes) == 1
        assert changes[0].path == "new.md"
        assert changes[0].kind is ChangeKind.ADDED
        assert changes[0].known_hash is None

    @pytest.mark.asyncio
    async def test_modified_carries_known_hash(self, tracker, notes):
        write_note(notes, "a.md", "alpha")
        await tracker.initialize([("a.md", "ha")])
        write_note(notes, "a.md", "alpha v2")

        changes = await tracker.detect_changes()

        assert [(c.path, c.kind, c.known_hash) for c in changes] == [
            ("a.md", ChangeKind.MODIFIED, "ha")
        ]

    @pytest.mark.asyncio
    async def test_line_ending_change_is_a_modification(self, tracker, notes):
        (notes.root).mkdir(parents=True)
        (notes.root / "a.md").write_bytes(b"one\ntwo\n")
        await tracker.initialize([("a.md", "ha")])
        (notes.root / "a.md").write_bytes(b"one\r\ntwo\r\n")

        changes = await tracker.detect_changes()

        assert [c.kind for c in changes] == [ChangeKind.MODIFIED]

    @pytest.mark.asyncio
    async def test_deleted(self, tracker, notes):
        write_note(notes, "a.md", "alpha")
        await tracker.initialize([("a.md", "ha")])
        (notes.root / "a.md").unlink()

        changes = await tracker.detect_changes()

        assert [(c.path, c.kind, c.known_hash) for c in changes] == [
            ("a.md", ChangeKind.DELETED, "ha")
        ]

    @pytest.mark.asyncio
    async def test_renamed(self, tracker, notes):
        """An added file with a deleted file's exact content is a rename."""
        write_note(notes, "old.md", "same text")
        await tracker.initialize([("old.md", "h-old")])
        (notes.root / "old.md").rename(notes.root / "new.md")

        changes = await tracker.detect_changes()

        assert len(changes) == 1
        assert changes[0].kind is ChangeKind.RENAMED
        assert changes[0].path == "new.md"
        assert changes[0].old_path == "old.md"
        assert changes[0].known_hash == "h-old"

    @pytest.mark.asyncio
    async def test_moved_and_edited_is_add_and_delete(self, tracker, notes):
        write_note(notes, "old.md", "same text")
        await tracker.initialize([("old.md", "h-old")])
        (notes.root / "old.md").unlink()
        write_note(notes, "new.md", "different text")

        changes = await tracker.detect_changes()

        assert {(c.path, c.kind) for c in changes} == {
            ("new.md", ChangeKind.ADDED),
            ("old.md", ChangeKind.DELETED),
        }

    @pytest.mark.asyncio
    async def test_only_markdown_and_visible_files(self, tracker, notes):
        write_note(notes, "a.md", "note")
        write_note(notes, "image.png", "binary-ish")
        write_note(notes, ".git/HEAD.md", "hidden")
        write_note(notes, "sub/.draft.md", "hidden")

        changes = await tracker.detect_changes()

        assert [c.path for c in changes] == ["a.md"]

    @pytest.mark.asyncio
    async def test_walks_subdirectories(self, tracker, notes):
        write_note(notes, "a.md", "a")
        write_note(notes, "dir/b.md", "b")
        write_note(notes, "dir/deeper/c.md", "c")

        changes = await tracker.detect_changes()

        assert {c.path for c in changes} == {"a.md", "dir/b.md", "dir/deeper/c.md"}

    @pytest.mark.asyncio
    async def test_missing_notes_directory(self, tracker):
        assert await tracker.detect_changes() == []
