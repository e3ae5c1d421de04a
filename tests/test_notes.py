"""Tests for local note storage."""

from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from notesync.exceptions import LocalIOError
from notesync.notes import LocalNotes, is_note


@pytest.fixture
def notes():
    with TemporaryDirectory() as tmpdir:
        yield LocalNotes(Path(tmpdir) / "notes")


class TestPathValidation:
    @pytest.mark.parametrize("path", ["", "/etc/passwd.md", "../outside.md", "a/../../b.md"])
    def test_rejects_invalid_paths(self, notes, path):
        with pytest.raises(LocalIOError):
            notes.resolve(path)

    def test_resolves_nested_path(self, notes):
        assert notes.resolve("dir/a.md") == notes.root / "dir" / "a.md"

    def test_is_note(self):
        assert is_note("a.md")
        assert is_note("README.MD")
        assert not is_note("a.txt")
        assert not is_note("md")


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_write_then_read(self, notes):
        await notes.write("dir/a.md", "# Title\r\nbody\n")

        assert await notes.read("dir/a.md") == "# Title\r\nbody\n"

    @pytest.mark.asyncio
    async def test_write_leaves_no_temp_files(self, notes):
        await notes.write("a.md", "x")
        await notes.write("a.md", "y")

        assert [p.name for p in notes.root.iterdir()] == ["a.md"]

    @pytest.mark.asyncio
    async def test_read_missing_raises(self, notes):
        with pytest.raises(LocalIOError):
            await notes.read("missing.md")

    @pytest.mark.asyncio
    async def test_read_if_exists(self, notes):
        assert await notes.read_if_exists("missing.md") is None
        await notes.write("a.md", "x")
        assert await notes.read_if_exists("a.md") == "x"

    @pytest.mark.asyncio
    async def test_delete(self, notes):
        await notes.write("a.md", "x")

        assert await notes.delete("a.md") is True
        assert await notes.delete("a.md") is False
        assert not await notes.exists("a.md")

    @pytest.mark.asyncio
    async def test_move_creates_parents(self, notes):
        await notes.write("a.md", "x")

        await notes.move("a.md", "archive/2024/a.md")

        assert not await notes.exists("a.md")
        assert await notes.read("archive/2024/a.md") == "x"


class TestListing:
    @pytest.mark.asyncio
    async def test_list_notes_depth_first_sorted(self, notes):
        for path in ["b.md", "a/z.md", "a/b/c.md", "c.txt", ".hidden/x.md"]:
            await notes.write(path, "x")

        assert await notes.list_notes() == ["a/b/c.md", "a/z.md", "b.md"]

    @pytest.mark.asyncio
    async def test_list_missing_root(self, notes):
        assert await notes.list_notes() == []

    @pytest.mark.asyncio
    async def test_remove_all(self, notes):
        await notes.write("a/b.md", "x")

        await notes.remove_all()

        assert not notes.root.exists()
        await notes.remove_all()
