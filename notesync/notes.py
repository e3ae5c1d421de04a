"""
Local note storage.

Reads and writes the UTF-8 Markdown files under the notes directory. All
public methods are coroutines; the blocking filesystem calls run in a worker
thread so the event loop is only suspended, never blocked, on disk I/O.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path

from .exceptions import LocalIOError

logger = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"


def is_note(name: str) -> bool:
    """Only Markdown files are synced."""
    return name.lower().endswith(NOTE_SUFFIX)


class LocalNotes:
    """Markdown files below a root directory, addressed by relative POSIX path."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()

    def resolve(self, path: str) -> Path:
        """
        Validate a relative note path and return its absolute location.

        Raises:
            LocalIOError: If the path is empty, absolute or escapes the root
        """
        if not path:
            raise LocalIOError(path, ValueError("Path cannot be empty"))

        path = path.replace("\\", "/")

        if path.startswith("/"):
            raise LocalIOError(path, ValueError("Path must be relative"))

        if ".." in path.split("/"):
            raise LocalIOError(path, ValueError("Path cannot contain '..'"))

        full_path = (self.root / path).resolve()
        try:
            full_path.relative_to(self.root)
        except ValueError:
            raise LocalIOError(path, ValueError("Path escapes notes directory"))

        return full_path

    def relative(self, full_path: Path) -> str:
        return full_path.relative_to(self.root).as_posix()

    async def read(self, path: str) -> str:
        """Read a note.

        Raises:
            LocalIOError: If the file is missing, unreadable or not valid UTF-8
        """
        full_path = self.resolve(path)
        try:
            return await asyncio.to_thread(_read_text, full_path)
        except (OSError, UnicodeDecodeError) as e:
            raise LocalIOError(path, e) from e

    async def read_if_exists(self, path: str) -> str | None:
        full_path = self.resolve(path)
        try:
            return await asyncio.to_thread(_read_text, full_path)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise LocalIOError(path, e) from e

    async def write(self, path: str, content: str) -> None:
        """Write a note atomically, creating parent directories as needed."""
        full_path = self.resolve(path)
        try:
            await asyncio.to_thread(_write_text_atomic, full_path, content)
        except OSError as e:
            raise LocalIOError(path, e) from e
        logger.debug(f"Wrote local note {path} ({len(content)} chars)")

    async def delete(self, path: str) -> bool:
        """Delete a note. Returns False if it did not exist."""
        full_path = self.resolve(path)
        try:
            await asyncio.to_thread(full_path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise LocalIOError(path, e) from e
        logger.debug(f"Deleted local note {path}")
        return True

    async def move(self, old_path: str, new_path: str) -> None:
        source = self.resolve(old_path)
        target = self.resolve(new_path)
        try:
            await asyncio.to_thread(_move, source, target)
        except OSError as e:
            raise LocalIOError(old_path, e) from e

    async def exists(self, path: str) -> bool:
        try:
            full_path = self.resolve(path)
        except LocalIOError:
            return False
        return await asyncio.to_thread(full_path.is_file)

    async def list_notes(self) -> list[str]:
        """List every note below the root, depth-first in directory order.

        Unreadable directories are logged and skipped.
        """
        return await asyncio.to_thread(self._walk)

    async def remove_all(self) -> None:
        """Delete the whole notes directory."""
        if not self.root.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, self.root)
        except OSError as e:
            raise LocalIOError(str(self.root), e) from e

    def _walk(self) -> list[str]:
        notes: list[str] = []
        if not self.root.is_dir():
            logger.debug(f"Notes directory does not exist: {self.root}")
            return notes

        def scan(directory: Path) -> None:
            try:
                entries = sorted(os.scandir(directory), key=lambda e: e.name)
            except OSError as e:
                logger.warning(f"Failed to list {directory}: {e}")
                return

            for entry in entries:
                # Hidden entries (.git, temp files)
                if entry.name.startswith("."):
                    continue
                if entry.is_dir(follow_symlinks=False):
                    scan(Path(entry.path))
                elif entry.is_file() and is_note(entry.name):
                    notes.append(self.relative(Path(entry.path)))

        scan(self.root)
        return notes


def _read_text(full_path: Path) -> str:
    # newline="" keeps line endings byte-exact for content comparison
    with open(full_path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _write_text_atomic(full_path: Path, content: str) -> None:
    full_path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=full_path.parent,
        prefix=f".{full_path.name}.",
        suffix=".tmp",
        text=True,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, full_path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def _move(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    os.replace(source, target)
