"""Append-only log of sync operations.

Every upload, download, delete, rename and conflict decision is appended to
a JSONL file next to the tracking table, so failed or deferred notes can be
inspected after the fact (``notesync log``).
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from .models import SyncOperationRecord

logger = logging.getLogger(__name__)

OP_UPLOAD = "upload"
OP_DOWNLOAD = "download"
OP_DELETE_LOCAL = "delete_local"
OP_DELETE_REMOTE = "delete_remote"
OP_RENAME = "rename"
OP_CONFLICT = "conflict"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_CONFLICT = "conflict"
STATUS_DEFERRED = "deferred"


class SyncOperationLog:
    """Transaction log for sync operations.

    Stored as: <state_dir>/sync-log.jsonl
    """

    def __init__(self, log_file: str | Path):
        self.log_file = Path(log_file)

    def log_operation(
        self,
        op_type: str,
        path: str,
        status: str,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Append an operation to the log.

        Args:
            op_type: Operation type (``upload``, ``download``, ``delete_local``,
                ``delete_remote``, ``rename``, ``conflict``)
            path: Note path
            status: ``success``, ``failed``, ``conflict`` or ``deferred``
            error: Error message if the operation failed
            metadata: Additional details (hashes, old path, resolution)

        Returns:
            Operation ID
        """
        timestamp = datetime.now(timezone.utc)
        digest = hashlib.sha1(f"{op_type}:{path}".encode()).hexdigest()[:8]
        record = SyncOperationRecord(
            op_id=f"{int(timestamp.timestamp() * 1000)}_{digest}",
            op_type=op_type,
            path=path,
            status=status,
            error=error,
            timestamp=timestamp,
            metadata=metadata or {},
        )

        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(_to_entry(record)) + "\n")
        except OSError as e:
            logger.error(f"Failed to write to operation log: {e}")
            return record.op_id

        logger.debug(f"Logged {op_type} operation: {path} ({status})")
        return record.op_id

    def get_failed_operations(self) -> list[SyncOperationRecord]:
        return self._filter_operations(lambda op: op.status == STATUS_FAILED)

    def get_recent_operations(self, limit: int = 50) -> list[SyncOperationRecord]:
        """Get the most recent operations, newest first."""
        operations = self._read_all_operations()
        return operations[-limit:][::-1]

    def get_operations_for_path(self, path: str) -> list[SyncOperationRecord]:
        return self._filter_operations(lambda op: op.path == path)

    def get_statistics(self) -> dict[str, Any]:
        """Get statistics about sync operations.

        Returns:
            Dictionary with ``total_operations``, counts ``by_type`` and
            ``by_status``, and ``recent_failures`` (last 24 hours)
        """
        operations = self._read_all_operations()

        stats = {
            "total_operations": len(operations),
            "by_type": {},
            "by_status": {},
            "recent_failures": 0,
        }

        for op in operations:
            stats["by_type"][op.op_type] = stats["by_type"].get(op.op_type, 0) + 1
            stats["by_status"][op.status] = stats["by_status"].get(op.status, 0) + 1

        recent_threshold = datetime.now(timezone.utc) - timedelta(hours=24)
        stats["recent_failures"] = sum(
            1
            for op in operations
            if op.status == STATUS_FAILED and op.timestamp > recent_threshold
        )

        return stats

    def truncate(self, keep_days: int = 7) -> int:
        """Drop successful operations older than ``keep_days``.

        Failed, conflicted and deferred operations are always kept.

        Returns:
            Number of operations removed
        """
        if not self.log_file.exists():
            return 0

        operations = self._read_all_operations()
        cutoff = datetime.now(timezone.utc) - timedelta(days=keep_days)
        kept = [
            op for op in operations if op.status != STATUS_SUCCESS or op.timestamp > cutoff
        ]
        removed = len(operations) - len(kept)

        if removed > 0:
            try:
                with open(self.log_file, "w", encoding="utf-8") as f:
                    for op in kept:
                        f.write(json.dumps(_to_entry(op)) + "\n")
            except OSError as e:
                logger.error(f"Failed to truncate operation log: {e}")
                raise
            logger.info(f"Truncated operation log: removed {removed} old successful operations")

        return removed

    def clear(self) -> None:
        self.log_file.unlink(missing_ok=True)

    def _read_all_operations(self) -> list[SyncOperationRecord]:
        if not self.log_file.exists():
            return []

        operations = []
        try:
            with open(self.log_file, "r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        operations.append(_from_entry(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, ValueError) as e:
                        logger.warning(f"Skipping invalid log entry: {e}")
        except OSError as e:
            logger.error(f"Failed to read operation log: {e}")
            return []

        return operations

    def _filter_operations(
        self, predicate: Callable[[SyncOperationRecord], bool]
    ) -> list[SyncOperationRecord]:
        return [op for op in self._read_all_operations() if predicate(op)]


def _to_entry(record: SyncOperationRecord) -> dict:
    return {
        "op_id": record.op_id,
        "op_type": record.op_type,
        "path": record.path,
        "status": record.status,
        "error": record.error,
        "timestamp": record.timestamp.isoformat(),
        "metadata": record.metadata,
    }


def _from_entry(entry: dict) -> SyncOperationRecord:
    return SyncOperationRecord(
        op_id=entry["op_id"],
        op_type=entry["op_type"],
        path=entry["path"],
        status=entry["status"],
        error=entry.get("error"),
        timestamp=datetime.fromisoformat(entry["timestamp"]),
        metadata=entry.get("metadata", {}),
    )
