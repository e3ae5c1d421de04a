"""Per-repository sync state.

A SyncContext owns everything that would otherwise be process-wide: the
repository binding and the local paths the engine works on. Each
orchestrator gets its own context, so several repositories can be synced
side by side.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import SyncDisabledError
from .models import RepositoryBinding

logger = logging.getLogger(__name__)

TRACKING_FILE_NAME = "file_tracking.json"
OPERATION_LOG_NAME = "sync-log.jsonl"


@dataclass
class SyncContext:
    """Binding and local layout for one synced repository.

    Attributes:
        notes_dir: Local directory holding the repository's notes
        state_dir: Directory for the tracking table and operation log
        binding: Current repository binding, None while sync is disabled
    """

    notes_dir: Path
    state_dir: Path
    binding: RepositoryBinding | None = field(default=None, repr=False)

    def __post_init__(self):
        self.notes_dir = Path(self.notes_dir).expanduser()
        self.state_dir = Path(self.state_dir).expanduser()

    @property
    def tracking_file(self) -> Path:
        return self.state_dir / TRACKING_FILE_NAME

    @property
    def log_file(self) -> Path:
        return self.state_dir / OPERATION_LOG_NAME

    @property
    def enabled(self) -> bool:
        return self.binding is not None

    def bind(self, binding: RepositoryBinding) -> None:
        """Set the repository binding (repository setup)."""
        self.binding = binding
        logger.info(f"Bound to repository {binding.full_name}")

    def unbind(self) -> None:
        """Clear the binding (repository removal). In-flight work stops at its next remote call."""
        if self.binding is not None:
            logger.info(f"Unbound from repository {self.binding.full_name}")
        self.binding = None

    def require_binding(self) -> RepositoryBinding:
        """Return the binding or stop the calling operation.

        Raises:
            SyncDisabledError: If no repository is bound
        """
        binding = self.binding
        if binding is None:
            raise SyncDisabledError()
        return binding
