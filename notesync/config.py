"""Configuration for notesync.

Settings are stored as JSON in ``~/.notesync/config.json`` (or the file named
by ``NOTESYNC_CONFIG``). Environment variables override the file; a ``.env``
file in the working directory is loaded by the CLI before the config is read.

Example config.json:
    {
        "repo_url": "https://github.com/alice/notes",
        "token": "ghp_...",
        "branch": "main",
        "debounce_seconds": 30,
        "sync_interval_seconds": 300
    }
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .context import OPERATION_LOG_NAME, TRACKING_FILE_NAME, SyncContext
from .exceptions import ConfigError
from .models import RepositoryBinding

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".notesync"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"

CONFIG_PATH_ENV = "NOTESYNC_CONFIG"

# config key -> environment variables, first match wins
ENV_OVERRIDES = {
    "repo_url": ("NOTESYNC_REPO_URL",),
    "token": ("NOTESYNC_GITHUB_TOKEN", "GITHUB_TOKEN"),
    "branch": ("NOTESYNC_BRANCH",),
    "notes_dir": ("NOTESYNC_NOTES_DIR",),
    "debounce_seconds": ("NOTESYNC_DEBOUNCE",),
    "sync_interval_seconds": ("NOTESYNC_SYNC_INTERVAL",),
    "request_timeout": ("NOTESYNC_TIMEOUT",),
}

_FLOAT_KEYS = ("debounce_seconds", "sync_interval_seconds", "request_timeout")

_REPO_URL_PATTERNS = [
    re.compile(r"^https?://(?:www\.)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$"),
    re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$"),
    re.compile(r"^([A-Za-z0-9][A-Za-z0-9-]*)/([A-Za-z0-9._-]+?)(?:\.git)?$"),
]


def parse_repo_url(url: str) -> tuple[str, str]:
    """Split a GitHub repository URL into (owner, name).

    Accepts ``https://github.com/owner/name``, with or without ``.git``,
    ``git@github.com:owner/name.git`` and the short form ``owner/name``.

    Raises:
        ConfigError: If the URL is not a GitHub repository URL
    """
    url = (url or "").strip()
    for pattern in _REPO_URL_PATTERNS:
        match = pattern.match(url)
        if match:
            return match.group(1), match.group(2)
    raise ConfigError(f"Not a GitHub repository URL: {url!r}")


@dataclass
class NoteSyncConfig:
    """Persisted notesync settings."""

    repo_url: str | None = None
    token: str | None = field(default=None, repr=False)
    branch: str | None = None
    notes_dir: Path | None = None
    debounce_seconds: float = 30.0
    sync_interval_seconds: float = 300.0
    request_timeout: float = 30.0
    enabled: bool = True
    last_sync: datetime | None = None
    config_path: Path = field(default=DEFAULT_CONFIG_PATH, compare=False)

    @classmethod
    def load(cls, path: str | Path | None = None, use_env: bool = True) -> "NoteSyncConfig":
        """Load configuration from disk, then apply environment overrides.

        Args:
            path: Config file (default: ``NOTESYNC_CONFIG`` or ~/.notesync/config.json)
            use_env: Apply NOTESYNC_* environment overrides

        Raises:
            ConfigError: If the file exists but is not valid JSON
        """
        if path is None:
            path = os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
        path = Path(path).expanduser()

        data: dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {path}: {e}")
            except OSError as e:
                raise ConfigError(f"Failed to read {path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"Config file {path} must contain a JSON object")
        else:
            logger.debug(f"No config file at {path}")

        if use_env:
            for key, env_vars in ENV_OVERRIDES.items():
                for env_var in env_vars:
                    value = os.environ.get(env_var)
                    if value:
                        data[key] = value
                        break

        return cls.from_dict(data, config_path=path)

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path = DEFAULT_CONFIG_PATH) -> "NoteSyncConfig":
        config = cls(config_path=Path(config_path))
        config.repo_url = data.get("repo_url") or None
        config.token = data.get("token") or None
        config.branch = data.get("branch") or None
        config.enabled = bool(data.get("enabled", True))

        if data.get("notes_dir"):
            config.notes_dir = Path(data["notes_dir"]).expanduser()

        for key in _FLOAT_KEYS:
            if data.get(key) is not None:
                try:
                    setattr(config, key, float(data[key]))
                except (TypeError, ValueError):
                    raise ConfigError(f"{key} must be a number, got {data[key]!r}")

        if data.get("last_sync"):
            try:
                config.last_sync = datetime.fromisoformat(data["last_sync"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid last_sync value: {data['last_sync']!r}")

        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_url": self.repo_url,
            "token": self.token,
            "branch": self.branch,
            "notes_dir": str(self.notes_dir) if self.notes_dir else None,
            "debounce_seconds": self.debounce_seconds,
            "sync_interval_seconds": self.sync_interval_seconds,
            "request_timeout": self.request_timeout,
            "enabled": self.enabled,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
        }

    def save(self) -> None:
        """Write the config file. The file holds the token, so it is private."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        self.config_path.chmod(0o600)
        logger.debug(f"Saved config to {self.config_path}")

    @property
    def home(self) -> Path:
        return self.config_path.parent

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.repo_url and self.token)

    @property
    def repository(self) -> tuple[str, str] | None:
        if not self.repo_url:
            return None
        try:
            return parse_repo_url(self.repo_url)
        except ConfigError:
            return None

    @property
    def resolved_notes_dir(self) -> Path:
        if self.notes_dir is not None:
            return Path(self.notes_dir).expanduser()
        repository = self.repository
        name = repository[1] if repository else "default"
        return self.home / "repos" / name

    @property
    def state_dir(self) -> Path:
        repository = self.repository
        key = f"{repository[0]}__{repository[1]}" if repository else "default"
        return self.home / "state" / key

    @property
    def tracking_file(self) -> Path:
        return self.state_dir / TRACKING_FILE_NAME

    @property
    def log_file(self) -> Path:
        return self.state_dir / OPERATION_LOG_NAME

    def validate(self) -> tuple[bool, list[str]]:
        """Check the configuration.

        Returns:
            (is_valid, list of error messages)
        """
        errors = []

        if not self.repo_url:
            errors.append("No repository configured (repo_url)")
        else:
            try:
                parse_repo_url(self.repo_url)
            except ConfigError as e:
                errors.append(str(e))

        if not self.token:
            errors.append("No access token configured (token or GITHUB_TOKEN)")

        for key in _FLOAT_KEYS:
            if getattr(self, key) <= 0:
                errors.append(f"{key} must be positive")

        return len(errors) == 0, errors

    def binding(self) -> RepositoryBinding | None:
        """The repository binding, or None while sync is disabled."""
        if not self.is_configured:
            return None
        repository = self.repository
        if repository is None:
            return None
        owner, name = repository
        return RepositoryBinding(owner=owner, name=name, credential=self.token, branch=self.branch)

    def context(self) -> SyncContext:
        return SyncContext(
            notes_dir=self.resolved_notes_dir,
            state_dir=self.state_dir,
            binding=self.binding(),
        )

    def setup(
        self,
        repo_url: str,
        token: str,
        notes_dir: str | Path | None = None,
        branch: str | None = None,
    ) -> RepositoryBinding:
        """Configure the repository and save.

        Raises:
            ConfigError: If the URL or token is invalid
        """
        parse_repo_url(repo_url)
        if not token or not token.strip():
            raise ConfigError("Access token cannot be empty")

        self.repo_url = repo_url.strip()
        self.token = token.strip()
        self.branch = branch or None
        self.notes_dir = Path(notes_dir).expanduser() if notes_dir else None
        self.enabled = True
        self.last_sync = None
        self.save()

        binding = self.binding()
        logger.info(f"Configured repository {binding.full_name}")
        return binding

    def remove(self) -> None:
        """Forget the repository and credential and save."""
        self.repo_url = None
        self.token = None
        self.branch = None
        self.notes_dir = None
        self.last_sync = None
        self.save()
        logger.info("Removed repository configuration")

    def record_sync(self, when: datetime | None = None) -> None:
        self.last_sync = when or datetime.now(timezone.utc)
        self.save()
