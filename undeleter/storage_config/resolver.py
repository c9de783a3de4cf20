"""Resolve settings and command line overrides into an effective monitor configuration."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from undeleter.config import Settings

from undeleter.database.source import DEFAULT_PATH_IOS
from undeleter.errors import ConfigError

# Attachment paths in the store are written relative to this root on macOS
DEFAULT_ATTACHMENT_ROOT = "~/Library/Messages/Attachments"

ATTACHMENTS_DIR = "attachments"
STAGING_DIR = "tmp"
DELETED_DIR = "deleted"
LEDGER_FILE = "deletions.db"
LOGFILE = "DELETIONS.md"


class Platform(str, Enum):
    MACOS = "macos"
    IOS = "ios"

    @classmethod
    def from_cli(cls, value: str) -> Optional["Platform"]:
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class OutputPaths:
    """Directory layout under the output root."""

    root: Path

    @property
    def attachments(self) -> Path:
        return self.root / ATTACHMENTS_DIR

    @property
    def staging(self) -> Path:
        return self.attachments / STAGING_DIR

    @property
    def deleted(self) -> Path:
        return self.root / DELETED_DIR

    @property
    def ledger(self) -> Path:
        return self.root / LEDGER_FILE

    @property
    def logfile(self) -> Path:
        return self.root / LOGFILE


@dataclass(frozen=True)
class MonitorConfig:
    """Resolved, validated configuration for one monitor process."""

    db_path: Path
    platform: Platform
    window_size: int
    poll_interval: float
    output: OutputPaths
    conversation_filter: Optional[str] = None
    attachment_root: Optional[str] = None
    custom_name: Optional[str] = None
    use_caller_id: bool = False
    io_workers: int = 4
    reporter_max_retries: int = 3
    reporter_retry_backoff: float = 0.5
    database_echo: bool = False

    @property
    def store_file(self) -> Path:
        """Path of the SQLite file to open for the selected platform."""
        if self.platform == Platform.IOS:
            return self.db_path / DEFAULT_PATH_IOS
        return self.db_path


def resolve_monitor_config(settings: "Settings", **overrides: Any) -> MonitorConfig:
    """
    Resolve the effective configuration.

    Overrides (from the command line) win over settings when they are not None.
    Raises ConfigError on any invalid combination; nothing is created on disk.
    """

    def pick(name: str):
        value = overrides.get(name)
        return getattr(settings, name) if value is None else value

    window_size = pick("window_size")
    if window_size is None:
        raise ConfigError("A window size is required (--check-last-n or UNDELETER_WINDOW_SIZE)")
    if not isinstance(window_size, int) or isinstance(window_size, bool) or window_size <= 0:
        raise ConfigError(f"Window size must be a positive integer, got {window_size!r}")

    poll_interval = float(pick("poll_interval"))
    if poll_interval <= 0:
        raise ConfigError(f"Poll interval must be positive, got {poll_interval}")

    io_workers = pick("io_workers")
    if io_workers < 1:
        raise ConfigError(f"At least one attachment worker is required, got {io_workers}")

    retries = pick("reporter_max_retries")
    if retries < 0:
        raise ConfigError(f"Reporter retries cannot be negative, got {retries}")

    custom_name = pick("custom_name")
    use_caller_id = bool(pick("use_caller_id"))
    if custom_name and use_caller_id:
        raise ConfigError("--custom-name is enabled; --use-caller-id is disallowed")

    db_path = Path(pick("db_path")).expanduser()
    platform = _resolve_platform(pick("platform"), db_path)

    attachment_root = pick("attachment_root")
    if attachment_root:
        if not Path(attachment_root).expanduser().exists():
            raise ConfigError(f"Supplied attachment root `{attachment_root}` does not exist!")

    conversation_filter = pick("conversation_filter")
    if conversation_filter is not None and not conversation_filter.strip():
        conversation_filter = None

    return MonitorConfig(
        db_path=db_path,
        platform=platform,
        window_size=window_size,
        poll_interval=poll_interval,
        output=OutputPaths(Path(pick("export_path")).expanduser()),
        conversation_filter=conversation_filter,
        attachment_root=attachment_root,
        custom_name=custom_name,
        use_caller_id=use_caller_id,
        io_workers=io_workers,
        reporter_max_retries=retries,
        reporter_retry_backoff=float(pick("reporter_retry_backoff")),
        database_echo=bool(pick("database_echo")),
    )


def _resolve_platform(value: Optional[str], db_path: Path) -> Platform:
    """Use the requested platform or detect it from the database path."""
    if value:
        platform = Platform.from_cli(value)
        if platform is None:
            raise ConfigError(f"{value} is not a valid platform! Must be one of <macOS, iOS>")
        return platform
    return determine_platform(db_path)


def determine_platform(db_path: Path) -> Platform:
    """
    Detect the platform a database path belongs to.

    An iOS backup root contains the hashed messages database; anything else
    is treated as a macOS chat.db (a missing file is reported when opened).
    """
    if db_path.as_posix().endswith(DEFAULT_PATH_IOS):
        raise ConfigError(
            "The path provided points to a database inside of an iOS backup, not the root of the backup."
        )
    if (db_path / DEFAULT_PATH_IOS).exists():
        return Platform.IOS
    return Platform.MACOS
