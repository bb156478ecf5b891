"""Daemon configuration and retention constants.

Defaults live here as module constants; an optional JSON file
(``config/config.json``) overrides them per section::

    {
        "watcher":   {"extensions": [...], "read_retry_attempts": 5, ...},
        "ledger":    {"flush_interval_seconds": 5},
        "retention": {"interval_seconds": 300, "size_limit_bytes": ...},
        "daemon":    {"parent_poll_seconds": 1.0}
    }
"""

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG = PROJECT_ROOT / "config" / "config.json"

# Storage layout under <config root>
APP_DIR_NAME = ".SaveEnroller"
TRACK_FILE_NAME = "track.csv"
TIME_FILE_NAME = "time.csv"
VERSIONS_DIR_NAME = "versions"
LOG_FILE_NAME = "daemon.log"
BLOB_EXTENSION = ".save"

# Watched files: the save archive and its id sidecar
SAVE_EXTENSIONS = (".cok", ".cok.cid")
ARCHIVE_EXTENSIONS = (".cok",)

# Blob names keep this many hex characters from each end of the digest
DIGEST_AFFIX_LENGTH = 4

FLUSH_INTERVAL_SECONDS = 5.0
RETENTION_INTERVAL_SECONDS = 300.0
SIZE_LIMIT_BYTES = 10 * 1024 * 1024 * 1024

READ_RETRY_ATTEMPTS = 5
READ_RETRY_DELAY_SECONDS = 0.5

PARENT_POLL_SECONDS = 1.0

# Literal accepted in place of a parent PID
DEBUG_MARKER = "debug"

# JSON section -> {json key: DaemonConfig attribute}
_SECTIONS = {
    "watcher": {
        "extensions": "extensions",
        "archive_extensions": "archive_extensions",
        "read_retry_attempts": "read_retry_attempts",
        "read_retry_delay_seconds": "read_retry_delay_seconds",
    },
    "ledger": {
        "flush_interval_seconds": "flush_interval_seconds",
    },
    "retention": {
        "interval_seconds": "retention_interval_seconds",
        "size_limit_bytes": "size_limit_bytes",
        "blob_extension": "blob_extension",
    },
    "daemon": {
        "parent_poll_seconds": "parent_poll_seconds",
    },
}


@dataclass
class DaemonConfig:
    """Tunables for one daemon instance."""
    extensions: tuple[str, ...] = SAVE_EXTENSIONS
    archive_extensions: tuple[str, ...] = ARCHIVE_EXTENSIONS
    read_retry_attempts: int = READ_RETRY_ATTEMPTS
    read_retry_delay_seconds: float = READ_RETRY_DELAY_SECONDS
    flush_interval_seconds: float = FLUSH_INTERVAL_SECONDS
    retention_interval_seconds: float = RETENTION_INTERVAL_SECONDS
    size_limit_bytes: int = SIZE_LIMIT_BYTES
    blob_extension: str = BLOB_EXTENSION
    parent_poll_seconds: float = PARENT_POLL_SECONDS
    source: str | None = field(default=None, compare=False)


def _normalize_extensions(values) -> tuple[str, ...]:
    return tuple(
        (ext if ext.startswith(".") else f".{ext}").lower()
        for ext in values
    )


def load_config(config_path: str = None) -> DaemonConfig:
    """Build a DaemonConfig from defaults plus an optional JSON file.

    An explicitly requested file that does not exist is an error; a missing
    default file just means "use the defaults".
    """
    explicit = config_path is not None
    path = Path(config_path) if explicit else DEFAULT_CONFIG
    if not path.exists():
        if explicit:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return DaemonConfig()

    with open(path) as f:
        raw = json.load(f)

    values = {}
    for section, keys in _SECTIONS.items():
        section_cfg = raw.get(section, {})
        for key, value in section_cfg.items():
            if key not in keys:
                logger.warning("Ignoring unknown config key %s.%s", section, key)
                continue
            values[keys[key]] = value
    for section in raw:
        if section not in _SECTIONS:
            logger.warning("Ignoring unknown config section %s", section)

    for key in ("extensions", "archive_extensions"):
        if key in values:
            values[key] = _normalize_extensions(values[key])

    known = {f.name for f in fields(DaemonConfig)}
    config = DaemonConfig(**{k: v for k, v in values.items() if k in known})
    config.source = str(path)
    return config
