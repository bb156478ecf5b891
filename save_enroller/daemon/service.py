"""Daemon composition.

Wires the storage layout, ledger, blob store, retention engine, save
watcher and the two periodic tasks (ledger flush, retention) together.

Storage layout under the config root::

    <config root>/.SaveEnroller/
    +-- track.csv
    +-- time.csv
    +-- daemon.log
    +-- versions/
        +-- 3f2a9c1d.save
"""

import logging
from pathlib import Path

from save_enroller.config import (
    APP_DIR_NAME,
    TIME_FILE_NAME,
    TRACK_FILE_NAME,
    VERSIONS_DIR_NAME,
    DaemonConfig,
)
from save_enroller.daemon.scheduler import PeriodicTask
from save_enroller.monitor.save_watcher import SaveWatcher
from save_enroller.retention.retention_engine import RetentionEngine
from save_enroller.storage.blob_store import BlobStore
from save_enroller.storage.ledger import VersionLedger

logger = logging.getLogger(__name__)


def storage_dir_for(config_root: str) -> Path:
    return Path(config_root) / APP_DIR_NAME


class SaveEnrollerDaemon:
    """Owns every long-lived component of one daemon instance.

    Usage::

        with SaveEnrollerDaemon(config_root, saves_dir) as daemon:
            wait_for_parent(pid, stop_event)
    """

    def __init__(self, config_root: str, saves_dir: str, config: DaemonConfig = None):
        self.config = config or DaemonConfig()
        self.saves_dir = Path(saves_dir)
        self.storage_dir = storage_dir_for(config_root)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.ledger = VersionLedger(
            self.storage_dir / TRACK_FILE_NAME,
            self.storage_dir / TIME_FILE_NAME,
        )
        self.blobs = BlobStore(
            self.storage_dir / VERSIONS_DIR_NAME,
            extension=self.config.blob_extension,
        )
        self.retention = RetentionEngine(
            self.ledger, self.blobs, size_limit_bytes=self.config.size_limit_bytes,
        )
        self.watcher = SaveWatcher(
            str(self.saves_dir),
            self.ledger,
            self.blobs,
            extensions=self.config.extensions,
            archive_extensions=self.config.archive_extensions,
            read_attempts=self.config.read_retry_attempts,
            read_delay=self.config.read_retry_delay_seconds,
        )
        self.flush_task = PeriodicTask(
            "ledger-flush", self.config.flush_interval_seconds, self.ledger.flush,
        )
        self.retention_task = PeriodicTask(
            "retention", self.config.retention_interval_seconds, self.retention.run,
        )
        self._started = False

    def start(self):
        """Load history, watch and scan, prune once, then start the timers."""
        if self._started:
            return
        logger.info("Starting SaveEnroller daemon (storage=%s)", self.storage_dir)
        self.ledger.load()
        self.watcher.start()
        try:
            self.retention.run()
        except Exception:
            logger.exception("Initial retention pass failed")
        self.flush_task.start()
        self.retention_task.start()
        self._started = True

    def stop(self):
        """Stop all background work and persist the ledger."""
        if not self._started:
            return
        self.retention_task.stop()
        self.flush_task.stop()
        self.watcher.stop()
        self.ledger.close()
        self._started = False
        logger.info("SaveEnroller daemon stopped.")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
