"""Save directory watcher using watchdog.

Every matching file that is created or modified goes through the same
pipeline, whether it arrives as a live event or during the startup scan:

    read (with lock retry) -> integrity gate / size re-check -> digest
        -> blob store (unless already held) -> ledger.update

Deleting a save only flags its history in the ledger; blobs are left alone.
"""

import logging
import os
import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from save_enroller.config import (
    ARCHIVE_EXTENSIONS,
    READ_RETRY_ATTEMPTS,
    READ_RETRY_DELAY_SECONDS,
    SAVE_EXTENSIONS,
)
from save_enroller.integrity.archive_checker import is_archive_valid
from save_enroller.storage.blob_store import BlobStore
from save_enroller.storage.hashing import content_digest
from save_enroller.storage.ledger import VersionLedger

logger = logging.getLogger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_APPENDED = "appended"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_INVALID = "invalid"
OUTCOME_UNREADABLE = "unreadable"
OUTCOME_IGNORED = "ignored"


def read_with_retry(
    path: str,
    attempts: int = READ_RETRY_ATTEMPTS,
    delay: float = READ_RETRY_DELAY_SECONDS,
) -> bytes | None:
    """Read a whole file, retrying while another process holds it.

    Returns None if the file vanished or stayed locked for every attempt.
    """
    for attempt in range(1, attempts + 1):
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.debug("Read attempt %d/%d failed for %s: %s", attempt, attempts, path, exc)
            if attempt < attempts:
                time.sleep(delay)
    logger.warning("Giving up on %s after %d attempts", path, attempts)
    return None


class SaveWatcher:
    """Versions every save file under ``saves_dir``.

    Usage::

        watcher = SaveWatcher(saves_dir, ledger, blobs)
        watcher.start()     # observer + initial scan
        ...
        watcher.stop()
    """

    def __init__(
        self,
        saves_dir: str,
        ledger: VersionLedger,
        blobs: BlobStore,
        extensions: tuple[str, ...] = SAVE_EXTENSIONS,
        archive_extensions: tuple[str, ...] = ARCHIVE_EXTENSIONS,
        read_attempts: int = READ_RETRY_ATTEMPTS,
        read_delay: float = READ_RETRY_DELAY_SECONDS,
    ):
        self.saves_dir = Path(os.path.realpath(saves_dir))
        self.ledger = ledger
        self.blobs = blobs
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.archive_extensions = tuple(ext.lower() for ext in archive_extensions)
        self.read_attempts = read_attempts
        self.read_delay = read_delay
        self.observer = None
        self._running = False

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def matches(self, path: str) -> bool:
        return os.path.basename(path).lower().endswith(self.extensions)

    def _is_archive(self, path: str) -> bool:
        return os.path.basename(path).lower().endswith(self.archive_extensions)

    def tracked_name(self, path: str) -> str:
        """Ledger key for a path: relative to the saves dir, ``/`` separated."""
        full = Path(os.path.realpath(path))
        try:
            rel = full.relative_to(self.saves_dir)
        except ValueError:
            rel = Path(os.path.relpath(full, self.saves_dir))
        return rel.as_posix()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _file_stamp(self, path: str):
        try:
            st = os.stat(path)
        except OSError:
            return None
        return st.st_size, st.st_mtime_ns

    def process_file(self, path: str) -> str:
        """Version one save file. Returns an OUTCOME_* constant.

        The blob is written before the ledger records the digest, so a failed
        write leaves nothing behind and the next event retries it.
        """
        if not self.matches(path) or os.path.isdir(path):
            return OUTCOME_IGNORED

        archive = self._is_archive(path)
        stamp = None if archive else self._file_stamp(path)
        data = read_with_retry(path, self.read_attempts, self.read_delay)
        if data is None:
            return OUTCOME_UNREADABLE

        if archive:
            if not is_archive_valid(data):
                logger.info("Skipping incomplete or corrupt save: %s", path)
                return OUTCOME_INVALID
        elif stamp is None or stamp != self._file_stamp(path) or len(data) != stamp[0]:
            # Sidecars have no checksum; a file still being written is read again later
            logger.info("Skipping save that changed while being read: %s", path)
            return OUTCOME_UNREADABLE

        name = self.tracked_name(path)
        digest = content_digest(data)
        if self._needs_blob(name, digest):
            self.blobs.store(digest, data)

        result = self.ledger.update(name, digest)
        if result.duplicate:
            logger.debug("Unchanged: %s (%s)", name, digest[:12])
            return OUTCOME_DUPLICATE
        if result.created:
            logger.info("Tracking new save %s (%s)", name, digest[:12])
            return OUTCOME_CREATED
        logger.info("New version of %s (%s)", name, digest[:12])
        return OUTCOME_APPENDED

    def _needs_blob(self, name: str, digest: str) -> bool:
        history = self.ledger.history(name)
        if history is None or history.latest != digest:
            return True
        # Latest version already recorded: restore its blob unless retention dropped it
        state = self.ledger.state(digest)
        return state is not None and not state.deleted and not self.blobs.exists(digest)

    def forget_file(self, path: str) -> bool:
        """Flag the history of a deleted save. Blobs are kept."""
        if not self.matches(path):
            return False
        name = self.tracked_name(path)
        marked = self.ledger.mark_deleted(name)
        if marked:
            logger.info("Save deleted, history flagged: %s", name)
        return marked

    def scan(self) -> dict[str, int]:
        """Feed every matching file already on disk through the pipeline."""
        counts: dict[str, int] = {}
        for root, dirs, files in os.walk(self.saves_dir):
            dirs.sort()
            for filename in sorted(files):
                path = os.path.join(root, filename)
                if not self.matches(path):
                    continue
                try:
                    outcome = self.process_file(path)
                except OSError:
                    logger.exception("Error versioning %s during scan", path)
                    outcome = OUTCOME_UNREADABLE
                counts[outcome] = counts.get(outcome, 0) + 1
        logger.info("Initial scan of %s: %s", self.saves_dir, counts or "no saves")
        return counts

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> dict[str, int]:
        """Start watching, then scan what is already there."""
        self.observer = Observer()
        self.observer.schedule(SaveEventHandler(self), str(self.saves_dir), recursive=True)
        self.observer.start()
        self._running = True
        logger.info("Watching %s for %s", self.saves_dir, ", ".join(self.extensions))
        return self.scan()

    def stop(self):
        if self._running:
            self.observer.stop()
            self.observer.join()
            self._running = False
            logger.info("Save watcher stopped.")


class SaveEventHandler(FileSystemEventHandler):
    """Routes watchdog events into a SaveWatcher."""

    def __init__(self, watcher: SaveWatcher):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event):
        try:
            self._handle_changed(event)
        except Exception:
            logger.exception("Error handling created event for %s", event.src_path)

    def on_modified(self, event):
        try:
            self._handle_changed(event)
        except Exception:
            logger.exception("Error handling modified event for %s", event.src_path)

    def on_deleted(self, event):
        try:
            self._handle_deleted(event)
        except Exception:
            logger.exception("Error handling deleted event for %s", event.src_path)

    def on_moved(self, event):
        try:
            self._handle_moved(event)
        except Exception:
            logger.exception("Error handling moved event for %s", event.src_path)

    def _handle_changed(self, event):
        if event.is_directory or not self.watcher.matches(event.src_path):
            return
        self.watcher.process_file(event.src_path)

    def _handle_deleted(self, event):
        if event.is_directory:
            return
        self.watcher.forget_file(event.src_path)

    def _handle_moved(self, event):
        if event.is_directory:
            return
        self.watcher.forget_file(event.src_path)
        if self.watcher.matches(event.dest_path):
            self.watcher.process_file(event.dest_path)
