"""Version history ledger.

Owns two tables and their on-disk persistence:

    track.csv   name, base_digest, digest_1, digest_2, ...
    time.csv    digest, observed_at (ISO 8601), deleted (True/False)

Both maps are guarded by a single re-entrant lock. Every mutation bumps a
dirty counter; ``flush()`` rewrites both files only when that counter moved
since the last successful write.
"""

import csv
import logging
import os
import shutil
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator

logger = logging.getLogger(__name__)

# DateTimeOffset.ToString() output found in tables written by the old daemon
LEGACY_TIME_FORMATS = (
    "%m/%d/%Y %I:%M:%S %p %z",
    "%m/%d/%Y %H:%M:%S %z",
    "%Y/%m/%d %H:%M:%S %z",
)

# Stands in for bytes that are not valid UTF-8 when reading the tables
UNDECODABLE = "\ufffd"


def now_local() -> datetime:
    """Timezone-aware local time."""
    return datetime.now().astimezone()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 or legacy timestamp into an aware datetime."""
    value = value.strip()
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        for fmt in LEGACY_TIME_FORMATS:
            try:
                ts = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
        else:
            raise ValueError(f"Unrecognised timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.astimezone()
    return ts


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise ValueError(f"Unrecognised boolean: {value!r}")


@dataclass
class FileVersionHistory:
    """Chronological digests observed for one tracked file name."""
    name: str
    base_digest: str
    versions: list[str] = field(default_factory=list)

    @property
    def latest(self) -> str | None:
        return self.versions[-1] if self.versions else None


@dataclass
class VersionState:
    """When a digest was recorded and whether its blob is gone."""
    digest: str
    observed_at: datetime
    deleted: bool = False


@dataclass(frozen=True)
class UpdateResult:
    created: bool
    duplicate: bool


class LedgerView:
    """Read-modify-write access handed out by ``VersionLedger.exclusive()``.

    Only valid inside the ``with`` block that produced it.
    """

    def __init__(self, ledger: "VersionLedger"):
        self._ledger = ledger

    def names(self) -> list[str]:
        return list(self._ledger._records)

    def versions_of(self, name: str) -> list[str]:
        record = self._ledger._records.get(name)
        return list(record.versions) if record else []

    def state_of(self, digest: str) -> VersionState | None:
        state = self._ledger._states.get(digest)
        return replace(state) if state else None

    def mark_digest_deleted(self, digest: str) -> bool:
        state = self._ledger._states.get(digest)
        if state is None:
            return False
        state.deleted = True
        self._ledger._version += 1
        return True


class VersionLedger:
    """Thread-safe, persisted mapping of file names to version histories.

    Usage::

        ledger = VersionLedger("track.csv", "time.csv")
        ledger.load()
        blobs.store(digest, data)
        result = ledger.update("slot1.cok", digest)
        ledger.flush()
    """

    def __init__(
        self,
        track_file: str,
        time_file: str,
        clock: Callable[[], datetime] = now_local,
    ):
        self.track_file = Path(track_file)
        self.time_file = Path(time_file)
        self._clock = clock
        self._lock = threading.RLock()
        self._records: dict[str, FileVersionHistory] = {}
        self._states: dict[str, VersionState] = {}
        self._version = 0
        self._flushed_version = 0

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self):
        """Read both tables from disk, creating empty ones if absent.

        Malformed rows are skipped; the file they came from is copied aside
        as ``<name>.corrupt`` before the next flush rewrites it. An unreadable
        file is not survivable (flushing would wipe its history), so OSError
        propagates.
        """
        for path in (self.track_file, self.time_file):
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                path.touch()

        records = self._read_records()
        states = self._read_states()

        with self._lock:
            self._records = records
            self._states = states
            self._version = 0
            self._flushed_version = 0

        orphans = {
            digest
            for record in records.values()
            for digest in record.versions
            if digest not in states
        }
        if orphans:
            logger.warning(
                "%d tracked digest(s) have no timestamp and will be ignored by retention",
                len(orphans),
            )
        logger.info(
            "Ledger loaded: %d file(s), %d version(s)", len(records), len(states)
        )

    def _read_rows(self, path: Path) -> Iterator[tuple[int, list[str]]]:
        undecodable = 0
        with open(path, newline="", encoding="utf-8", errors="replace") as f:
            reader = csv.reader(f)
            try:
                for row in reader:
                    if not any(cell.strip() for cell in row):
                        continue
                    if any(UNDECODABLE in cell for cell in row):
                        logger.warning(
                            "Skipping undecodable row %d in %s", reader.line_num, path
                        )
                        undecodable += 1
                        continue
                    yield reader.line_num, row
            except csv.Error as exc:
                logger.warning(
                    "Stopped reading %s at line %d: %s", path, reader.line_num, exc
                )
                self._preserve_corrupt(path)
        if undecodable:
            self._preserve_corrupt(path)

    def _read_records(self) -> dict[str, FileVersionHistory]:
        records: dict[str, FileVersionHistory] = {}
        bad = 0
        for line, row in self._read_rows(self.track_file):
            if len(row) < 2 or not row[0] or not row[1]:
                logger.warning("Skipping malformed row %d in %s", line, self.track_file)
                bad += 1
                continue
            name, base = row[0], row[1]
            versions = [v for v in row[2:] if v] or [base]
            records[name] = FileVersionHistory(name, base, versions)
        if bad:
            self._preserve_corrupt(self.track_file)
        return records

    def _read_states(self) -> dict[str, VersionState]:
        states: dict[str, VersionState] = {}
        bad = 0
        for line, row in self._read_rows(self.time_file):
            try:
                if len(row) < 3 or not row[0]:
                    raise ValueError("expected digest, time, deleted")
                state = VersionState(row[0], parse_timestamp(row[1]), parse_bool(row[2]))
            except ValueError as exc:
                logger.warning(
                    "Skipping malformed row %d in %s: %s", line, self.time_file, exc
                )
                bad += 1
                continue
            states[state.digest] = state
        if bad:
            self._preserve_corrupt(self.time_file)
        return states

    @staticmethod
    def _preserve_corrupt(path: Path):
        backup = path.with_name(path.name + ".corrupt")
        try:
            shutil.copy2(path, backup)
            logger.warning("Copied unparseable %s to %s", path, backup)
        except OSError as exc:
            logger.error("Could not preserve %s: %s", path, exc)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update(self, name: str, digest: str, deleted: bool = False) -> UpdateResult:
        """Record ``digest`` as the newest version of ``name``.

        A digest equal to the current latest version is a duplicate and
        changes nothing. A digest already known (from this or another file)
        keeps its first ``observed_at``; only its deleted flag is reset.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(name)
            if record is not None and record.latest == digest:
                return UpdateResult(created=False, duplicate=True)

            if record is None:
                self._records[name] = FileVersionHistory(name, digest, [digest])
            else:
                record.versions.append(digest)
            self._observe(digest, now, deleted)
            self._version += 1
            return UpdateResult(created=record is None, duplicate=False)

    def _observe(self, digest: str, now: datetime, deleted: bool):
        state = self._states.get(digest)
        if state is None:
            self._states[digest] = VersionState(digest, now, deleted)
        else:
            state.deleted = deleted

    def mark_deleted(self, name: str) -> bool:
        """Flag every version of ``name`` as belonging to a deleted file."""
        with self._lock:
            record = self._records.get(name)
            if record is None:
                return False
            for digest in record.versions:
                state = self._states.get(digest)
                if state is not None:
                    state.deleted = True
            self._version += 1
            return True

    def touch(self):
        """Force the next flush to write."""
        with self._lock:
            self._version += 1

    @contextmanager
    def exclusive(self) -> Iterator[LedgerView]:
        """Hold the ledger lock for a whole read-modify-write sequence."""
        with self._lock:
            yield LedgerView(self)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def flush(self) -> bool:
        """Rewrite both tables if anything changed. Returns True if written."""
        with self._lock:
            if self._version == self._flushed_version:
                return False
            target = self._version
            try:
                self._write_atomic(self.track_file, self._track_rows())
                self._write_atomic(self.time_file, self._time_rows())
            except OSError:
                logger.exception("Ledger flush failed, will retry on next tick")
                return False
            self._flushed_version = target
        logger.debug("Ledger flushed (version %d)", target)
        return True

    def _track_rows(self) -> list[list[str]]:
        return [
            [rec.name, rec.base_digest, *rec.versions]
            for rec in self._records.values()
        ]

    def _time_rows(self) -> list[list[str]]:
        return [
            [state.digest, state.observed_at.isoformat(), str(state.deleted)]
            for state in self._states.values()
        ]

    @staticmethod
    def _write_atomic(path: Path, rows: list[list[str]]):
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerows(rows)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise

    def close(self):
        self.flush()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def history(self, name: str) -> FileVersionHistory | None:
        with self._lock:
            record = self._records.get(name)
            if record is None:
                return None
            return FileVersionHistory(record.name, record.base_digest, list(record.versions))

    def state(self, digest: str) -> VersionState | None:
        with self._lock:
            state = self._states.get(digest)
            return replace(state) if state else None

    def names(self) -> list[str]:
        with self._lock:
            return list(self._records)

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._version != self._flushed_version

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
