"""Tiered retention and size-cap eviction for stored versions.

Per tracked file, versions are thinned by age:

    < 1 day       keep everything
    1 - 7 days    per calendar day, keep first, middle and last if > 3
    7 - 30 days   keep the newest 4 across the whole band
    >= 30 days    keep the newest version of each calendar month

Afterwards, if the versions directory is still above the size limit, the
oldest surviving versions are evicted, sparing monthly archives until
nothing else is left.

Eviction flags the digest deleted in the ledger and removes its blob. The
digest stays in the file's history.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import groupby

from save_enroller.config import SIZE_LIMIT_BYTES
from save_enroller.storage.blob_store import BlobStore
from save_enroller.storage.ledger import LedgerView, VersionLedger, now_local

logger = logging.getLogger(__name__)

RECENT_DAYS = 1
DAILY_DAYS = 7
WEEKLY_DAYS = 30

DAILY_KEEP_THRESHOLD = 3
WEEKLY_KEEP_COUNT = 4


@dataclass
class RetentionReport:
    """Outcome of one retention pass."""
    timestamp: str
    tier_evicted: list[str] = field(default_factory=list)
    size_evicted: list[str] = field(default_factory=list)
    bytes_before: int = 0
    bytes_after: int = 0
    delete_errors: int = 0

    @property
    def evicted(self) -> list[str]:
        return self.tier_evicted + self.size_evicted


def split_by_time(
    versions: list[str], times: dict[str, datetime], threshold: datetime,
) -> tuple[list[str], list[str]]:
    """Split into (observed at or before threshold, observed after it)."""
    older_or_equal, newer = [], []
    for ver in versions:
        if ver not in times:
            continue
        if times[ver] <= threshold:
            older_or_equal.append(ver)
        else:
            newer.append(ver)
    return older_or_equal, newer


def plan_tier_evictions(
    versions: list[str], times: dict[str, datetime], now: datetime,
) -> list[str]:
    """Return the digests the age tiers would evict for one file.

    ``versions`` must already be sorted oldest first; digests missing from
    ``times`` are never evicted.
    """
    to_remove: list[str] = []

    older_than_1d, _ = split_by_time(versions, times, now - timedelta(days=RECENT_DAYS))

    older_than_7d, within_7d = split_by_time(
        older_than_1d, times, now - timedelta(days=DAILY_DAYS)
    )
    for _day, group in groupby(within_7d, key=lambda v: times[v].date()):
        day_versions = list(group)
        count = len(day_versions)
        if count > DAILY_KEEP_THRESHOLD:
            keep = {0, count // 2, count - 1}
            to_remove.extend(v for i, v in enumerate(day_versions) if i not in keep)

    older_than_30d, within_30d = split_by_time(
        older_than_7d, times, now - timedelta(days=WEEKLY_DAYS)
    )
    if len(within_30d) > WEEKLY_KEEP_COUNT:
        to_remove.extend(within_30d[:len(within_30d) - WEEKLY_KEEP_COUNT])

    for _month, group in groupby(older_than_30d, key=lambda v: (times[v].year, times[v].month)):
        month_versions = list(group)
        to_remove.extend(month_versions[:-1])

    return to_remove


class RetentionEngine:
    """Applies the retention policy to a ledger and its blob store.

    Usage::

        engine = RetentionEngine(ledger, blobs)
        report = engine.run()
    """

    def __init__(
        self,
        ledger: VersionLedger,
        blobs: BlobStore,
        size_limit_bytes: int = SIZE_LIMIT_BYTES,
    ):
        self.ledger = ledger
        self.blobs = blobs
        self.size_limit_bytes = size_limit_bytes

    def run(self, now: datetime | None = None) -> RetentionReport:
        """Run one full retention pass."""
        now = now or now_local()
        report = RetentionReport(timestamp=now.isoformat())

        with self.ledger.exclusive() as view:
            self._apply_tiers(view, now, report)
            self._enforce_size_limit(view, now, report)
            self.ledger.touch()

        if report.evicted:
            logger.info(
                "Retention pass: %d tier eviction(s), %d size eviction(s), %d -> %d bytes",
                len(report.tier_evicted), len(report.size_evicted),
                report.bytes_before, report.bytes_after,
            )
        else:
            logger.debug("Retention pass: nothing to evict")
        return report

    # ------------------------------------------------------------------
    # Age tiers
    # ------------------------------------------------------------------

    @staticmethod
    def _sorted_versions(view: LedgerView, name: str) -> tuple[list[str], dict[str, datetime]]:
        times: dict[str, datetime] = {}
        for digest in view.versions_of(name):
            state = view.state_of(digest)
            if state is not None:
                times[digest] = state.observed_at
        ordered = sorted(times, key=lambda d: times[d])
        return ordered, times

    def _apply_tiers(self, view: LedgerView, now: datetime, report: RetentionReport):
        evict: dict[str, None] = {}
        for name in view.names():
            ordered, times = self._sorted_versions(view, name)
            if not ordered:
                continue
            for digest in plan_tier_evictions(ordered, times, now):
                evict[digest] = None

        for digest in evict:
            state = view.state_of(digest)
            newly_flagged = state is not None and not state.deleted
            view.mark_digest_deleted(digest)
            removed = False
            try:
                # A blob lingering for an already flagged digest may share its
                # short name with a newer version
                removed = self.blobs.delete(digest, verify=not newly_flagged)
            except OSError as exc:
                report.delete_errors += 1
                logger.error("Failed to delete backup for version %s: %s", digest, exc)
            if newly_flagged or removed:
                report.tier_evicted.append(digest)

    # ------------------------------------------------------------------
    # Size cap
    # ------------------------------------------------------------------

    def _is_monthly_archive(
        self, view: LedgerView, name: str, time: datetime, now: datetime,
    ) -> bool:
        """True if this is the only surviving version of its file and month."""
        if time >= now - timedelta(days=WEEKLY_DAYS):
            return False
        same_month = set()
        for digest in view.versions_of(name):
            state = view.state_of(digest)
            if (state is not None and not state.deleted
                    and state.observed_at.year == time.year
                    and state.observed_at.month == time.month):
                same_month.add(digest)
        return len(same_month) == 1

    def _evict_for_size(self, view: LedgerView, digest: str, report: RetentionReport) -> int:
        freed = 0
        try:
            size = self.blobs.size_of(digest)
            if self.blobs.delete(digest):
                freed = size
        except OSError as exc:
            report.delete_errors += 1
            logger.error("Failed to delete backup for version %s: %s", digest, exc)
        view.mark_digest_deleted(digest)
        report.size_evicted.append(digest)
        return freed

    def _enforce_size_limit(self, view: LedgerView, now: datetime, report: RetentionReport):
        total = self.blobs.total_size()
        report.bytes_before = total
        report.bytes_after = total
        if total <= self.size_limit_bytes:
            return

        candidates: list[tuple[str, str, datetime]] = []
        for name in view.names():
            for digest in dict.fromkeys(view.versions_of(name)):
                state = view.state_of(digest)
                if state is not None and not state.deleted:
                    candidates.append((name, digest, state.observed_at))
        candidates.sort(key=lambda c: c[2])

        logger.warning(
            "Backups use %d bytes, above the %d byte limit; evicting oldest versions",
            total, self.size_limit_bytes,
        )

        # First pass spares monthly archives
        for name, digest, time in candidates:
            if total <= self.size_limit_bytes:
                break
            state = view.state_of(digest)
            if state is None or state.deleted:
                continue
            if self._is_monthly_archive(view, name, time, now):
                continue
            total -= self._evict_for_size(view, digest, report)

        if total > self.size_limit_bytes:
            logger.warning("Still over the size limit, evicting monthly archives")
            for _name, digest, _time in candidates:
                if total <= self.size_limit_bytes:
                    break
                state = view.state_of(digest)
                if state is None or state.deleted:
                    continue
                total -= self._evict_for_size(view, digest, report)

        report.bytes_after = total
