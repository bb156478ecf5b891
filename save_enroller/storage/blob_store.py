"""Content-addressed, write-once storage for version blobs.

Blobs are named by a shortened digest to keep file names short::

    versions/
    +-- 3f2a9c1d.save        (digest 3f2a....9c1d)
    +-- 7b01e4f0.save

Two different digests can shorten to the same name. When that happens the
second blob is stored under its full digest instead, and ``path()`` prefers
a full-digest file whenever one exists.
"""

import logging
import os
from pathlib import Path

from save_enroller.config import BLOB_EXTENSION, DIGEST_AFFIX_LENGTH
from save_enroller.storage.hashing import file_digest

logger = logging.getLogger(__name__)


def shorten_digest(digest: str, affix: int = DIGEST_AFFIX_LENGTH) -> str:
    """Keep the first and last ``affix`` characters of a digest.

    3f2a0b...c49c1d  ->  3f2a9c1d
    """
    if not digest or len(digest) < affix * 2:
        return digest
    return digest[:affix] + digest[-affix:]


class BlobStore:
    """Stores one immutable backup file per distinct digest."""

    def __init__(self, versions_dir: str, extension: str = BLOB_EXTENSION):
        self.versions_dir = Path(versions_dir)
        self.extension = extension
        self.versions_dir.mkdir(parents=True, exist_ok=True)

    def _short_path(self, digest: str) -> Path:
        return self.versions_dir / f"{shorten_digest(digest)}{self.extension}"

    def _full_path(self, digest: str) -> Path:
        return self.versions_dir / f"{digest}{self.extension}"

    def path(self, digest: str) -> Path:
        """Physical location of the blob for ``digest``."""
        full = self._full_path(digest)
        if full.exists():
            return full
        return self._short_path(digest)

    def exists(self, digest: str) -> bool:
        return self.path(digest).is_file()

    def store(self, digest: str, data: bytes) -> bool:
        """Write ``data`` for ``digest`` unless already stored.

        Returns True if a new file was written.
        """
        dest = self.path(digest)
        if dest.exists():
            if dest == self._full_path(digest) or file_digest(str(dest)) == digest:
                return False
            logger.warning(
                "Blob name collision at %s, storing %s under its full digest",
                dest.name, digest,
            )
            dest = self._full_path(digest)
            if dest.exists():
                return False

        tmp = dest.with_name(f".{dest.name}.{os.getpid()}.{id(data)}.tmp")
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if dest.exists():
                # Another pipeline won the race with identical content
                tmp.unlink()
                return False
            os.replace(tmp, dest)
        except OSError:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise
        logger.info("Stored version %s -> %s (%d bytes)", digest[:12], dest.name, len(data))
        return True

    def delete(self, digest: str, verify: bool = False) -> bool:
        """Remove the blob for ``digest``. Returns True if a file was removed.

        With ``verify``, a short-name blob is only removed if its content
        still hashes to ``digest``; after a collision the name may hold
        another version's data.
        """
        target = self.path(digest)
        if verify and target == self._short_path(digest) and target.exists():
            if file_digest(str(target)) != digest:
                logger.info("Not deleting %s: it holds a different version", target.name)
                return False
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted version %s (%s)", digest[:12], target.name)
        return True

    def size_of(self, digest: str) -> int:
        try:
            return self.path(digest).stat().st_size
        except OSError:
            return 0

    def total_size(self) -> int:
        """Sum of the sizes of every file under the versions directory."""
        total = 0
        for root, _dirs, files in os.walk(self.versions_dir):
            for name in files:
                try:
                    total += os.path.getsize(os.path.join(root, name))
                except OSError:
                    continue
        return total
