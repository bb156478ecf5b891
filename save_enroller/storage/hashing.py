"""Content digests used as version identity."""

import hashlib

# SHA-1 keeps digests compatible with ledgers written by earlier releases.
HASH_ALGORITHM = "sha1"
CHUNK_SIZE = 65536


def content_digest(data: bytes) -> str:
    """Return the lowercase hex digest of ``data``."""
    return hashlib.new(HASH_ALGORITHM, data).hexdigest()


def file_digest(path: str) -> str | None:
    """Return the hex digest of a file on disk, or None if unreadable."""
    h = hashlib.new(HASH_ALGORITHM)
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
        return h.hexdigest()
    except OSError:
        return None
