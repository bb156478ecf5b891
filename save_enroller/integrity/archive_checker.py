"""Archive integrity gate.

Save files are ZIP containers. A file caught mid-write parses as bytes but
not as a consistent archive, so every regular entry's CRC-32 is recomputed
from its decompressed content and compared with the central directory.
"""

import io
import logging
import zipfile
import zlib

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


def _entry_crc32(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> int:
    crc = 0
    with zf.open(info) as stream:
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            crc = zlib.crc32(chunk, crc)
    return crc & 0xFFFFFFFF


def failed_entries(data: bytes) -> list[str]:
    """Return the names of entries whose recomputed CRC does not match.

    Raises whatever the zip reader raises when the container is unreadable.
    """
    failed = []
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            try:
                actual = _entry_crc32(zf, info)
            except zipfile.BadZipFile:
                # zipfile checks the CRC itself at end of stream
                failed.append(info.filename)
                continue
            if actual != info.CRC:
                failed.append(info.filename)
    return failed


def is_archive_valid(data: bytes) -> bool:
    """Return True if ``data`` is a well-formed archive with matching CRCs."""
    if not data:
        return False
    try:
        failed = failed_entries(data)
    except Exception as exc:
        logger.debug("Archive rejected: %s", exc)
        return False
    if failed:
        logger.debug("Archive entries failed CRC check: %s", ", ".join(failed))
        return False
    return True
