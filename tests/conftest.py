"""Shared fixtures for the SaveEnroller tests."""

import io
import zipfile
from datetime import datetime, timedelta

import pytest


def build_archive(entries: dict[str, bytes], compression=zipfile.ZIP_DEFLATED) -> bytes:
    """Return the bytes of a ZIP archive holding ``entries``."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression) as zf:
        for name, payload in entries.items():
            zf.writestr(name, payload)
    return buf.getvalue()


class FakeClock:
    """Callable clock whose current time the test controls."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def make_save():
    """Write a valid save archive to ``path`` and return its bytes."""
    def _make(path, payload: bytes = b"city data") -> bytes:
        data = build_archive({"SaveGame.json": b'{"name": "test"}', "Data.bin": payload})
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return data
    return _make


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 12, 0, 0).astimezone())
