import io
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

from pixelqueue.queue import FileRecord, SQLiteJobStore, SQLJobStore
from pixelqueue.storage import LocalObjectStore

SCENARIO_SETTINGS = {
    "variants": {
        "thumb": {"format": "webp", "width": 100, "height": 100, "fit": "cover"},
        "medium": {"format": "jpeg", "width": 400},
    }
}


class FakeClock:
    """Settable clock for stores and sweeps."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def encode_image(size=(1000, 500), mode="RGB", fmt="JPEG", color=None, **save_kwargs) -> bytes:
    """Solid-color test image encoded to bytes."""
    if color is None:
        color = (200, 40, 40, 128) if mode == "RGBA" else (200, 40, 40)
    img = Image.new(mode, size, color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def jpeg_bytes():
    """1000x500 JPEG."""
    return encode_image()


@pytest.fixture
def sqlite_store(tmp_path, clock):
    store = SQLiteJobStore(tmp_path / "jobs.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def sql_store(tmp_path, clock):
    store = SQLJobStore(f"sqlite:///{tmp_path / 'sql_jobs.db'}", clock=clock)
    yield store
    store.close()


@pytest.fixture(params=["sqlite", "sqlalchemy"])
def store(request, sqlite_store, sql_store):
    """Each job store implementation in turn."""
    return sqlite_store if request.param == "sqlite" else sql_store


@pytest.fixture
def objects(tmp_path):
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def make_file():
    """Factory creating a File row in a store."""
    counter = {"n": 0}

    def _make(store, planned=None, file_id=None, **fields):
        counter["n"] += 1
        file_id = file_id or f"upload{counter['n']:04d}"
        values = dict(
            id=file_id,
            project_id="p1",
            namespace="shop-p1",
            storage_key=f"shop-p1/images/original/{file_id}.jpg",
            filename="photo.jpg",
            mime_type="image/jpeg",
            size=1234,
            width=1000,
            height=500,
            planned_variants=planned or {},
        )
        values.update(fields)
        return store.create_file(FileRecord(**values))

    return _make
