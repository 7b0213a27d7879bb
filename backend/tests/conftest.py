"""Shared test fixtures and configuration for backend tests."""
import pytest

from weaver.memories.store import MetadataStore
from weaver.storage import LocalObjectStore

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def metadata_store():
    """In-memory DuckDB metadata store."""
    store = MetadataStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def object_root(tmp_path):
    return tmp_path / "objects"


@pytest.fixture
def local_objects(object_root) -> LocalObjectStore:
    return LocalObjectStore(root=str(object_root), public_base_url="https://files.test")


def stored_files(root) -> list:
    """All regular files under *root*."""
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []
