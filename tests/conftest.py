from datetime import datetime, timedelta, timezone

import pytest

from filedrop.coordinator import UploadCoordinator
from filedrop.repository import FileRepository, RateLimitRepository
from filedrop.storage import MemoryStorage, StorageHandle


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "filedrop.db")
    FileRepository(path).init()
    return path


@pytest.fixture
def files(db_path):
    return FileRepository(db_path)


@pytest.fixture
def rate_limits(db_path):
    return RateLimitRepository(db_path)


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def handle(memory_storage):
    return StorageHandle(memory_storage)


@pytest.fixture
def coordinator(files, handle, clock):
    return UploadCoordinator(
        files,
        handle,
        max_file_size=100 * 1024 * 1024,
        total_storage=1024 * 1024 * 1024,
        clock=clock,
    )
