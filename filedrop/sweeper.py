import asyncio
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from filedrop.coordinator import Deletion, discard
from filedrop.errors import StorageError
from filedrop.repository import FileRepository, utc_now
from filedrop.storage import StorageHandle

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ExpirationSweeper:
    def __init__(
        self,
        repository: FileRepository,
        storage: StorageHandle,
        *,
        interval: float = 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.storage = storage
        self.interval = interval
        self.clock = clock

    def run_once(self) -> SweepReport:
        report = SweepReport()
        storage = self.storage.current()
        if storage is None:
            return report

        for record in self.repository.list_expired(self.clock()):
            try:
                discard(record, Deletion.EXPIRE, repository=self.repository, storage=storage)
            except (StorageError, sqlite3.Error) as exc:
                logger.error("sweep skipped file %s (%s): %s", record.id, record.storage_key, exc)
                report.failed.append(record.id)
                continue
            report.expired.append(record.id)

        if report.expired or report.failed:
            logger.info("sweep finished: expired=%d failed=%d", len(report.expired), len(report.failed))
        return report

    async def run_forever(self) -> None:
        logger.info("expiration sweeper started (interval=%ss)", self.interval)
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("sweep cycle failed")
            await asyncio.sleep(self.interval)
