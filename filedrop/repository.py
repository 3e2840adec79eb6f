import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from filedrop.errors import ShortCodeCollisionError
from filedrop.models import (
    LISTED_STATUSES,
    STATUS_PREDECESSORS,
    FileRecord,
    RateLimitEntry,
    StorageStats,
    UploadStatus,
)

logger = logging.getLogger(__name__)

FILE_COLUMNS = (
    "id, filename, storage_key, size, content_type, expires_in, "
    "created_at, expires_at, upload_status, COALESCE(short_code, '') AS short_code"
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    # Fixed-width UTC text so that SQL string comparison matches time order.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def format_bytes(size: int) -> str:
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.2f} {'KMGTPE'[exp]}B"


class SQLiteRepository:
    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS system_config (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS files (
                    id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    storage_key TEXT NOT NULL UNIQUE,
                    size INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    expires_in INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    upload_status TEXT NOT NULL DEFAULT 'pending',
                    short_code TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_files_expires_at ON files(expires_at);
                CREATE INDEX IF NOT EXISTS idx_files_created_at ON files(created_at);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_files_short_code ON files(short_code);

                CREATE TABLE IF NOT EXISTS rate_limits (
                    ip TEXT PRIMARY KEY,
                    request_count INTEGER NOT NULL DEFAULT 0,
                    window_start TEXT NOT NULL,
                    failed_attempts INTEGER NOT NULL DEFAULT 0,
                    blocked_until TEXT
                );
                """
            )


class FileRepository(SQLiteRepository):
    def insert_file(self, record: FileRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO files(id, filename, storage_key, size, content_type, expires_in,
                                      created_at, expires_at, upload_status, short_code)
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.filename,
                        record.storage_key,
                        record.size,
                        record.content_type,
                        record.expires_in,
                        to_db_time(record.created_at),
                        to_db_time(record.expires_at),
                        record.upload_status.value,
                        record.short_code,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if "short_code" in str(exc):
                raise ShortCodeCollisionError(record.short_code) from exc
            raise

    def get_file(self, file_id: str) -> FileRecord | None:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {FILE_COLUMNS} FROM files WHERE id = ?", (file_id,)).fetchone()
        return FileRecord(**dict(row)) if row else None

    def get_file_by_short_code(self, short_code: str) -> FileRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {FILE_COLUMNS} FROM files WHERE short_code = ?", (short_code,)
            ).fetchone()
        return FileRecord(**dict(row)) if row else None

    def update_status(self, file_id: str, status: UploadStatus) -> bool:
        """Move a file to ``status`` if it currently sits in a legal predecessor state.

        Returns False when the row is missing or the move would go backwards.
        """
        predecessors = [s.value for s in STATUS_PREDECESSORS[status]]
        if not predecessors:
            return False
        placeholders = ", ".join("?" for _ in predecessors)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE files SET upload_status = ? WHERE id = ? AND upload_status IN ({placeholders})",
                (status.value, file_id, *predecessors),
            )
            changed = cursor.rowcount > 0
        if not changed:
            logger.warning("status transition refused: file=%s target=%s", file_id, status.value)
        return changed

    def list_files(self, page: int, limit: int) -> tuple[list[FileRecord], int]:
        statuses = [s.value for s in LISTED_STATUSES]
        offset = (page - 1) * limit
        with self._connect() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM files WHERE upload_status IN (?, ?)", statuses
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT {FILE_COLUMNS}
                FROM files
                WHERE upload_status IN (?, ?)
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                (*statuses, limit, offset),
            ).fetchall()
        return [FileRecord(**dict(row)) for row in rows], total

    def list_expired(self, now: datetime) -> list[FileRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {FILE_COLUMNS}
                FROM files
                WHERE expires_at < ? AND upload_status = ?
                ORDER BY expires_at
                """,
                (to_db_time(now), UploadStatus.COMPLETED.value),
            ).fetchall()
        return [FileRecord(**dict(row)) for row in rows]

    def delete_file(self, file_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM files WHERE id = ?", (file_id,))

    def compute_stats(self, total_storage: int, now: datetime) -> StorageStats:
        completed = UploadStatus.COMPLETED.value
        with self._connect() as conn:
            used_space, file_count = conn.execute(
                "SELECT COALESCE(SUM(size), 0), COUNT(*) FROM files WHERE upload_status = ?",
                (completed,),
            ).fetchone()
            expiring_day = conn.execute(
                "SELECT COUNT(*) FROM files WHERE expires_at < ? AND upload_status = ?",
                (to_db_time(now + timedelta(hours=24)), completed),
            ).fetchone()[0]
            expiring_week = conn.execute(
                "SELECT COUNT(*) FROM files WHERE expires_at < ? AND upload_status = ?",
                (to_db_time(now + timedelta(days=7)), completed),
            ).fetchone()[0]

        usage_percent = used_space / total_storage * 100 if total_storage > 0 else 0.0
        return StorageStats(
            used_space=used_space,
            total_space=total_storage,
            used_space_formatted=format_bytes(used_space),
            total_space_formatted=format_bytes(total_storage),
            usage_percent=usage_percent,
            file_count=file_count,
            expiring_within_24h=expiring_day,
            expiring_within_7d=expiring_week,
        )


class RateLimitRepository(SQLiteRepository):
    def get(self, ip: str) -> RateLimitEntry | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM rate_limits WHERE ip = ?", (ip,)).fetchone()
        return RateLimitEntry(**dict(row)) if row else None

    def start_window(self, ip: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rate_limits(ip, request_count, window_start)
                VALUES(?, 1, ?)
                ON CONFLICT(ip) DO UPDATE SET request_count = 1, window_start = excluded.window_start
                """,
                (ip, to_db_time(now)),
            )

    def increment_requests(self, ip: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE rate_limits SET request_count = request_count + 1 WHERE ip = ?", (ip,))

    def record_failure(
        self, ip: str, now: datetime, *, max_attempts: int, blocked_until: datetime
    ) -> RateLimitEntry:
        """Count one failed login and start a block once ``max_attempts`` is reached."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rate_limits(ip, request_count, window_start, failed_attempts)
                VALUES(?, 0, ?, 1)
                ON CONFLICT(ip) DO UPDATE SET failed_attempts = failed_attempts + 1
                """,
                (ip, to_db_time(now)),
            )
            conn.execute(
                "UPDATE rate_limits SET blocked_until = ? WHERE ip = ? AND failed_attempts >= ?",
                (to_db_time(blocked_until), ip, max_attempts),
            )
            row = conn.execute("SELECT * FROM rate_limits WHERE ip = ?", (ip,)).fetchone()
        return RateLimitEntry(**dict(row))

    def clear_block(self, ip: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE rate_limits SET blocked_until = NULL, failed_attempts = 0 WHERE ip = ?", (ip,))


class ConfigRepository(SQLiteRepository):
    def get(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM system_config WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, values: dict[str, str]) -> None:
        updated_at = to_db_time(utc_now())
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO system_config(key, value, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                [(key, value, updated_at) for key, value in values.items()],
            )
