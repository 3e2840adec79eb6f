import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from filedrop.errors import (
    BackendUnavailableError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ShortCodeCollisionError,
    ValidationError,
)
from filedrop.keys import derive_storage_key, generate_short_code
from filedrop.models import (
    ClaimedPart,
    FileListItem,
    FileListResponse,
    FileRecord,
    StorageStats,
    UploadStatus,
    expiry_duration,
    normalize_expires_in,
)
from filedrop.repository import FileRepository, utc_now
from filedrop.storage import StorageBackend, StorageHandle, UploadedPart

logger = logging.getLogger(__name__)

MAX_SHORT_CODE_ATTEMPTS = 10
MAX_PART_NUMBER = 10000
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def proxied_download_path(file_id: str) -> str:
    return f"/api/files/{file_id}/download"


def short_url(short_code: str) -> str:
    return f"/s/{short_code}"


def format_remaining(remaining: timedelta) -> str:
    if remaining.total_seconds() < 0:
        return "expired"
    total_minutes = int(remaining.total_seconds() // 60)
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class Deletion(str, Enum):
    """How a file leaves storage.

    PURGE removes the object and the row (user delete). EXPIRE removes the object
    and keeps the row as ``deleted`` for short-link and audit history (sweeper).
    """

    PURGE = "purge"
    EXPIRE = "expire"


def discard(
    record: FileRecord,
    mode: Deletion,
    *,
    repository: FileRepository,
    storage: StorageBackend,
) -> None:
    # The object must be gone before the record changes.
    storage.delete_object(record.storage_key)
    if mode is Deletion.PURGE:
        repository.delete_file(record.id)
        logger.info("file purged: id=%s key=%s", record.id, record.storage_key)
    else:
        repository.update_status(record.id, UploadStatus.DELETED)
        logger.info("file expired: id=%s key=%s", record.id, record.storage_key)


@dataclass
class PresignResult:
    file_id: str
    upload_url: str
    download_url: str
    short_url: str
    expires_at: datetime


@dataclass
class ConfirmResult:
    file_id: str
    download_url: str
    short_url: str
    expires_at: datetime


@dataclass
class MultipartSession:
    file_id: str
    upload_id: str
    part_size: int
    total_parts: int


class UploadCoordinator:
    def __init__(
        self,
        repository: FileRepository,
        storage: StorageHandle,
        *,
        max_file_size: int,
        total_storage: int,
        part_size: int = 20 * 1024 * 1024,
        upload_url_ttl: timedelta = timedelta(hours=1),
        download_redirect_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utc_now,
        short_code_factory: Callable[[], str] = generate_short_code,
    ):
        self.repository = repository
        self.storage = storage
        self.max_file_size = max_file_size
        self.total_storage = total_storage
        self.part_size = part_size
        self.upload_url_ttl = upload_url_ttl
        self.download_redirect_ttl = download_redirect_ttl
        self.clock = clock
        self.short_code_factory = short_code_factory

    # -- helpers -----------------------------------------------------------

    def _get(self, file_id: str) -> FileRecord:
        record = self.repository.get_file(file_id)
        if record is None:
            raise NotFoundError("file not found")
        return record

    def _validate(self, filename: str, size: int) -> None:
        if not filename or not filename.strip():
            raise ValidationError("filename is required")
        if size < 0:
            raise ValidationError("size must be >= 0")
        if size > self.max_file_size:
            raise ValidationError("file exceeds max upload size")

    def _create_record(self, filename: str, content_type: str, size: int, expires_in: int) -> FileRecord:
        self._validate(filename, size)
        expires_in = normalize_expires_in(expires_in)
        file_id = str(uuid.uuid4())
        created_at = self.clock()
        base = {
            "id": file_id,
            "filename": filename,
            "storage_key": derive_storage_key(file_id, filename),
            "size": size,
            "content_type": content_type or DEFAULT_CONTENT_TYPE,
            "expires_in": expires_in,
            "created_at": created_at,
            "expires_at": created_at + expiry_duration(expires_in),
            "upload_status": UploadStatus.PENDING,
        }

        for attempt in range(1, MAX_SHORT_CODE_ATTEMPTS + 1):
            record = FileRecord(**base, short_code=self.short_code_factory())
            try:
                self.repository.insert_file(record)
            except ShortCodeCollisionError:
                logger.warning("short code collision: attempt=%d code=%s", attempt, record.short_code)
                continue
            logger.info("file record created: id=%s key=%s", record.id, record.storage_key)
            return record

        raise ConflictError("could not generate a unique short code")

    def _drop_record(self, record: FileRecord) -> None:
        # No object or session exists behind this row.
        self.repository.delete_file(record.id)
        logger.warning("file record dropped after storage failure: id=%s", record.id)

    def _direct_download_url(self, record: FileRecord) -> str:
        """Presigned GET valid until the file expires, or the proxied path if that fails."""
        try:
            storage = self.storage.require()
            return storage.presign_download(
                record.storage_key, record.filename, record.expires_at - self.clock()
            )
        except BackendUnavailableError as exc:
            logger.warning("download url fell back to proxy: id=%s error=%s", record.id, exc)
            return proxied_download_path(record.id)

    def _mark_completed(self, record: FileRecord) -> None:
        if record.upload_status is UploadStatus.DELETED:
            raise ExpiredError("file has expired")
        if record.upload_status is UploadStatus.COMPLETED:
            return
        if not self.repository.update_status(record.id, UploadStatus.COMPLETED):
            raise NotFoundError("file not found")
        record.upload_status = UploadStatus.COMPLETED
        logger.info("upload completed: id=%s", record.id)

    # -- single-shot ---------------------------------------------------------

    def create_upload(self, filename: str, content_type: str, size: int, expires_in: int) -> PresignResult:
        storage = self.storage.require()
        record = self._create_record(filename, content_type, size, expires_in)
        try:
            upload_url = storage.presign_upload(record.storage_key, record.content_type, self.upload_url_ttl)
        except BackendUnavailableError:
            self._drop_record(record)
            raise
        return PresignResult(
            file_id=record.id,
            upload_url=upload_url,
            download_url=proxied_download_path(record.id),
            short_url=short_url(record.short_code),
            expires_at=record.expires_at,
        )

    def confirm_upload(self, file_id: str) -> ConfirmResult:
        # The bytes are not checked against storage; the client's word is taken.
        record = self._get(file_id)
        self._mark_completed(record)
        return ConfirmResult(
            file_id=record.id,
            download_url=self._direct_download_url(record),
            short_url=short_url(record.short_code),
            expires_at=record.expires_at,
        )

    # -- multipart -----------------------------------------------------------

    def initiate_multipart(
        self, filename: str, content_type: str, size: int, expires_in: int
    ) -> MultipartSession:
        storage = self.storage.require()
        record = self._create_record(filename, content_type, size, expires_in)
        try:
            upload_id = storage.initiate_multipart(record.storage_key, record.content_type)
        except BackendUnavailableError:
            self._drop_record(record)
            raise
        self.repository.update_status(record.id, UploadStatus.UPLOADING)
        return MultipartSession(
            file_id=record.id,
            upload_id=upload_id,
            part_size=self.part_size,
            total_parts=math.ceil(size / self.part_size),
        )

    def presign_part(self, file_id: str, upload_id: str, part_number: int) -> str:
        if not 1 <= part_number <= MAX_PART_NUMBER:
            raise ValidationError(f"part_number must be between 1 and {MAX_PART_NUMBER}")
        record = self._get(file_id)
        storage = self.storage.require()
        return storage.presign_upload_part(record.storage_key, upload_id, part_number, self.upload_url_ttl)

    def complete_multipart(
        self, file_id: str, upload_id: str, claimed_parts: list[ClaimedPart] | None = None
    ) -> ConfirmResult:
        record = self._get(file_id)
        if record.upload_status is UploadStatus.DELETED:
            raise ExpiredError("file has expired")
        storage = self.storage.require()

        # Only parts the backend actually holds go into the manifest.
        parts: list[UploadedPart] = storage.list_parts(record.storage_key, upload_id)
        claimed = {p.part_number for p in claimed_parts or []}
        actual = {p.part_number for p in parts}
        if claimed and claimed != actual:
            logger.warning(
                "claimed parts differ from storage: id=%s claimed=%d actual=%d",
                record.id,
                len(claimed),
                len(actual),
            )
        if not parts:
            raise ValidationError("no parts have been uploaded")

        storage.complete_multipart(record.storage_key, upload_id, parts)
        self._mark_completed(record)
        return ConfirmResult(
            file_id=record.id,
            download_url=self._direct_download_url(record),
            short_url=short_url(record.short_code),
            expires_at=record.expires_at,
        )

    def cancel_upload(self, file_id: str, upload_id: str | None = None) -> None:
        record = self._get(file_id)
        if record.upload_status not in (UploadStatus.PENDING, UploadStatus.UPLOADING):
            raise ValidationError("only unfinished uploads can be cancelled")
        if upload_id:
            self.storage.require().abort_multipart(record.storage_key, upload_id)
        self.repository.delete_file(record.id)
        logger.info("upload cancelled: id=%s", record.id)

    # -- access --------------------------------------------------------------

    def delete_file(self, file_id: str) -> None:
        record = self._get(file_id)
        discard(record, Deletion.PURGE, repository=self.repository, storage=self.storage.require())

    def resolve_short_code(self, code: str) -> str:
        if not code:
            raise NotFoundError("file not found")
        record = self.repository.get_file_by_short_code(code)
        if record is None or not record.short_code:
            raise NotFoundError("file not found")
        return proxied_download_path(record.id)

    def download_url(self, file_id: str) -> str:
        record = self._get(file_id)
        if record.upload_status is UploadStatus.DELETED or record.is_expired(self.clock()):
            raise ExpiredError("file has expired")
        if record.upload_status is not UploadStatus.COMPLETED:
            raise NotFoundError("upload has not completed")
        storage = self.storage.require()
        return storage.presign_download(record.storage_key, record.filename, self.download_redirect_ttl)

    def list_files(self, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT) -> FileListResponse:
        page = max(page, 1)
        if limit < 1 or limit > MAX_PAGE_LIMIT:
            limit = DEFAULT_PAGE_LIMIT

        records, total = self.repository.list_files(page, limit)
        now = self.clock()
        items = []
        for record in records:
            download_url = ""
            if record.upload_status is UploadStatus.COMPLETED and not record.is_expired(now):
                download_url = self._direct_download_url(record)
            items.append(
                FileListItem(
                    **record.model_dump(),
                    remaining_time=format_remaining(record.expires_at - now),
                    download_url=download_url,
                )
            )
        return FileListResponse(files=items, total=total, page=page, limit=limit)

    def stats(self) -> StorageStats:
        return self.repository.compute_stats(self.total_storage, self.clock())
