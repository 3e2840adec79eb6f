from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

# -30 is the short-lived value used to exercise expiry by hand.
TEST_EXPIRES_IN = -30
DEFAULT_EXPIRES_IN = 7

EXPIRY_DURATIONS = {
    1: timedelta(days=1),
    3: timedelta(days=3),
    7: timedelta(days=7),
    30: timedelta(days=30),
    TEST_EXPIRES_IN: timedelta(seconds=30),
}


def normalize_expires_in(value: int | None) -> int:
    """Map anything outside the offered expiry options to the 7-day default."""
    if value in EXPIRY_DURATIONS:
        return value
    return DEFAULT_EXPIRES_IN


def expiry_duration(expires_in: int) -> timedelta:
    return EXPIRY_DURATIONS[normalize_expires_in(expires_in)]


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    DELETED = "deleted"


# Legal predecessors of each status; anything else would move a file backwards.
STATUS_PREDECESSORS: dict[UploadStatus, tuple[UploadStatus, ...]] = {
    UploadStatus.PENDING: (),
    UploadStatus.UPLOADING: (UploadStatus.PENDING,),
    UploadStatus.COMPLETED: (UploadStatus.PENDING, UploadStatus.UPLOADING),
    UploadStatus.DELETED: (UploadStatus.COMPLETED,),
}

LISTED_STATUSES = (UploadStatus.COMPLETED, UploadStatus.DELETED)


class FileRecord(BaseModel):
    id: str
    filename: str
    storage_key: str
    size: int
    content_type: str
    expires_in: int
    created_at: datetime
    expires_at: datetime
    upload_status: UploadStatus
    short_code: str

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class RateLimitEntry(BaseModel):
    ip: str
    request_count: int = 0
    window_start: datetime
    failed_attempts: int = 0
    blocked_until: datetime | None = None


class PresignRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=1024)
    content_type: str = ""
    size: int = Field(ge=0)
    expires_in: int = DEFAULT_EXPIRES_IN


class PresignResponse(BaseModel):
    file_id: str
    upload_url: str
    download_url: str
    short_url: str
    expires_at: datetime


class ConfirmRequest(BaseModel):
    file_id: str = Field(min_length=1)


class ConfirmResponse(BaseModel):
    success: bool = True
    message: str = "upload confirmed"
    download_url: str
    short_url: str


class MultipartInitResponse(BaseModel):
    file_id: str
    upload_id: str
    part_size: int
    total_parts: int


class MultipartPresignRequest(BaseModel):
    file_id: str = Field(min_length=1)
    upload_id: str = Field(min_length=1)
    part_number: int


class MultipartPresignResponse(BaseModel):
    upload_url: str
    part_number: int


class ClaimedPart(BaseModel):
    part_number: int
    etag: str = ""


class MultipartCompleteRequest(BaseModel):
    file_id: str = Field(min_length=1)
    upload_id: str = Field(min_length=1)
    parts: list[ClaimedPart] = Field(default_factory=list)


class MultipartCompleteResponse(BaseModel):
    file_id: str
    download_url: str
    short_url: str
    expires_at: datetime


class CancelRequest(BaseModel):
    file_id: str = Field(min_length=1)
    upload_id: str | None = None


class FileListItem(FileRecord):
    remaining_time: str
    download_url: str = ""


class FileListResponse(BaseModel):
    files: list[FileListItem]
    total: int
    page: int
    limit: int


class StorageStats(BaseModel):
    used_space: int
    total_space: int
    used_space_formatted: str
    total_space_formatted: str
    usage_percent: float
    file_count: int
    expiring_within_24h: int
    expiring_within_7d: int


class StorageCredentials(BaseModel):
    endpoint: str = Field(min_length=1)
    access_key_id: str = Field(min_length=1)
    secret_access_key: str = Field(min_length=1)
    bucket_name: str = Field(min_length=1)


class StorageStatusResponse(BaseModel):
    configured: bool
    endpoint: str | None = None
    bucket_name: str | None = None


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str


class PasswordRequest(BaseModel):
    password: str = Field(min_length=1, max_length=256)


class LoginResponse(BaseModel):
    success: bool = True
    need_setup: bool
