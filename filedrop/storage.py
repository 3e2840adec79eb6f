import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from hashlib import md5
from urllib.parse import quote, urlencode

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from filedrop.errors import BackendUnavailableError, StorageError
from filedrop.models import StorageCredentials

logger = logging.getLogger(__name__)

# SigV4 presigned URLs cannot outlive seven days.
MAX_PRESIGN_TTL = timedelta(days=7)
MIN_PRESIGN_TTL = timedelta(seconds=1)


@dataclass(frozen=True)
class UploadedPart:
    part_number: int
    etag: str


def content_disposition(filename: str) -> str:
    return f'attachment; filename="{filename}"'


class StorageBackend(ABC):
    @abstractmethod
    def presign_upload(self, key: str, content_type: str, ttl: timedelta) -> str: ...

    @abstractmethod
    def presign_download(self, key: str, filename: str, ttl: timedelta) -> str: ...

    @abstractmethod
    def initiate_multipart(self, key: str, content_type: str) -> str: ...

    @abstractmethod
    def presign_upload_part(self, key: str, upload_id: str, part_number: int, ttl: timedelta) -> str: ...

    @abstractmethod
    def list_parts(self, key: str, upload_id: str) -> list[UploadedPart]: ...

    @abstractmethod
    def complete_multipart(self, key: str, upload_id: str, parts: list[UploadedPart]) -> None: ...

    @abstractmethod
    def abort_multipart(self, key: str, upload_id: str) -> None: ...

    @abstractmethod
    def delete_object(self, key: str) -> None: ...

    @abstractmethod
    def test_connection(self) -> None: ...


class S3Storage(StorageBackend):
    """S3-compatible bucket (AWS, R2, MinIO) addressed through a custom endpoint."""

    def __init__(self, credentials: StorageCredentials, client=None):
        self.bucket = credentials.bucket_name
        self.endpoint = credentials.endpoint
        self.client = client or boto3.client(
            "s3",
            endpoint_url=credentials.endpoint,
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            region_name="auto",
            config=BotoConfig(signature_version="s3v4"),
        )

    @contextmanager
    def _call(self, action: str, key: str):
        try:
            yield
        except (BotoCoreError, ClientError) as exc:
            logger.error("storage %s failed: bucket=%s key=%s error=%s", action, self.bucket, key, exc)
            raise StorageError(f"storage {action} failed") from exc

    @staticmethod
    def _expires_in(ttl: timedelta) -> int:
        ttl = max(MIN_PRESIGN_TTL, min(ttl, MAX_PRESIGN_TTL))
        return int(ttl.total_seconds())

    def presign_upload(self, key: str, content_type: str, ttl: timedelta) -> str:
        with self._call("presign_upload", key):
            return self.client.generate_presigned_url(
                ClientMethod="put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=self._expires_in(ttl),
            )

    def presign_download(self, key: str, filename: str, ttl: timedelta) -> str:
        with self._call("presign_download", key):
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ResponseContentDisposition": content_disposition(filename),
                },
                ExpiresIn=self._expires_in(ttl),
            )

    def initiate_multipart(self, key: str, content_type: str) -> str:
        with self._call("initiate_multipart", key):
            response = self.client.create_multipart_upload(
                Bucket=self.bucket, Key=key, ContentType=content_type
            )
        logger.info("multipart upload opened: key=%s", key)
        return response["UploadId"]

    def presign_upload_part(self, key: str, upload_id: str, part_number: int, ttl: timedelta) -> str:
        with self._call("presign_upload_part", key):
            return self.client.generate_presigned_url(
                ClientMethod="upload_part",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=self._expires_in(ttl),
            )

    def list_parts(self, key: str, upload_id: str) -> list[UploadedPart]:
        parts: list[UploadedPart] = []
        with self._call("list_parts", key):
            paginator = self.client.get_paginator("list_parts")
            for page in paginator.paginate(Bucket=self.bucket, Key=key, UploadId=upload_id):
                for part in page.get("Parts", []):
                    parts.append(UploadedPart(part_number=part["PartNumber"], etag=part["ETag"]))
        return sorted(parts, key=lambda p: p.part_number)

    def complete_multipart(self, key: str, upload_id: str, parts: list[UploadedPart]) -> None:
        with self._call("complete_multipart", key):
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in parts]
                },
            )
        logger.info("multipart upload completed: key=%s parts=%d", key, len(parts))

    def abort_multipart(self, key: str, upload_id: str) -> None:
        with self._call("abort_multipart", key):
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        logger.info("multipart upload aborted: key=%s", key)

    def delete_object(self, key: str) -> None:
        with self._call("delete_object", key):
            self.client.delete_object(Bucket=self.bucket, Key=key)
        logger.info("object deleted: key=%s", key)

    def test_connection(self) -> None:
        with self._call("test_connection", ""):
            self.client.list_objects_v2(Bucket=self.bucket, MaxKeys=1)


@dataclass
class _MultipartSession:
    key: str
    content_type: str
    parts: dict[int, tuple[str, bytes]] = field(default_factory=dict)


class MemoryStorage(StorageBackend):
    """Keeps objects in process memory; presigned URLs are opaque ``memory://`` links."""

    def __init__(self, bucket: str = "filedrop"):
        self.bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.sessions: dict[str, _MultipartSession] = {}
        self.completed_manifests: dict[str, list[UploadedPart]] = {}
        self._lock = threading.Lock()

    def _url(self, key: str, **params) -> str:
        return f"memory://{self.bucket}/{quote(key)}?{urlencode(params)}"

    def _session(self, key: str, upload_id: str) -> _MultipartSession:
        session = self.sessions.get(upload_id)
        if session is None or session.key != key:
            raise StorageError("no such multipart upload")
        return session

    def put_object(self, key: str, data: bytes) -> None:
        with self._lock:
            self.objects[key] = data

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        etag = f'"{md5(data).hexdigest()}"'
        with self._lock:
            self._session(key, upload_id).parts[part_number] = (etag, data)
        return etag

    def presign_upload(self, key: str, content_type: str, ttl: timedelta) -> str:
        return self._url(key, op="put", content_type=content_type, expires=int(ttl.total_seconds()))

    def presign_download(self, key: str, filename: str, ttl: timedelta) -> str:
        return self._url(
            key,
            op="get",
            disposition=content_disposition(filename),
            expires=int(ttl.total_seconds()),
        )

    def initiate_multipart(self, key: str, content_type: str) -> str:
        upload_id = uuid.uuid4().hex
        with self._lock:
            self.sessions[upload_id] = _MultipartSession(key=key, content_type=content_type)
        return upload_id

    def presign_upload_part(self, key: str, upload_id: str, part_number: int, ttl: timedelta) -> str:
        return self._url(
            key,
            op="upload_part",
            upload_id=upload_id,
            part_number=part_number,
            expires=int(ttl.total_seconds()),
        )

    def list_parts(self, key: str, upload_id: str) -> list[UploadedPart]:
        with self._lock:
            session = self._session(key, upload_id)
            return [
                UploadedPart(part_number=number, etag=etag)
                for number, (etag, _) in sorted(session.parts.items())
            ]

    def complete_multipart(self, key: str, upload_id: str, parts: list[UploadedPart]) -> None:
        with self._lock:
            session = self._session(key, upload_id)
            data = b""
            for part in parts:
                stored = session.parts.get(part.part_number)
                if stored is None or stored[0] != part.etag:
                    raise StorageError(f"invalid part {part.part_number}")
                data += stored[1]
            self.objects[key] = data
            self.completed_manifests[upload_id] = list(parts)
            del self.sessions[upload_id]

    def abort_multipart(self, key: str, upload_id: str) -> None:
        with self._lock:
            self._session(key, upload_id)
            del self.sessions[upload_id]

    def delete_object(self, key: str) -> None:
        # Deleting a missing key succeeds, as it does on S3.
        with self._lock:
            self.objects.pop(key, None)

    def test_connection(self) -> None:
        return None


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class StorageHandle:
    """Process-wide reference to the configured backend, swapped on reconfiguration.

    Callers take a snapshot with :meth:`current` or :meth:`require` and make their
    network calls after the lock has been released.
    """

    def __init__(self, backend: StorageBackend | None = None):
        self._backend = backend
        self._lock = ReadWriteLock()

    def current(self) -> StorageBackend | None:
        with self._lock.read():
            return self._backend

    def require(self) -> StorageBackend:
        backend = self.current()
        if backend is None:
            raise BackendUnavailableError("storage is not configured")
        return backend

    def swap(self, backend: StorageBackend | None) -> None:
        with self._lock.write():
            self._backend = backend
        logger.info("storage backend swapped: %s", type(backend).__name__ if backend else "none")


def build_storage(kind: str, credentials: StorageCredentials | None) -> StorageBackend | None:
    kind = (kind or "s3").lower().strip()
    if kind == "memory":
        return MemoryStorage()
    if kind == "s3":
        if credentials is None:
            return None
        return S3Storage(credentials)
    raise ValueError(f"unknown storage backend: {kind}")
