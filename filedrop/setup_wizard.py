import logging

from filedrop.config import Settings
from filedrop.errors import StorageError, ValidationError
from filedrop.models import ConnectionTestResponse, StorageCredentials, StorageStatusResponse
from filedrop.repository import ConfigRepository
from filedrop.storage import S3Storage, StorageBackend, StorageHandle, build_storage

logger = logging.getLogger(__name__)

CONFIGURED_KEY = "storage_configured"
CREDENTIAL_KEYS = {
    "endpoint": "storage_endpoint",
    "access_key_id": "storage_access_key_id",
    "secret_access_key": "storage_secret_access_key",
    "bucket_name": "storage_bucket_name",
}


class StorageSetup:
    def __init__(self, config: ConfigRepository, handle: StorageHandle, settings: Settings):
        self.config = config
        self.handle = handle
        self.settings = settings

    def stored_credentials(self) -> StorageCredentials | None:
        if self.config.get(CONFIGURED_KEY) == "true":
            return StorageCredentials(
                **{field: self.config.get(key) or "" for field, key in CREDENTIAL_KEYS.items()}
            )
        s = self.settings
        if s.s3_endpoint and s.s3_access_key_id and s.s3_secret_access_key and s.s3_bucket_name:
            return StorageCredentials(
                endpoint=s.s3_endpoint,
                access_key_id=s.s3_access_key_id,
                secret_access_key=s.s3_secret_access_key,
                bucket_name=s.s3_bucket_name,
            )
        return None

    def status(self) -> StorageStatusResponse:
        if self.handle.current() is None:
            return StorageStatusResponse(configured=False)
        credentials = self.stored_credentials()
        if credentials is None:
            return StorageStatusResponse(configured=True)
        return StorageStatusResponse(
            configured=True, endpoint=credentials.endpoint, bucket_name=credentials.bucket_name
        )

    def reload(self) -> StorageBackend | None:
        try:
            backend = build_storage(self.settings.storage_backend, self.stored_credentials())
        except ValueError as exc:
            logger.error("storage reload failed: %s", exc)
            return self.handle.current()
        if backend is None:
            logger.info("storage is not configured yet")
            return None
        self.handle.swap(backend)
        return backend

    def save(self, credentials: StorageCredentials) -> None:
        if self.settings.storage_backend.lower().strip() != "s3":
            raise ValidationError(
                f"storage credentials do not apply to the {self.settings.storage_backend} backend"
            )
        values = {key: getattr(credentials, field) for field, key in CREDENTIAL_KEYS.items()}
        values[CONFIGURED_KEY] = "true"
        self.config.set_many(values)
        logger.info("storage credentials saved: endpoint=%s bucket=%s", credentials.endpoint, credentials.bucket_name)
        self.reload()

    def test(self, credentials: StorageCredentials) -> ConnectionTestResponse:
        try:
            S3Storage(credentials).test_connection()
        except (StorageError, ValueError) as exc:
            return ConnectionTestResponse(success=False, message=f"connection test failed: {exc}")
        return ConnectionTestResponse(success=True, message="connection succeeded, bucket is reachable")
