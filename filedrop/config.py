from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024
GIB = 1024 * MIB


class Settings(BaseSettings):
    app_name: str = "filedrop"
    app_env: str = "dev"
    app_secret_key: str = "change-me-in-production"
    log_level: str = "INFO"
    database_path: str = "data/filedrop.db"

    max_file_size: int = 5 * GIB
    total_storage: int = 10 * GIB

    # "s3" talks to an S3-compatible bucket; "memory" keeps objects in-process.
    storage_backend: str = "s3"
    s3_endpoint: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_bucket_name: str | None = None

    multipart_part_size: int = 20 * MIB
    upload_url_ttl_seconds: int = 3600
    download_redirect_ttl_seconds: int = 86400

    sweeper_enabled: bool = True
    sweep_interval_seconds: float = 3600

    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 300
    max_failed_attempts: int = 10
    block_duration_seconds: int = 300

    model_config = SettingsConfigDict(env_file=".env", env_prefix="FILEDROP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
