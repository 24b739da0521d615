from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    db_host: str = "host.docker.internal"
    db_port: int = 5432
    db_database: str = "intake"
    db_username: str = "intake"
    db_password: str = "secret"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10

    minio_endpoint: str = "localhost:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_secure: bool = False
    artifact_bucket: str = "artifacts"
    quarantine_prefix: str = "quarantine"
    artifact_prefix: str = "cv"
    storage_timeout_seconds: int = Field(default=10, gt=0)

    celery_broker_url: str = "redis://localhost:6379/0"
    queue_name: str = "artifact-processing"
    queue_task_name: str = "artifacts.process"
    queue_timeout_seconds: int = Field(default=10, gt=0)

    max_artifact_size_bytes: int = Field(default=5_242_880, gt=0)
    write_location_ttl_seconds: int = Field(default=15, gt=0)
    download_url_ttl_seconds: int = Field(default=300, gt=0)
    # write window plus a grace period for slow clients
    stale_upload_timeout_seconds: int = Field(default=75, gt=0)
    stuck_dispatch_timeout_seconds: int = Field(default=300, gt=0)

    outbox_sweep_interval_seconds: int = Field(default=5, gt=0)
    outbox_sweep_batch_size: int = Field(default=10, gt=0)
    stale_upload_sweep_interval_seconds: int = Field(default=30, gt=0)
    stale_upload_sweep_batch_size: int = Field(default=20, gt=0)
    stuck_dispatch_sweep_interval_seconds: int = Field(default=60, gt=0)
    stuck_dispatch_sweep_batch_size: int = Field(default=20, gt=0)
