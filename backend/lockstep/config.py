"""Configuration settings for Lockstep."""

from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


class Settings(BaseSettings):
    """Server settings loaded from environment."""

    model_config = SettingsConfigDict(env_prefix="LOCKSTEP_", env_file=".env", extra="ignore")

    # Shared state store
    redis_url: str = "redis://localhost:6379/0"
    room_ttl_seconds: int = 7 * 24 * 3600  # refreshed on every write

    # Uploads
    upload_secret: str = "change-me"
    public_url: str = "http://localhost:8000"
    upload_session_ttl_seconds: int = 24 * 3600
    max_video_size: int = 4 * GIB
    max_subtitle_size: int = 10 * MIB

    # S3-compatible object store (R2, MinIO, AWS)
    s3_endpoint_url: Optional[str] = None
    s3_bucket: str = "lockstep"
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_region: str = "auto"

    # HTTP
    allowed_origins: str = "*"
    port: int = 8000

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


class ClientSettings(BaseSettings):
    """Settings for host and viewer processes."""

    model_config = SettingsConfigDict(env_prefix="LOCKSTEP_", env_file=".env", extra="ignore")

    worker_url: str = "http://localhost:8000"
    upload_secret: str = "change-me"
    public_url: str = "http://localhost:8000"

    # 80MB, safely under a 100MB per-request ceiling with overhead
    chunk_size: int = 80 * MIB
    part_retries: int = 3
    retry_backoff: float = 0.5
    request_timeout: float = 300.0

    hosted_rooms_path: Path = Path.home() / ".lockstep" / "hosted_rooms.json"


settings = Settings()
