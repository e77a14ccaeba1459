"""Configuration settings for the Thermal Ingest API"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "postgresql://user:pass@db:5432/thermalingest"

    # MinIO
    MINIO_ENDPOINT: str = "minio:9000"
    MINIO_ACCESS_KEY: str = "admin"
    MINIO_SECRET_KEY: str = "supersecret"
    MINIO_SECURE: bool = False  # Set to True for HTTPS
    LIVE_BUCKET: str = "frames-live"
    SNAPSHOT_BUCKET: str = "snapshots"

    # Realtime (Redis pub/sub)
    REDIS_URL: str = "redis://redis:6379/0"
    REALTIME_JOIN_TIMEOUT_MS: int = 5000

    # Device request signing
    CLOCK_SKEW_MS: int = 120_000

    # Thermal overlay
    OVERLAY_ALPHA: float = 0.35
    SNAPSHOT_OVERLAY_ENABLED: bool = True

    CORS_ORIGINS: list[str] = ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
