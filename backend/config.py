# config.py
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

MB = 1024 * 1024


class TransferLimits(BaseModel):
    """Limits injected into the transfer core at startup"""
    max_file_size_bytes: int = 100 * MB
    max_session_bytes: int = 1000 * MB
    default_ttl_minutes: int = 60
    max_ttl_minutes: int = 1440
    allowed_mime_types: Optional[List[str]] = None
    recommended_chunk_size: int = 5 * MB
    target_chunk_count: int = 10
    max_chunk_size_bytes: int = 10 * MB
    upload_inactivity_timeout_seconds: int = 10 * 60
    subscriber_queue_size: int = 100


class RateLimits(BaseModel):
    """Per-client request limits in slowapi notation"""
    general: str = "100/15 minutes"
    session_create: str = "5/10 minutes"
    upload: str = "20/5 minutes"


class Settings(BaseModel):
    limits: TransferLimits = Field(default_factory=TransferLimits)
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    rate_limit_storage_uri: Optional[str] = None

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    aws_region: str = "us-east-1"
    bucket_name: Optional[str] = None
    storage_prefix: str = "sessions"

    client_url: str = "http://localhost:3000"
    cleanup_interval_seconds: int = 60
    log_level: str = "INFO"

    @property
    def redis_url(self) -> str:
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and a .env file if present)"""
        load_dotenv()

        mime_types = os.getenv("ALLOWED_MIME_TYPES", "")
        allowed = [m.strip() for m in mime_types.split(",") if m.strip()] or None

        limits = TransferLimits(
            max_file_size_bytes=int(os.getenv("MAX_FILE_SIZE_MB", "100")) * MB,
            max_session_bytes=int(os.getenv("MAX_TOTAL_STORAGE_MB", "1000")) * MB,
            default_ttl_minutes=int(os.getenv("EXPIRY_MINUTES", "60")),
            max_ttl_minutes=int(os.getenv("MAX_EXPIRY_MINUTES", "1440")),
            allowed_mime_types=allowed,
            recommended_chunk_size=int(os.getenv("RECOMMENDED_CHUNK_SIZE", str(5 * MB))),
            max_chunk_size_bytes=int(os.getenv("MAX_CHUNK_SIZE", str(10 * MB))),
            upload_inactivity_timeout_seconds=int(os.getenv("UPLOAD_INACTIVITY_TIMEOUT", "600")),
            subscriber_queue_size=int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "100")),
        )

        rate_limits = RateLimits(
            general=os.getenv("RATE_LIMIT_GENERAL", "100/15 minutes"),
            session_create=os.getenv("RATE_LIMIT_SESSION_CREATE", "5/10 minutes"),
            upload=os.getenv("RATE_LIMIT_UPLOAD", "20/5 minutes"),
        )

        return cls(
            limits=limits,
            rate_limits=rate_limits,
            rate_limit_storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI"),
            redis_host=os.getenv("REDIS_HOST", "redis"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD", ""),
            redis_db=int(os.getenv("REDIS_DB", "0")),
            aws_access_key=os.getenv("AWS_ACCESS_KEY"),
            aws_secret_key=os.getenv("AWS_SECRET_KEY"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            bucket_name=os.getenv("BUCKET_NAME"),
            storage_prefix=os.getenv("STORAGE_PREFIX", "sessions"),
            client_url=os.getenv("CLIENT_URL", "http://localhost:3000"),
            cleanup_interval_seconds=int(os.getenv("CLEANUP_INTERVAL_SECONDS", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
