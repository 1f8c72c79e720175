"""
Netyora Chat - Configuration
"""
from pydantic_settings import BaseSettings
from typing import Optional, Tuple

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE_SECONDS: int = 1800
    DB_ECHO: bool = False

    # Identity (bearer tokens are HS256, signed by the identity service)
    IDENTITY_SIGNING_KEY: str
    IDENTITY_SERVICE_URL: str = "http://localhost:5000"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # Blob store (S3 compatible)
    S3_ENDPOINT: str = "http://localhost:9000"
    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_BUCKET: str = "netyora-chat"
    S3_REGION: str = "us-east-1"
    BLOB_STORE_CREDS: Optional[str] = None  # "access_key:secret_key"

    # Video sessions
    VIDEO_APP_ID: str = ""
    VIDEO_SERVER_SECRET: str = ""
    VIDEO_TOKEN_URL: Optional[str] = None  # remote issuer, local signing when unset
    VIDEO_TOKEN_TTL_SECONDS: int = 3600
    VIDEO_TOKEN_TIMEOUT_SECONDS: float = 5.0

    # Frontend (used to compose join urls)
    FRONTEND_URL: str = "http://localhost:3000"

    # Realtime
    PRESENCE_BUS_URL: Optional[str] = None
    WS_LIVENESS_TIMEOUT_SECONDS: float = 60.0

    # Rate limiting
    REDIS_URL: Optional[str] = None

    # Collaborators
    SWAP_SERVICE_URL: str = "http://localhost:5000"
    NOTIFY_SERVICE_URL: str = "http://localhost:8005"
    NOTIFY_API_KEY: str = ""
    NOTIFY_TIMEOUT: float = 10.0

    # Attachments
    IMAGE_RETENTION_DAYS: int = 7
    FILE_RETENTION_DAYS: int = 30
    MAX_FILE_SIZE: int = 50 * 1024 * 1024  # 50MB
    MAX_IMAGE_SIZE: int = 10 * 1024 * 1024  # 10MB
    SWEEP_INTERVAL_MINUTES: int = 60
    SWEEP_WORKERS: int = 4

    # Inbox cache, never more than 5 seconds
    INBOX_CACHE_TTL_SECONDS: float = 5.0

    TESTING: bool = False

    @property
    def blob_credentials(self) -> Tuple[str, str]:
        """Access/secret pair, BLOB_STORE_CREDS wins over the S3_* keys."""
        if self.BLOB_STORE_CREDS and ":" in self.BLOB_STORE_CREDS:
            access_key, secret_key = self.BLOB_STORE_CREDS.split(":", 1)
            return access_key, secret_key
        return self.S3_ACCESS_KEY, self.S3_SECRET_KEY

    @property
    def inbox_cache_ttl(self) -> float:
        return min(self.INBOX_CACHE_TTL_SECONDS, 5.0)

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
