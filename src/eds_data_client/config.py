# File: src/eds_data_client/config.py

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

GB = 1024 * 1024 * 1024


# --- 1. PostgreSQL settings ---
class PostgresConfig(BaseModel):
    user: str = "postgres"
    password: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    db: str = "eds"

    pool_size: int = 5
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    application_name: str = "eds_data_client"

    # Full SQLAlchemy URL, overrides the fields above (e.g. sqlite+aiosqlite:///eds.db)
    dsn: Optional[str] = None

    def get_pg_dsn(self) -> str:
        """Builds the SQLAlchemy DSN from the fields of this object."""
        if self.dsn:
            return self.dsn
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"


# --- 2. Google Drive backend ---
class DriveConfig(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8000/api/drive/nodes/callback"

    api_url: str = "https://www.googleapis.com"
    auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"
    scopes: list[str] = Field(default_factory=lambda: [
        "https://www.googleapis.com/auth/drive.file",
        "https://www.googleapis.com/auth/drive.metadata.readonly",
        "https://www.googleapis.com/auth/userinfo.email",
    ])

    request_timeout: float = 30.0
    # quota reported when the account has no limit (15GB free tier)
    default_total_space: int = 15 * GB


# --- 3. Allocator ---
class QuotaConfig(BaseModel):
    reservation_ttl_seconds: int = Field(3600, gt=0)
    sweep_interval_seconds: float = Field(60.0, gt=0)
    max_node_attempts: int = Field(3, ge=1)
    token_refresh_buffer_seconds: int = 300


class VaultConfig(BaseModel):
    # urlsafe base64 Fernet key
    encryption_key: str = ""


class DataClientConfig(BaseModel):
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    drive: DriveConfig = Field(default_factory=DriveConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)


# --- 4. Settings read from .env ---
class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    drive: DriveConfig = Field(default_factory=DriveConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)

    def to_client_config(self) -> DataClientConfig:
        return DataClientConfig(postgres=self.postgres, drive=self.drive, quota=self.quota, vault=self.vault)


_cached_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Returns the settings singleton, creating it on first call.
    Keeps validation errors out of import time.
    """
    global _cached_settings
    if _cached_settings is None:
        _cached_settings = Settings()
    return _cached_settings
