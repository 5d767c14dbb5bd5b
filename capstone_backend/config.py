"""
Configuration and settings for the Capstone API.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    # "production" hides exception detail from 500 responses.
    app_env: str = Field(default="production")
    cors_allow_origins: str = Field(default="*")

    # Database (Postgres expected). DATABASE_URL wins over the DB_* parts.
    database_url: Optional[str] = Field(default=None)
    db_driver: str = Field(default="postgresql+psycopg2")
    db_host: Optional[str] = Field(default=None)
    db_port: Optional[int] = Field(default=None)
    db_name: Optional[str] = Field(default=None)
    db_user: Optional[str] = Field(default=None)
    db_password: Optional[str] = Field(default=None)
    db_pool_size: int = Field(default=10)
    db_max_overflow: int = Field(default=0)
    db_pool_timeout: int = Field(default=30)
    db_pool_recycle: int = Field(default=1800)

    # Google Cloud Storage through its S3-compatible XML API
    gcp_project_id: Optional[str] = Field(default=None)
    gcs_bucket_name: Optional[str] = Field(default=None)
    gcs_credentials_file: Optional[str] = Field(default=None)
    gcs_hmac_access_key_id: Optional[str] = Field(default=None)
    gcs_hmac_secret: Optional[str] = Field(default=None)
    gcs_endpoint: str = Field(default="https://storage.googleapis.com")
    gcs_public_base_url: str = Field(default="https://storage.googleapis.com")

    # Speech synthesis
    tts_voice: str = Field(default="id-ID-GadisNeural")

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    def resolved_database_url(self) -> Optional[str]:
        """Return DATABASE_URL, or one assembled from the DB_* settings."""
        if self.database_url:
            return self.database_url
        if not (self.db_host and self.db_name):
            return None
        return URL.create(
            self.db_driver,
            username=self.db_user,
            password=self.db_password,
            host=self.db_host,
            port=self.db_port,
            database=self.db_name,
        ).render_as_string(hide_password=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
