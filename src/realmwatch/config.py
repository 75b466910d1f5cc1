"""Application settings loaded from environment variables / .env file."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from realm_common.ingest.pipeline import IngestOptions


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str
    database_echo: bool = False
    app_env: str = "development"
    app_port: int = 8200
    app_host: str = "0.0.0.0"
    log_level: str = "INFO"

    # Ingestion
    ingest_batch_size: int = Field(default=20, ge=1, le=1000)
    left_realm_cutoff_days: int = Field(default=7, ge=0)
    left_realm_power_floor: int = Field(default=10_000_000, ge=0)
    max_upload_bytes: int = 50 * 1024 * 1024
    upload_api_key: str = ""

    def ingest_options(self) -> IngestOptions:
        return IngestOptions(
            batch_size=self.ingest_batch_size,
            left_realm_cutoff_days=self.left_realm_cutoff_days,
            left_realm_power_floor=self.left_realm_power_floor,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
