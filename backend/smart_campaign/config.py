import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/smart_campaigns"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    encryption_key: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Meta Graph API
    meta_graph_version: str = "v23.0"
    meta_app_id: str = ""
    meta_app_secret: str = ""
    meta_timeout_seconds: float = 30.0
    meta_create_ads_paused: bool = False  # keep new ads PAUSED (no spend) while testing

    # Creative rendering service (image/video/copy endpoints)
    render_base_url: str = "http://localhost:10000/api"
    render_timeout_seconds: float = 240.0
    default_campaign_link: str = "https://your-smartmark-site.com"

    # Guardrails
    min_hours_between_runs: float = 24
    min_hours_between_new_ads: float = 72
    max_new_ads_per_run_per_adset: int = 2
    plateau_confirm_hours: float = 36
    min_hours_left_to_spawn: float = 24
    recent_days: int = 3
    prior_days: int = 3
    cycle_deadline_seconds: float = 900
    lease_seconds: float = 1800
    status_recent_runs: int = 10

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_minutes: float = 15
    scheduler_initial_delay_seconds: float = 120

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.max_new_ads_per_run_per_adset < 0:
            raise ValueError("MAX_NEW_ADS_PER_RUN_PER_ADSET must be >= 0")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
