"""Settings management (environment and .env)."""

from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import RetentionPolicyEnum


class Settings(BaseSettings):
    """Ingestion settings loaded from environment or .env."""

    # Redis (arq broker + data-changed notifications)
    REDIS_URL: str = "redis://localhost:6379/0"
    DATA_CHANGED_CHANNEL: str = "adsync:data_changed"

    # Meta Graph API
    META_GRAPH_URL: str = "https://graph.facebook.com"
    META_API_VERSION: str = "v24.0"
    META_CALLS_PER_HOUR: int = 200  # per access token, proactive client-side budget
    META_REQUEST_TIMEOUT_SECONDS: float = 30.0
    INSIGHTS_PAGE_LIMIT: int = 500
    DEMOGRAPHICS_PAGE_LIMIT: int = 1000

    # Queue / retry policy
    QUEUE_MAX_ATTEMPTS: int = 5
    RETRY_BASE_SECONDS: float = 1.0
    RETRY_CAP_SECONDS: float = 60.0
    JOB_LEASE_SECONDS: int = 45 * 60  # a backfill chunk can paginate for a long time
    WORKER_BATCH_SIZE: int = 10
    COMPLETED_JOB_RETENTION_DAYS: int = 7
    FAILED_JOB_RETENTION_DAYS: int = 30

    # Backfill
    BACKFILL_MONTHS: int = 12
    BACKFILL_CHUNK_DAYS: int = 30
    API_HISTORY_LIMIT_DAYS: int = 394  # Meta serves breakdowns/reach for ~13 months
    DAILY_REFRESH_DAYS: int = 3
    DEMOGRAPHIC_BREAKDOWNS: str = "age_gender,region,device_platform,placement"
    MAX_QUEUED_DEMOGRAPHIC_JOBS_PER_BRAND: int = 8

    # Stale / gap detection
    GAP_LOOKBACK_DAYS: int = 30
    STALE_LOOKBACK_DAYS: int = 7
    STALE_SPEND_EPSILON: Decimal = Decimal("0.01")

    # Demographic rollover
    ROLLOVER_WEEKLY_AFTER_DAYS: int = 14
    ROLLOVER_MONTHLY_AFTER_DAYS: int = 90
    DEMOGRAPHIC_RETENTION_POLICY: RetentionPolicyEnum = RetentionPolicyEnum.retain

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("ROLLOVER_MONTHLY_AFTER_DAYS")
    @classmethod
    def _monthly_after_weekly(cls, value: int, info) -> int:
        weekly = info.data.get("ROLLOVER_WEEKLY_AFTER_DAYS", 0)
        if value <= weekly:
            raise ValueError("ROLLOVER_MONTHLY_AFTER_DAYS must exceed ROLLOVER_WEEKLY_AFTER_DAYS")
        return value

    @property
    def demographic_breakdowns(self) -> List[str]:
        return [b.strip() for b in self.DEMOGRAPHIC_BREAKDOWNS.split(",") if b.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
