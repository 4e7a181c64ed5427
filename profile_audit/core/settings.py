"""Application configuration handling.

Every tunable of the audit backend is read from the environment once and
exposed through :func:`get_settings` so that provider credentials, polling
budgets and cache locations are not scattered across modules.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class JobProfile:
    """Polling budget applied to one job family."""

    max_wait_ms: int
    poll_interval_ms: int
    max_retries: int
    retry_delay_ms: int = 2000


def _default_profiles() -> dict[str, JobProfile]:
    return {
        "reviews": JobProfile(
            max_wait_ms=int(os.getenv("REVIEWS_MAX_WAIT_MS", "300000")),
            poll_interval_ms=int(os.getenv("REVIEWS_POLL_INTERVAL_MS", "5000")),
            max_retries=int(os.getenv("REVIEWS_MAX_RETRIES", "3")),
        ),
        "rank_check": JobProfile(
            max_wait_ms=int(os.getenv("RANK_MAX_WAIT_MS", "30000")),
            poll_interval_ms=int(os.getenv("RANK_POLL_INTERVAL_MS", "2000")),
            max_retries=int(os.getenv("RANK_MAX_RETRIES", "2")),
        ),
        "scrape": JobProfile(
            max_wait_ms=int(os.getenv("SCRAPE_MAX_WAIT_MS", "60000")),
            poll_interval_ms=int(os.getenv("SCRAPE_POLL_INTERVAL_MS", "3000")),
            max_retries=int(os.getenv("SCRAPE_MAX_RETRIES", "2")),
        ),
    }


@dataclass(slots=True)
class Settings:
    """Runtime configuration values loaded from environment variables."""

    dataforseo_login: str = os.getenv("DATAFORSEO_LOGIN", "")
    dataforseo_password: str = os.getenv("DATAFORSEO_PASSWORD", "")
    dataforseo_api_base: str = os.getenv("DATAFORSEO_API_BASE", "https://api.dataforseo.com/v3")
    location_name: str = os.getenv("DATAFORSEO_LOCATION_NAME", "South Korea")
    language_code: str = os.getenv("DATAFORSEO_LANGUAGE_CODE", "ko")
    provider_timeout: float = float(os.getenv("DATAFORSEO_TIMEOUT", "30"))

    audit_store_url: str = os.getenv("AUDIT_STORE_URL", "")
    snapshot_path: Path = Path(os.getenv("SNAPSHOT_PATH", "data/audit-snapshot.json"))

    grid_concurrency: int = int(os.getenv("GRID_CONCURRENCY", "8"))
    task_prune_delay_seconds: float = float(os.getenv("TASK_PRUNE_DELAY_SECONDS", "5"))
    cancel_on_switch: bool = _env_bool("CANCEL_ON_SWITCH")

    cors_allow_origins: str = os.getenv("API_CORS_ORIGINS", "")
    logs_path: str = os.getenv("LOGS_PATH", "")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    job_profiles: dict[str, JobProfile] = field(default_factory=_default_profiles)

    @property
    def has_provider_credentials(self) -> bool:
        return bool(self.dataforseo_login and self.dataforseo_password)

    @property
    def cors_origins(self) -> list[str]:
        origins = [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]
        return origins or ["http://localhost:3000", "http://127.0.0.1:3000"]

    def profile_for(self, family: str) -> JobProfile:
        return self.job_profiles[family]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a singleton Settings instance."""

    return Settings()
