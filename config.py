from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _env_int(name: str, default: int) -> int:
    v = (os.getenv(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {v!r}") from e


def _env_float(name: str, default: float) -> float:
    v = (os.getenv(name) or "").strip()
    if not v:
        return float(default)
    try:
        return float(v)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {v!r}") from e


def _env_delays(name: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    v = (os.getenv(name) or "").strip()
    if not v:
        return default
    try:
        return tuple(float(x) for x in v.split(",") if x.strip())
    except ValueError as e:
        raise ValueError(f"{name} must be a comma-separated list of seconds, got {v!r}") from e


def normalize_ad_account_id(ad_account_id: str) -> str:
    """
    Meta endpoints use act_<AD_ACCOUNT_ID>.
    Accept either 'act_123' or '123' from the user.
    """
    ad_account_id = (ad_account_id or "").strip()
    if ad_account_id.startswith("act_"):
        return ad_account_id
    if ad_account_id.isdigit():
        return f"act_{ad_account_id}"
    return ad_account_id


# -----------------------------
# Credentials
# -----------------------------

@dataclass(frozen=True)
class Credentials:
    """Already-decrypted credentials for one caller. Never read from ambient state by the client."""

    bearer_token: str
    ad_account_id: str
    page_id: str
    pixel_id: Optional[str] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None

    @property
    def account_path(self) -> str:
        return normalize_ad_account_id(self.ad_account_id)

    def __repr__(self) -> str:
        return (
            f"Credentials(ad_account_id={self.ad_account_id!r}, page_id={self.page_id!r}, "
            f"pixel_id={self.pixel_id!r}, bearer_token='***')"
        )


# -----------------------------
# Service settings
# -----------------------------

@dataclass(frozen=True)
class Settings:
    api_version: str = "v21.0"

    # Client timeouts (seconds). Uploads get a much longer budget than metadata calls.
    timeout_s: float = 30
    image_timeout_s: float = 60
    video_timeout_s: float = 600

    # Fan-out pacing
    chunk_size: int = 50
    batch_delay_s: float = 1.0
    max_count: int = 50
    max_copies: int = 10
    default_budget_minor: int = 100
    min_budget_minor: int = 100

    # Creative resolver
    resolver_initial_wait_s: float = 8.0
    resolver_delays_s: Tuple[float, ...] = (0, 3, 4, 5, 6, 8)
    fallback_window_s: int = 15 * 60

    # Persistence / execution
    job_store_source: str = "memory"
    job_db_path: str = ".fanout_jobs.db"
    database_url: Optional[str] = None
    job_execution: str = "inline"

    service_api_key: Optional[str] = None

    @staticmethod
    def from_env() -> "Settings":
        """Loads settings from environment variables (optionally via .env)."""
        load_dotenv(override=False)

        chunk_size = _env_int("FANOUT_CHUNK_SIZE", 50)
        if not 1 <= chunk_size <= 50:
            raise ValueError("FANOUT_CHUNK_SIZE must be between 1 and 50 (platform batch cap).")

        job_execution = _env_str("JOB_EXECUTION", "inline").lower()
        if job_execution not in {"inline", "worker"}:
            raise ValueError("JOB_EXECUTION must be 'inline' or 'worker'.")

        return Settings(
            api_version=_env_str("META_API_VERSION", "v21.0"),
            timeout_s=_env_float("META_TIMEOUT_S", 30),
            image_timeout_s=_env_float("META_IMAGE_TIMEOUT_S", 60),
            video_timeout_s=_env_float("META_VIDEO_TIMEOUT_S", 600),
            chunk_size=chunk_size,
            batch_delay_s=_env_float("FANOUT_BATCH_DELAY_S", 1.0),
            max_count=_env_int("FANOUT_MAX_COUNT", 50),
            max_copies=_env_int("MULTIPLY_MAX_COPIES", 10),
            default_budget_minor=_env_int("FANOUT_DEFAULT_BUDGET_MINOR", 100),
            min_budget_minor=_env_int("MIN_BUDGET_MINOR", 100),
            resolver_initial_wait_s=_env_float("RESOLVER_INITIAL_WAIT_S", 8.0),
            resolver_delays_s=_env_delays("RESOLVER_DELAYS_S", (0, 3, 4, 5, 6, 8)),
            job_store_source=_env_str("JOB_STORE_SOURCE", "memory").lower(),
            job_db_path=_env_str("JOB_DB_PATH", ".fanout_jobs.db"),
            database_url=_env_str("DATABASE_URL") or None,
            job_execution=job_execution,
            service_api_key=_env_str("SERVICE_API_KEY") or None,
        )
