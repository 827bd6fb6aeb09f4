from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    db_url: str
    poll_interval_seconds: int = 30
    job_max_duration_seconds: int = 3600
    retry_attempts: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    scheduler_enabled: bool = True
    auto_create_tables: bool = False
    api_port: int = 8090


def _flag(name: str, default: str) -> bool:
    return (os.getenv(name, default) or default).strip().lower() in ("1", "true", "yes")


def load_settings() -> Settings:
    # DB: allow either DATABASE_URL or DB_HOST/DB_* (aligns with other services).
    db_url = (os.getenv("DATABASE_URL") or "").strip()
    if not db_url:
        host = (os.getenv("DB_HOST") or "").strip()
        port = int(os.getenv("DB_PORT", "5432"))
        name = (os.getenv("DB_NAME") or "").strip()
        user = (os.getenv("DB_USERNAME") or os.getenv("DB_USER") or "").strip()
        password = os.getenv("DB_PASSWORD") or ""
        if host and name and user:
            from urllib.parse import quote_plus

            db_url = f"postgresql://{user}:{quote_plus(password)}@{host}:{port}/{name}"

    if not db_url:
        raise RuntimeError(
            "DATABASE_URL (or DB_HOST/DB_NAME/DB_USERNAME/DB_PASSWORD) must be set"
        )

    max_duration = int(os.getenv("INGESTION_JOB_MAX_DURATION_SECONDS", "3600"))
    if max_duration <= 0:
        raise RuntimeError("INGESTION_JOB_MAX_DURATION_SECONDS must be positive")

    return Settings(
        db_url=db_url,
        poll_interval_seconds=int(os.getenv("INGESTION_POLL_INTERVAL_SECONDS", "30")),
        job_max_duration_seconds=max_duration,
        retry_attempts=max(1, int(os.getenv("INGESTION_RETRY_ATTEMPTS", "3"))),
        retry_base_seconds=float(os.getenv("INGESTION_RETRY_BASE_SECONDS", "1.0")),
        retry_max_seconds=float(os.getenv("INGESTION_RETRY_MAX_SECONDS", "60.0")),
        scheduler_enabled=_flag("INGESTION_SCHEDULER_ENABLED", "1"),
        auto_create_tables=_flag("INGESTION_AUTO_CREATE_TABLES", "0"),
        api_port=int(os.getenv("INGESTION_API_PORT", "8090")),
    )
