import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        cache_url: str,
        cache_password: Optional[str],
        session_secret: str,
        session_max_age_hours: int,
        ai_api_key: Optional[str],
        ai_base_url: str,
        ai_model: str,
        ai_timeout_secs: float,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.cache_url = cache_url
        self.cache_password = cache_password
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.ai_api_key = ai_api_key
        self.ai_base_url = ai_base_url
        self.ai_model = ai_model
        self.ai_timeout_secs = ai_timeout_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANSYNC_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANSYNC_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "finansync.db"
        database_url = f"sqlite:///{default_db}"
    cache_url = os.getenv("FINANSYNC_CACHE_URL", "memory://")
    cache_password = os.getenv("FINANSYNC_CACHE_PASSWORD") or None
    session_secret = os.getenv(
        "FINANSYNC_SESSION_SECRET",
        "3f0c6f1d2b7a4e59a1c8d4e2b9f07a6c5d3e1f2a4b6c8d0e2f4a6b8c0d2e4f6a",
    )
    session_max_age_hours = int(os.getenv("FINANSYNC_SESSION_MAX_AGE_HOURS", "24"))
    ai_api_key = os.getenv("FINANSYNC_AI_API_KEY") or None
    ai_base_url = os.getenv(
        "FINANSYNC_AI_BASE_URL",
        "https://generativelanguage.googleapis.com/v1beta/openai/",
    )
    if not ai_base_url.endswith("/"):
        ai_base_url += "/"
    ai_model = os.getenv("FINANSYNC_AI_MODEL", "gemini-2.0-flash-exp")
    ai_timeout_secs = float(os.getenv("FINANSYNC_AI_TIMEOUT_SECS", "20"))
    log_level = os.getenv("FINANSYNC_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        cache_url=cache_url,
        cache_password=cache_password,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        ai_api_key=ai_api_key,
        ai_base_url=ai_base_url,
        ai_model=ai_model,
        ai_timeout_secs=ai_timeout_secs,
        log_level=log_level,
    )
