import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        session_max_age_hours: int,
        default_currency: str,
        auth_url: str,
        auth_api_key: str,
        auth_timeout_secs: float,
        site_url: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.session_max_age_hours = session_max_age_hours
        self.default_currency = default_currency
        self.auth_url = auth_url
        self.auth_api_key = auth_api_key
        self.auth_timeout_secs = auth_timeout_secs
        self.site_url = site_url


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Africa/Freetown")
    secret_key = os.getenv(
        "BUDGET_SECRET_KEY",
        "5c1f0e7d9a4b2e8f63d0c7a1b9e4f2d6a8c3e5b7d1f9a0c2e4b6d8f0a1c3e5b7",
    )
    session_max_age_hours = int(os.getenv("BUDGET_SESSION_MAX_AGE_HOURS", "168"))
    default_currency = os.getenv("BUDGET_DEFAULT_CURRENCY", "SLE").upper()
    auth_url = os.getenv("BUDGET_AUTH_URL", "http://localhost:54321/auth/v1")
    auth_api_key = os.getenv("BUDGET_AUTH_API_KEY", "")
    auth_timeout_secs = float(os.getenv("BUDGET_AUTH_TIMEOUT_SECS", "10"))
    site_url = os.getenv("BUDGET_SITE_URL", "http://localhost:8000")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        session_max_age_hours=session_max_age_hours,
        default_currency=default_currency,
        auth_url=auth_url.rstrip("/"),
        auth_api_key=auth_api_key,
        auth_timeout_secs=auth_timeout_secs,
        site_url=site_url.rstrip("/"),
    )
