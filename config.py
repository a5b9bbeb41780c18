import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        default_user_id: Optional[int],
        default_currency: str,
        transfer_category: str,
        transfer_full_compensation: bool,
        projection_fail_soft: bool,
        token_max_age_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.default_user_id = default_user_id
        self.default_currency = default_currency
        self.transfer_category = transfer_category
        self.transfer_full_compensation = transfer_full_compensation
        self.projection_fail_soft = projection_fail_soft
        self.token_max_age_hours = token_max_age_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    secret_key = os.getenv(
        "LEDGER_SECRET_KEY",
        "3f9c1d0b7e2a4c58a1d6e9b0c4f7a2e85d3b6c9f0a1e4d7b2c5f8a0e3d6b9c1f",
    )
    raw_user = os.getenv("LEDGER_DEFAULT_USER_ID", "")
    default_user_id = int(raw_user) if raw_user.strip() else None
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "BRL").upper()
    transfer_category = os.getenv("LEDGER_TRANSFER_CATEGORY", "Transfer")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        default_user_id=default_user_id,
        default_currency=default_currency,
        transfer_category=transfer_category,
        transfer_full_compensation=_env_bool(
            "LEDGER_TRANSFER_FULL_COMPENSATION", False
        ),
        projection_fail_soft=_env_bool("LEDGER_PROJECTION_FAIL_SOFT", True),
        token_max_age_hours=int(os.getenv("LEDGER_TOKEN_MAX_AGE_HOURS", "720")),
    )
