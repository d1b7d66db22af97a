"""
Application settings

Values come from the process environment; a local .env file is loaded
first so development setups don't need exported variables.
"""
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

PLACEHOLDER_VALUES = {"", "your_store_id", "your_store_password"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    if value in PLACEHOLDER_VALUES:
        return default
    return value


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    app_url: str = Field("http://localhost:8000", description="Public base URL used for callbacks and redirects")
    currency: str = "BDT"
    log_level: str = "INFO"
    gateway_timeout: float = Field(30.0, gt=0)
    reserve_stock: bool = Field(False, description="Decrement stock when an order is created")

    sslcommerz_store_id: Optional[str] = None
    sslcommerz_store_password: Optional[str] = None
    sslcommerz_sandbox: bool = True

    bkash_app_key: Optional[str] = None
    bkash_app_secret: Optional[str] = None
    bkash_username: Optional[str] = None
    bkash_password: Optional[str] = None
    bkash_sandbox: bool = True

    rocket_init_url: Optional[str] = None
    nagad_init_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_env("DATABASE_URL"),
            database_name=_env("DATABASE_NAME"),
            app_url=(_env("APP_URL") or "http://localhost:8000").rstrip("/"),
            currency=_env("CURRENCY", "BDT"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            gateway_timeout=float(_env("GATEWAY_TIMEOUT", "30")),
            reserve_stock=_env_flag("RESERVE_STOCK"),
            sslcommerz_store_id=_env("SSLCOMMERZ_STORE_ID"),
            sslcommerz_store_password=_env("SSLCOMMERZ_STORE_PASSWORD"),
            sslcommerz_sandbox=_env_flag("SSLCOMMERZ_SANDBOX", True),
            bkash_app_key=_env("BKASH_APP_KEY"),
            bkash_app_secret=_env("BKASH_APP_SECRET"),
            bkash_username=_env("BKASH_USERNAME"),
            bkash_password=_env("BKASH_PASSWORD"),
            bkash_sandbox=_env_flag("BKASH_SANDBOX", True),
            rocket_init_url=_env("ROCKET_INIT_URL"),
            nagad_init_url=_env("NAGAD_INIT_URL"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
