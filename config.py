# config.py
import os
from functools import lru_cache
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

_TRUTHY = {"1", "true", "yes", "on"}


def _env(name: str, default: str = "") -> str:
  return os.getenv(name, default).strip()


def _optional(name: str) -> Optional[str]:
  return _env(name) or None


class Settings(BaseModel):
  app_env: Literal["development", "production"] = "development"
  log_level: str = "INFO"
  cors_origins: List[str] = Field(default_factory=lambda: ["http://127.0.0.1:5173", "http://localhost:5173"])
  # peers allowed to set X-Forwarded-For, as addresses or CIDR ranges
  trusted_proxies: List[str] = Field(default_factory=list)

  mpesa_env: Literal["sandbox", "production"] = "sandbox"
  mpesa_consumer_key: Optional[str] = None
  mpesa_consumer_secret: Optional[str] = None
  mpesa_passkey: str = ""
  mpesa_shortcode: str = "174379"
  mpesa_callback_url: Optional[str] = None
  mpesa_timeout_seconds: float = 30.0

  cron_secret: Optional[str] = None
  rollover_schedule_enabled: bool = False
  rollover_time_hh: int = Field(default=1, ge=0, le=23)
  rollover_time_mm: int = Field(default=0, ge=0, le=59)

  @property
  def is_production(self) -> bool:
    return self.app_env == "production"

  @property
  def mpesa_base_url(self) -> str:
    return PRODUCTION_BASE_URL if self.mpesa_env == "production" else SANDBOX_BASE_URL

  @property
  def mpesa_configured(self) -> bool:
    # no consumer key means developer mode, not an error
    return bool(self.mpesa_consumer_key)

  @classmethod
  def from_env(cls) -> "Settings":
    load_dotenv()
    return cls(
      app_env=_env("APP_ENV", "development").lower(),
      log_level=_env("LOG_LEVEL", "INFO").upper(),
      cors_origins=[
        x.strip()
        for x in _env("CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173").split(",")
        if x.strip()
      ],
      trusted_proxies=[x.strip() for x in _env("TRUSTED_PROXIES").split(",") if x.strip()],
      mpesa_env=_env("MPESA_ENV", "sandbox").lower(),
      mpesa_consumer_key=_optional("MPESA_CONSUMER_KEY"),
      mpesa_consumer_secret=_optional("MPESA_CONSUMER_SECRET"),
      mpesa_passkey=_env("MPESA_PASSKEY"),
      mpesa_shortcode=_env("MPESA_SHORTCODE", "174379"),
      mpesa_callback_url=_optional("MPESA_CALLBACK_URL"),
      mpesa_timeout_seconds=float(_env("MPESA_TIMEOUT_SECONDS", "30")),
      cron_secret=_optional("CRON_SECRET"),
      rollover_schedule_enabled=_env("ROLLOVER_SCHEDULE_ENABLED", "0").lower() in _TRUTHY,
      rollover_time_hh=int(_env("ROLLOVER_TIME_HH", "1")),
      rollover_time_mm=int(_env("ROLLOVER_TIME_MM", "0")),
    )


@lru_cache
def get_settings() -> Settings:
  return Settings.from_env()
