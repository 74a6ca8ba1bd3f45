"""Configuration management for the short-link service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from app.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    db_url = settings.DATABASE_URL

**Step 3 — Build redirect targets**::
    settings.frontend_page(settings.EXPIRED_PATH)

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- Quota, code-length and retention constants live here, not in the modules
  that use them.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "shortlinks"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"
    FRONTEND_URL: str = "http://localhost:3000"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://shortlinks:shortlinks@db:5432/shortlinks"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False

    # Redis link cache
    REDIS_URL: str = "redis://redis:6379/0"
    LINK_CACHE_ENABLED: bool = True
    LINK_CACHE_TTL_SECONDS: int = 3600

    # Short code config
    SHORT_CODE_LENGTH: int = 6
    SHORT_CODE_MAX_ATTEMPTS: int = 5
    CUSTOM_CODE_MIN_LENGTH: int = 3
    CUSTOM_CODE_MAX_LENGTH: int = 20

    # Redirects
    REDIRECT_STATUS_CODE: int = 307
    NOT_FOUND_PATH: str = "/404"
    EXPIRED_PATH: str = "/expired"
    INACTIVE_PATH: str = "/error"
    CLICK_INCREMENT_RETRIES: int = 1

    # Plans and analytics retention
    PLAN_REFRESH_SECONDS: int = 300
    DEFAULT_ANALYTICS_RETENTION_DAYS: int = 7

    # Link creation enrichment
    FETCH_PAGE_TITLE: bool = True
    PAGE_TITLE_TIMEOUT_SECONDS: float = 2.0

    # Billing webhook; empty disables signature verification
    BILLING_WEBHOOK_SECRET: str = ""

    # Listing
    LIST_DEFAULT_LIMIT: int = 50
    LIST_MAX_LIMIT: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    def frontend_page(self, path: str) -> str:
        return f"{self.FRONTEND_URL.rstrip('/')}{path}"

    def short_url(self, short_code: str) -> str:
        return f"{self.BASE_URL.rstrip('/')}/{short_code}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
