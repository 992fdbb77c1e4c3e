# ----------------------------------------------------------------
# Import configuration variables to be used throughout the project
# ----------------------------------------------------------------
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

# Load .env (allow container env to override file values)
load_dotenv(override=True)


def _rstrip_slash(s: str) -> str:
    return (s or "").rstrip("/")


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


@dataclass(frozen=True)
class ShopifyConfig:
    shop: str
    admin_token: str
    api_version: str = "2024-07"
    timeout: float = 20.0


@dataclass(frozen=True)
class HoldedConfig:
    api_key: str
    base_url: str = "https://api.holded.com/api"
    page_size: int = 200
    timeout: float = 30.0


@dataclass(frozen=True)
class SendcloudConfig:
    api_key: str
    api_secret: str
    base_url: str = "https://panel.sendcloud.sc/api/v2"
    shipping_method: int | None = None
    timeout: float = 30.0


class Settings:
    """
    Process configuration. Values come from the environment (after .env);
    keyword overrides win, which is how tests build isolated settings.
    """

    def __init__(self, **overrides: Any) -> None:
        # ── Store ────────────────────────────────────────────────────────────
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/crm_sync.db")

        # ── Job queue / dispatcher ───────────────────────────────────────────
        self.JOB_MAX_ATTEMPTS: int = _get_int("JOB_MAX_ATTEMPTS", 5)
        self.JOB_BACKOFF_BASE_SEC: float = _get_float("JOB_BACKOFF_BASE_SEC", 30.0)
        self.JOB_BACKOFF_MAX_SEC: float = _get_float("JOB_BACKOFF_MAX_SEC", 3600.0)
        self.JOB_BACKOFF_JITTER: float = _get_float("JOB_BACKOFF_JITTER", 0.2)
        self.JOB_LEASE_SEC: float = _get_float("JOB_LEASE_SEC", 600.0)
        self.DISPATCH_BATCH_SIZE: int = _get_int("DISPATCH_BATCH_SIZE", 20)
        self.DISPATCH_CONCURRENCY: int = _get_int("DISPATCH_CONCURRENCY", 4)
        self.DISPATCH_POLL_SEC: float = _get_float("DISPATCH_POLL_SEC", 5.0)
        self.WORKER_ENABLED: bool = _get_bool("WORKER_ENABLED", True)
        self.RECONCILE_INTERVAL_SEC: float = _get_float("RECONCILE_INTERVAL_SEC", 0.0)

        # ── Webhooks ─────────────────────────────────────────────────────────
        self.SHOPIFY_WEBHOOK_SECRET: str = os.getenv("SHOPIFY_WEBHOOK_SECRET", "")
        self.HOLDED_WEBHOOK_SECRET: str = os.getenv("HOLDED_WEBHOOK_SECRET", "")
        self.WEBHOOK_DEBUG: bool = _get_bool("WEBHOOK_DEBUG", False)
        self.WEBHOOK_PENDING_TIMEOUT_SEC: float = _get_float("WEBHOOK_PENDING_TIMEOUT_SEC", 300.0)

        # ── Shopify ──────────────────────────────────────────────────────────
        self.SHOPIFY_SHOP: str = os.getenv("SHOPIFY_SHOP", "")
        self.SHOPIFY_ADMIN_TOKEN: str = os.getenv("SHOPIFY_ADMIN_TOKEN", "")
        self.SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-07")

        # ── Holded (invoicing / accounting) ──────────────────────────────────
        self.HOLDED_API_KEY: str = os.getenv("HOLDED_API_KEY", "")
        self.HOLDED_BASE_URL: str = _rstrip_slash(os.getenv("HOLDED_BASE_URL", "https://api.holded.com/api"))
        self.HOLDED_PAGE_SIZE: int = _get_int("HOLDED_PAGE_SIZE", 200)
        self.DEFAULT_TAX_RATE: float = _get_float("DEFAULT_TAX_RATE", 21.0)
        self.DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "EUR")

        # ── Sendcloud (parcel carrier) ───────────────────────────────────────
        self.SENDCLOUD_API_KEY: str = os.getenv("SENDCLOUD_API_KEY", "")
        self.SENDCLOUD_API_SECRET: str = os.getenv("SENDCLOUD_API_SECRET", "")
        self.SENDCLOUD_BASE_URL: str = _rstrip_slash(
            os.getenv("SENDCLOUD_BASE_URL", "https://panel.sendcloud.sc/api/v2")
        )
        self.SENDCLOUD_SHIPPING_METHOD: int | None = _get_int("SENDCLOUD_SHIPPING_METHOD", 0) or None

        # ── Rendered documents ───────────────────────────────────────────────
        self.DOCUMENTS_DIR: str = os.getenv("DOCUMENTS_DIR", "./data/documents")
        self.DOCUMENTS_BASE_URL: str = _rstrip_slash(os.getenv("DOCUMENTS_BASE_URL", "/documents"))
        self.COMPANY_NAME: str = os.getenv("COMPANY_NAME", "Santa Brisa")
        self.COMPANY_VAT: str = os.getenv("COMPANY_VAT", "")
        self.APP_BASE_URL: str = _rstrip_slash(os.getenv("APP_BASE_URL", "https://app.local"))

        # ── Admin Panel ──────────────────────────────────────────────────────
        self.ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
        self.ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")

        # ── CORS ─────────────────────────────────────────────────────────────
        # Comma-separated list in .env, e.g. "https://example.com, https://foo.bar"
        self.CORS_ORIGINS: list[str] = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ]

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    # Client configs are derived once at startup and handed to constructors.

    def shopify(self) -> ShopifyConfig:
        return ShopifyConfig(
            shop=self.SHOPIFY_SHOP,
            admin_token=self.SHOPIFY_ADMIN_TOKEN,
            api_version=self.SHOPIFY_API_VERSION,
        )

    def holded(self) -> HoldedConfig:
        return HoldedConfig(
            api_key=self.HOLDED_API_KEY,
            base_url=self.HOLDED_BASE_URL,
            page_size=self.HOLDED_PAGE_SIZE,
        )

    def sendcloud(self) -> SendcloudConfig:
        return SendcloudConfig(
            api_key=self.SENDCLOUD_API_KEY,
            api_secret=self.SENDCLOUD_API_SECRET,
            base_url=self.SENDCLOUD_BASE_URL,
            shipping_method=self.SENDCLOUD_SHIPPING_METHOD,
        )


settings = Settings()
