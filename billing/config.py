"""Environment-driven billing settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import load_dotenv

_FALSEY = {"0", "false", "no", "off"}


def _get_required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Environment variable {name} is required for billing.")
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in _FALSEY


def _get_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw.strip())
    except (InvalidOperation, AttributeError) as exc:
        raise RuntimeError(f"Environment variable {name} must be a decimal, got {raw!r}.") from exc


@dataclass(frozen=True)
class BillingSettings:
    database_url: str
    provider_api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    provider_timeout_seconds: float = 10.0
    webhook_tolerance_seconds: int = 300
    tax_rate: Decimal = Decimal("0")
    currency: str = "usd"
    invoice_due_days: int = 30
    rollover_interval_seconds: int = 0
    sync_plan_catalogue: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, load_dotenv_file: bool = True) -> "BillingSettings":
        if load_dotenv_file:
            load_dotenv()

        tax_rate = _get_decimal("BILLING_TAX_RATE", "0")
        if tax_rate < 0 or tax_rate >= 1:
            raise RuntimeError("BILLING_TAX_RATE must be a fraction in [0, 1).")

        return cls(
            database_url=_get_required_env("DATABASE_URL"),
            provider_api_key=os.getenv("STRIPE_SECRET_KEY") or None,
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            provider_timeout_seconds=float(os.getenv("BILLING_PROVIDER_TIMEOUT_SECONDS", "10")),
            webhook_tolerance_seconds=int(os.getenv("BILLING_WEBHOOK_TOLERANCE_SECONDS", "300")),
            tax_rate=tax_rate,
            currency=os.getenv("BILLING_CURRENCY", "usd").strip().lower() or "usd",
            invoice_due_days=int(os.getenv("BILLING_INVOICE_DUE_DAYS", "30")),
            rollover_interval_seconds=int(os.getenv("BILLING_ROLLOVER_INTERVAL_SECONDS", "0")),
            sync_plan_catalogue=_get_bool("BILLING_SYNC_PLAN_CATALOGUE", True),
            log_level=os.getenv("BILLING_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def require_provider_api_key(self) -> str:
        if not self.provider_api_key:
            raise RuntimeError("Environment variable STRIPE_SECRET_KEY is required for billing.")
        return self.provider_api_key

    def require_webhook_secret(self) -> str:
        if not self.webhook_secret:
            raise RuntimeError("Environment variable STRIPE_WEBHOOK_SECRET is required for billing.")
        return self.webhook_secret
