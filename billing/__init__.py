"""Billing: plans, subscriptions, usage metering, invoices and provider reconciliation."""

from .config import BillingSettings
from .engine import EventResult, ReconciliationEngine, RolloverReport
from .errors import (
    BillingError,
    ConflictError,
    InvalidSignature,
    InvalidTransition,
    NotFoundError,
    ProviderError,
    QuotaExceeded,
    RetryLater,
    ValidationError,
)
from .invoices import InvoiceLedger
from .ledger_client import LedgerClient, StripeLedgerClient
from .plans import PLAN_DEFINITIONS, PlanCatalog, get_plan_definitions, sync_plan_catalogue
from .services import BillingServices, build_services
from .subscriptions import SubscriptionStore
from .usage import BatchItemResult, QuotaCheck, UsageMeter

__all__ = [
    "BatchItemResult",
    "BillingError",
    "BillingServices",
    "BillingSettings",
    "ConflictError",
    "EventResult",
    "InvalidSignature",
    "InvalidTransition",
    "InvoiceLedger",
    "LedgerClient",
    "NotFoundError",
    "PLAN_DEFINITIONS",
    "PlanCatalog",
    "ProviderError",
    "QuotaCheck",
    "QuotaExceeded",
    "ReconciliationEngine",
    "RetryLater",
    "RolloverReport",
    "StripeLedgerClient",
    "SubscriptionStore",
    "UsageMeter",
    "ValidationError",
    "build_services",
    "get_plan_definitions",
    "sync_plan_catalogue",
]
