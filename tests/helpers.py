"""Test doubles and payload builders shared by the billing tests."""

import hashlib
import hmac
import itertools
import json
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from billing.ledger_client import (
    ProviderInvoice,
    ProviderRefund,
    ProviderSubscription,
    verify_signature,
)
from billing.plans import PLAN_DEFINITIONS, LimitDefinition, PlanDefinition

WEBHOOK_SECRET = "whsec_test_secret"

METERED_PLAN = PlanDefinition(
    slug="metered",
    name="Metered",
    monthly_price=Decimal("20.00"),
    yearly_price=Decimal("200.00"),
    description="Test plan with a small allowance and a round overage price.",
    sort_order=9,
    limits=(LimitDefinition("api_calls", 100, Decimal("0.50")),),
)

TEST_PLAN_DEFINITIONS = list(PLAN_DEFINITIONS) + [METERED_PLAN]


def price_id(slug: str, cycle: str = "monthly") -> str:
    return f"price_{slug}_{cycle}"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a provider signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeLedgerClient:
    """In-memory ledger provider that records every call.

    ``fail_on(name, exc)`` makes the next calls to ``name`` raise ``exc``.
    """

    def __init__(self, *, initial_status: str = "incomplete") -> None:
        self.calls: List[tuple] = []
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.initial_status = initial_status
        self._failures: Dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail_on(self, name: str, exc: Exception) -> None:
        self._failures[name] = exc

    def clear_failures(self) -> None:
        self._failures.clear()

    def calls_to(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for call_name, kwargs in self.calls if call_name == name]

    def _record(self, name: str, **kwargs: Any) -> int:
        with self._lock:
            self.calls.append((name, kwargs))
            failure = self._failures.get(name)
            if failure is not None:
                raise failure
            return next(self._ids)

    def set_status(self, external_ref: str, status: str) -> None:
        """Mirror a state change the tests deliver by webhook."""
        self.subscriptions[external_ref] = replace(self.subscriptions[external_ref], status=status)

    def ensure_customer(self, *, organization_id, email, existing_customer_id, idempotency_key):
        self._record(
            "ensure_customer",
            organization_id=organization_id,
            email=email,
            existing_customer_id=existing_customer_id,
            idempotency_key=idempotency_key,
        )
        return existing_customer_id or f"cus_{organization_id}"

    def create_subscription(self, *, customer_id, price_id, trial_days, metadata, idempotency_key):
        number = self._record(
            "create_subscription",
            customer_id=customer_id,
            price_id=price_id,
            trial_days=trial_days,
            metadata=dict(metadata),
            idempotency_key=idempotency_key,
        )
        now = datetime.now(timezone.utc).replace(microsecond=0)
        subscription = ProviderSubscription(
            id=f"sub_{number}",
            customer_id=customer_id,
            status="trialing" if trial_days else self.initial_status,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
            trial_end=now + timedelta(days=trial_days) if trial_days else None,
            cancel_at_period_end=False,
            canceled_at=None,
            price_id=price_id,
            item_id=f"si_{number}",
            metadata=dict(metadata),
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def update_subscription(self, external_ref, *, price_id, idempotency_key):
        self._record("update_subscription", external_ref=external_ref, price_id=price_id, idempotency_key=idempotency_key)
        updated = replace(self.subscriptions[external_ref], price_id=price_id)
        self.subscriptions[external_ref] = updated
        return updated

    def cancel_subscription(self, external_ref, *, at_period_end, idempotency_key):
        self._record(
            "cancel_subscription",
            external_ref=external_ref,
            at_period_end=at_period_end,
            idempotency_key=idempotency_key,
        )
        current = self.subscriptions[external_ref]
        if at_period_end:
            updated = replace(current, cancel_at_period_end=True)
        else:
            updated = replace(current, status="canceled", canceled_at=datetime.now(timezone.utc))
        self.subscriptions[external_ref] = updated
        return updated

    def reactivate_subscription(self, external_ref, *, idempotency_key):
        self._record("reactivate_subscription", external_ref=external_ref, idempotency_key=idempotency_key)
        updated = replace(self.subscriptions[external_ref], cancel_at_period_end=False)
        self.subscriptions[external_ref] = updated
        return updated

    def create_invoice(self, *, customer_id, lines, metadata, idempotency_key):
        number = self._record(
            "create_invoice",
            customer_id=customer_id,
            lines=list(lines),
            metadata=dict(metadata),
            idempotency_key=idempotency_key,
        )
        amount = sum(line.amount_minor for line in lines)
        return ProviderInvoice(id=f"in_{number}", status="open" if amount else "paid", amount_due=amount, payment_ref=None)

    def pay_invoice(self, invoice_ref, *, idempotency_key):
        number = self._record("pay_invoice", invoice_ref=invoice_ref, idempotency_key=idempotency_key)
        return ProviderInvoice(id=invoice_ref, status="paid", amount_due=0, payment_ref=f"pi_{number}")

    def refund_payment(self, payment_ref, *, amount_minor, idempotency_key):
        number = self._record(
            "refund_payment",
            payment_ref=payment_ref,
            amount_minor=amount_minor,
            idempotency_key=idempotency_key,
        )
        return ProviderRefund(id=f"re_{number}", status="succeeded", amount=amount_minor or 0)

    def void_invoice(self, invoice_ref, *, idempotency_key):
        self._record("void_invoice", invoice_ref=invoice_ref, idempotency_key=idempotency_key)
        return ProviderInvoice(id=invoice_ref, status="void", amount_due=0, payment_ref=None)

    def mark_uncollectible(self, invoice_ref, *, idempotency_key):
        self._record("mark_uncollectible", invoice_ref=invoice_ref, idempotency_key=idempotency_key)
        return ProviderInvoice(id=invoice_ref, status="uncollectible", amount_due=0, payment_ref=None)

    def verify_webhook(self, payload, signature_header):
        verify_signature(payload, signature_header, WEBHOOK_SECRET)


def subscription_payload(
    external_ref: str,
    *,
    status: str,
    customer_id: Optional[str] = None,
    price: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
    trial_end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Provider-shaped subscription object."""
    payload: Dict[str, Any] = {
        "id": external_ref,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata or {},
        "items": {"data": []},
    }
    if price:
        payload["items"]["data"].append({"id": f"si_{external_ref}", "price": {"id": price}})
    if period_start and period_end:
        payload["current_period_start"] = int(period_start.timestamp())
        payload["current_period_end"] = int(period_end.timestamp())
    if trial_end:
        payload["trial_end"] = int(trial_end.timestamp())
    return payload


def make_event(event_id: str, event_type: str, obj: Dict[str, Any], *, created: Optional[int] = None) -> bytes:
    body = {
        "id": event_id,
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }
    return json.dumps(body).encode("utf-8")


