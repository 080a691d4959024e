"""Outbound adapter to the ledger provider (Stripe).

Every mutating call carries an idempotency key derived from the local
operation id, so retrying a whole local operation never doubles a provider
effect. Provider failures surface as :class:`ProviderError`; callers roll back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

import stripe

from billing.errors import InvalidSignature, ProviderError, ValidationError
from core.datetime_utils import from_epoch

APP_NAME = "TenantBill"

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
    stripe.IdempotencyError,
)


def _as_mapping(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    for attr in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return converter()
    if isinstance(obj, Mapping):
        return dict(obj)
    raise TypeError(f"Unsupported provider payload: {type(obj)!r}")


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    customer_id: Optional[str]
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    trial_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    price_id: Optional[str]
    item_id: Optional[str]
    metadata: Dict[str, str]

    @classmethod
    def from_payload(cls, payload: Any) -> "ProviderSubscription":
        data = _as_mapping(payload)
        if not data.get("id"):
            raise ValidationError("Provider subscription payload has no id.", details={"object": data.get("object")})
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        # Newer API versions report the period on the subscription item.
        period_start = data.get("current_period_start") or first_item.get("current_period_start")
        period_end = data.get("current_period_end") or first_item.get("current_period_end")

        return cls(
            id=data["id"],
            customer_id=data.get("customer"),
            status=data.get("status") or "incomplete",
            current_period_start=from_epoch(period_start),
            current_period_end=from_epoch(period_end),
            trial_end=from_epoch(data.get("trial_end")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            canceled_at=from_epoch(data.get("canceled_at")),
            price_id=price.get("id") if isinstance(price, Mapping) else price,
            item_id=first_item.get("id"),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass(frozen=True)
class ProviderInvoice:
    id: str
    status: str
    amount_due: int
    payment_ref: Optional[str]

    @classmethod
    def from_payload(cls, payload: Any) -> "ProviderInvoice":
        data = _as_mapping(payload)
        if not data.get("id"):
            raise ValidationError("Provider invoice payload has no id.", details={"object": data.get("object")})
        return cls(
            id=data["id"],
            status=data.get("status") or "draft",
            amount_due=int(data.get("amount_due") or 0),
            payment_ref=data.get("payment_intent") or data.get("charge"),
        )


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    status: str
    amount: int


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    amount_minor: int
    currency: str


class LedgerClient(Protocol):
    def ensure_customer(
        self, *, organization_id: str, email: Optional[str], existing_customer_id: Optional[str], idempotency_key: str
    ) -> str: ...

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        trial_days: Optional[int],
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderSubscription: ...

    def update_subscription(self, external_ref: str, *, price_id: str, idempotency_key: str) -> ProviderSubscription: ...

    def cancel_subscription(self, external_ref: str, *, at_period_end: bool, idempotency_key: str) -> ProviderSubscription: ...

    def reactivate_subscription(self, external_ref: str, *, idempotency_key: str) -> ProviderSubscription: ...

    def create_invoice(
        self,
        *,
        customer_id: str,
        lines: Sequence[InvoiceLine],
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderInvoice: ...

    def pay_invoice(self, invoice_ref: str, *, idempotency_key: str) -> ProviderInvoice: ...

    def refund_payment(self, payment_ref: str, *, amount_minor: Optional[int], idempotency_key: str) -> ProviderRefund: ...

    def void_invoice(self, invoice_ref: str, *, idempotency_key: str) -> ProviderInvoice: ...

    def mark_uncollectible(self, invoice_ref: str, *, idempotency_key: str) -> ProviderInvoice: ...

    def verify_webhook(self, payload: bytes, signature_header: str) -> None: ...


@lru_cache(maxsize=4)
def _configure_stripe(timeout_seconds: float, max_network_retries: int) -> None:
    stripe.app_info = {"name": APP_NAME, "version": "1.0.0"}
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
    stripe.max_network_retries = max_network_retries


class StripeLedgerClient:
    """Stripe-backed :class:`LedgerClient`."""

    def __init__(
        self,
        api_key: str,
        *,
        webhook_secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        webhook_tolerance_seconds: int = 300,
        max_network_retries: int = 0,
    ) -> None:
        if not api_key:
            raise RuntimeError("A Stripe secret key is required for the ledger client.")
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance_seconds
        _configure_stripe(float(timeout_seconds), int(max_network_retries))

    def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, api_key=self._api_key, **kwargs)
        except _RETRYABLE_ERRORS as exc:
            logger.warning("Ledger provider %s failed (retryable): %s", operation, exc)
            raise ProviderError(
                f"Ledger provider call {operation} failed: {exc}",
                operation=operation,
                retryable=True,
            ) from exc
        except stripe.StripeError as exc:
            logger.error("Ledger provider %s rejected the request: %s", operation, exc)
            raise ProviderError(
                f"Ledger provider rejected {operation}: {exc}",
                operation=operation,
                retryable=False,
                details={"provider_code": getattr(exc, "code", None)},
            ) from exc

    def ensure_customer(
        self,
        *,
        organization_id: str,
        email: Optional[str],
        existing_customer_id: Optional[str],
        idempotency_key: str,
    ) -> str:
        """Retrieve or create a provider customer for the organization."""

        if existing_customer_id:
            customer = self._call("retrieve_customer", stripe.Customer.retrieve, existing_customer_id)
            return _as_mapping(customer)["id"]

        params: Dict[str, Any] = {"metadata": {"organization_id": organization_id}}
        if email:
            params["email"] = email
        customer = self._call(
            "create_customer",
            stripe.Customer.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return _as_mapping(customer)["id"]

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        trial_days: Optional[int],
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderSubscription:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id, "quantity": 1}],
            "metadata": dict(metadata),
            "payment_behavior": "default_incomplete",
        }
        if trial_days:
            params["trial_period_days"] = trial_days

        subscription = self._call(
            "create_subscription",
            stripe.Subscription.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return ProviderSubscription.from_payload(subscription)

    def update_subscription(self, external_ref: str, *, price_id: str, idempotency_key: str) -> ProviderSubscription:
        current = ProviderSubscription.from_payload(
            self._call("retrieve_subscription", stripe.Subscription.retrieve, external_ref)
        )
        items: List[Dict[str, Any]] = [{"price": price_id}]
        if current.item_id:
            items = [{"id": current.item_id, "price": price_id}]

        subscription = self._call(
            "update_subscription",
            stripe.Subscription.modify,
            external_ref,
            items=items,
            proration_behavior="create_prorations",
            idempotency_key=idempotency_key,
        )
        return ProviderSubscription.from_payload(subscription)

    def cancel_subscription(self, external_ref: str, *, at_period_end: bool, idempotency_key: str) -> ProviderSubscription:
        if at_period_end:
            subscription = self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                external_ref,
                cancel_at_period_end=True,
                idempotency_key=idempotency_key,
            )
        else:
            subscription = self._call(
                "cancel_subscription",
                stripe.Subscription.cancel,
                external_ref,
                idempotency_key=idempotency_key,
            )
        return ProviderSubscription.from_payload(subscription)

    def reactivate_subscription(self, external_ref: str, *, idempotency_key: str) -> ProviderSubscription:
        subscription = self._call(
            "reactivate_subscription",
            stripe.Subscription.modify,
            external_ref,
            cancel_at_period_end=False,
            idempotency_key=idempotency_key,
        )
        return ProviderSubscription.from_payload(subscription)

    def create_invoice(
        self,
        *,
        customer_id: str,
        lines: Sequence[InvoiceLine],
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderInvoice:
        invoice = self._call(
            "create_invoice",
            stripe.Invoice.create,
            customer=customer_id,
            collection_method="charge_automatically",
            auto_advance=False,
            metadata=dict(metadata),
            idempotency_key=idempotency_key,
        )
        invoice_id = _as_mapping(invoice)["id"]

        for position, line in enumerate(lines):
            if line.amount_minor <= 0:
                continue
            self._call(
                "create_invoice_item",
                stripe.InvoiceItem.create,
                customer=customer_id,
                invoice=invoice_id,
                amount=line.amount_minor,
                currency=line.currency,
                description=line.description,
                idempotency_key=f"{idempotency_key}:line:{position}",
            )

        finalized = self._call(
            "finalize_invoice",
            stripe.Invoice.finalize_invoice,
            invoice_id,
            idempotency_key=f"{idempotency_key}:finalize",
        )
        return ProviderInvoice.from_payload(finalized)

    def pay_invoice(self, invoice_ref: str, *, idempotency_key: str) -> ProviderInvoice:
        invoice = self._call("pay_invoice", stripe.Invoice.pay, invoice_ref, idempotency_key=idempotency_key)
        return ProviderInvoice.from_payload(invoice)

    def refund_payment(self, payment_ref: str, *, amount_minor: Optional[int], idempotency_key: str) -> ProviderRefund:
        params: Dict[str, Any] = {"payment_intent": payment_ref}
        if amount_minor is not None:
            params["amount"] = amount_minor
        refund = _as_mapping(
            self._call("refund_payment", stripe.Refund.create, idempotency_key=idempotency_key, **params)
        )
        return ProviderRefund(id=refund["id"], status=refund.get("status") or "pending", amount=int(refund.get("amount") or 0))

    def void_invoice(self, invoice_ref: str, *, idempotency_key: str) -> ProviderInvoice:
        invoice = self._call("void_invoice", stripe.Invoice.void_invoice, invoice_ref, idempotency_key=idempotency_key)
        return ProviderInvoice.from_payload(invoice)

    def mark_uncollectible(self, invoice_ref: str, *, idempotency_key: str) -> ProviderInvoice:
        invoice = self._call(
            "mark_uncollectible",
            stripe.Invoice.mark_uncollectible,
            invoice_ref,
            idempotency_key=idempotency_key,
        )
        return ProviderInvoice.from_payload(invoice)

    def verify_webhook(self, payload: bytes, signature_header: str) -> None:
        """Validate the ``t=…,v1=…`` HMAC-SHA256 signature header."""

        if not self._webhook_secret:
            raise RuntimeError("Environment variable STRIPE_WEBHOOK_SECRET is required for billing.")
        verify_signature(payload, signature_header, self._webhook_secret, tolerance=self._webhook_tolerance)


def verify_signature(payload: bytes, signature_header: Optional[str], secret: str, *, tolerance: int = 300) -> None:
    if not signature_header:
        raise InvalidSignature("Missing provider signature header.")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature_header,
            secret,
            tolerance,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Invalid provider signature: %s", exc)
        raise InvalidSignature("Invalid provider signature.") from exc
    except UnicodeDecodeError as exc:
        raise InvalidSignature("Webhook payload is not valid UTF-8.") from exc
