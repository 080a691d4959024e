"""Provider webhook handlers for subscription and invoice lifecycle events.

Handlers are plain functions registered in :data:`EVENT_HANDLERS`. Each runs
inside the engine's transaction with the subscription row locked and returns a
:class:`HandlerResult`; none of them commit.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from billing.errors import RetryLater, ValidationError
from billing.invoices import apply_invoice_payment, apply_invoice_payment_failure
from billing.ledger_client import ProviderSubscription
from billing.subscriptions import (
    apply_provider_state,
    assert_transition,
    locate_subscription,
    record_history,
)
from core.datetime_utils import ensure_utc, parse_provider_timestamp
from models import Subscription

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_STALE = "stale"
OUTCOME_IGNORED = "ignored"

_BILLABLE_STATUSES = frozenset({"active", "trialing", "past_due"})


@dataclass(frozen=True)
class ProviderEvent:
    id: str
    type: str
    created_at: datetime
    data: Dict[str, Any]

    @property
    def object(self) -> Dict[str, Any]:
        if isinstance(self.data.get("object"), Mapping):
            return dict(self.data["object"])
        return dict(self.data)


@dataclass
class HandlerResult:
    outcome: str
    subscription_id: Optional[str] = None
    detail: Optional[str] = None
    follow_ups: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


def parse_event(payload: bytes) -> ProviderEvent:
    """Parse a verified webhook body into a :class:`ProviderEvent`."""

    try:
        body = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Webhook payload is not valid JSON.") from exc
    if not isinstance(body, Mapping):
        raise ValidationError("Webhook payload must be a JSON object.")

    event_id = body.get("id")
    event_type = body.get("type")
    created_at = parse_provider_timestamp(body.get("created", body.get("created_at")))
    data = body.get("data")
    if not event_id or not event_type or created_at is None or not isinstance(data, Mapping):
        raise ValidationError(
            "Webhook payload needs id, type, created and data.",
            details={"event_id": event_id, "event_type": event_type},
        )
    return ProviderEvent(id=str(event_id), type=str(event_type), created_at=created_at, data=dict(data))


def _is_stale(subscription: Subscription, event: ProviderEvent) -> bool:
    last_event_at = ensure_utc(subscription.last_event_at)
    return last_event_at is not None and event.created_at < last_event_at


def _find_subscription_by_ref(session: Session, external_ref: str) -> Optional[Subscription]:
    return (
        session.query(Subscription)
        .filter(Subscription.external_ref == external_ref)
        .with_for_update()
        .one_or_none()
    )


def _invoice_subscription_ref(invoice_data: Mapping[str, Any]) -> Optional[str]:
    ref = invoice_data.get("subscription")
    if isinstance(ref, Mapping):
        ref = ref.get("id")
    if ref:
        return ref
    # Newer API versions nest it under parent.subscription_details.
    details = (invoice_data.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _apply_subscription_payload(session: Session, event: ProviderEvent, *, allow_fallbacks: bool) -> HandlerResult:
    provider_subscription = ProviderSubscription.from_payload(event.object)
    subscription = locate_subscription(session, provider_subscription, allow_fallbacks=allow_fallbacks)
    if subscription is None:
        raise RetryLater(
            f"No local subscription for provider subscription {provider_subscription.id} yet.",
            details={"external_ref": provider_subscription.id, "event_id": event.id},
        )
    if _is_stale(subscription, event):
        return HandlerResult(OUTCOME_STALE, subscription.id)

    previous_status = subscription.status
    previous_start = ensure_utc(subscription.current_period_start)
    previous_end = ensure_utc(subscription.current_period_end)
    apply_provider_state(
        session,
        subscription,
        provider_subscription,
        event_at=event.created_at,
        source="webhook",
        provider_event_id=event.id,
    )
    result = HandlerResult(OUTCOME_APPLIED, subscription.id)
    current_start = ensure_utc(subscription.current_period_start)
    if (
        previous_status in _BILLABLE_STATUSES
        and previous_end is not None
        and current_start is not None
        and current_start >= previous_end
    ):
        # The provider renewed the period; the one it left still has to be invoiced.
        result.follow_ups.append(
            (
                "close_period",
                {
                    "subscription_id": subscription.id,
                    "period_start": previous_start.isoformat(),
                    "period_end": previous_end.isoformat(),
                },
            )
        )
    return result


def handle_subscription_created(session: Session, event: ProviderEvent) -> HandlerResult:
    return _apply_subscription_payload(session, event, allow_fallbacks=True)


def handle_subscription_updated(session: Session, event: ProviderEvent) -> HandlerResult:
    return _apply_subscription_payload(session, event, allow_fallbacks=False)


def handle_subscription_deleted(session: Session, event: ProviderEvent) -> HandlerResult:
    provider_subscription = ProviderSubscription.from_payload(event.object)
    subscription = locate_subscription(session, provider_subscription)
    if subscription is None:
        raise RetryLater(
            f"No local subscription for provider subscription {provider_subscription.id} yet.",
            details={"external_ref": provider_subscription.id, "event_id": event.id},
        )
    if _is_stale(subscription, event):
        return HandlerResult(OUTCOME_STALE, subscription.id)
    if subscription.status == "canceled":
        subscription.last_event_at = event.created_at
        return HandlerResult(OUTCOME_APPLIED, subscription.id, detail="already canceled")

    apply_provider_state(
        session,
        subscription,
        provider_subscription,
        event_at=event.created_at,
        source="webhook",
        provider_event_id=event.id,
        status_override="canceled",
    )
    return HandlerResult(OUTCOME_APPLIED, subscription.id)


def _transition_from_invoice(session: Session, subscription: Subscription, new_status: str, event: ProviderEvent) -> None:
    assert_transition(subscription.status, new_status, subscription_id=subscription.id)
    previous_status = subscription.status
    subscription.status = new_status
    subscription.last_event_at = event.created_at
    record_history(
        session,
        subscription,
        change_type="status_changed",
        source="webhook",
        previous_status=previous_status,
        previous_plan_id=subscription.plan_id,
        provider_event_id=event.id,
    )


def _invoice_subscription(session: Session, event: ProviderEvent) -> Tuple[Dict[str, Any], Optional[Subscription]]:
    invoice_data = event.object
    external_ref = _invoice_subscription_ref(invoice_data)
    if not external_ref:
        return invoice_data, None
    subscription = _find_subscription_by_ref(session, external_ref)
    if subscription is None:
        raise RetryLater(
            f"Invoice {invoice_data.get('id')} references unknown subscription {external_ref}.",
            details={"external_ref": external_ref, "event_id": event.id},
        )
    return invoice_data, subscription


def handle_invoice_payment_succeeded(session: Session, event: ProviderEvent) -> HandlerResult:
    invoice_data, subscription = _invoice_subscription(session, event)
    if invoice_data.get("id"):
        apply_invoice_payment(
            session,
            invoice_data["id"],
            paid_at=parse_provider_timestamp((invoice_data.get("status_transitions") or {}).get("paid_at"))
            or event.created_at,
            payment_ref=invoice_data.get("payment_intent") or invoice_data.get("charge"),
        )
    if subscription is None:
        return HandlerResult(OUTCOME_APPLIED)
    if _is_stale(subscription, event):
        return HandlerResult(OUTCOME_STALE, subscription.id)
    if subscription.status == "past_due":
        _transition_from_invoice(session, subscription, "active", event)
    return HandlerResult(OUTCOME_APPLIED, subscription.id)


def handle_invoice_payment_failed(session: Session, event: ProviderEvent) -> HandlerResult:
    invoice_data, subscription = _invoice_subscription(session, event)
    error = (invoice_data.get("last_finalization_error") or {}).get("message")
    if invoice_data.get("id"):
        apply_invoice_payment_failure(
            session,
            invoice_data["id"],
            error or f"payment attempt {invoice_data.get('attempt_count', 1)} failed",
        )
    if subscription is None:
        return HandlerResult(OUTCOME_APPLIED)
    if _is_stale(subscription, event):
        return HandlerResult(OUTCOME_STALE, subscription.id)
    if subscription.status in ("active", "trialing"):
        _transition_from_invoice(session, subscription, "past_due", event)
    return HandlerResult(OUTCOME_APPLIED, subscription.id)


def handle_trial_will_end(session: Session, event: ProviderEvent) -> HandlerResult:
    provider_subscription = ProviderSubscription.from_payload(event.object)
    subscription = locate_subscription(session, provider_subscription)
    if subscription is None:
        logger.info("Trial ending notice for unknown subscription %s", provider_subscription.id)
        return HandlerResult(OUTCOME_IGNORED, detail="unknown subscription")

    trial_end = provider_subscription.trial_end or ensure_utc(subscription.trial_ends_at)
    return HandlerResult(
        OUTCOME_APPLIED,
        subscription.id,
        follow_ups=[
            (
                "trial_will_end_notice",
                {
                    "subscription_id": subscription.id,
                    "organization_id": subscription.organization_id,
                    "trial_ends_at": trial_end.isoformat() if trial_end else None,
                },
            )
        ],
    )


EventHandler = Callable[[Session, ProviderEvent], HandlerResult]

EVENT_HANDLERS: Mapping[str, EventHandler] = MappingProxyType(
    {
        "customer.subscription.created": handle_subscription_created,
        "customer.subscription.updated": handle_subscription_updated,
        "customer.subscription.deleted": handle_subscription_deleted,
        "invoice.payment_succeeded": handle_invoice_payment_succeeded,
        "invoice.payment_failed": handle_invoice_payment_failed,
        "customer.subscription.trial_will_end": handle_trial_will_end,
    }
)


def resolve_handler(event_type: str) -> Optional[EventHandler]:
    return EVENT_HANDLERS.get(event_type)
