"""Subscription store: lifecycle state machine and provider-backed commands.

Customer-facing mutations go through the ledger provider inside the same
database transaction; administrative overrides are the only local-only writes.
The provider call happens after the row lock is taken and before commit, so a
provider failure rolls the whole operation back.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from billing.errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from billing.ledger_client import LedgerClient, ProviderSubscription
from billing.plans import find_plan_by_provider_price, load_plan
from billing.records import HistoryEntryView, ReadModel, SubscriptionView, history_entry_view, subscription_view
from core.datetime_utils import advance_period, ensure_utc, utcnow
from core.numeric_utils import quantize_money
from models import LIVE_SUBSCRIPTION_STATUSES, Subscription, SubscriptionHistory, SubscriptionPlan

logger = logging.getLogger(__name__)

BILLING_CYCLES = ("monthly", "yearly")
STATUSES = ("pending", "active", "trialing", "past_due", "canceled")
TERMINAL_STATUSES: FrozenSet[str] = frozenset({"canceled"})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"active", "trialing", "canceled"}),
    "trialing": frozenset({"active", "past_due", "canceled"}),
    "active": frozenset({"past_due", "canceled"}),
    "past_due": frozenset({"active", "canceled"}),
    "canceled": frozenset(),
}

PROVIDER_STATUS_MAP: Dict[str, str] = {
    "incomplete": "pending",
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}

# Statuses a customer-facing update may start from.
_UPDATABLE_STATUSES = frozenset({"active", "trialing", "past_due"})

_SUBSCRIPTION_NAMESPACE = uuid.UUID("6f1c52e4-3d0b-4d7e-9a4f-5b8e0c2a7d11")


@dataclass(frozen=True)
class ChangePreview(ReadModel):
    subscription_id: str
    current_plan_id: str
    new_plan_id: str
    current_billing_cycle: str
    new_billing_cycle: str
    change_type: str
    currency: str
    current_price: Decimal
    new_price: Decimal
    proration_credit: Decimal
    proration_charge: Decimal
    amount_due: Decimal
    effective_at: datetime


def _cycle_price(plan: SubscriptionPlan, billing_cycle: str) -> Decimal:
    return Decimal(plan.yearly_price if billing_cycle == "yearly" else plan.monthly_price)


def can_transition(current: str, requested: str) -> bool:
    if current == requested:
        return True
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, requested: str, *, subscription_id: Optional[str] = None) -> None:
    if requested not in STATUSES:
        raise ValidationError(f"Unknown subscription status {requested!r}.", details={"status": requested})
    if not can_transition(current, requested):
        raise InvalidTransition(current, requested, subscription_id=subscription_id)


def map_provider_status(provider_status: Optional[str]) -> str:
    """Translate the provider's subscription status into the local vocabulary."""

    status = PROVIDER_STATUS_MAP.get((provider_status or "").lower())
    if status is None:
        raise ValidationError(
            f"Unsupported provider subscription status {provider_status!r}.",
            details={"provider_status": provider_status},
        )
    return status


def subscription_id_for_operation(organization_id: str, operation_id: Optional[str]) -> str:
    """Stable local id per (organization, operation) so retried creates send identical provider params."""

    if not operation_id:
        return str(uuid.uuid4())
    return str(uuid.uuid5(_SUBSCRIPTION_NAMESPACE, f"{organization_id}:{operation_id}"))


# ---------------------------------------------------------------------------
# Session-level helpers shared with the reconciliation engine and the sweep.
# ---------------------------------------------------------------------------


def find_live_subscription(session: Session, organization_id: str, *, for_update: bool = False) -> Optional[Subscription]:
    query = session.query(Subscription).filter(
        Subscription.organization_id == organization_id,
        Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
    )
    if for_update:
        query = query.with_for_update()
    return query.one_or_none()


def lock_subscription(session: Session, subscription_id: str, organization_id: Optional[str] = None) -> Subscription:
    subscription = (
        session.query(Subscription)
        .filter(Subscription.id == subscription_id)
        .with_for_update()
        .one_or_none()
    )
    if subscription is None or (organization_id is not None and subscription.organization_id != organization_id):
        raise NotFoundError(
            f"Subscription {subscription_id} does not exist.",
            details={"subscription_id": subscription_id},
        )
    return subscription


def locate_subscription(
    session: Session,
    provider_subscription: ProviderSubscription,
    *,
    allow_fallbacks: bool = False,
) -> Optional[Subscription]:
    """Find the local row a provider subscription payload refers to.

    ``external_ref`` is authoritative. Creation events may arrive before the
    synchronous create response was stored, so they may also match on the
    local id carried in metadata, and then on the customer id of a pending row
    that has no provider reference yet.
    """

    subscription = (
        session.query(Subscription)
        .filter(Subscription.external_ref == provider_subscription.id)
        .with_for_update()
        .one_or_none()
    )
    if subscription is not None or not allow_fallbacks:
        return subscription

    local_id = provider_subscription.metadata.get("subscription_id")
    if local_id:
        subscription = (
            session.query(Subscription)
            .filter(Subscription.id == local_id)
            .with_for_update()
            .one_or_none()
        )
        if subscription is not None:
            return subscription

    if provider_subscription.customer_id:
        return (
            session.query(Subscription)
            .filter(
                Subscription.provider_customer_id == provider_subscription.customer_id,
                Subscription.status == "pending",
                Subscription.external_ref.is_(None),
            )
            .with_for_update()
            .first()
        )
    return None


def record_history(
    session: Session,
    subscription: Subscription,
    *,
    change_type: str,
    source: str,
    previous_status: Optional[str],
    previous_plan_id: Optional[str],
    provider_event_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> SubscriptionHistory:
    entry = SubscriptionHistory(
        organization_id=subscription.organization_id,
        subscription_id=subscription.id,
        previous_plan_id=previous_plan_id,
        new_plan_id=subscription.plan_id,
        previous_status=previous_status,
        new_status=subscription.status,
        change_type=change_type,
        source=source,
        provider_event_id=provider_event_id,
        actor_id=actor_id,
        reason=reason,
        created_at=utcnow(),
    )
    session.add(entry)
    return entry


def _plan_change_type(old_plan: Optional[SubscriptionPlan], new_plan: SubscriptionPlan, old_cycle: str, new_cycle: str) -> str:
    if old_plan is None:
        return "plan_changed"
    old_price = old_plan.yearly_price if old_cycle == "yearly" else old_plan.monthly_price
    new_price = new_plan.yearly_price if new_cycle == "yearly" else new_plan.monthly_price
    # Compare on a monthly basis so a cycle switch alone is not an upgrade.
    old_monthly = old_price / 12 if old_cycle == "yearly" else old_price
    new_monthly = new_price / 12 if new_cycle == "yearly" else new_price
    if new_monthly > old_monthly:
        return "upgraded"
    if new_monthly < old_monthly:
        return "downgraded"
    return "plan_changed"


def apply_provider_state(
    session: Session,
    subscription: Subscription,
    provider_subscription: ProviderSubscription,
    *,
    event_at: Optional[datetime],
    source: str,
    provider_event_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    status_override: Optional[str] = None,
) -> Optional[SubscriptionHistory]:
    """Overwrite local lifecycle fields with the provider's view.

    Raises :class:`InvalidTransition` for a status the state machine forbids
    and :class:`ValidationError` for a price that maps to no local plan. The
    caller owns the transaction; nothing is committed here.

    ``event_at`` is the provider timestamp of a webhook event. Synchronous
    command responses pass ``None`` and leave ``last_event_at`` alone so the
    webhook echoing the same change is still applied.
    """

    new_status = status_override or map_provider_status(provider_subscription.status)
    assert_transition(subscription.status, new_status, subscription_id=subscription.id)

    previous_status = subscription.status
    previous_plan_id = subscription.plan_id
    previous_cycle = subscription.billing_cycle
    previous_period_start = ensure_utc(subscription.current_period_start)
    previous_cancel_flag = bool(subscription.cancels_at_period_end)

    new_plan: Optional[SubscriptionPlan] = None
    if provider_subscription.price_id:
        new_plan = find_plan_by_provider_price(session, provider_subscription.price_id)
        if new_plan is None:
            raise ValidationError(
                f"Provider price {provider_subscription.price_id!r} does not match any plan.",
                details={"price_id": provider_subscription.price_id},
            )
        subscription.plan_id = new_plan.id
        subscription.billing_cycle = (
            "yearly" if new_plan.provider_yearly_price_id == provider_subscription.price_id else "monthly"
        )

    subscription.status = new_status
    if subscription.external_ref is None:
        subscription.external_ref = provider_subscription.id
    if provider_subscription.customer_id:
        subscription.provider_customer_id = provider_subscription.customer_id
    if provider_subscription.current_period_start and provider_subscription.current_period_end:
        subscription.current_period_start = provider_subscription.current_period_start
        subscription.current_period_end = provider_subscription.current_period_end
    if provider_subscription.trial_end is not None:
        subscription.trial_ends_at = provider_subscription.trial_end
    subscription.cancels_at_period_end = provider_subscription.cancel_at_period_end and new_status != "canceled"
    if new_status == "canceled" and subscription.canceled_at is None:
        subscription.canceled_at = provider_subscription.canceled_at or ensure_utc(event_at) or utcnow()
    if event_at is not None:
        subscription.last_event_at = ensure_utc(event_at)

    change_type = None
    if subscription.plan_id != previous_plan_id or subscription.billing_cycle != previous_cycle:
        old_plan = session.get(SubscriptionPlan, previous_plan_id)
        change_type = _plan_change_type(old_plan, new_plan, previous_cycle, subscription.billing_cycle)
    elif new_status != previous_status:
        change_type = "canceled" if new_status == "canceled" else "status_changed"
    elif subscription.cancels_at_period_end and not previous_cancel_flag:
        change_type = "cancel_scheduled"
    elif previous_cancel_flag and not subscription.cancels_at_period_end:
        change_type = "reactivated"
    elif previous_period_start is not None and ensure_utc(subscription.current_period_start) != previous_period_start:
        change_type = "period_renewed"

    if change_type is None:
        return None

    return record_history(
        session,
        subscription,
        change_type=change_type,
        source=source,
        previous_status=previous_status,
        previous_plan_id=previous_plan_id,
        provider_event_id=provider_event_id,
        actor_id=actor_id,
        reason=reason,
    )


def mark_canceled(
    session: Session,
    subscription: Subscription,
    *,
    source: str,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    provider_event_id: Optional[str] = None,
    now=None,
) -> SubscriptionHistory:
    assert_transition(subscription.status, "canceled", subscription_id=subscription.id)
    now = now or utcnow()
    previous_status = subscription.status
    subscription.status = "canceled"
    subscription.cancels_at_period_end = False
    subscription.canceled_at = now
    return record_history(
        session,
        subscription,
        change_type="canceled",
        source=source,
        previous_status=previous_status,
        previous_plan_id=subscription.plan_id,
        provider_event_id=provider_event_id,
        actor_id=actor_id,
        reason=reason,
    )


def _resolve_plan_change(
    session: Session,
    subscription: Subscription,
    plan_id: Optional[str],
    billing_cycle: Optional[str],
) -> Tuple[SubscriptionPlan, str, str]:
    """Validate a requested plan/cycle change and return ``(plan, cycle, provider_price_id)``."""

    if plan_id is None and billing_cycle is None:
        raise ValidationError("Nothing to update: provide plan_id or billing_cycle.")
    if billing_cycle is not None and billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Unsupported billing cycle {billing_cycle!r}.", details={"billing_cycle": billing_cycle})
    if subscription.status not in _UPDATABLE_STATUSES or not subscription.external_ref:
        raise ConflictError(
            f"Subscription in status {subscription.status!r} cannot change plan.",
            details={"subscription_id": subscription.id, "status": subscription.status},
        )

    target_plan = load_plan(session, plan_id or subscription.plan_id)
    target_cycle = billing_cycle or subscription.billing_cycle
    if target_plan.id == subscription.plan_id and target_cycle == subscription.billing_cycle:
        raise ValidationError(
            "Subscription is already on the requested plan and cycle.",
            details={"plan_id": target_plan.id, "billing_cycle": target_cycle},
        )
    if target_plan.id != subscription.plan_id and not target_plan.is_public:
        raise ValidationError(f"Plan {target_plan.slug!r} is archived.", details={"plan_id": target_plan.id})
    price_id = target_plan.provider_yearly_price_id if target_cycle == "yearly" else target_plan.provider_monthly_price_id
    if not price_id:
        raise ValidationError(
            f"Plan {target_plan.slug!r} has no provider price for the {target_cycle} cycle.",
            details={"plan_id": target_plan.id, "billing_cycle": target_cycle},
        )
    return target_plan, target_cycle, price_id


class SubscriptionStore:
    """Commands and queries over subscriptions for one ledger provider."""

    def __init__(self, session_factory: sessionmaker, ledger: LedgerClient) -> None:
        self._session_factory = session_factory
        self._ledger = ledger

    # -- commands -----------------------------------------------------------

    def create_subscription(
        self,
        organization_id: str,
        plan_id: str,
        billing_cycle: str = "monthly",
        *,
        actor_id: Optional[str] = None,
        provider_customer_id: Optional[str] = None,
        email: Optional[str] = None,
        trial_days: Optional[int] = None,
        operation_id: Optional[str] = None,
    ) -> SubscriptionView:
        if not organization_id:
            raise ValidationError("organization_id is required.")
        if billing_cycle not in BILLING_CYCLES:
            raise ValidationError(
                f"Unsupported billing cycle {billing_cycle!r}.",
                details={"billing_cycle": billing_cycle, "allowed": list(BILLING_CYCLES)},
            )
        if trial_days is not None and trial_days < 0:
            raise ValidationError("trial_days cannot be negative.", details={"trial_days": trial_days})

        subscription_id = subscription_id_for_operation(organization_id, operation_id)
        operation_id = operation_id or subscription_id
        now = utcnow()

        with self._session_factory() as session:
            try:
                with session.begin():
                    plan = load_plan(session, plan_id)
                    if not plan.is_public:
                        raise ValidationError(f"Plan {plan.slug!r} is archived.", details={"plan_id": plan.id})
                    price_id = plan.provider_yearly_price_id if billing_cycle == "yearly" else plan.provider_monthly_price_id
                    if not price_id:
                        raise ValidationError(
                            f"Plan {plan.slug!r} has no provider price for the {billing_cycle} cycle.",
                            details={"plan_id": plan.id, "billing_cycle": billing_cycle},
                        )

                    existing = find_live_subscription(session, organization_id, for_update=True)
                    if existing is not None:
                        if existing.id == subscription_id:
                            logger.info("Replayed create for subscription %s", existing.id)
                            return subscription_view(existing)
                        raise ConflictError(
                            "Organization already has a live subscription.",
                            details={"subscription_id": existing.id, "status": existing.status},
                        )

                    subscription = Subscription(
                        id=subscription_id,
                        organization_id=organization_id,
                        plan_id=plan.id,
                        billing_cycle=billing_cycle,
                        status="pending",
                        current_period_start=now,
                        current_period_end=advance_period(now, billing_cycle),
                        provider_customer_id=provider_customer_id,
                    )
                    session.add(subscription)
                    # Surface a concurrent insert before touching the provider.
                    session.flush()

                    customer_id = provider_customer_id or self._ledger.ensure_customer(
                        organization_id=organization_id,
                        email=email,
                        existing_customer_id=None,
                        idempotency_key=f"customer-create:{organization_id}",
                    )
                    provider_subscription = self._ledger.create_subscription(
                        customer_id=customer_id,
                        price_id=price_id,
                        trial_days=plan.trial_days if trial_days is None else trial_days,
                        metadata={
                            "subscription_id": subscription.id,
                            "organization_id": organization_id,
                            "operation_id": operation_id,
                        },
                        idempotency_key=f"subscription-create:{operation_id}",
                    )

                    subscription.external_ref = provider_subscription.id
                    subscription.provider_customer_id = provider_subscription.customer_id or customer_id
                    if provider_subscription.current_period_start and provider_subscription.current_period_end:
                        subscription.current_period_start = provider_subscription.current_period_start
                        subscription.current_period_end = provider_subscription.current_period_end
                    subscription.trial_ends_at = provider_subscription.trial_end

                    record_history(
                        session,
                        subscription,
                        change_type="created",
                        source="command",
                        previous_status=None,
                        previous_plan_id=None,
                        actor_id=actor_id,
                    )
            except IntegrityError as exc:
                logger.info("Concurrent subscription create lost for organization %s", organization_id)
                raise ConflictError(
                    "Organization already has a live subscription.",
                    details={"organization_id": organization_id},
                ) from exc

            view = subscription_view(subscription)

        logger.info(
            "Created pending subscription %s for organization %s (plan=%s, ref=%s)",
            view.id,
            organization_id,
            view.plan_id,
            view.external_ref,
        )
        return view

    def update_subscription(
        self,
        subscription_id: str,
        organization_id: str,
        *,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        actor_id: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> SubscriptionView:
        if plan_id is None and billing_cycle is None:
            raise ValidationError("Nothing to update: provide plan_id or billing_cycle.")
        if billing_cycle is not None and billing_cycle not in BILLING_CYCLES:
            raise ValidationError(f"Unsupported billing cycle {billing_cycle!r}.", details={"billing_cycle": billing_cycle})

        idempotency_key = f"subscription-update:{operation_id or uuid.uuid4()}"

        with self._session_factory() as session:
            with session.begin():
                subscription = lock_subscription(session, subscription_id, organization_id)
                _, _, price_id = _resolve_plan_change(session, subscription, plan_id, billing_cycle)

                provider_subscription = self._ledger.update_subscription(
                    subscription.external_ref,
                    price_id=price_id,
                    idempotency_key=idempotency_key,
                )
                apply_provider_state(
                    session,
                    subscription,
                    provider_subscription,
                    event_at=None,
                    source="command",
                    actor_id=actor_id,
                )

            view = subscription_view(subscription)

        logger.info("Updated subscription %s to plan %s (%s)", view.id, view.plan_id, view.billing_cycle)
        return view

    def preview_subscription_change(
        self,
        subscription_id: str,
        organization_id: str,
        *,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ChangePreview:
        """Price a plan or cycle change without applying it.

        Same-cycle changes are prorated over the rest of the current period.
        A cycle switch starts a new period, so the new price is charged in full
        against the unused share of the current one.
        """

        now = ensure_utc(now) or utcnow()
        with self._session_factory() as session:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None or subscription.organization_id != organization_id:
                raise NotFoundError(
                    f"Subscription {subscription_id} does not exist.",
                    details={"subscription_id": subscription_id},
                )
            target_plan, target_cycle, _ = _resolve_plan_change(session, subscription, plan_id, billing_cycle)
            current_plan = load_plan(session, subscription.plan_id)
            current_cycle = subscription.billing_cycle
            currency = current_plan.currency
            current_price = _cycle_price(current_plan, current_cycle)
            new_price = _cycle_price(target_plan, target_cycle)
            change_type = _plan_change_type(current_plan, target_plan, current_cycle, target_cycle)

            period_start = ensure_utc(subscription.current_period_start)
            period_end = ensure_utc(subscription.current_period_end)

        total = int((period_end - period_start).total_seconds())
        remaining = int((period_end - max(now, period_start)).total_seconds())
        remaining = max(0, min(remaining, total))
        unused = Decimal(remaining) / Decimal(total) if total > 0 else Decimal("0")

        credit = quantize_money(current_price * unused, currency)
        if target_cycle == current_cycle:
            charge = quantize_money(new_price * unused, currency)
        else:
            charge = quantize_money(new_price, currency)

        return ChangePreview(
            subscription_id=subscription_id,
            current_plan_id=current_plan.id,
            new_plan_id=target_plan.id,
            current_billing_cycle=current_cycle,
            new_billing_cycle=target_cycle,
            change_type=change_type,
            currency=currency,
            current_price=quantize_money(current_price, currency),
            new_price=quantize_money(new_price, currency),
            proration_credit=credit,
            proration_charge=charge,
            amount_due=charge - credit,
            effective_at=now,
        )

    def cancel_subscription(
        self,
        subscription_id: str,
        organization_id: str,
        *,
        immediate: bool = False,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> SubscriptionView:
        idempotency_key = f"subscription-cancel:{operation_id or uuid.uuid4()}"

        with self._session_factory() as session:
            with session.begin():
                subscription = lock_subscription(session, subscription_id, organization_id)
                if subscription.status in TERMINAL_STATUSES:
                    raise InvalidTransition(subscription.status, "canceled", subscription_id=subscription.id)

                if not immediate and subscription.cancels_at_period_end:
                    logger.info("Cancellation already scheduled for subscription %s", subscription.id)
                else:
                    provider_subscription = self._ledger.cancel_subscription(
                        subscription.external_ref,
                        at_period_end=not immediate,
                        idempotency_key=idempotency_key,
                    )
                    apply_provider_state(
                        session,
                        subscription,
                        provider_subscription,
                        event_at=None,
                        source="command",
                        actor_id=actor_id,
                        reason=reason,
                    )

            view = subscription_view(subscription)

        logger.info(
            "Cancel requested for subscription %s (immediate=%s, status=%s)",
            view.id,
            immediate,
            view.status,
        )
        return view

    def reactivate_subscription(
        self,
        subscription_id: str,
        organization_id: str,
        *,
        actor_id: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> SubscriptionView:
        """Undo a cancellation scheduled for the end of the period."""

        idempotency_key = f"subscription-reactivate:{operation_id or uuid.uuid4()}"

        with self._session_factory() as session:
            with session.begin():
                subscription = lock_subscription(session, subscription_id, organization_id)
                if subscription.status in TERMINAL_STATUSES or not subscription.cancels_at_period_end:
                    raise ConflictError(
                        "Subscription has no scheduled cancellation to undo.",
                        details={
                            "subscription_id": subscription.id,
                            "status": subscription.status,
                            "cancels_at_period_end": bool(subscription.cancels_at_period_end),
                        },
                    )
                provider_subscription = self._ledger.reactivate_subscription(
                    subscription.external_ref,
                    idempotency_key=idempotency_key,
                )
                apply_provider_state(
                    session,
                    subscription,
                    provider_subscription,
                    event_at=None,
                    source="command",
                    actor_id=actor_id,
                )

            view = subscription_view(subscription)

        logger.info("Reactivated subscription %s", view.id)
        return view

    def override_status(
        self,
        subscription_id: str,
        new_status: str,
        *,
        actor_id: str,
        reason: str,
    ) -> SubscriptionView:
        """Administrative transition without provider confirmation.

        The transition table still applies; ``canceled`` stays terminal.
        """

        if not actor_id or not reason:
            raise ValidationError("Administrative overrides require an actor and a reason.")

        with self._session_factory() as session:
            with session.begin():
                subscription = lock_subscription(session, subscription_id)
                if subscription.status == new_status:
                    raise ValidationError(
                        f"Subscription is already {new_status!r}.",
                        details={"subscription_id": subscription.id, "status": new_status},
                    )
                assert_transition(subscription.status, new_status, subscription_id=subscription.id)

                previous_status = subscription.status
                subscription.status = new_status
                if new_status == "canceled":
                    subscription.canceled_at = utcnow()
                    subscription.cancels_at_period_end = False
                record_history(
                    session,
                    subscription,
                    change_type="admin_override",
                    source="admin",
                    previous_status=previous_status,
                    previous_plan_id=subscription.plan_id,
                    actor_id=actor_id,
                    reason=reason,
                )

            view = subscription_view(subscription)

        logger.warning(
            "Admin %s moved subscription %s from %s to %s: %s",
            actor_id,
            view.id,
            previous_status,
            new_status,
            reason,
        )
        return view

    # -- queries ------------------------------------------------------------

    def get_subscription(self, subscription_id: str, organization_id: Optional[str] = None) -> SubscriptionView:
        with self._session_factory() as session:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None or (organization_id is not None and subscription.organization_id != organization_id):
                raise NotFoundError(
                    f"Subscription {subscription_id} does not exist.",
                    details={"subscription_id": subscription_id},
                )
            return subscription_view(subscription)

    def get_current_subscription(self, organization_id: str) -> Optional[SubscriptionView]:
        with self._session_factory() as session:
            subscription = find_live_subscription(session, organization_id)
            return subscription_view(subscription) if subscription else None

    def list_subscriptions(self, organization_id: str) -> List[SubscriptionView]:
        with self._session_factory() as session:
            rows = (
                session.query(Subscription)
                .filter(Subscription.organization_id == organization_id)
                .order_by(Subscription.created_at.desc(), Subscription.id.asc())
                .all()
            )
            return [subscription_view(row) for row in rows]

    def get_history(self, subscription_id: str, organization_id: Optional[str] = None) -> List[HistoryEntryView]:
        with self._session_factory() as session:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None or (organization_id is not None and subscription.organization_id != organization_id):
                raise NotFoundError(
                    f"Subscription {subscription_id} does not exist.",
                    details={"subscription_id": subscription_id},
                )
            rows = (
                session.query(SubscriptionHistory)
                .filter(SubscriptionHistory.subscription_id == subscription_id)
                .order_by(SubscriptionHistory.id.asc())
                .all()
            )
            return [history_entry_view(row) for row in rows]
