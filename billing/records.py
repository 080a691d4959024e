"""Typed read models, one mapping function per persisted entity."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from core.datetime_utils import ensure_utc
from core.numeric_utils import quantize_money, safe_decimal
from models import (
    Invoice,
    InvoiceItem,
    PlanLimit,
    Subscription,
    SubscriptionHistory,
    SubscriptionPlan,
    UsageRecord,
    UsageSummary,
)

__all__ = [
    "HistoryEntryView",
    "InvoiceItemView",
    "InvoiceView",
    "PlanView",
    "ReadModel",
    "ResourceLimitView",
    "SubscriptionView",
    "UsageRecordView",
    "UsageSummaryView",
    "history_entry_view",
    "invoice_view",
    "plan_view",
    "subscription_view",
    "usage_record_view",
    "usage_summary_view",
]


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, tuple):
        return [_jsonable(item) for item in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


class ReadModel:
    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _jsonable(getattr(self, f.name)) for f in fields(self)}


def _money(value: Any, currency: Optional[str]) -> Decimal:
    amount = safe_decimal(value)
    return quantize_money(amount if amount is not None else 0, currency)


def _unit_price(value: Any) -> Optional[Decimal]:
    # Unit prices may carry sub-cent precision (e.g. 0.0015 per event).
    amount = safe_decimal(value)
    if amount is None:
        return None
    amount = amount.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
    cents = amount.quantize(Decimal("0.01"))
    return cents if cents == amount else amount.normalize()


@dataclass(frozen=True)
class ResourceLimitView(ReadModel):
    resource_type: str
    max_quantity: Optional[int]
    overage_unit_price: Optional[Decimal]

    @property
    def unlimited(self) -> bool:
        return self.max_quantity is None

    @property
    def allows_overage(self) -> bool:
        return self.overage_unit_price is not None


@dataclass(frozen=True)
class PlanView(ReadModel):
    id: str
    slug: str
    name: str
    description: Optional[str]
    monthly_price: Decimal
    yearly_price: Decimal
    currency: str
    is_public: bool
    trial_days: int
    provider_monthly_price_id: Optional[str]
    provider_yearly_price_id: Optional[str]
    limits: Tuple[ResourceLimitView, ...] = field(default_factory=tuple)

    def limit_for(self, resource_type: str) -> Optional[ResourceLimitView]:
        for limit in self.limits:
            if limit.resource_type == resource_type:
                return limit
        return None

    def price_for(self, billing_cycle: str) -> Decimal:
        return self.yearly_price if billing_cycle == "yearly" else self.monthly_price

    def provider_price_for(self, billing_cycle: str) -> Optional[str]:
        if billing_cycle == "yearly":
            return self.provider_yearly_price_id
        return self.provider_monthly_price_id


def _limit_view(row: PlanLimit) -> ResourceLimitView:
    return ResourceLimitView(
        resource_type=row.resource_type,
        max_quantity=int(row.max_quantity) if row.max_quantity is not None else None,
        overage_unit_price=_unit_price(row.overage_unit_price),
    )


def plan_view(row: SubscriptionPlan) -> PlanView:
    return PlanView(
        id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        monthly_price=_money(row.monthly_price, row.currency),
        yearly_price=_money(row.yearly_price, row.currency),
        currency=row.currency,
        is_public=bool(row.is_public),
        trial_days=int(row.trial_days or 0),
        provider_monthly_price_id=row.provider_monthly_price_id,
        provider_yearly_price_id=row.provider_yearly_price_id,
        limits=tuple(_limit_view(limit) for limit in row.limits),
    )


@dataclass(frozen=True)
class SubscriptionView(ReadModel):
    id: str
    organization_id: str
    plan_id: str
    billing_cycle: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: Optional[datetime]
    cancels_at_period_end: bool
    canceled_at: Optional[datetime]
    external_ref: Optional[str]
    provider_customer_id: Optional[str]
    last_event_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


def subscription_view(row: Subscription) -> SubscriptionView:
    return SubscriptionView(
        id=row.id,
        organization_id=row.organization_id,
        plan_id=row.plan_id,
        billing_cycle=row.billing_cycle,
        status=row.status,
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        trial_ends_at=ensure_utc(row.trial_ends_at),
        cancels_at_period_end=bool(row.cancels_at_period_end),
        canceled_at=ensure_utc(row.canceled_at),
        external_ref=row.external_ref,
        provider_customer_id=row.provider_customer_id,
        last_event_at=ensure_utc(row.last_event_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


@dataclass(frozen=True)
class HistoryEntryView(ReadModel):
    id: int
    subscription_id: str
    change_type: str
    source: str
    previous_status: Optional[str]
    new_status: Optional[str]
    previous_plan_id: Optional[str]
    new_plan_id: Optional[str]
    provider_event_id: Optional[str]
    actor_id: Optional[str]
    reason: Optional[str]
    created_at: Optional[datetime]


def history_entry_view(row: SubscriptionHistory) -> HistoryEntryView:
    return HistoryEntryView(
        id=row.id,
        subscription_id=row.subscription_id,
        change_type=row.change_type,
        source=row.source,
        previous_status=row.previous_status,
        new_status=row.new_status,
        previous_plan_id=row.previous_plan_id,
        new_plan_id=row.new_plan_id,
        provider_event_id=row.provider_event_id,
        actor_id=row.actor_id,
        reason=row.reason,
        created_at=ensure_utc(row.created_at),
    )


@dataclass(frozen=True)
class UsageRecordView(ReadModel):
    id: str
    organization_id: str
    subscription_id: str
    resource_type: str
    quantity: int
    recorded_at: datetime


def usage_record_view(row: UsageRecord) -> UsageRecordView:
    return UsageRecordView(
        id=row.id,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        resource_type=row.resource_type,
        quantity=int(row.quantity),
        recorded_at=ensure_utc(row.recorded_at),
    )


@dataclass(frozen=True)
class UsageSummaryView(ReadModel):
    id: str
    organization_id: str
    subscription_id: str
    resource_type: str
    period_start: datetime
    period_end: datetime
    included_quantity: Optional[int]
    used_quantity: int
    overage_quantity: int
    overage_unit_price: Optional[Decimal]
    overage_amount: Decimal
    currency: str
    status: str


def usage_summary_view(row: UsageSummary) -> UsageSummaryView:
    return UsageSummaryView(
        id=row.id,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        resource_type=row.resource_type,
        period_start=ensure_utc(row.period_start),
        period_end=ensure_utc(row.period_end),
        included_quantity=int(row.included_quantity) if row.included_quantity is not None else None,
        used_quantity=int(row.used_quantity or 0),
        overage_quantity=int(row.overage_quantity or 0),
        overage_unit_price=_unit_price(row.overage_unit_price),
        overage_amount=_money(row.overage_amount, row.currency),
        currency=row.currency,
        status=row.status,
    )


@dataclass(frozen=True)
class InvoiceItemView(ReadModel):
    description: str
    item_type: str
    resource_type: Optional[str]
    quantity: int
    unit_price: Decimal
    amount: Decimal


@dataclass(frozen=True)
class InvoiceView(ReadModel):
    id: str
    organization_id: str
    subscription_id: str
    external_ref: Optional[str]
    number: Optional[str]
    currency: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    status: str
    period_start: datetime
    period_end: datetime
    due_date: Optional[datetime]
    paid_at: Optional[datetime]
    items: Tuple[InvoiceItemView, ...] = field(default_factory=tuple)

    def items_of_type(self, item_type: str) -> List[InvoiceItemView]:
        return [item for item in self.items if item.item_type == item_type]


def _invoice_item_view(row: InvoiceItem, currency: str) -> InvoiceItemView:
    return InvoiceItemView(
        description=row.description,
        item_type=row.item_type,
        resource_type=row.resource_type,
        quantity=int(row.quantity),
        unit_price=_unit_price(row.unit_price) or Decimal("0"),
        amount=_money(row.amount, currency),
    )


def invoice_view(row: Invoice) -> InvoiceView:
    return InvoiceView(
        id=row.id,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        external_ref=row.external_ref,
        number=row.number,
        currency=row.currency,
        subtotal=_money(row.subtotal, row.currency),
        tax=_money(row.tax, row.currency),
        total=_money(row.total, row.currency),
        status=row.status,
        period_start=ensure_utc(row.period_start),
        period_end=ensure_utc(row.period_end),
        due_date=ensure_utc(row.due_date),
        paid_at=ensure_utc(row.paid_at),
        items=tuple(_invoice_item_view(item, row.currency) for item in row.items),
    )
