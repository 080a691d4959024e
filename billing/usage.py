"""Usage meter: append-only usage facts plus a concurrently-safe period rollup."""

from __future__ import annotations

import csv
import io
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from billing.errors import BillingError, ConflictError, NotFoundError, QuotaExceeded, ValidationError
from billing.plans import load_plan
from billing.records import ReadModel, UsageRecordView, UsageSummaryView, usage_record_view, usage_summary_view
from billing.subscriptions import find_live_subscription
from core.datetime_utils import ensure_utc, parse_provider_timestamp, utcnow
from core.numeric_utils import quantize_money
from models import PlanLimit, Subscription, UsageRecord, UsageSummary

logger = logging.getLogger(__name__)

_SUMMARY_KEY = ("organization_id", "subscription_id", "resource_type", "period_start", "period_end")


@dataclass(frozen=True)
class QuotaCheck(ReadModel):
    resource_type: str
    allowed: bool
    current: int
    limit: Optional[int]
    remaining: Optional[int]
    overage: bool
    requested: int


@dataclass(frozen=True)
class BatchItemResult(ReadModel):
    index: int
    ok: bool
    record: Optional[UsageRecordView] = None
    error: Optional[dict] = None


@dataclass(frozen=True)
class UsageBreakdown(ReadModel):
    resource_type: str
    quantity: int
    event_count: int
    percentage: Decimal


def _validate_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer.", details={"quantity": quantity})
    if quantity < 0:
        raise ValidationError("quantity cannot be negative.", details={"quantity": quantity})
    return quantity


def _validate_resource_type(resource_type: Any) -> str:
    if not isinstance(resource_type, str) or not resource_type.strip():
        raise ValidationError("resource_type is required.", details={"resource_type": resource_type})
    return resource_type.strip()


def _owned_subscription(session: Session, subscription_id: str, organization_id: str) -> Subscription:
    subscription = session.get(Subscription, subscription_id)
    if subscription is None or subscription.organization_id != organization_id:
        raise NotFoundError(
            f"Subscription {subscription_id} does not exist.",
            details={"subscription_id": subscription_id},
        )
    return subscription


def _plan_limit(session: Session, plan_id: str, resource_type: str) -> Optional[PlanLimit]:
    return (
        session.query(PlanLimit)
        .filter(PlanLimit.plan_id == plan_id, PlanLimit.resource_type == resource_type)
        .one_or_none()
    )


def _dialect_insert(session: Session):
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def compute_overage(used: int, included: Optional[int], unit_price: Optional[Decimal], currency: str):
    """Return ``(overage_quantity, overage_amount)`` for a period total."""

    if included is None:
        return 0, quantize_money(0, currency)
    overage_quantity = max(0, used - included)
    if unit_price is None or overage_quantity == 0:
        return overage_quantity, quantize_money(0, currency)
    return overage_quantity, quantize_money(Decimal(overage_quantity) * Decimal(unit_price), currency)


class UsageMeter:
    """Records usage against the subscription's current period."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def record_usage(
        self,
        organization_id: str,
        subscription_id: str,
        resource_type: str,
        quantity: int,
        recorded_at: Optional[datetime] = None,
    ) -> UsageRecordView:
        """Append one usage fact and fold it into the period summary.

        Runs as a single transaction. The summary increment is an
        ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` on the natural key,
        so concurrent writers serialize on that row and the overage is
        recomputed from the value the database returned, not from a prior read.
        """

        resource_type = _validate_resource_type(resource_type)
        quantity = _validate_quantity(quantity)
        now = utcnow()
        recorded_at = ensure_utc(recorded_at) or now

        with self._session_factory() as session:
            with session.begin():
                subscription = _owned_subscription(session, subscription_id, organization_id)
                period_start = ensure_utc(subscription.current_period_start)
                period_end = ensure_utc(subscription.current_period_end)
                if not period_start <= recorded_at < period_end:
                    raise ValidationError(
                        "recorded_at falls outside the subscription's current period.",
                        details={
                            "recorded_at": recorded_at.isoformat(),
                            "period_start": period_start.isoformat(),
                            "period_end": period_end.isoformat(),
                        },
                    )

                plan = load_plan(session, subscription.plan_id)
                limit = _plan_limit(session, plan.id, resource_type)
                included = limit.max_quantity if limit is not None else None
                unit_price = limit.overage_unit_price if limit is not None else None

                record = UsageRecord(
                    id=str(uuid.uuid4()),
                    organization_id=organization_id,
                    subscription_id=subscription.id,
                    resource_type=resource_type,
                    quantity=quantity,
                    recorded_at=recorded_at,
                    created_at=now,
                )
                session.add(record)

                table = UsageSummary.__table__
                insert = _dialect_insert(session)
                stmt = insert(table).values(
                    id=str(uuid.uuid4()),
                    organization_id=organization_id,
                    subscription_id=subscription.id,
                    resource_type=resource_type,
                    period_start=period_start,
                    period_end=period_end,
                    included_quantity=included,
                    used_quantity=quantity,
                    overage_quantity=0,
                    overage_unit_price=unit_price,
                    overage_amount=Decimal("0"),
                    currency=plan.currency,
                    status="pending",
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c[name] for name in _SUMMARY_KEY],
                    set_={
                        "used_quantity": table.c.used_quantity + stmt.excluded.used_quantity,
                        "updated_at": now,
                    },
                ).returning(
                    table.c.id,
                    table.c.used_quantity,
                    table.c.included_quantity,
                    table.c.overage_unit_price,
                    table.c.currency,
                    table.c.status,
                )
                summary = session.execute(stmt).one()

                if summary.status != "pending":
                    raise ConflictError(
                        f"Usage period for {resource_type} is already {summary.status}.",
                        details={"summary_id": summary.id, "status": summary.status},
                    )

                new_used = int(summary.used_quantity)
                summary_included = summary.included_quantity
                if summary_included is not None and summary.overage_unit_price is None and new_used > summary_included:
                    raise QuotaExceeded(
                        resource_type,
                        current=new_used - quantity,
                        limit=int(summary_included),
                        requested=quantity,
                    )

                overage_quantity, overage_amount = compute_overage(
                    new_used,
                    int(summary_included) if summary_included is not None else None,
                    summary.overage_unit_price,
                    summary.currency,
                )
                session.execute(
                    update(table)
                    .where(table.c.id == summary.id)
                    .values(overage_quantity=overage_quantity, overage_amount=overage_amount)
                )

            view = usage_record_view(record)

        logger.debug(
            "Recorded %s %s for subscription %s (period total %s)",
            quantity,
            resource_type,
            subscription_id,
            new_used,
        )
        return view

    def record_batch_usage(self, organization_id: str, items: Iterable[Mapping[str, Any]]) -> List[BatchItemResult]:
        """Record each item in its own transaction and report every outcome."""

        results: List[BatchItemResult] = []
        for index, item in enumerate(items):
            try:
                if not isinstance(item, Mapping) or not item.get("subscription_id"):
                    raise ValidationError("Each usage item needs subscription_id, resource_type and quantity.")
                recorded_at = item.get("recorded_at")
                if recorded_at is not None and not isinstance(recorded_at, datetime):
                    recorded_at = parse_provider_timestamp(recorded_at)
                    if recorded_at is None:
                        raise ValidationError(
                            "recorded_at is not a valid timestamp.",
                            details={"recorded_at": item.get("recorded_at")},
                        )
                record = self.record_usage(
                    organization_id,
                    item["subscription_id"],
                    item.get("resource_type"),
                    item.get("quantity"),
                    recorded_at,
                )
            except BillingError as exc:
                results.append(BatchItemResult(index=index, ok=False, error=exc.to_dict()))
            else:
                results.append(BatchItemResult(index=index, ok=True, record=record))

        failed = sum(1 for result in results if not result.ok)
        if failed:
            logger.info("Usage batch for %s: %s of %s items rejected", organization_id, failed, len(results))
        return results

    def check_quota(
        self,
        organization_id: str,
        resource_type: str,
        quantity: int = 1,
        *,
        subscription_id: Optional[str] = None,
    ) -> QuotaCheck:
        """Read-only answer to "may this organization consume ``quantity`` more?"."""

        resource_type = _validate_resource_type(resource_type)
        quantity = _validate_quantity(quantity)

        with self._session_factory() as session:
            if subscription_id:
                subscription = _owned_subscription(session, subscription_id, organization_id)
            else:
                subscription = find_live_subscription(session, organization_id)
                if subscription is None:
                    raise NotFoundError(
                        "Organization has no live subscription.",
                        details={"organization_id": organization_id},
                    )

            summary = (
                session.query(UsageSummary)
                .filter(
                    UsageSummary.organization_id == organization_id,
                    UsageSummary.subscription_id == subscription.id,
                    UsageSummary.resource_type == resource_type,
                    UsageSummary.period_start == subscription.current_period_start,
                    UsageSummary.period_end == subscription.current_period_end,
                )
                .one_or_none()
            )
            if summary is not None:
                current = int(summary.used_quantity or 0)
                limit = summary.included_quantity
                unit_price = summary.overage_unit_price
            else:
                plan_limit = _plan_limit(session, subscription.plan_id, resource_type)
                current = 0
                limit = plan_limit.max_quantity if plan_limit is not None else None
                unit_price = plan_limit.overage_unit_price if plan_limit is not None else None

        if limit is None:
            return QuotaCheck(resource_type, True, current, None, None, False, quantity)

        limit = int(limit)
        remaining = max(limit - current, 0)
        exceeds = current + quantity > limit
        if unit_price is not None:
            return QuotaCheck(resource_type, True, current, limit, remaining, exceeds, quantity)
        return QuotaCheck(resource_type, not exceeds, current, limit, remaining, False, quantity)

    def get_summaries(
        self,
        organization_id: str,
        subscription_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
    ) -> List[UsageSummaryView]:
        with self._session_factory() as session:
            query = session.query(UsageSummary).filter(UsageSummary.organization_id == organization_id)
            if subscription_id:
                query = query.filter(UsageSummary.subscription_id == subscription_id)
            if period_start is not None:
                query = query.filter(UsageSummary.period_start == ensure_utc(period_start))
            rows = query.order_by(UsageSummary.period_start.desc(), UsageSummary.resource_type.asc()).all()
            return [usage_summary_view(row) for row in rows]

    def rebuild_summary(
        self,
        subscription_id: str,
        resource_type: str,
        period_start: datetime,
        period_end: datetime,
    ) -> UsageSummaryView:
        """Recompute a pending summary from the usage records of its period."""

        period_start = ensure_utc(period_start)
        period_end = ensure_utc(period_end)

        with self._session_factory() as session:
            with session.begin():
                subscription = session.get(Subscription, subscription_id)
                if subscription is None:
                    raise NotFoundError(
                        f"Subscription {subscription_id} does not exist.",
                        details={"subscription_id": subscription_id},
                    )
                summary = (
                    session.query(UsageSummary)
                    .filter(
                        UsageSummary.subscription_id == subscription_id,
                        UsageSummary.resource_type == resource_type,
                        UsageSummary.period_start == period_start,
                        UsageSummary.period_end == period_end,
                    )
                    .with_for_update()
                    .one_or_none()
                )
                if summary is None:
                    plan = load_plan(session, subscription.plan_id)
                    limit = _plan_limit(session, plan.id, resource_type)
                    summary = UsageSummary(
                        organization_id=subscription.organization_id,
                        subscription_id=subscription_id,
                        resource_type=resource_type,
                        period_start=period_start,
                        period_end=period_end,
                        included_quantity=limit.max_quantity if limit is not None else None,
                        overage_unit_price=limit.overage_unit_price if limit is not None else None,
                        currency=plan.currency,
                        status="pending",
                    )
                    session.add(summary)
                elif summary.status != "pending":
                    raise ConflictError(
                        f"Usage period for {resource_type} is already {summary.status}.",
                        details={"summary_id": summary.id, "status": summary.status},
                    )

                used = (
                    session.query(func.coalesce(func.sum(UsageRecord.quantity), 0))
                    .filter(
                        UsageRecord.subscription_id == subscription_id,
                        UsageRecord.resource_type == resource_type,
                        UsageRecord.recorded_at >= period_start,
                        UsageRecord.recorded_at < period_end,
                    )
                    .scalar()
                )
                previous = int(summary.used_quantity or 0)
                summary.used_quantity = int(used)
                summary.overage_quantity, summary.overage_amount = compute_overage(
                    summary.used_quantity,
                    summary.included_quantity,
                    summary.overage_unit_price,
                    summary.currency,
                )
                session.flush()
                view = usage_summary_view(summary)

        if previous != view.used_quantity:
            logger.warning(
                "Usage summary %s/%s drifted: %s recorded, %s summarized; rebuilt",
                subscription_id,
                resource_type,
                view.used_quantity,
                previous,
            )
        return view

    def reset_usage(
        self,
        organization_id: str,
        resource_type: Optional[str] = None,
        *,
        actor_id: str,
    ) -> int:
        """Administrative wipe of the open period's usage. Returns records deleted."""

        if not actor_id:
            raise ValidationError("Usage resets require an actor.")

        with self._session_factory() as session:
            with session.begin():
                subscription = find_live_subscription(session, organization_id, for_update=True)
                if subscription is None:
                    raise NotFoundError(
                        "Organization has no live subscription.",
                        details={"organization_id": organization_id},
                    )

                summaries = session.query(UsageSummary).filter(
                    UsageSummary.subscription_id == subscription.id,
                    UsageSummary.period_start == subscription.current_period_start,
                    UsageSummary.period_end == subscription.current_period_end,
                )
                records = session.query(UsageRecord).filter(
                    UsageRecord.subscription_id == subscription.id,
                    UsageRecord.recorded_at >= subscription.current_period_start,
                    UsageRecord.recorded_at < subscription.current_period_end,
                )
                if resource_type:
                    summaries = summaries.filter(UsageSummary.resource_type == resource_type)
                    records = records.filter(UsageRecord.resource_type == resource_type)

                closed = summaries.filter(UsageSummary.status != "pending").first()
                if closed is not None:
                    raise ConflictError(
                        "Usage for a billed period cannot be reset.",
                        details={"summary_id": closed.id, "status": closed.status},
                    )

                deleted = records.delete(synchronize_session=False)
                summaries.delete(synchronize_session=False)

        logger.warning(
            "Usage reset by %s for organization %s (resource=%s): %s records removed",
            actor_id,
            organization_id,
            resource_type or "*",
            deleted,
        )
        return int(deleted)

    def get_usage_breakdown(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        limit: int = 10,
    ) -> List[UsageBreakdown]:
        """Usage totals per resource type in ``[start, end)``, largest first. Defaults to the last 30 days."""

        end = ensure_utc(end) or utcnow()
        start = ensure_utc(start) or end - timedelta(days=30)
        if start >= end:
            raise ValidationError("start must be before end.")
        if limit < 1:
            raise ValidationError("limit must be positive.", details={"limit": limit})

        with self._session_factory() as session:
            total_quantity = func.sum(UsageRecord.quantity)
            rows = (
                session.query(UsageRecord.resource_type, total_quantity, func.count(UsageRecord.id))
                .filter(
                    UsageRecord.organization_id == organization_id,
                    UsageRecord.recorded_at >= start,
                    UsageRecord.recorded_at < end,
                )
                .group_by(UsageRecord.resource_type)
                .order_by(total_quantity.desc(), UsageRecord.resource_type.asc())
                .limit(limit)
                .all()
            )

        grand_total = sum(int(quantity or 0) for _, quantity, _ in rows)
        breakdown = []
        for resource_type, quantity, events in rows:
            quantity = int(quantity or 0)
            share = Decimal(quantity * 100) / Decimal(grand_total) if grand_total else Decimal("0")
            breakdown.append(
                UsageBreakdown(
                    resource_type=resource_type,
                    quantity=quantity,
                    event_count=int(events),
                    percentage=share.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
                )
            )
        return breakdown

    def export_usage_csv(self, organization_id: str, start: datetime, end: datetime) -> str:
        """CSV of usage records recorded in ``[start, end)``."""

        start = ensure_utc(start)
        end = ensure_utc(end)
        if start >= end:
            raise ValidationError("start must be before end.")

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["recorded_at", "subscription_id", "resource_type", "quantity"])

        with self._session_factory() as session:
            rows = (
                session.query(UsageRecord)
                .filter(
                    UsageRecord.organization_id == organization_id,
                    UsageRecord.recorded_at >= start,
                    UsageRecord.recorded_at < end,
                )
                .order_by(UsageRecord.recorded_at.asc(), UsageRecord.id.asc())
                .all()
            )
            for row in rows:
                writer.writerow(
                    [ensure_utc(row.recorded_at).isoformat(), row.subscription_id, row.resource_type, int(row.quantity)]
                )

        return buffer.getvalue()
