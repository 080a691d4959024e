"""Reconciliation engine: applies provider events and runs the period rollover."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from billing.errors import ConflictError, NotFoundError, ValidationError
from billing.invoices import InvoiceLedger
from billing.ledger_client import LedgerClient
from billing.records import InvoiceView, ReadModel
from billing.subscriptions import lock_subscription, mark_canceled
from billing.webhooks import (
    OUTCOME_APPLIED,
    OUTCOME_IGNORED,
    OUTCOME_STALE,
    HandlerResult,
    ProviderEvent,
    parse_event,
    resolve_handler,
)
from core.datetime_utils import ensure_utc, parse_iso_datetime, utcnow
from models import Invoice, ProcessedEvent, Subscription, UsageSummary

logger = logging.getLogger(__name__)

OUTCOME_DUPLICATE = "duplicate"
OUTCOME_REJECTED = "rejected"

# Business-rule failures are acknowledged so the provider stops retrying.
_ABSORBED_ERRORS = (ValidationError, ConflictError, NotFoundError)

Enqueue = Callable[[str, Dict[str, Any]], None]


@dataclass(frozen=True)
class EventResult(ReadModel):
    event_id: str
    event_type: str
    outcome: str
    subscription_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class RolloverReport(ReadModel):
    checked: int = 0
    invoices: Tuple[str, ...] = field(default_factory=tuple)
    canceled: Tuple[str, ...] = field(default_factory=tuple)
    failures: Tuple[str, ...] = field(default_factory=tuple)
    requeued: Tuple[str, ...] = field(default_factory=tuple)


def _log_enqueue(job: str, payload: Dict[str, Any]) -> None:
    logger.info("No worker configured; dropping %s job %s", job, payload)


class ReconciliationEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: LedgerClient,
        invoices: InvoiceLedger,
        *,
        enqueue: Optional[Enqueue] = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._invoices = invoices
        self._enqueue = enqueue or _log_enqueue

    def handle_provider_event(self, payload: bytes, signature_header: Optional[str]) -> EventResult:
        """Verify, de-duplicate and apply one webhook delivery."""

        self._ledger.verify_webhook(payload, signature_header)
        return self.apply_event(parse_event(payload))

    def apply_event(self, event: ProviderEvent) -> EventResult:
        """Apply an already-verified event exactly once.

        The idempotency marker is inserted before the handler runs and commits
        with the handler's changes. A concurrent delivery of the same event
        blocks on, then fails, that insert and reports ``duplicate``.
        """

        handler = resolve_handler(event.type)
        result: Optional[HandlerResult] = None
        outcome = OUTCOME_IGNORED

        with self._session_factory() as session:
            try:
                with session.begin():
                    if session.get(ProcessedEvent, event.id) is not None:
                        logger.info("Duplicate provider event %s (%s)", event.id, event.type)
                        return EventResult(event.id, event.type, OUTCOME_DUPLICATE)

                    marker = ProcessedEvent(
                        provider_event_id=event.id,
                        event_type=event.type,
                        outcome=OUTCOME_IGNORED,
                        provider_created_at=event.created_at,
                        processed_at=utcnow(),
                    )
                    session.add(marker)
                    session.flush()

                    if handler is None:
                        logger.info("Unhandled provider event type: %s", event.type)
                    else:
                        try:
                            with session.begin_nested():
                                result = handler(session, event)
                            outcome = result.outcome
                        except _ABSORBED_ERRORS as exc:
                            logger.warning(
                                "Rejected provider event %s (%s): %s",
                                event.id,
                                event.type,
                                exc.message,
                            )
                            result = HandlerResult(OUTCOME_REJECTED, detail=exc.code)
                            outcome = OUTCOME_REJECTED
                    marker.outcome = outcome
            except IntegrityError:
                logger.info("Provider event %s applied concurrently; treating as duplicate", event.id)
                return EventResult(event.id, event.type, OUTCOME_DUPLICATE)

        follow_ups = result.follow_ups if result is not None else []
        for job, payload in follow_ups:
            self._enqueue(job, payload)

        logger.info("Provider event %s (%s): %s", event.id, event.type, outcome)
        return EventResult(
            event.id,
            event.type,
            outcome,
            subscription_id=result.subscription_id if result is not None else None,
            detail=result.detail if result is not None else None,
        )

    def close_ended_period(self, subscription_id: str, period_start: datetime, period_end: datetime) -> InvoiceView:
        """Close one period and queue the invoice hand-off while it is still a draft."""

        invoice = self._invoices.close_period(subscription_id, period_start, period_end)
        if invoice.status == "draft":
            self._enqueue("finalize_invoice", {"invoice_id": invoice.id})
        return invoice

    def close_period_job(self, payload: Dict[str, Any]) -> InvoiceView:
        period_start = parse_iso_datetime(payload.get("period_start"))
        period_end = parse_iso_datetime(payload.get("period_end"))
        if period_start is None or period_end is None:
            raise ValidationError("close_period job needs period_start and period_end.", details=dict(payload))
        return self.close_ended_period(payload["subscription_id"], period_start, period_end)

    def run_period_rollover(self, now: Optional[datetime] = None) -> RolloverReport:
        """Close ended periods and apply cancellations scheduled for period end.

        Work is found from stored data, not only from the live period: a
        renewal webhook may already have moved ``current_period_*`` forward,
        so any ended period with unbilled usage is closed too, and drafts left
        behind by a failed hand-off are queued again.

        Safe to run repeatedly: closing a period twice returns the same invoice
        and a canceled subscription is no longer picked up.
        """

        now = ensure_utc(now) or utcnow()
        with self._session_factory() as session:
            due = (
                session.query(Subscription.id, Subscription.current_period_start, Subscription.current_period_end)
                .filter(
                    Subscription.status.in_(("active", "trialing", "past_due")),
                    Subscription.current_period_end <= now,
                )
                .order_by(Subscription.current_period_end.asc())
                .all()
            )
            unbilled = (
                session.query(UsageSummary.subscription_id, UsageSummary.period_start, UsageSummary.period_end)
                .join(Subscription, Subscription.id == UsageSummary.subscription_id)
                .filter(
                    UsageSummary.status == "pending",
                    UsageSummary.period_end <= now,
                    Subscription.status != "pending",
                )
                .distinct()
                .order_by(UsageSummary.period_end.asc())
                .all()
            )
            drafts = [
                invoice_id
                for (invoice_id,) in session.query(Invoice.id)
                .filter(Invoice.status == "draft", Invoice.period_end <= now)
                .order_by(Invoice.period_end.asc())
                .all()
            ]

        periods: Dict[Tuple[str, datetime], Tuple[datetime, bool]] = {}
        for subscription_id, period_start, period_end in due:
            periods[(subscription_id, ensure_utc(period_start))] = (ensure_utc(period_end), True)
        for subscription_id, period_start, period_end in unbilled:
            periods.setdefault((subscription_id, ensure_utc(period_start)), (ensure_utc(period_end), False))

        invoices: List[str] = []
        canceled: List[str] = []
        failures: List[str] = []
        queued = set()
        for (subscription_id, period_start), (period_end, current) in periods.items():
            try:
                invoice = self.close_ended_period(subscription_id, period_start, period_end)
            except (ValidationError, ConflictError, NotFoundError) as exc:
                logger.error("Rollover could not close period for %s: %s", subscription_id, exc.message)
                failures.append(subscription_id)
                continue

            invoices.append(invoice.id)
            if invoice.status == "draft":
                queued.add(invoice.id)
            if current and self._apply_scheduled_cancel(subscription_id, now):
                canceled.append(subscription_id)

        requeued: List[str] = []
        for invoice_id in drafts:
            if invoice_id not in queued:
                self._enqueue("finalize_invoice", {"invoice_id": invoice_id})
                requeued.append(invoice_id)

        if periods or requeued:
            logger.info(
                "Period rollover: %s due, %s invoices, %s canceled, %s failed, %s drafts requeued",
                len(periods),
                len(invoices),
                len(canceled),
                len(failures),
                len(requeued),
            )
        return RolloverReport(
            checked=len(periods),
            invoices=tuple(invoices),
            canceled=tuple(canceled),
            failures=tuple(failures),
            requeued=tuple(requeued),
        )

    def _apply_scheduled_cancel(self, subscription_id: str, now: datetime) -> bool:
        with self._session_factory() as session:
            with session.begin():
                subscription = lock_subscription(session, subscription_id)
                if not subscription.cancels_at_period_end or subscription.status == "canceled":
                    return False
                mark_canceled(
                    session,
                    subscription,
                    source="sweep",
                    reason="cancellation scheduled for period end",
                    now=now,
                )
        return True
