"""Invoice ledger: closes usage periods into invoices and hands them to the provider."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from billing.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from billing.ledger_client import InvoiceLine, LedgerClient, ProviderRefund
from billing.plans import load_plan
from billing.records import InvoiceView, invoice_view
from billing.subscriptions import lock_subscription
from core.datetime_utils import ensure_utc, utcnow
from core.numeric_utils import quantize_money, safe_decimal, to_minor_units
from models import Invoice, InvoiceItem, Subscription, UsageSummary

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("draft", "open", "paid", "uncollectible", "void")


def _find_invoice_for_period(session: Session, subscription_id: str, period_start: datetime) -> Optional[Invoice]:
    return (
        session.query(Invoice)
        .options(selectinload(Invoice.items))
        .filter(Invoice.subscription_id == subscription_id, Invoice.period_start == period_start)
        .one_or_none()
    )


def _invoice_number(subscription_id: str, period_start: datetime) -> str:
    return f"INV-{period_start:%Y%m%d}-{subscription_id.replace('-', '')[:8].upper()}"


def _is_trial_period(subscription: Subscription, period_end: datetime) -> bool:
    """A period is free when the trial covers its end or the trial has not converted yet."""

    if subscription.status == "trialing":
        return True
    trial_ends_at = ensure_utc(subscription.trial_ends_at)
    return trial_ends_at is not None and trial_ends_at >= period_end


def _lock_invoice(session: Session, invoice_id: str, organization_id: Optional[str] = None) -> Invoice:
    invoice = (
        session.query(Invoice)
        .options(selectinload(Invoice.items))
        .filter(Invoice.id == invoice_id)
        .with_for_update()
        .one_or_none()
    )
    if invoice is None or (organization_id is not None and invoice.organization_id != organization_id):
        raise NotFoundError(f"Invoice {invoice_id} does not exist.", details={"invoice_id": invoice_id})
    return invoice


def apply_invoice_payment(
    session: Session,
    external_ref: str,
    *,
    paid_at: Optional[datetime] = None,
    payment_ref: Optional[str] = None,
) -> Optional[Invoice]:
    """Record a provider payment confirmation. Returns None for invoices not issued locally."""

    invoice = session.query(Invoice).filter(Invoice.external_ref == external_ref).with_for_update().one_or_none()
    if invoice is None:
        return None
    if invoice.status == "paid":
        return invoice
    if invoice.status in ("void", "uncollectible"):
        logger.warning("Payment confirmation for %s invoice %s ignored", invoice.status, invoice.id)
        return invoice

    invoice.status = "paid"
    invoice.paid_at = ensure_utc(paid_at) or utcnow()
    invoice.payment_ref = payment_ref or invoice.payment_ref
    invoice.last_payment_error = None
    return invoice


def apply_invoice_payment_failure(session: Session, external_ref: str, error: Optional[str]) -> Optional[Invoice]:
    invoice = session.query(Invoice).filter(Invoice.external_ref == external_ref).with_for_update().one_or_none()
    if invoice is None:
        return None
    if invoice.status == "draft":
        invoice.status = "open"
    invoice.last_payment_error = error or "payment failed"
    return invoice


class InvoiceLedger:
    """Derives invoices from closed usage periods."""

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: LedgerClient,
        *,
        tax_rate: Decimal = Decimal("0"),
        due_days: int = 30,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._tax_rate = Decimal(tax_rate)
        self._due_days = due_days

    def close_period(self, subscription_id: str, period_start: datetime, period_end: datetime) -> InvoiceView:
        """Freeze the period's usage and create its draft invoice.

        Closing an already-closed period returns the existing invoice.
        """

        period_start = ensure_utc(period_start)
        period_end = ensure_utc(period_end)
        if period_start >= period_end:
            raise ValidationError("period_start must be before period_end.")

        with self._session_factory() as session:
            try:
                with session.begin():
                    existing = _find_invoice_for_period(session, subscription_id, period_start)
                    if existing is not None:
                        return invoice_view(existing)

                    subscription = lock_subscription(session, subscription_id)
                    plan = load_plan(session, subscription.plan_id)
                    currency = plan.currency

                    summaries = (
                        session.query(UsageSummary)
                        .filter(
                            UsageSummary.subscription_id == subscription_id,
                            UsageSummary.period_start == period_start,
                            UsageSummary.period_end == period_end,
                        )
                        .order_by(UsageSummary.resource_type.asc())
                        .with_for_update()
                        .all()
                    )

                    trial = _is_trial_period(subscription, period_end)
                    base_price = quantize_money(
                        0 if trial else plan.yearly_price if subscription.billing_cycle == "yearly" else plan.monthly_price,
                        currency,
                    )
                    cycle_label = f"{subscription.billing_cycle}, trial" if trial else subscription.billing_cycle
                    items = [
                        InvoiceItem(
                            position=0,
                            description=f"{plan.name} plan ({cycle_label})",
                            item_type="subscription",
                            quantity=1,
                            unit_price=base_price,
                            amount=base_price,
                        )
                    ]

                    usage_total = Decimal("0")
                    for summary in summaries:
                        if summary.status == "pending":
                            summary.status = "billed"
                        if summary.status == "waived" or not summary.overage_quantity:
                            continue
                        amount = quantize_money(summary.overage_amount or 0, currency)
                        unit_price = safe_decimal(summary.overage_unit_price) or Decimal("0")
                        items.append(
                            InvoiceItem(
                                position=len(items),
                                description=f"{summary.resource_type} overage ({summary.overage_quantity} units)",
                                item_type="usage",
                                resource_type=summary.resource_type,
                                quantity=int(summary.overage_quantity),
                                unit_price=unit_price,
                                amount=amount,
                            )
                        )
                        usage_total += amount

                    subtotal = quantize_money(base_price + usage_total, currency)
                    tax = quantize_money(subtotal * self._tax_rate, currency)
                    now = utcnow()

                    invoice = Invoice(
                        organization_id=subscription.organization_id,
                        subscription_id=subscription.id,
                        number=_invoice_number(subscription.id, period_start),
                        currency=currency,
                        subtotal=subtotal,
                        tax=tax,
                        total=subtotal + tax,
                        status="draft",
                        period_start=period_start,
                        period_end=period_end,
                        due_date=now + timedelta(days=self._due_days),
                        items=items,
                    )
                    session.add(invoice)
                    session.flush()
                    view = invoice_view(invoice)
            except IntegrityError:
                # A concurrent close won the unique (subscription_id, period_start) race.
                with self._session_factory() as retry_session:
                    existing = _find_invoice_for_period(retry_session, subscription_id, period_start)
                    if existing is None:
                        raise
                    return invoice_view(existing)

        logger.info(
            "Closed period %s..%s for subscription %s: invoice %s total %s %s",
            period_start.isoformat(),
            period_end.isoformat(),
            subscription_id,
            view.id,
            view.total,
            view.currency,
        )
        return view

    def finalize_invoice(self, invoice_id: str) -> InvoiceView:
        """Issue a draft invoice at the provider and attempt payment.

        Provider idempotency keys derive from the invoice id, so a retry after a
        transient failure reuses the provider invoice created by the first try.
        A declined payment leaves the invoice ``open`` with the error recorded.
        """

        with self._session_factory() as session:
            with session.begin():
                invoice = _lock_invoice(session, invoice_id)
                if invoice.status != "draft":
                    return invoice_view(invoice)

                subscription = session.get(Subscription, invoice.subscription_id)
                if subscription is None or not subscription.provider_customer_id:
                    raise ConflictError(
                        "Invoice cannot be issued without a provider customer.",
                        details={"invoice_id": invoice.id},
                    )

                lines = [
                    InvoiceLine(item.description, to_minor_units(item.amount, invoice.currency), invoice.currency)
                    for item in invoice.items
                ]
                if invoice.tax and Decimal(invoice.tax) > 0:
                    lines.append(InvoiceLine("Tax", to_minor_units(invoice.tax, invoice.currency), invoice.currency))

                provider_invoice = self._ledger.create_invoice(
                    customer_id=subscription.provider_customer_id,
                    lines=lines,
                    metadata={
                        "invoice_id": invoice.id,
                        "subscription_id": invoice.subscription_id,
                        "organization_id": invoice.organization_id,
                    },
                    idempotency_key=f"invoice-create:{invoice.id}",
                )
                invoice.external_ref = provider_invoice.id
                invoice.status = "paid" if provider_invoice.status == "paid" else "open"

                if invoice.status == "open" and provider_invoice.amount_due > 0:
                    try:
                        paid = self._ledger.pay_invoice(provider_invoice.id, idempotency_key=f"invoice-pay:{invoice.id}")
                    except ProviderError as exc:
                        if exc.retryable:
                            raise
                        logger.warning("Payment for invoice %s declined: %s", invoice.id, exc.message)
                        invoice.last_payment_error = exc.message
                    else:
                        if paid.status == "paid":
                            invoice.status = "paid"
                            invoice.paid_at = utcnow()
                            invoice.payment_ref = paid.payment_ref
                elif invoice.status == "paid":
                    invoice.paid_at = utcnow()

                view = invoice_view(invoice)

        logger.info("Finalized invoice %s as %s (provider ref %s)", view.id, view.status, view.external_ref)
        return view

    def mark_paid(
        self,
        external_ref: str,
        paid_at: Optional[datetime] = None,
        payment_ref: Optional[str] = None,
    ) -> Optional[InvoiceView]:
        with self._session_factory() as session:
            with session.begin():
                invoice = apply_invoice_payment(session, external_ref, paid_at=paid_at, payment_ref=payment_ref)
                return invoice_view(invoice) if invoice is not None else None

    def mark_payment_failed(self, external_ref: str, error: Optional[str] = None) -> Optional[InvoiceView]:
        with self._session_factory() as session:
            with session.begin():
                invoice = apply_invoice_payment_failure(session, external_ref, error)
                return invoice_view(invoice) if invoice is not None else None

    def refund_payment(self, invoice_id: str, amount: Optional[Decimal] = None) -> ProviderRefund:
        """Refund all or part of a paid invoice through the provider."""

        with self._session_factory() as session:
            invoice = session.get(Invoice, invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} does not exist.", details={"invoice_id": invoice_id})
            if invoice.status != "paid" or not invoice.payment_ref:
                raise ConflictError(
                    "Only paid invoices can be refunded.",
                    details={"invoice_id": invoice.id, "status": invoice.status},
                )
            amount_minor = None
            if amount is not None:
                amount = safe_decimal(amount)
                if amount is None or amount <= 0 or amount > Decimal(invoice.total):
                    raise ValidationError(
                        "Refund amount must be positive and at most the invoice total.",
                        details={"amount": str(amount), "total": str(invoice.total)},
                    )
                amount_minor = to_minor_units(amount, invoice.currency)
            payment_ref = invoice.payment_ref

        refund = self._ledger.refund_payment(
            payment_ref,
            amount_minor=amount_minor,
            idempotency_key=f"invoice-refund:{invoice_id}:{amount_minor if amount_minor is not None else 'full'}",
        )
        logger.info("Refund %s for invoice %s: %s", refund.id, invoice_id, refund.status)
        return refund

    def void_invoice(self, invoice_id: str, organization_id: Optional[str] = None, *, actor_id: Optional[str] = None) -> InvoiceView:
        """Cancel an unpaid invoice.

        A draft never reached the provider and is voided locally. Open and
        uncollectible invoices are voided at the provider first; a provider
        failure leaves the invoice unchanged.
        """

        with self._session_factory() as session:
            with session.begin():
                invoice = _lock_invoice(session, invoice_id, organization_id)
                if invoice.status == "void":
                    return invoice_view(invoice)
                if invoice.status not in ("draft", "open", "uncollectible"):
                    raise ConflictError(
                        f"Invoice in status {invoice.status!r} cannot be voided.",
                        details={"invoice_id": invoice.id, "status": invoice.status},
                    )
                if invoice.external_ref:
                    self._ledger.void_invoice(invoice.external_ref, idempotency_key=f"invoice-void:{invoice.id}")
                invoice.status = "void"
                view = invoice_view(invoice)

        logger.info("Invoice %s voided by %s", view.id, actor_id or "system")
        return view

    def mark_uncollectible(
        self,
        invoice_id: str,
        organization_id: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> InvoiceView:
        """Write off an open invoice at the provider and locally."""

        with self._session_factory() as session:
            with session.begin():
                invoice = _lock_invoice(session, invoice_id, organization_id)
                if invoice.status == "uncollectible":
                    return invoice_view(invoice)
                if invoice.status != "open" or not invoice.external_ref:
                    raise ConflictError(
                        "Only open invoices can be marked uncollectible.",
                        details={"invoice_id": invoice.id, "status": invoice.status},
                    )
                self._ledger.mark_uncollectible(
                    invoice.external_ref,
                    idempotency_key=f"invoice-uncollectible:{invoice.id}",
                )
                invoice.status = "uncollectible"
                view = invoice_view(invoice)

        logger.info("Invoice %s marked uncollectible by %s", view.id, actor_id or "system")
        return view

    def get_invoice(self, invoice_id: str, organization_id: Optional[str] = None) -> InvoiceView:
        with self._session_factory() as session:
            invoice = (
                session.query(Invoice)
                .options(selectinload(Invoice.items))
                .filter(Invoice.id == invoice_id)
                .one_or_none()
            )
            if invoice is None or (organization_id is not None and invoice.organization_id != organization_id):
                raise NotFoundError(f"Invoice {invoice_id} does not exist.", details={"invoice_id": invoice_id})
            return invoice_view(invoice)

    def list_invoices(self, organization_id: str, *, status: Optional[str] = None) -> List[InvoiceView]:
        if status is not None and status not in INVOICE_STATUSES:
            raise ValidationError(f"Unknown invoice status {status!r}.", details={"status": status})
        with self._session_factory() as session:
            query = (
                session.query(Invoice)
                .options(selectinload(Invoice.items))
                .filter(Invoice.organization_id == organization_id)
            )
            if status is not None:
                query = query.filter(Invoice.status == status)
            rows = query.order_by(Invoice.period_start.desc()).all()
            return [invoice_view(row) for row in rows]
