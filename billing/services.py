"""Wires the billing components together from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from billing.config import BillingSettings
from billing.engine import ReconciliationEngine
from billing.invoices import InvoiceLedger
from billing.ledger_client import LedgerClient, StripeLedgerClient
from billing.plans import PlanCatalog, sync_plan_catalogue
from billing.subscriptions import SubscriptionStore
from billing.usage import UsageMeter
from billing.worker import BillingWorker, log_trial_notice
from db import create_db_engine, create_session_factory, create_tables

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: BillingSettings
    db_engine: Engine
    session_factory: sessionmaker
    ledger: LedgerClient
    catalog: PlanCatalog
    subscriptions: SubscriptionStore
    usage: UsageMeter
    invoices: InvoiceLedger
    reconciliation: ReconciliationEngine
    worker: BillingWorker

    def initialize(self) -> None:
        """Create tables and sync the plan catalogue."""

        create_tables(self.db_engine)
        if self.settings.sync_plan_catalogue:
            with self.session_factory() as session:
                sync_plan_catalogue(session)
            logger.info("Plan catalogue synced")

    def start(self) -> None:
        self.worker.start()

    def close(self) -> None:
        self.worker.stop()
        self.db_engine.dispose()


def build_services(
    settings: BillingSettings,
    *,
    ledger: Optional[LedgerClient] = None,
    db_engine: Optional[Engine] = None,
) -> BillingServices:
    """Build the component graph. ``ledger`` defaults to the Stripe adapter."""

    db_engine = db_engine or create_db_engine(settings.database_url)
    session_factory = create_session_factory(db_engine)
    if ledger is None:
        ledger = StripeLedgerClient(
            settings.require_provider_api_key(),
            webhook_secret=settings.webhook_secret,
            timeout_seconds=settings.provider_timeout_seconds,
            webhook_tolerance_seconds=settings.webhook_tolerance_seconds,
        )

    invoices = InvoiceLedger(
        session_factory,
        ledger,
        tax_rate=settings.tax_rate,
        due_days=settings.invoice_due_days,
    )
    worker = BillingWorker()
    reconciliation = ReconciliationEngine(session_factory, ledger, invoices, enqueue=worker.enqueue)

    worker.register("period_rollover", lambda payload: reconciliation.run_period_rollover())
    worker.register("finalize_invoice", lambda payload: invoices.finalize_invoice(payload["invoice_id"]))
    worker.register("close_period", reconciliation.close_period_job)
    worker.register("trial_will_end_notice", log_trial_notice)

    return BillingServices(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        ledger=ledger,
        catalog=PlanCatalog(session_factory),
        subscriptions=SubscriptionStore(session_factory, ledger),
        usage=UsageMeter(session_factory),
        invoices=invoices,
        reconciliation=reconciliation,
        worker=worker,
    )
