"""
Tests for the period rollover sweep and the background worker.
"""

import logging
import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from billing.errors import ProviderError
from billing.worker import BillingWorker
from tests.helpers import make_event, subscription_payload


def _after_period(subscription, seconds=1):
    return subscription.current_period_end + timedelta(seconds=seconds)


class TestPeriodRollover:
    def test_nothing_due(self, services, active_subscription):
        report = services.reconciliation.run_period_rollover()
        assert report.checked == 0
        assert report.invoices == ()

    def test_closes_period_and_queues_finalization(self, services, ledger, active_subscription):
        services.usage.record_usage("org_1", active_subscription.id, "email_sends", 1100)

        report = services.reconciliation.run_period_rollover(now=_after_period(active_subscription))

        assert report.checked == 1
        (invoice_id,) = report.invoices
        invoice = services.invoices.get_invoice(invoice_id)
        assert invoice.status == "draft"
        assert invoice.total == Decimal("50.00")

        assert services.worker.run_pending() == 1
        assert services.invoices.get_invoice(invoice_id).status == "paid"
        assert len(ledger.calls_to("create_invoice")) == 1

    def test_rollover_is_repeatable(self, services, ledger, active_subscription):
        now = _after_period(active_subscription)
        first = services.reconciliation.run_period_rollover(now=now)
        services.worker.run_pending()
        second = services.reconciliation.run_period_rollover(now=now)

        assert second.invoices == first.invoices
        assert services.worker.run_pending() == 0
        assert len(services.invoices.list_invoices("org_1")) == 1
        assert len(ledger.calls_to("create_invoice")) == 1

    def test_applies_cancellation_scheduled_for_period_end(self, services, active_subscription):
        services.subscriptions.cancel_subscription(active_subscription.id, "org_1", actor_id="user_1")

        report = services.reconciliation.run_period_rollover(now=_after_period(active_subscription))

        assert report.canceled == (active_subscription.id,)
        current = services.subscriptions.get_subscription(active_subscription.id)
        assert current.status == "canceled"
        assert current.cancels_at_period_end is False
        entry = services.subscriptions.get_history(active_subscription.id)[-1]
        assert (entry.change_type, entry.source) == ("canceled", "sweep")

        again = services.reconciliation.run_period_rollover(now=_after_period(active_subscription))
        assert again.checked == 0

    def test_pending_subscriptions_are_skipped(self, services, plans):
        pending = services.subscriptions.create_subscription("org_pending", plans["starter"].id)
        report = services.reconciliation.run_period_rollover(now=_after_period(pending, seconds=60))
        assert report.checked == 0

    def test_worker_job_runs_rollover(self, services, active_subscription):
        services.worker.enqueue("period_rollover")
        assert services.worker.run_pending() == 1

class TestRenewalBeforeSweep:
    """The provider may renew a period before the sweep gets to close it."""

    def _renew(self, deliver, subscription, event_id="evt_renewal"):
        start = subscription.current_period_end
        payload = subscription_payload(
            subscription.external_ref,
            status="active",
            customer_id=subscription.provider_customer_id,
            period_start=start,
            period_end=start + timedelta(days=30),
        )
        return deliver(make_event(event_id, "customer.subscription.updated", payload, created=int(time.time()) + 60))

    def test_sweep_still_closes_the_renewed_period(self, services, deliver, active_subscription):
        services.usage.record_usage("org_1", active_subscription.id, "email_sends", 1050)
        assert self._renew(deliver, active_subscription).outcome == "applied"

        report = services.reconciliation.run_period_rollover(now=_after_period(active_subscription, seconds=5))

        assert report.checked == 1
        (invoice_id,) = report.invoices
        invoice = services.invoices.get_invoice(invoice_id)
        assert invoice.period_end == active_subscription.current_period_end
        assert invoice.total == Decimal("49.50")
        assert {summary.status for summary in services.usage.get_summaries("org_1")} == {"billed"}
        assert len(services.invoices.list_invoices("org_1")) == 1

    def test_renewal_queues_close_of_the_previous_period(self, services, ledger, deliver, active_subscription):
        services.usage.record_usage("org_1", active_subscription.id, "email_sends", 1100)
        self._renew(deliver, active_subscription)

        services.worker.run_pending()

        (invoice,) = services.invoices.list_invoices("org_1")
        assert invoice.period_start == active_subscription.current_period_start
        assert invoice.status == "paid"
        assert invoice.total == Decimal("50.00")
        assert len(ledger.calls_to("create_invoice")) == 1

        report = services.reconciliation.run_period_rollover(now=_after_period(active_subscription, seconds=5))
        assert report.checked == 0
        assert report.requeued == ()

    def test_failed_hand_off_is_requeued_by_the_sweep(self, services, ledger, deliver, active_subscription, caplog):
        ledger.fail_on("create_invoice", ProviderError("timeout", operation="create_invoice"))
        first = services.reconciliation.run_period_rollover(now=_after_period(active_subscription))
        (invoice_id,) = first.invoices
        with caplog.at_level(logging.ERROR, logger="billing.worker"):
            services.worker.run_pending()
            self._renew(deliver, active_subscription)
            services.worker.run_pending()
        assert "Billing job finalize_invoice failed" in caplog.text
        assert services.invoices.get_invoice(invoice_id).status == "draft"

        ledger.clear_failures()
        report = services.reconciliation.run_period_rollover(now=_after_period(active_subscription, seconds=5))

        assert report.checked == 0
        assert report.requeued == (invoice_id,)
        services.worker.run_pending()
        assert services.invoices.get_invoice(invoice_id).status == "paid"
        assert len(services.invoices.list_invoices("org_1")) == 1


class TestTrialRollover:
    def test_trial_period_closes_at_zero(self, services, plans, activate):
        created = services.subscriptions.create_subscription("org_trial", plans["starter"].id)
        subscription = activate(created, status="trialing")

        report = services.reconciliation.run_period_rollover(now=_after_period(subscription))

        (invoice_id,) = report.invoices
        invoice = services.invoices.get_invoice(invoice_id)
        assert invoice.total == Decimal("0.00")
        assert invoice.items_of_type("subscription")[0].amount == Decimal("0.00")
        services.worker.run_pending()
        assert services.invoices.get_invoice(invoice_id).status == "paid"


class TestBillingWorker:
    def test_unknown_job_rejected(self):
        worker = BillingWorker()
        with pytest.raises(ValueError):
            worker.enqueue("nope")

    def test_run_pending_processes_in_order(self):
        worker = BillingWorker()
        seen = []
        worker.register("record", lambda payload: seen.append(payload["n"]))
        for n in range(3):
            worker.enqueue("record", {"n": n})

        assert worker.run_pending() == 3
        assert seen == [0, 1, 2]
        assert worker.run_pending() == 0

    def test_failing_job_is_logged_and_skipped(self, caplog):
        worker = BillingWorker()
        seen = []

        def explode(payload):
            raise RuntimeError("boom")

        worker.register("explode", explode)
        worker.register("record", lambda payload: seen.append(True))
        worker.enqueue("explode")
        worker.enqueue("record")

        with caplog.at_level(logging.ERROR, logger="billing.worker"):
            worker.run_pending()

        assert seen == [True]
        assert "Billing job explode failed" in caplog.text

    def test_thread_lifecycle(self):
        worker = BillingWorker(name="test-worker")
        done = threading.Event()
        worker.register("signal", lambda payload: done.set())

        worker.start()
        worker.start()
        try:
            assert worker.running
            worker.enqueue("signal")
            assert done.wait(5)
            worker.join()
        finally:
            worker.stop()

        assert not worker.running
        worker.stop()
