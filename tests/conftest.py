"""
Shared pytest fixtures for the billing test suite.

Every test gets its own SQLite database file, a seeded plan catalogue and a
recording fake of the ledger provider. Webhook payloads are signed with the
same ``t=...,v1=...`` scheme the provider uses.
"""

import itertools
from decimal import Decimal
from typing import Optional

import pytest

from billing.config import BillingSettings
from billing.plans import sync_plan_catalogue
from billing.services import build_services
from tests.helpers import (
    TEST_PLAN_DEFINITIONS,
    WEBHOOK_SECRET,
    FakeLedgerClient,
    make_event,
    price_id,
    sign_payload,
    subscription_payload,
)


@pytest.fixture
def settings(tmp_path):
    return BillingSettings(
        database_url=f"sqlite:///{tmp_path / 'billing.db'}",
        webhook_secret=WEBHOOK_SECRET,
        tax_rate=Decimal("0"),
        sync_plan_catalogue=False,
    )


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def services(settings, ledger, monkeypatch):
    """Fully wired billing services on a fresh database with seeded plans."""

    for definition in TEST_PLAN_DEFINITIONS:
        for cycle in ("monthly", "yearly"):
            monkeypatch.setenv(definition.provider_price_env(cycle), price_id(definition.slug, cycle))

    built = build_services(settings, ledger=ledger)
    built.initialize()
    with built.session_factory() as session:
        sync_plan_catalogue(session, TEST_PLAN_DEFINITIONS)
    try:
        yield built
    finally:
        built.close()


@pytest.fixture
def plans(services):
    """Plan views keyed by slug."""
    return {plan.slug: plan for plan in services.catalog.list_plans()}


@pytest.fixture
def deliver(services):
    """Sign and deliver a webhook body through the reconciliation engine."""

    def _deliver(payload: bytes, *, signature: Optional[str] = None):
        header = signature if signature is not None else sign_payload(payload)
        return services.reconciliation.handle_provider_event(payload, header)

    return _deliver


@pytest.fixture
def activate(services, ledger, deliver):
    """Confirm a pending subscription with a ``customer.subscription.created`` event."""

    counter = itertools.count(1)

    def _activate(subscription, *, status: str = "active", created: Optional[int] = None):
        payload = subscription_payload(
            subscription.external_ref,
            status=status,
            customer_id=subscription.provider_customer_id,
        )
        result = deliver(
            make_event(f"evt_activate_{next(counter)}", "customer.subscription.created", payload, created=created)
        )
        assert result.outcome == "applied"
        ledger.set_status(subscription.external_ref, status)
        return services.subscriptions.get_subscription(subscription.id)

    return _activate


@pytest.fixture
def active_subscription(services, plans, activate):
    """An active starter subscription for ``org_1``."""
    created = services.subscriptions.create_subscription("org_1", plans["starter"].id, trial_days=0, actor_id="user_1")
    return activate(created)


@pytest.fixture
def metered_subscription(services, plans, activate):
    """An active subscription on the 100-included / 0.50-overage test plan."""
    created = services.subscriptions.create_subscription("org_metered", plans["metered"].id, actor_id="user_1")
    return activate(created)


