"""
Tests for the subscription store and lifecycle state machine.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from billing.errors import ConflictError, InvalidTransition, NotFoundError, ProviderError, ValidationError
from billing.subscriptions import (
    ALLOWED_TRANSITIONS,
    STATUSES,
    assert_transition,
    can_transition,
    map_provider_status,
    subscription_id_for_operation,
)
from tests.helpers import price_id


class TestStateMachine:
    """The transition table and provider status vocabulary."""

    def test_every_status_has_a_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(STATUSES)

    @pytest.mark.parametrize(
        "current,requested",
        [
            ("pending", "active"),
            ("pending", "trialing"),
            ("trialing", "active"),
            ("trialing", "past_due"),
            ("active", "past_due"),
            ("past_due", "active"),
            ("active", "canceled"),
            ("pending", "canceled"),
        ],
    )
    def test_allowed_transitions(self, current, requested):
        assert can_transition(current, requested)
        assert_transition(current, requested)

    @pytest.mark.parametrize(
        "current,requested",
        [
            ("canceled", "active"),
            ("canceled", "pending"),
            ("active", "pending"),
            ("active", "trialing"),
            ("past_due", "trialing"),
            ("pending", "past_due"),
        ],
    )
    def test_forbidden_transitions(self, current, requested):
        assert not can_transition(current, requested)
        with pytest.raises(InvalidTransition) as excinfo:
            assert_transition(current, requested, subscription_id="sub-1")
        assert excinfo.value.details["current_status"] == current
        assert excinfo.value.http_status == 409

    def test_same_status_is_a_noop_transition(self):
        assert can_transition("active", "active")

    def test_unknown_status_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            assert_transition("active", "paused")

    @pytest.mark.parametrize(
        "provider,local",
        [
            ("incomplete", "pending"),
            ("trialing", "trialing"),
            ("active", "active"),
            ("past_due", "past_due"),
            ("unpaid", "past_due"),
            ("canceled", "canceled"),
            ("incomplete_expired", "canceled"),
        ],
    )
    def test_provider_status_mapping(self, provider, local):
        assert map_provider_status(provider) == local

    def test_unknown_provider_status_rejected(self):
        with pytest.raises(ValidationError):
            map_provider_status("paused")

    def test_operation_ids_give_stable_subscription_ids(self):
        first = subscription_id_for_operation("org_1", "op-1")
        assert first == subscription_id_for_operation("org_1", "op-1")
        assert first != subscription_id_for_operation("org_2", "op-1")
        assert subscription_id_for_operation("org_1", None) != subscription_id_for_operation("org_1", None)


class TestCreateSubscription:
    """Creation runs the provider call inside the insert transaction."""

    def test_create_persists_pending_row_with_provider_refs(self, services, plans, ledger):
        subscription = services.subscriptions.create_subscription(
            "org_1", plans["starter"].id, actor_id="user_1", email="owner@example.com"
        )

        assert subscription.status == "pending"
        assert subscription.external_ref == "sub_2"
        assert subscription.provider_customer_id == "cus_org_1"
        assert subscription.trial_ends_at is not None
        assert subscription.current_period_start < subscription.current_period_end

        (call,) = ledger.calls_to("create_subscription")
        assert call["price_id"] == price_id("starter")
        assert call["trial_days"] == 14
        assert call["metadata"]["subscription_id"] == subscription.id
        assert call["metadata"]["organization_id"] == "org_1"
        assert call["idempotency_key"].startswith("subscription-create:")

        (customer_call,) = ledger.calls_to("ensure_customer")
        assert customer_call["idempotency_key"] == "customer-create:org_1"
        assert customer_call["email"] == "owner@example.com"

    def test_existing_customer_id_skips_customer_creation(self, services, plans, ledger):
        subscription = services.subscriptions.create_subscription(
            "org_1", plans["starter"].id, provider_customer_id="cus_existing"
        )
        assert subscription.provider_customer_id == "cus_existing"
        assert ledger.calls_to("ensure_customer") == []

    def test_create_writes_history(self, services, plans):
        subscription = services.subscriptions.create_subscription("org_1", plans["starter"].id, actor_id="user_1")
        (entry,) = services.subscriptions.get_history(subscription.id)
        assert entry.change_type == "created"
        assert entry.source == "command"
        assert entry.actor_id == "user_1"
        assert entry.new_status == "pending"

    def test_second_live_subscription_conflicts_before_provider_call(self, services, plans, ledger):
        first = services.subscriptions.create_subscription("org_1", plans["starter"].id)
        calls_before = len(ledger.calls)

        with pytest.raises(ConflictError) as excinfo:
            services.subscriptions.create_subscription("org_1", plans["business"].id)

        assert excinfo.value.details["subscription_id"] == first.id
        assert excinfo.value.details["status"] == "pending"
        assert len(ledger.calls) == calls_before

    def test_canceled_subscription_does_not_block_new_one(self, services, plans, active_subscription):
        services.subscriptions.cancel_subscription(active_subscription.id, "org_1", immediate=True)
        replacement = services.subscriptions.create_subscription("org_1", plans["business"].id)
        assert replacement.status == "pending"
        assert len(services.subscriptions.list_subscriptions("org_1")) == 2

    def test_replayed_operation_returns_the_same_subscription(self, services, plans, ledger):
        first = services.subscriptions.create_subscription("org_1", plans["starter"].id, operation_id="op-42")
        again = services.subscriptions.create_subscription("org_1", plans["starter"].id, operation_id="op-42")

        assert again.id == first.id
        assert len(ledger.calls_to("create_subscription")) == 1
        assert ledger.calls_to("create_subscription")[0]["idempotency_key"] == "subscription-create:op-42"

    def test_provider_failure_persists_nothing(self, services, plans, ledger):
        ledger.fail_on("create_subscription", ProviderError("timed out", operation="create_subscription"))

        with pytest.raises(ProviderError):
            services.subscriptions.create_subscription("org_1", plans["starter"].id)

        assert services.subscriptions.list_subscriptions("org_1") == []
        assert services.subscriptions.get_current_subscription("org_1") is None

    def test_retry_after_provider_failure_succeeds(self, services, plans, ledger):
        ledger.fail_on("create_subscription", ProviderError("timed out", operation="create_subscription"))
        with pytest.raises(ProviderError):
            services.subscriptions.create_subscription("org_1", plans["starter"].id, operation_id="op-1")

        ledger.clear_failures()
        subscription = services.subscriptions.create_subscription("org_1", plans["starter"].id, operation_id="op-1")

        keys = [call["idempotency_key"] for call in ledger.calls_to("create_subscription")]
        assert keys == ["subscription-create:op-1", "subscription-create:op-1"]
        metadata = [call["metadata"]["subscription_id"] for call in ledger.calls_to("create_subscription")]
        assert metadata == [subscription.id, subscription.id]

    def test_unknown_plan(self, services):
        with pytest.raises(NotFoundError):
            services.subscriptions.create_subscription("org_1", "no-such-plan")

    def test_archived_plan_rejected(self, services, plans):
        services.catalog.archive_plan(plans["pro"].id)
        with pytest.raises(ValidationError):
            services.subscriptions.create_subscription("org_1", plans["pro"].id)

    def test_unsupported_billing_cycle(self, services, plans):
        with pytest.raises(ValidationError):
            services.subscriptions.create_subscription("org_1", plans["starter"].id, "weekly")

    def test_concurrent_creates_leave_one_live_subscription(self, services, plans, ledger):
        attempts = 8
        barrier = threading.Barrier(attempts)

        def attempt(index):
            barrier.wait()
            try:
                return services.subscriptions.create_subscription(
                    "org_race", plans["starter"].id, operation_id=f"op-{index}"
                )
            except ConflictError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=attempts) as pool:
            results = list(pool.map(attempt, range(attempts)))

        created = [result for result in results if not isinstance(result, ConflictError)]
        assert len(created) == 1
        assert len(services.subscriptions.list_subscriptions("org_race")) == 1
        assert len(ledger.calls_to("create_subscription")) == 1


class TestUpdateSubscription:
    """Plan changes apply the provider's synchronous response."""

    def test_upgrade(self, services, plans, ledger, active_subscription):
        updated = services.subscriptions.update_subscription(
            active_subscription.id, "org_1", plan_id=plans["business"].id, actor_id="user_1", operation_id="op-up"
        )

        assert updated.plan_id == plans["business"].id
        assert updated.status == "active"
        (call,) = ledger.calls_to("update_subscription")
        assert call["price_id"] == price_id("business")
        assert call["idempotency_key"] == "subscription-update:op-up"

        history = services.subscriptions.get_history(active_subscription.id)
        assert history[-1].change_type == "upgraded"
        assert history[-1].previous_plan_id == plans["starter"].id

    def test_downgrade(self, services, plans, active_subscription):
        services.subscriptions.update_subscription(active_subscription.id, "org_1", plan_id=plans["business"].id)
        services.subscriptions.update_subscription(active_subscription.id, "org_1", plan_id=plans["starter"].id)
        history = services.subscriptions.get_history(active_subscription.id)
        assert history[-1].change_type == "downgraded"

    def test_switch_to_yearly(self, services, active_subscription, ledger):
        updated = services.subscriptions.update_subscription(active_subscription.id, "org_1", billing_cycle="yearly")
        assert updated.billing_cycle == "yearly"
        assert ledger.calls_to("update_subscription")[0]["price_id"] == price_id("starter", "yearly")

    def test_no_change_rejected(self, services, plans, active_subscription):
        with pytest.raises(ValidationError):
            services.subscriptions.update_subscription(active_subscription.id, "org_1", plan_id=plans["starter"].id)
        with pytest.raises(ValidationError):
            services.subscriptions.update_subscription(active_subscription.id, "org_1")

    def test_provider_failure_leaves_row_unchanged(self, services, plans, ledger, active_subscription):
        before = services.subscriptions.get_subscription(active_subscription.id)
        ledger.fail_on("update_subscription", ProviderError("boom", operation="update_subscription"))

        with pytest.raises(ProviderError):
            services.subscriptions.update_subscription(active_subscription.id, "org_1", plan_id=plans["pro"].id)

        after = services.subscriptions.get_subscription(active_subscription.id)
        assert after.to_dict() == before.to_dict()
        assert len(services.subscriptions.get_history(active_subscription.id)) == 2

    def test_pending_subscription_cannot_change_plan(self, services, plans):
        pending = services.subscriptions.create_subscription("org_1", plans["starter"].id)
        with pytest.raises(ConflictError):
            services.subscriptions.update_subscription(pending.id, "org_1", plan_id=plans["pro"].id)

    def test_other_organization_sees_not_found(self, services, plans, active_subscription):
        with pytest.raises(NotFoundError):
            services.subscriptions.update_subscription(active_subscription.id, "org_other", plan_id=plans["pro"].id)

class TestPreviewSubscriptionChange:
    """Pricing a change without applying it."""

    def _midpoint(self, subscription):
        start = subscription.current_period_start
        return start + (subscription.current_period_end - start) / 2

    def test_upgrade_is_prorated_over_the_rest_of_the_period(self, services, plans, ledger, active_subscription):
        preview = services.subscriptions.preview_subscription_change(
            active_subscription.id, "org_1", plan_id=plans["pro"].id, now=self._midpoint(active_subscription)
        )

        assert preview.change_type == "upgraded"
        assert (preview.current_price, preview.new_price) == (Decimal("49.00"), Decimal("199.00"))
        assert preview.proration_credit == Decimal("24.50")
        assert preview.proration_charge == Decimal("99.50")
        assert preview.amount_due == Decimal("75.00")
        assert ledger.calls_to("update_subscription") == []
        assert services.subscriptions.get_subscription(active_subscription.id).plan_id == plans["starter"].id

    def test_downgrade_yields_a_credit(self, services, plans, active_subscription):
        preview = services.subscriptions.preview_subscription_change(
            active_subscription.id, "org_1", plan_id=plans["free"].id, now=self._midpoint(active_subscription)
        )
        assert preview.change_type == "downgraded"
        assert preview.amount_due == Decimal("-24.50")

    def test_cycle_switch_charges_the_full_new_price(self, services, active_subscription):
        preview = services.subscriptions.preview_subscription_change(
            active_subscription.id, "org_1", billing_cycle="yearly", now=self._midpoint(active_subscription)
        )
        assert preview.new_billing_cycle == "yearly"
        assert preview.proration_charge == Decimal("490.00")
        assert preview.amount_due == Decimal("465.50")

    def test_after_period_end_nothing_is_prorated(self, services, plans, active_subscription):
        preview = services.subscriptions.preview_subscription_change(
            active_subscription.id,
            "org_1",
            plan_id=plans["pro"].id,
            now=active_subscription.current_period_end + timedelta(days=1),
        )
        assert (preview.proration_credit, preview.proration_charge) == (Decimal("0.00"), Decimal("0.00"))

    def test_same_rules_as_update(self, services, plans, active_subscription):
        with pytest.raises(ValidationError):
            services.subscriptions.preview_subscription_change(active_subscription.id, "org_1")
        with pytest.raises(NotFoundError):
            services.subscriptions.preview_subscription_change(
                active_subscription.id, "org_other", plan_id=plans["pro"].id
            )
        pending = services.subscriptions.create_subscription("org_pending", plans["starter"].id)
        with pytest.raises(ConflictError):
            services.subscriptions.preview_subscription_change(pending.id, "org_pending", plan_id=plans["pro"].id)


class TestCancelAndReactivate:
    """Cancellation now or at period end, and undoing the latter."""

    def test_cancel_at_period_end_keeps_status(self, services, ledger, active_subscription):
        canceled = services.subscriptions.cancel_subscription(active_subscription.id, "org_1", reason="too pricey")

        assert canceled.status == "active"
        assert canceled.cancels_at_period_end is True
        assert ledger.calls_to("cancel_subscription")[0]["at_period_end"] is True
        entry = services.subscriptions.get_history(active_subscription.id)[-1]
        assert entry.change_type == "cancel_scheduled"
        assert entry.reason == "too pricey"

    def test_repeated_scheduled_cancel_skips_provider(self, services, ledger, active_subscription):
        services.subscriptions.cancel_subscription(active_subscription.id, "org_1")
        services.subscriptions.cancel_subscription(active_subscription.id, "org_1")
        assert len(ledger.calls_to("cancel_subscription")) == 1

    def test_immediate_cancel(self, services, active_subscription):
        canceled = services.subscriptions.cancel_subscription(active_subscription.id, "org_1", immediate=True)

        assert canceled.status == "canceled"
        assert canceled.canceled_at is not None
        assert services.subscriptions.get_current_subscription("org_1") is None
        assert services.subscriptions.get_history(active_subscription.id)[-1].change_type == "canceled"

    def test_canceled_is_terminal(self, services, active_subscription):
        services.subscriptions.cancel_subscription(active_subscription.id, "org_1", immediate=True)
        with pytest.raises(InvalidTransition):
            services.subscriptions.cancel_subscription(active_subscription.id, "org_1", immediate=True)

    def test_reactivate_clears_scheduled_cancel(self, services, ledger, active_subscription):
        services.subscriptions.cancel_subscription(active_subscription.id, "org_1")
        reactivated = services.subscriptions.reactivate_subscription(active_subscription.id, "org_1", actor_id="u")

        assert reactivated.cancels_at_period_end is False
        assert reactivated.status == "active"
        assert len(ledger.calls_to("reactivate_subscription")) == 1
        assert services.subscriptions.get_history(active_subscription.id)[-1].change_type == "reactivated"

    def test_reactivate_without_scheduled_cancel_conflicts(self, services, active_subscription):
        with pytest.raises(ConflictError):
            services.subscriptions.reactivate_subscription(active_subscription.id, "org_1")

    def test_cancel_provider_failure_leaves_row_unchanged(self, services, ledger, active_subscription):
        ledger.fail_on("cancel_subscription", ProviderError("down", operation="cancel_subscription"))
        with pytest.raises(ProviderError):
            services.subscriptions.cancel_subscription(active_subscription.id, "org_1", immediate=True)
        assert services.subscriptions.get_subscription(active_subscription.id).status == "active"


class TestOverrideStatus:
    """Administrative overrides are recorded with source=admin."""

    def test_override_is_recorded(self, services, active_subscription):
        updated = services.subscriptions.override_status(
            active_subscription.id, "past_due", actor_id="admin_1", reason="manual dunning"
        )
        assert updated.status == "past_due"

        entry = services.subscriptions.get_history(active_subscription.id)[-1]
        assert entry.source == "admin"
        assert entry.change_type == "admin_override"
        assert entry.actor_id == "admin_1"
        assert entry.previous_status == "active"

    def test_override_respects_terminal_state(self, services, active_subscription):
        services.subscriptions.override_status(active_subscription.id, "canceled", actor_id="admin_1", reason="fraud")
        with pytest.raises(InvalidTransition):
            services.subscriptions.override_status(active_subscription.id, "active", actor_id="admin_1", reason="oops")

    def test_override_requires_reason(self, services, active_subscription):
        with pytest.raises(ValidationError):
            services.subscriptions.override_status(active_subscription.id, "past_due", actor_id="admin_1", reason="")


class TestQueries:
    def test_current_subscription(self, services, active_subscription):
        current = services.subscriptions.get_current_subscription("org_1")
        assert current.id == active_subscription.id
        assert services.subscriptions.get_current_subscription("org_none") is None

    def test_get_subscription_scoped_to_organization(self, services, active_subscription):
        assert services.subscriptions.get_subscription(active_subscription.id, "org_1").id == active_subscription.id
        with pytest.raises(NotFoundError):
            services.subscriptions.get_subscription(active_subscription.id, "org_2")

    def test_history_for_unknown_subscription(self, services):
        with pytest.raises(NotFoundError):
            services.subscriptions.get_history("missing")
