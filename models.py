import uuid

from sqlalchemy import (
	BigInteger,
	Boolean,
	Column,
	DateTime,
	ForeignKey,
	Index,
	Integer,
	Numeric,
	String,
	Text,
	UniqueConstraint,
	text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

LIVE_SUBSCRIPTION_STATUSES = ("pending", "active", "trialing", "past_due")

_LIVE_STATUS_CLAUSE = text(
	"status IN ({})".format(", ".join(f"'{status}'" for status in LIVE_SUBSCRIPTION_STATUSES))
)

# Money columns keep four decimals; rounding to the currency minor unit happens in Python.
Money = Numeric(14, 4)


def _uuid() -> str:
	return str(uuid.uuid4())


class TimestampMixin:
	"""Reusable timestamp columns for created/updated tracking."""

	created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
	updated_at = Column(
		DateTime(timezone=True),
		nullable=False,
		server_default=func.now(),
		onupdate=func.now(),
	)


class SubscriptionPlan(TimestampMixin, Base):
	"""Catalogue of plans. Rows are archived (is_public=False), never deleted."""

	__tablename__ = "subscription_plans"

	id = Column(String(36), primary_key=True, default=_uuid)
	slug = Column(String(50), unique=True, nullable=False)
	name = Column(String(100), nullable=False)
	description = Column(Text, nullable=True)
	monthly_price = Column(Money, nullable=False)
	yearly_price = Column(Money, nullable=False)
	currency = Column(String(3), nullable=False, default="usd")
	is_public = Column(Boolean, nullable=False, default=True)
	sort_order = Column(Integer, nullable=False, default=0)
	trial_days = Column(Integer, nullable=False, default=0)
	provider_monthly_price_id = Column(String(128), nullable=True, unique=True)
	provider_yearly_price_id = Column(String(128), nullable=True, unique=True)

	limits = relationship(
		"PlanLimit",
		back_populates="plan",
		order_by="PlanLimit.position",
		cascade="all, delete-orphan",
	)

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return (
			f"<SubscriptionPlan slug={self.slug!r} monthly={self.monthly_price} "
			f"yearly={self.yearly_price} public={self.is_public}>"
		)


class PlanLimit(TimestampMixin, Base):
	"""Per-resource quota. NULL max_quantity is unlimited; NULL overage price is a hard cap."""

	__tablename__ = "plan_limits"
	__table_args__ = (UniqueConstraint("plan_id", "resource_type", name="uq_plan_resource"),)

	id = Column(Integer, primary_key=True, autoincrement=True)
	plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False, index=True)
	resource_type = Column(String(64), nullable=False)
	max_quantity = Column(BigInteger, nullable=True)
	overage_unit_price = Column(Money, nullable=True)
	position = Column(Integer, nullable=False, default=0)

	plan = relationship("SubscriptionPlan", back_populates="limits")

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return (
			f"<PlanLimit plan={self.plan_id} resource={self.resource_type!r} "
			f"max={self.max_quantity} overage={self.overage_unit_price}>"
		)


class Subscription(TimestampMixin, Base):
	"""Organization subscription. Written only by the reconciliation engine."""

	__tablename__ = "subscriptions"
	__table_args__ = (
		Index(
			"uq_subscriptions_live_organization",
			"organization_id",
			unique=True,
			postgresql_where=_LIVE_STATUS_CLAUSE,
			sqlite_where=_LIVE_STATUS_CLAUSE,
		),
	)

	id = Column(String(36), primary_key=True, default=_uuid)
	organization_id = Column(String(64), nullable=False, index=True)
	plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False)
	billing_cycle = Column(String(16), nullable=False, default="monthly")
	status = Column(String(32), nullable=False, default="pending", index=True)
	current_period_start = Column(DateTime(timezone=True), nullable=False)
	current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
	trial_ends_at = Column(DateTime(timezone=True), nullable=True)
	cancels_at_period_end = Column(Boolean, nullable=False, default=False)
	canceled_at = Column(DateTime(timezone=True), nullable=True)
	external_ref = Column(String(255), nullable=True, unique=True)
	provider_customer_id = Column(String(255), nullable=True, index=True)
	last_event_at = Column(DateTime(timezone=True), nullable=True)

	plan = relationship("SubscriptionPlan")
	history = relationship(
		"SubscriptionHistory",
		back_populates="subscription",
		order_by="SubscriptionHistory.id",
	)

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return (
			f"<Subscription org={self.organization_id} plan={self.plan_id} "
			f"status={self.status!r} ref={self.external_ref!r}>"
		)


class SubscriptionHistory(Base):
	"""Audit trail of subscription changes, written in the changing transaction."""

	__tablename__ = "subscription_history"

	id = Column(Integer, primary_key=True, autoincrement=True)
	organization_id = Column(String(64), nullable=False, index=True)
	subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
	previous_plan_id = Column(String(36), nullable=True)
	new_plan_id = Column(String(36), nullable=True)
	previous_status = Column(String(32), nullable=True)
	new_status = Column(String(32), nullable=True)
	change_type = Column(String(32), nullable=False)
	source = Column(String(16), nullable=False)
	provider_event_id = Column(String(255), nullable=True)
	actor_id = Column(String(64), nullable=True)
	reason = Column(Text, nullable=True)
	created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

	subscription = relationship("Subscription", back_populates="history")


class UsageRecord(Base):
	"""Append-only usage fact. Summaries can always be rebuilt from these rows."""

	__tablename__ = "usage_records"
	__table_args__ = (
		Index("ix_usage_records_rollup", "subscription_id", "resource_type", "recorded_at"),
	)

	id = Column(String(36), primary_key=True, default=_uuid)
	organization_id = Column(String(64), nullable=False, index=True)
	subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
	resource_type = Column(String(64), nullable=False)
	quantity = Column(BigInteger, nullable=False)
	recorded_at = Column(DateTime(timezone=True), nullable=False)
	created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class UsageSummary(TimestampMixin, Base):
	"""Per-period rollup guarded by the natural-key upsert."""

	__tablename__ = "usage_summaries"
	__table_args__ = (
		UniqueConstraint(
			"organization_id",
			"subscription_id",
			"resource_type",
			"period_start",
			"period_end",
			name="uq_usage_summary_period",
		),
	)

	id = Column(String(36), primary_key=True, default=_uuid)
	organization_id = Column(String(64), nullable=False, index=True)
	subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
	resource_type = Column(String(64), nullable=False)
	period_start = Column(DateTime(timezone=True), nullable=False)
	period_end = Column(DateTime(timezone=True), nullable=False)
	included_quantity = Column(BigInteger, nullable=True)
	used_quantity = Column(BigInteger, nullable=False, default=0)
	overage_quantity = Column(BigInteger, nullable=False, default=0)
	overage_unit_price = Column(Money, nullable=True)
	overage_amount = Column(Money, nullable=False, default=0)
	currency = Column(String(3), nullable=False, default="usd")
	status = Column(String(16), nullable=False, default="pending")


class Invoice(TimestampMixin, Base):
	"""Invoice derived from a closed subscription period."""

	__tablename__ = "invoices"
	__table_args__ = (
		UniqueConstraint("subscription_id", "period_start", name="uq_invoice_subscription_period"),
	)

	id = Column(String(36), primary_key=True, default=_uuid)
	organization_id = Column(String(64), nullable=False, index=True)
	subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
	external_ref = Column(String(255), nullable=True, unique=True)
	number = Column(String(64), nullable=True)
	currency = Column(String(3), nullable=False, default="usd")
	subtotal = Column(Money, nullable=False)
	tax = Column(Money, nullable=False, default=0)
	total = Column(Money, nullable=False)
	status = Column(String(16), nullable=False, default="draft", index=True)
	period_start = Column(DateTime(timezone=True), nullable=False)
	period_end = Column(DateTime(timezone=True), nullable=False)
	due_date = Column(DateTime(timezone=True), nullable=True)
	paid_at = Column(DateTime(timezone=True), nullable=True)
	payment_ref = Column(String(255), nullable=True)
	last_payment_error = Column(Text, nullable=True)

	items = relationship(
		"InvoiceItem",
		back_populates="invoice",
		order_by="InvoiceItem.position",
		cascade="all, delete-orphan",
	)


class InvoiceItem(Base):
	__tablename__ = "invoice_items"

	id = Column(Integer, primary_key=True, autoincrement=True)
	invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
	position = Column(Integer, nullable=False, default=0)
	description = Column(Text, nullable=False)
	item_type = Column(String(16), nullable=False)
	resource_type = Column(String(64), nullable=True)
	quantity = Column(BigInteger, nullable=False, default=1)
	unit_price = Column(Money, nullable=False)
	amount = Column(Money, nullable=False)

	invoice = relationship("Invoice", back_populates="items")


class ProcessedEvent(Base):
	"""Idempotency marker: one row per provider event id ever applied."""

	__tablename__ = "processed_events"

	provider_event_id = Column(String(255), primary_key=True)
	event_type = Column(String(128), nullable=False)
	outcome = Column(String(16), nullable=False)
	provider_created_at = Column(DateTime(timezone=True), nullable=True)
	processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
