"""Plan catalogue: static definitions, sync helpers and read access."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, selectinload, sessionmaker

from billing.errors import NotFoundError
from billing.records import PlanView, plan_view
from models import PlanLimit, Subscription, SubscriptionPlan

logger = logging.getLogger(__name__)

UNLIMITED = None


@dataclass(frozen=True)
class LimitDefinition:
    resource_type: str
    max_quantity: Optional[int]
    overage_unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class PlanDefinition:
    slug: str
    name: str
    monthly_price: Decimal
    yearly_price: Decimal
    description: str
    limits: Tuple[LimitDefinition, ...] = field(default_factory=tuple)
    currency: str = "usd"
    trial_days: int = 0
    sort_order: int = 0

    def provider_price_env(self, billing_cycle: str) -> str:
        return f"STRIPE_PRICE_{self.slug.upper()}_{billing_cycle.upper()}"


PLAN_DEFINITIONS: List[PlanDefinition] = [
    PlanDefinition(
        slug="free",
        name="Free",
        monthly_price=Decimal("0"),
        yearly_price=Decimal("0"),
        description="Single site with a hard cap on monthly notifications.",
        sort_order=1,
        limits=(
            LimitDefinition("notifications", 1000),
            LimitDefinition("sites", 1),
            LimitDefinition("teammates", 1),
        ),
    ),
    PlanDefinition(
        slug="starter",
        name="Starter",
        monthly_price=Decimal("49.00"),
        yearly_price=Decimal("490.00"),
        description="For small businesses getting started.",
        trial_days=14,
        sort_order=2,
        limits=(
            LimitDefinition("notifications", 10000, Decimal("0.01")),
            LimitDefinition("email_sends", 1000, Decimal("0.01")),
            LimitDefinition("sites", 3),
            LimitDefinition("teammates", 3),
        ),
    ),
    PlanDefinition(
        slug="business",
        name="Business",
        monthly_price=Decimal("99.00"),
        yearly_price=Decimal("990.00"),
        description="For growing businesses with increased needs.",
        trial_days=14,
        sort_order=3,
        limits=(
            LimitDefinition("notifications", 50000, Decimal("0.005")),
            LimitDefinition("email_sends", 10000, Decimal("0.01")),
            LimitDefinition("sites", 10),
            LimitDefinition("teammates", 10),
        ),
    ),
    PlanDefinition(
        slug="pro",
        name="Pro",
        monthly_price=Decimal("199.00"),
        yearly_price=Decimal("1990.00"),
        description="For businesses requiring advanced features.",
        sort_order=4,
        limits=(
            LimitDefinition("notifications", 250000, Decimal("0.004")),
            LimitDefinition("email_sends", 50000, Decimal("0.008")),
            LimitDefinition("sites", 50),
            LimitDefinition("teammates", UNLIMITED),
        ),
    ),
    PlanDefinition(
        slug="unlimited",
        name="Unlimited",
        monthly_price=Decimal("499.00"),
        yearly_price=Decimal("4990.00"),
        description="Enterprise-grade with unlimited usage.",
        sort_order=5,
        limits=(
            LimitDefinition("notifications", UNLIMITED),
            LimitDefinition("email_sends", UNLIMITED),
            LimitDefinition("sites", UNLIMITED),
            LimitDefinition("teammates", UNLIMITED),
        ),
    ),
]


def get_plan_definitions() -> Iterable[PlanDefinition]:
    """Return the immutable list of supported plan definitions."""

    return tuple(PLAN_DEFINITIONS)


def _is_referenced(session: Session, plan_id: str) -> bool:
    return (
        session.query(Subscription.id).filter(Subscription.plan_id == plan_id).first()
        is not None
    )


def _apply_limits(plan: SubscriptionPlan, definition: PlanDefinition) -> None:
    existing = {limit.resource_type: limit for limit in plan.limits}
    wanted = set()
    for position, limit_def in enumerate(definition.limits):
        wanted.add(limit_def.resource_type)
        row = existing.get(limit_def.resource_type)
        if row is None:
            row = PlanLimit(resource_type=limit_def.resource_type)
            plan.limits.append(row)
        row.max_quantity = limit_def.max_quantity
        row.overage_unit_price = limit_def.overage_unit_price
        row.position = position
    for resource_type, row in existing.items():
        if resource_type not in wanted:
            plan.limits.remove(row)


def sync_plan_catalogue(
    session: Session,
    definitions: Optional[Sequence[PlanDefinition]] = None,
    *,
    allow_updates: bool = True,
    commit: bool = True,
) -> List[SubscriptionPlan]:
    """Ensure each plan definition exists in the database.

    Parameters
    ----------
    session:
        Open SQLAlchemy session.
    definitions:
        Plans to sync; defaults to ``PLAN_DEFINITIONS``.
    allow_updates:
        When True, existing plans that no subscription references yet are
        updated to match their definitions. Referenced plans are immutable
        apart from provider price identifiers, which are only ever filled in.
    commit:
        Whether to commit the session before returning.

    Returns
    -------
    List[SubscriptionPlan]
        The persisted plan records, ordered like the definitions.
    """

    persisted: List[SubscriptionPlan] = []

    for definition in definitions if definitions is not None else PLAN_DEFINITIONS:
        monthly_price_id = os.getenv(definition.provider_price_env("monthly")) or None
        yearly_price_id = os.getenv(definition.provider_price_env("yearly")) or None

        plan = (
            session.query(SubscriptionPlan)
            .filter(SubscriptionPlan.slug == definition.slug)
            .one_or_none()
        )

        if plan is None:
            plan = SubscriptionPlan(
                slug=definition.slug,
                name=definition.name,
                description=definition.description,
                monthly_price=definition.monthly_price,
                yearly_price=definition.yearly_price,
                currency=definition.currency,
                trial_days=definition.trial_days,
                sort_order=definition.sort_order,
                provider_monthly_price_id=monthly_price_id,
                provider_yearly_price_id=yearly_price_id,
                is_public=True,
            )
            session.add(plan)
            _apply_limits(plan, definition)
        else:
            if monthly_price_id and not plan.provider_monthly_price_id:
                plan.provider_monthly_price_id = monthly_price_id
            if yearly_price_id and not plan.provider_yearly_price_id:
                plan.provider_yearly_price_id = yearly_price_id

            if allow_updates:
                if plan.id and _is_referenced(session, plan.id):
                    logger.info(
                        "Plan %s is referenced by subscriptions; leaving prices and limits untouched",
                        plan.slug,
                    )
                else:
                    plan.name = definition.name
                    plan.description = definition.description
                    plan.monthly_price = definition.monthly_price
                    plan.yearly_price = definition.yearly_price
                    plan.currency = definition.currency
                    plan.trial_days = definition.trial_days
                    plan.sort_order = definition.sort_order
                    _apply_limits(plan, definition)

        persisted.append(plan)

    if commit:
        session.commit()
    else:
        session.flush()

    return persisted


def load_plan(session: Session, plan_id: str) -> SubscriptionPlan:
    plan = (
        session.query(SubscriptionPlan)
        .options(selectinload(SubscriptionPlan.limits))
        .filter(SubscriptionPlan.id == plan_id)
        .one_or_none()
    )
    if plan is None:
        raise NotFoundError(f"Plan {plan_id} does not exist.", details={"plan_id": plan_id})
    return plan


def find_plan_by_provider_price(session: Session, provider_price_id: str) -> Optional[SubscriptionPlan]:
    return (
        session.query(SubscriptionPlan)
        .filter(
            (SubscriptionPlan.provider_monthly_price_id == provider_price_id)
            | (SubscriptionPlan.provider_yearly_price_id == provider_price_id)
        )
        .one_or_none()
    )


class PlanCatalog:
    """Read-mostly access to plans; writes are administrative only."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def get_plan(self, plan_id: str) -> PlanView:
        with self._session_factory() as session:
            return plan_view(load_plan(session, plan_id))

    def get_plan_by_slug(self, slug: str) -> PlanView:
        with self._session_factory() as session:
            plan = (
                session.query(SubscriptionPlan)
                .options(selectinload(SubscriptionPlan.limits))
                .filter(SubscriptionPlan.slug == slug)
                .one_or_none()
            )
            if plan is None:
                raise NotFoundError(f"Plan {slug!r} does not exist.", details={"slug": slug})
            return plan_view(plan)

    def list_plans(self, *, include_archived: bool = False) -> List[PlanView]:
        with self._session_factory() as session:
            query = session.query(SubscriptionPlan).options(selectinload(SubscriptionPlan.limits))
            if not include_archived:
                query = query.filter(SubscriptionPlan.is_public.is_(True))
            plans = query.order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.slug.asc()).all()
            return [plan_view(plan) for plan in plans]

    def archive_plan(self, plan_id: str) -> PlanView:
        """Hide a plan from new sign-ups. Existing subscriptions keep referencing it."""

        with self._session_factory() as session, session.begin():
            plan = load_plan(session, plan_id)
            if plan.is_public:
                plan.is_public = False
                logger.info("Archived plan %s", plan.slug)
            return plan_view(plan)

    def sync(self, definitions: Optional[Sequence[PlanDefinition]] = None) -> List[PlanView]:
        with self._session_factory() as session:
            plans = sync_plan_catalogue(session, definitions)
            return [plan_view(load_plan(session, plan.id)) for plan in plans]
