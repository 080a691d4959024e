"""FastAPI router for billing commands, queries and the provider webhook."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from billing.errors import AuthenticationRequired, BillingError, NotFoundError, ValidationError
from billing.services import BillingServices

router = APIRouter(prefix="/api/billing")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    organization_id: str
    actor_id: Optional[str]


def get_services(request: Request) -> BillingServices:
    services = getattr(request.app.state, "billing", None)
    if services is None:
        raise RuntimeError("Billing services are not initialized.")
    return services


def get_auth_context(
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-Id"),
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
) -> AuthContext:
    # Both headers are set by the upstream auth layer and trusted as-is.
    if not x_organization_id:
        raise AuthenticationRequired("X-Organization-Id header is required.")
    return AuthContext(organization_id=x_organization_id, actor_id=x_actor_id)


def require_actor(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.actor_id:
        raise AuthenticationRequired("X-Actor-Id header is required for this operation.")
    return auth


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"error": jsonable_encoder(exc.to_dict())})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": ValidationError.code,
                "message": "Request validation failed.",
                "details": {"errors": jsonable_encoder(exc.errors())},
            }
        },
    )


class CreateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = None
    plan_slug: Optional[str] = None
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    provider_customer_id: Optional[str] = None
    email: Optional[str] = None
    trial_days: Optional[int] = Field(default=None, ge=0)


class UpdateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = None
    plan_slug: Optional[str] = None
    billing_cycle: Optional[Literal["monthly", "yearly"]] = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False
    reason: Optional[str] = Field(default=None, max_length=500)


class UsageRequest(BaseModel):
    subscription_id: Optional[str] = None
    resource_type: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=0)
    recorded_at: Optional[datetime] = None


class BatchUsageRequest(BaseModel):
    # Items stay loosely typed so one bad item fails alone.
    items: List[Dict[str, Any]] = Field(min_length=1, max_length=1000)


class StatusOverrideRequest(BaseModel):
    status: Literal["pending", "active", "trialing", "past_due", "canceled"]
    reason: str = Field(min_length=1, max_length=500)


class UsageResetRequest(BaseModel):
    organization_id: str
    resource_type: Optional[str] = None


def _resolve_plan_id(services: BillingServices, plan_id: Optional[str], plan_slug: Optional[str]) -> Optional[str]:
    if plan_id:
        return plan_id
    if plan_slug:
        return services.catalog.get_plan_by_slug(plan_slug).id
    return None


def _current_subscription_id(services: BillingServices, organization_id: str) -> str:
    current = services.subscriptions.get_current_subscription(organization_id)
    if current is None:
        raise NotFoundError("Organization has no live subscription.", details={"organization_id": organization_id})
    return current.id


@router.get("/plans")
def list_plans(
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-Id"),
    services: BillingServices = Depends(get_services),
):
    current = services.subscriptions.get_current_subscription(x_organization_id) if x_organization_id else None
    payload = {
        "plans": [plan.to_dict() for plan in services.catalog.list_plans()],
        "currency": services.settings.currency,
        "current_subscription": current.to_dict() if current else None,
    }
    return JSONResponse(content=payload)


@router.get("/subscription")
def get_current_subscription(
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    subscription = services.subscriptions.get_current_subscription(auth.organization_id)
    return JSONResponse(content={"subscription": subscription.to_dict() if subscription else None})


@router.get("/subscriptions/{subscription_id}")
def get_subscription(
    subscription_id: str,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    subscription = services.subscriptions.get_subscription(subscription_id, auth.organization_id)
    return JSONResponse(content={"subscription": subscription.to_dict()})


@router.get("/subscriptions/{subscription_id}/history")
def get_subscription_history(
    subscription_id: str,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    history = services.subscriptions.get_history(subscription_id, auth.organization_id)
    return JSONResponse(content={"history": [entry.to_dict() for entry in history]})


@router.post("/subscriptions")
def create_subscription(
    body: CreateSubscriptionRequest,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    plan_id = _resolve_plan_id(services, body.plan_id, body.plan_slug)
    if plan_id is None:
        raise ValidationError("plan_id or plan_slug is required.")

    subscription = services.subscriptions.create_subscription(
        auth.organization_id,
        plan_id,
        body.billing_cycle,
        actor_id=auth.actor_id,
        provider_customer_id=body.provider_customer_id,
        email=body.email,
        trial_days=body.trial_days,
        operation_id=idempotency_key,
    )
    return JSONResponse(status_code=status.HTTP_201_CREATED, content={"subscription": subscription.to_dict()})


@router.put("/subscriptions/{subscription_id}")
def update_subscription(
    subscription_id: str,
    body: UpdateSubscriptionRequest,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    subscription = services.subscriptions.update_subscription(
        subscription_id,
        auth.organization_id,
        plan_id=_resolve_plan_id(services, body.plan_id, body.plan_slug),
        billing_cycle=body.billing_cycle,
        actor_id=auth.actor_id,
        operation_id=idempotency_key,
    )
    return JSONResponse(content={"subscription": subscription.to_dict()})


@router.post("/subscriptions/{subscription_id}/preview")
def preview_subscription_change(
    subscription_id: str,
    body: UpdateSubscriptionRequest,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    preview = services.subscriptions.preview_subscription_change(
        subscription_id,
        auth.organization_id,
        plan_id=_resolve_plan_id(services, body.plan_id, body.plan_slug),
        billing_cycle=body.billing_cycle,
    )
    return JSONResponse(content={"preview": preview.to_dict()})


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    body: Optional[CancelSubscriptionRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    body = body or CancelSubscriptionRequest()
    subscription = services.subscriptions.cancel_subscription(
        subscription_id,
        auth.organization_id,
        immediate=body.immediate,
        actor_id=auth.actor_id,
        reason=body.reason,
        operation_id=idempotency_key,
    )
    return JSONResponse(content={"subscription": subscription.to_dict()})


@router.post("/subscriptions/{subscription_id}/reactivate")
def reactivate_subscription(
    subscription_id: str,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    subscription = services.subscriptions.reactivate_subscription(
        subscription_id,
        auth.organization_id,
        actor_id=auth.actor_id,
        operation_id=idempotency_key,
    )
    return JSONResponse(content={"subscription": subscription.to_dict()})


@router.post("/usage")
def record_usage(
    body: UsageRequest,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    subscription_id = body.subscription_id or _current_subscription_id(services, auth.organization_id)
    record = services.usage.record_usage(
        auth.organization_id,
        subscription_id,
        body.resource_type,
        body.quantity,
        body.recorded_at,
    )
    return JSONResponse(status_code=status.HTTP_201_CREATED, content={"record": record.to_dict()})


@router.post("/usage/batch")
def record_batch_usage(
    body: BatchUsageRequest,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    default_subscription_id: Optional[str] = None
    if any(not item.get("subscription_id") for item in body.items):
        current = services.subscriptions.get_current_subscription(auth.organization_id)
        default_subscription_id = current.id if current else None

    items = [
        {**item, "subscription_id": item.get("subscription_id") or default_subscription_id}
        for item in body.items
    ]
    results = services.usage.record_batch_usage(auth.organization_id, items)
    accepted = sum(1 for result in results if result.ok)
    return JSONResponse(
        content={
            "results": [result.to_dict() for result in results],
            "accepted": accepted,
            "rejected": len(results) - accepted,
        }
    )


@router.get("/usage/summary")
def get_usage_summary(
    subscription_id: Optional[str] = None,
    period_start: Optional[datetime] = None,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    if subscription_id is None and period_start is None:
        current = services.subscriptions.get_current_subscription(auth.organization_id)
        if current is not None:
            subscription_id = current.id
            period_start = current.current_period_start
    summaries = services.usage.get_summaries(auth.organization_id, subscription_id, period_start)
    return JSONResponse(content={"summaries": [summary.to_dict() for summary in summaries]})


@router.get("/usage/quota")
def check_quota(
    resource_type: str = Query(..., min_length=1),
    quantity: int = Query(1, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    check = services.usage.check_quota(auth.organization_id, resource_type, quantity)
    return JSONResponse(content=check.to_dict())


@router.get("/usage/breakdown")
def get_usage_breakdown(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(10, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    breakdown = services.usage.get_usage_breakdown(auth.organization_id, start, end, limit=limit)
    return JSONResponse(content={"breakdown": [entry.to_dict() for entry in breakdown]})


@router.get("/usage/export")
def export_usage(
    start: datetime,
    end: datetime,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    content = services.usage.export_usage_csv(auth.organization_id, start, end)
    filename = f"usage-{auth.organization_id}-{start:%Y%m%d}-{end:%Y%m%d}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/invoices")
def list_invoices(
    invoice_status: Optional[str] = Query(None, alias="status"),
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    invoices = services.invoices.list_invoices(auth.organization_id, status=invoice_status)
    return JSONResponse(content={"invoices": [invoice.to_dict() for invoice in invoices]})


@router.get("/invoices/{invoice_id}")
def get_invoice(
    invoice_id: str,
    auth: AuthContext = Depends(get_auth_context),
    services: BillingServices = Depends(get_services),
):
    invoice = services.invoices.get_invoice(invoice_id, auth.organization_id)
    return JSONResponse(content={"invoice": invoice.to_dict()})


@router.post("/invoices/{invoice_id}/void")
def void_invoice(
    invoice_id: str,
    auth: AuthContext = Depends(require_actor),
    services: BillingServices = Depends(get_services),
):
    invoice = services.invoices.void_invoice(invoice_id, auth.organization_id, actor_id=auth.actor_id)
    return JSONResponse(content={"invoice": invoice.to_dict()})


@router.post("/invoices/{invoice_id}/mark-uncollectible")
def mark_invoice_uncollectible(
    invoice_id: str,
    auth: AuthContext = Depends(require_actor),
    services: BillingServices = Depends(get_services),
):
    invoice = services.invoices.mark_uncollectible(invoice_id, auth.organization_id, actor_id=auth.actor_id)
    return JSONResponse(content={"invoice": invoice.to_dict()})


@router.post("/admin/rollover")
def run_rollover(
    auth: AuthContext = Depends(require_actor),
    services: BillingServices = Depends(get_services),
):
    logger.info("Period rollover triggered by %s", auth.actor_id)
    report = services.reconciliation.run_period_rollover()
    return JSONResponse(content={"rollover": report.to_dict()})


@router.post("/admin/subscriptions/{subscription_id}/status")
def override_subscription_status(
    subscription_id: str,
    body: StatusOverrideRequest,
    auth: AuthContext = Depends(require_actor),
    services: BillingServices = Depends(get_services),
):
    subscription = services.subscriptions.override_status(
        subscription_id,
        body.status,
        actor_id=auth.actor_id,
        reason=body.reason,
    )
    return JSONResponse(content={"subscription": subscription.to_dict()})


@router.post("/admin/usage/reset")
def reset_usage(
    body: UsageResetRequest,
    auth: AuthContext = Depends(require_actor),
    services: BillingServices = Depends(get_services),
):
    deleted = services.usage.reset_usage(body.organization_id, body.resource_type, actor_id=auth.actor_id)
    return JSONResponse(content={"deleted_records": deleted})


@router.post("/webhooks/provider")
async def provider_webhook(request: Request, services: BillingServices = Depends(get_services)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    result = await run_in_threadpool(services.reconciliation.handle_provider_event, payload, signature)
    return JSONResponse(content={"received": True, "outcome": result.outcome, "event_id": result.event_id})
