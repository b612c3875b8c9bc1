from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.auth.deps import Caller, get_caller
from app.core.time import today
from app.models import (
    CreateSubscriptionIn,
    SubscriptionStatus,
    SwapPlanIn,
    UpdatePaymentMethodIn,
    record_projection,
)
from app.services import lifecycle
from app.services.catalog import group_plans, list_variations
from app.services.context import BillingContext, get_billing_context
from app.services.grace import is_in_grace

router = APIRouter(tags=["subscriptions"])


@router.get("/plans")
async def list_plans(ctx: BillingContext = Depends(get_billing_context)) -> Dict[str, Any]:
    return {"objects": group_plans(list_variations(ctx.provider)), "environment": ctx.environment}


@router.get("/subscriptions")
async def get_subscription(
    caller: Caller = Depends(get_caller),
    ctx: BillingContext = Depends(get_billing_context),
) -> Dict[str, Any]:
    rec, view = lifecycle.refresh_state(ctx, caller.user_sub)

    grace = is_in_grace(rec.canceled_date, today(), ctx.grace_days)
    in_grace = rec.subscription_status == SubscriptionStatus.CANCELED and grace.in_grace
    is_canceled = rec.subscription_status == SubscriptionStatus.CANCELED or bool(view and view.is_canceled)

    out = record_projection(rec)
    out.update({
        "isInGracePeriod": in_grace,
        "gracePeriodEndsAt": grace.grace_ends_at.isoformat() if in_grace and grace.grace_ends_at else None,
        "isCanceled": is_canceled,
        "subscriptionEndDate": view.charged_through_date if view and is_canceled else None,
    })
    return out


@router.post("/subscriptions", status_code=201)
async def create_subscription(
    body: CreateSubscriptionIn,
    caller: Caller = Depends(get_caller),
    ctx: BillingContext = Depends(get_billing_context),
) -> Dict[str, Any]:
    return lifecycle.create_subscription(
        ctx,
        caller.user_sub,
        body.variation_id,
        body.payment_source_token,
        email=caller.email,
        name=caller.name,
    )


@router.get("/subscriptions/invoices")
async def list_invoices(
    caller: Caller = Depends(get_caller),
    ctx: BillingContext = Depends(get_billing_context),
) -> Dict[str, Any]:
    return {"invoices": lifecycle.list_invoices(ctx, caller.user_sub), "environment": ctx.environment}


@router.get("/subscriptions/payment-method")
async def get_payment_method(
    caller: Caller = Depends(get_caller),
    ctx: BillingContext = Depends(get_billing_context),
) -> Dict[str, Any]:
    return {"card": lifecycle.latest_payment_method(ctx, caller.user_sub)}


@router.delete("/subscriptions/{subscription_id}")
async def cancel_subscription(
    subscription_id: str,
    caller: Caller = Depends(get_caller),
    ctx: BillingContext = Depends(get_billing_context),
) -> Dict[str, Any]:
    return lifecycle.cancel_subscription(ctx, caller.user_sub, subscription_id)


@router.patch("/subscriptions/{subscription_id}/plan")
async def swap_plan(
    subscription_id: str,
    body: SwapPlanIn,
    caller: Caller = Depends(get_caller),
    ctx: BillingContext = Depends(get_billing_context),
) -> Dict[str, Any]:
    return lifecycle.swap_plan(ctx, caller.user_sub, subscription_id, body.new_variation_id)


@router.patch("/subscriptions/{subscription_id}/payment-method")
async def update_payment_method(
    subscription_id: str,
    body: UpdatePaymentMethodIn,
    caller: Caller = Depends(get_caller),
    ctx: BillingContext = Depends(get_billing_context),
) -> Dict[str, Any]:
    return lifecycle.update_payment_method(ctx, caller.user_sub, subscription_id, body.source_id)
