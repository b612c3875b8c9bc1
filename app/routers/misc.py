from __future__ import annotations

from fastapi import APIRouter, Depends

from app.services.context import BillingContext, get_billing_context

router = APIRouter(tags=["misc"])

@router.get("/api/ping")
async def ping():
    return {"ok": True}

@router.get("/payments/config")
async def payments_config(ctx: BillingContext = Depends(get_billing_context)):
    return {
        "applicationId": ctx.application_id,
        "locationId": ctx.provider.location_id(),
        "environment": ctx.environment,
    }
