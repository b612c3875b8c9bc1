from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from app.core.normalize import client_ip_from_request
from app.errors import SignatureError, ValidationError
from app.metrics import record_webhook_event
from app.services.context import BillingContext, get_billing_context
from app.services.webhooks import IGNORED, UNMATCHED, dedupe_key, process_event, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/billing")
async def billing_webhook(req: Request, ctx: BillingContext = Depends(get_billing_context)) -> Dict[str, Any]:
    raw_body = await req.body()

    if ctx.webhook_signature_key:
        matched = verify_signature(req, raw_body, ctx.webhook_signature_key, ctx.webhook_url)
        if not matched:
            record_webhook_event("", "rejected")
            logger.warning(
                "webhook signature rejected from %s url=%s headers=%s body=%s",
                client_ip_from_request(req),
                str(req.url),
                {k: v for k, v in req.headers.items() if k.lower() != "authorization"},
                raw_body.decode("utf-8", errors="replace"),
            )
            raise SignatureError()
        logger.debug("webhook signature matched %s", matched)
    else:
        logger.warning("SQUARE_WEBHOOK_SIGNATURE_KEY not set; accepting unsigned webhook")

    try:
        event = json.loads(raw_body or b"{}", parse_float=Decimal)
    except ValueError as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")

    key = dedupe_key(raw_body)
    if not ctx.store.mark_webhook_processed(key):
        record_webhook_event(str(event.get("type") or ""), "duplicate")
        return {"received": True, "deduped": True}

    outcome = process_event(ctx, event, key)
    resp: Dict[str, Any] = {"received": True}
    if outcome in (UNMATCHED, IGNORED):
        resp[outcome] = True
    return resp
