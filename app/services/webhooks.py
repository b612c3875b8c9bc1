from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

from app.metrics import record_webhook_event, record_webhook_failure
from app.models import ProviderSubscriptionView, SubscriptionRecord
from app.services.context import BillingContext
from app.services.identity import customer_ids_match
from app.services.reconcile import merge_snapshot
from app.services.records import WEBHOOK_OTHER_PK, WEBHOOK_UNMATCHED_PK

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-hmacsha256-signature"

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"

# outcomes
APPLIED = "applied"
NOOP = "noop"
UNMATCHED = "unmatched"
IGNORED = "ignored"
FAILED = "failed"


def compute_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    digest = hmac.new(signature_key.encode("utf-8"), notification_url.encode("utf-8") + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def candidate_urls(req: Any, configured_url: str = "") -> List[str]:
    """Notification URLs the provider may have signed, canonical reconstruction first."""
    headers = req.headers
    url = req.url
    proto = (headers.get("x-forwarded-proto") or url.scheme or "https").split(",")[0].strip()
    host = (headers.get("x-forwarded-host") or headers.get("host") or url.netloc).split(",")[0].strip()
    direct_host = headers.get("host") or url.netloc
    path = url.path
    full = f"{path}?{url.query}" if url.query else path

    urls = [
        f"{proto}://{host}{path}",
        f"https://{host}{path}",
        configured_url,
        f"{url.scheme}://{direct_host}{full}",
    ]
    out: List[str] = []
    for u in urls:
        if u and u not in out:
            out.append(u)
    return out


def verify_signature(req: Any, body: bytes, signature_key: str, configured_url: str = "") -> Optional[str]:
    """Return the URL the signature matched, or ``None``."""
    signature = req.headers.get(SIGNATURE_HEADER) or ""
    if not signature:
        return None
    for url in candidate_urls(req, configured_url):
        if hmac.compare_digest(compute_signature(signature_key, url, body), signature):
            return url
    return None


def dedupe_key(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _subscription_from(event: Dict[str, Any]) -> Dict[str, Any]:
    obj = ((event.get("data") or {}).get("object")) or {}
    sub = obj.get("subscription")
    return sub if isinstance(sub, dict) else {}


def locate_record(ctx: BillingContext, customer_id: str) -> Optional[SubscriptionRecord]:
    """Exact lookup on the customer index, then a tolerant scan; a tolerant hit repairs the stored id."""
    rec = ctx.store.find_by_customer_id(customer_id)
    if rec:
        return rec

    for candidate in ctx.store.iter_with_customer_ids():
        if customer_ids_match(candidate.billing_customer_id, customer_id):
            logger.warning(
                "fuzzy customer match: record %s stored %r, event has %r; repairing",
                candidate.user_sub,
                candidate.billing_customer_id,
                customer_id,
            )

            def repair(r: SubscriptionRecord) -> SubscriptionRecord:
                r.billing_customer_id = customer_id
                return r

            return ctx.store.update(candidate.user_sub, repair)
    return None


def reconcile_event(ctx: BillingContext, event: Dict[str, Any], key: str) -> str:
    """Apply one verified provider event to the local record and return its outcome."""
    event_type = str(event.get("type") or "")
    if event_type not in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        ctx.store.store_webhook_copy(WEBHOOK_OTHER_PK, key, event)
        logger.info("ignoring webhook event type %s", event_type or "<missing>")
        return IGNORED

    sub = _subscription_from(event)
    view = ProviderSubscriptionView.from_square(sub)
    if not view.customer_id:
        ctx.store.store_webhook_copy(WEBHOOK_UNMATCHED_PK, key, event)
        logger.warning("%s event %s has no customer id", event_type, event.get("event_id"))
        return UNMATCHED

    rec = locate_record(ctx, view.customer_id)
    if rec is None:
        ctx.store.store_webhook_copy(WEBHOOK_UNMATCHED_PK, key, event)
        logger.warning("%s for unknown customer %s (subscription %s)", event_type, view.customer_id, view.id)
        return UNMATCHED

    created = event_type == SUBSCRIPTION_CREATED
    updated = ctx.store.update(rec.user_sub, lambda r: merge_snapshot(r, view, created=created))
    if updated.version == rec.version:
        logger.info("%s for %s matched local state; nothing to do", event_type, rec.user_sub)
        return NOOP
    logger.info(
        "%s applied to %s: status=%s variation=%s pending=%s",
        event_type,
        rec.user_sub,
        updated.subscription_status.value,
        updated.variation_id,
        updated.pending_plan_change.new_variation_id if updated.pending_plan_change else None,
    )
    return APPLIED


def process_event(ctx: BillingContext, event: Dict[str, Any], key: str) -> str:
    """Reconcile an accepted event. Failures are logged and counted, never raised to the provider."""
    event_type = str(event.get("type") or "")
    try:
        outcome = reconcile_event(ctx, event, key)
    except Exception:
        logger.exception("webhook %s (%s) not applied", event.get("event_id"), event_type)
        outcome = FAILED
    if outcome == FAILED:
        record_webhook_failure(event_type)
    record_webhook_event(event_type, outcome)
    return outcome
