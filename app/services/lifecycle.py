from __future__ import annotations

import logging
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from app.core.time import parse_date, today
from app.errors import (
    AuthzError,
    ConflictError,
    ConflictReason,
    DuplicateActiveSubscription,
    PaymentMethodRejected,
    ProviderError,
    UnknownOutcomeError,
    ValidationError,
)
from app.metrics import record_operation
from app.models import (
    PricingMode,
    ProviderSubscriptionView,
    SubscriptionRecord,
    SubscriptionStatus,
)
from app.services.catalog import find_variation, list_variations
from app.services.context import BillingContext
from app.services.identity import resolve_or_create
from app.services.pending import apply_outcome, detect
from app.services.reconcile import merge_snapshot

logger = logging.getLogger(__name__)

LIVE_STATUSES = ("ACTIVE", "PENDING")

PENDING_CANCEL_RE = re.compile(r"pending cancel date of `([^`]+)`")


# ---- provider quirks ----

def swap_conflict_reason(exc: ProviderError) -> Optional[ConflictReason]:
    """Classify a rejected swap. Structured codes first, message text as a fallback."""
    code = (exc.code or "").upper()
    detail = (exc.provider_detail or exc.message or "").lower()
    if code in ("SUBSCRIPTION_PENDING_PLAN_CHANGE", "PLAN_CHANGE_ALREADY_PENDING"):
        return ConflictReason.SWAP_ALREADY_PENDING
    if code in ("SAME_PLAN_VARIATION",):
        return ConflictReason.SAME_PLAN
    if "already pending a plan change" in detail or "pending plan change" in detail:
        return ConflictReason.SWAP_ALREADY_PENDING
    if "same as current plan" in detail or "new plan is the same" in detail:
        return ConflictReason.SAME_PLAN
    return None


def pending_cancel_date(exc: ProviderError) -> Tuple[bool, Optional[str]]:
    """(is_already_scheduled, date) for a rejected cancel."""
    detail = exc.provider_detail or exc.message or ""
    m = PENDING_CANCEL_RE.search(detail)
    if m:
        return True, m.group(1)
    lowered = detail.lower()
    if "already has a pending cancel" in lowered or "already pending cancellation" in lowered:
        return True, None
    return False, None


# ---- helpers ----

def _require_owned(ctx: BillingContext, user_sub: str, subscription_id: str) -> SubscriptionRecord:
    rec = ctx.store.require(user_sub)
    if not subscription_id or rec.subscription_id != subscription_id:
        raise AuthzError("You do not have permission to modify this subscription")
    return rec


def _cents(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _iso(value: Any) -> Optional[str]:
    d = parse_date(value)
    return d.isoformat() if d else None


def get_current_state(ctx: BillingContext, subscription_id: str) -> ProviderSubscriptionView:
    return ProviderSubscriptionView.from_square(ctx.provider.get_subscription(subscription_id))


# ---- create ----

def create_subscription(
    ctx: BillingContext,
    user_sub: str,
    variation_id: Optional[str],
    payment_source_token: Optional[str],
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    if not variation_id or not payment_source_token:
        raise ValidationError("variationId and paymentSourceToken are required")

    ctx.store.require(user_sub)

    variation = find_variation(list_variations(ctx.provider), variation_id)
    if variation is None or not variation.active:
        raise ValidationError("Unknown or inactive plan variation")

    customer_id = resolve_or_create(ctx, user_sub, email=email, name=name)

    live = [s for s in ctx.provider.list_customer_subscriptions(customer_id) if s.get("status") in LIVE_STATUSES]
    if live:
        record_operation("create", "duplicate")
        raise DuplicateActiveSubscription()

    try:
        card = ctx.provider.create_card(customer_id, payment_source_token)
    except ProviderError as exc:
        record_operation("create", "card_rejected")
        raise PaymentMethodRejected(
            "Payment method was rejected",
            code=exc.code,
            provider_detail=exc.provider_detail,
            http_status=exc.http_status,
        ) from exc
    if not card.get("id"):
        raise PaymentMethodRejected("Payment method could not be stored")

    location_id = ctx.provider.location_id()
    order_template_id = None
    if variation.pricing_mode == PricingMode.RELATIVE:
        order_template_id = ctx.provider.create_order_template(
            location_id=location_id,
            name=variation.name,
            amount_cents=_cents(variation.unit_price),
            currency=variation.currency,
        )

    try:
        sub = ctx.provider.create_subscription(
            customer_id=customer_id,
            variation_id=variation.variation_id,
            card_id=card["id"],
            location_id=location_id,
            start_date=today().isoformat(),
            order_template_id=order_template_id,
        )
    except ProviderError as exc:
        record_operation("create", "provider_error")
        logger.error("subscription create failed for %s: %s %s", user_sub, exc.code, exc.provider_detail)
        raise
    view = ProviderSubscriptionView.from_square(sub)

    def mutate(rec: SubscriptionRecord) -> SubscriptionRecord:
        if rec.subscription_id != view.id:
            rec.remote_version = 0
        rec.billing_customer_id = customer_id
        rec.subscription_id = view.id
        rec.variation_id = view.current_variation_id or variation.variation_id
        rec.subscription_status = SubscriptionStatus.ACTIVE
        rec.pending_plan_change = None
        if view.version is not None:
            rec.remote_version = max(rec.remote_version, view.version)
        return rec

    ctx.store.update(user_sub, mutate)
    record_operation("create", "ok")
    logger.info("created subscription %s (%s) for %s", view.id, variation.variation_id, user_sub)
    return {
        "id": view.id,
        "status": view.status or SubscriptionStatus.ACTIVE.value,
        "startDate": view.start_date,
        "chargedThroughDate": view.charged_through_date,
    }


# ---- cancel ----

def cancel_subscription(ctx: BillingContext, user_sub: str, subscription_id: str) -> Dict[str, Any]:
    rec = _require_owned(ctx, user_sub, subscription_id)
    view = get_current_state(ctx, subscription_id)

    if view.is_canceled:
        canceled = _iso(view.canceled_date) or rec.canceled_date or today().isoformat()
        logger.info("subscription %s already canceled (%s); not calling cancel", subscription_id, canceled)
        record_operation("cancel", "already_canceled")
    else:
        try:
            resp = ctx.provider.cancel_subscription(subscription_id)
            sub = resp.get("subscription") or {}
            canceled = _iso(sub.get("canceled_date")) or _iso(view.charged_through_date) or today().isoformat()
            record_operation("cancel", "ok")
        except ProviderError as exc:
            scheduled, date = pending_cancel_date(exc)
            if not scheduled:
                record_operation("cancel", "provider_error")
                raise
            canceled = _iso(date) or _iso(view.charged_through_date) or today().isoformat()
            logger.info("subscription %s already scheduled for cancellation on %s", subscription_id, canceled)
            record_operation("cancel", "already_scheduled")

    def mutate(r: SubscriptionRecord) -> SubscriptionRecord:
        r.subscription_status = SubscriptionStatus.CANCELED
        r.canceled_date = canceled
        return r

    ctx.store.update(user_sub, mutate)
    return {"canceledDate": canceled}


# ---- swap ----

def swap_plan(ctx: BillingContext, user_sub: str, subscription_id: str, new_variation_id: Optional[str]) -> Dict[str, Any]:
    if not new_variation_id:
        raise ValidationError("newVariationId is required")
    rec = _require_owned(ctx, user_sub, subscription_id)

    if new_variation_id == rec.variation_id:
        record_operation("swap", "same_plan")
        raise ConflictError(ConflictReason.SAME_PLAN, "Subscription is already on this plan")
    if rec.pending_plan_change:
        record_operation("swap", "already_pending")
        raise ConflictError(
            ConflictReason.SWAP_ALREADY_PENDING,
            f"A plan change is already pending for {rec.pending_plan_change.effective_date}",
        )

    try:
        resp = ctx.provider.swap_plan(subscription_id, new_variation_id)
    except ProviderError as exc:
        reason = swap_conflict_reason(exc)
        if reason is None:
            record_operation("swap", "provider_error")
            raise
        record_operation("swap", reason.value.lower())
        raise ConflictError(reason, exc.provider_detail or exc.message) from exc

    sub = dict(resp.get("subscription") or {})
    actions: List[Dict[str, Any]] = list(sub.get("actions") or []) + list(resp.get("actions") or [])
    sub["actions"] = actions
    sub.setdefault("id", subscription_id)
    view = ProviderSubscriptionView.from_square(sub)

    outcome = detect(rec, view)
    if outcome.kind == "no_change":
        # Response carried neither the new variation nor a dated action; ask again.
        view = get_current_state(ctx, subscription_id)
        outcome = detect(rec, view)
    if outcome.kind == "no_change" or outcome.variation_id != new_variation_id:
        record_operation("swap", "unknown")
        raise UnknownOutcomeError("swap_plan")

    def mutate(r: SubscriptionRecord) -> SubscriptionRecord:
        return apply_outcome(r, outcome)

    ctx.store.update(user_sub, mutate)
    if outcome.is_pending:
        record_operation("swap", "pending")
        logger.info("swap %s -> %s pending until %s", subscription_id, new_variation_id, outcome.effective_date)
        return {"pending": True, "effectiveDate": outcome.effective_date, "newVariationId": new_variation_id}
    record_operation("swap", "applied")
    return {"applied": True, "variationId": new_variation_id}


# ---- status refresh ----

def refresh_state(ctx: BillingContext, user_sub: str) -> Tuple[SubscriptionRecord, Optional[ProviderSubscriptionView]]:
    """Reconcile the stored record against the provider; provider failures fall back to the stored record."""
    rec = ctx.store.require(user_sub)
    if not rec.subscription_id:
        return rec, None
    try:
        view = get_current_state(ctx, rec.subscription_id)
    except ProviderError as exc:
        logger.warning("could not refresh subscription %s: %s", rec.subscription_id, exc.message)
        return rec, None
    if not view.id:
        return rec, None
    rec = ctx.store.update(user_sub, lambda r: merge_snapshot(r, view))
    return rec, view


# ---- payment methods / invoices ----

def update_payment_method(ctx: BillingContext, user_sub: str, subscription_id: str, source_id: Optional[str]) -> Dict[str, Any]:
    if not source_id:
        raise ValidationError("sourceId is required")
    rec = _require_owned(ctx, user_sub, subscription_id)
    if not rec.billing_customer_id:
        raise ValidationError("No billing customer on file")

    try:
        card = ctx.provider.create_card(rec.billing_customer_id, source_id)
    except ProviderError as exc:
        raise PaymentMethodRejected(
            "Payment method was rejected",
            code=exc.code,
            provider_detail=exc.provider_detail,
            http_status=exc.http_status,
        ) from exc
    if not card.get("id"):
        raise PaymentMethodRejected("Payment method could not be stored")

    ctx.provider.update_subscription_card(subscription_id, card["id"])

    for old in ctx.provider.list_cards(rec.billing_customer_id):
        if old.get("id") == card["id"] or old.get("enabled") is False:
            continue
        try:
            ctx.provider.disable_card(old["id"])
        except ProviderError as exc:
            logger.warning("could not disable old card %s: %s", old.get("id"), exc.message)

    record_operation("update_payment_method", "ok")
    return {"card": _card_summary(card)}


def _card_summary(card: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": card.get("id"),
        "brand": card.get("card_brand"),
        "last4": card.get("last_4"),
        "expMonth": card.get("exp_month"),
        "expYear": card.get("exp_year"),
    }


def latest_payment_method(ctx: BillingContext, user_sub: str) -> Optional[Dict[str, Any]]:
    rec = ctx.store.require(user_sub)
    if not rec.billing_customer_id:
        return None
    cards = [c for c in ctx.provider.list_cards(rec.billing_customer_id) if c.get("enabled", True)]
    if not cards:
        return None
    latest = sorted(cards, key=lambda c: c.get("created_at") or "")[-1]
    return _card_summary(latest)


def list_invoices(ctx: BillingContext, user_sub: str) -> List[Dict[str, Any]]:
    rec = ctx.store.require(user_sub)
    if not rec.billing_customer_id:
        return []
    return ctx.provider.search_invoices(rec.billing_customer_id)
