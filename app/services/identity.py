from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List, Optional

from app.core.normalize import normalize_email, split_display_name
from app.core.time import now_ts
from app.errors import ConflictError, ConflictReason, IdentityResolutionFailed, ProviderError, ValidationError
from app.models import SubscriptionRecord
from app.services.context import BillingContext

logger = logging.getLogger(__name__)

CUSTOMER_CLAIM_TTL_SECONDS = 60


def customer_ids_match(stored: Optional[str], incoming: Optional[str]) -> bool:
    """Tolerant provider-customer-id comparison.

    Equal ignoring case, equal ignoring surrounding whitespace, or either id
    containing the other. Containment can produce false positives as the
    customer base grows; it is kept only for ids mangled on data entry.
    """
    if not stored or not incoming:
        return False
    a, b = stored.strip(), incoming.strip()
    if not a or not b:
        return False
    return a.lower() == b.lower() or a in b or b in a


def _canonical(customers: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    live = [c for c in customers if c.get("id")]
    if not live:
        return None
    return sorted(live, key=lambda c: (c.get("created_at") or "", c["id"]))[0]


def _search(ctx: BillingContext, user_sub: str, email: Optional[str]) -> Optional[Dict[str, Any]]:
    """Look the customer up by the local-user cross reference first, then by email."""
    found = _canonical(ctx.provider.search_customers(reference_id=user_sub))
    if found or not email:
        return found
    return _canonical(ctx.provider.search_customers(email=email))


def _adopt(ctx: BillingContext, user_sub: str, customer_id: str) -> str:
    def mutate(rec: SubscriptionRecord) -> SubscriptionRecord:
        rec.billing_customer_id = customer_id
        rec.customer_claim_token = None
        rec.customer_claim_expires_at = 0
        return rec

    ctx.store.update(user_sub, mutate)
    return customer_id


def _claim(ctx: BillingContext, user_sub: str) -> bool:
    token = secrets.token_hex(8)

    def mutate(rec: SubscriptionRecord) -> SubscriptionRecord:
        if rec.customer_claim_token and rec.customer_claim_expires_at > now_ts():
            return rec
        rec.customer_claim_token = token
        rec.customer_claim_expires_at = now_ts() + CUSTOMER_CLAIM_TTL_SECONDS
        return rec

    return ctx.store.update(user_sub, mutate).customer_claim_token == token


def _release_claim(ctx: BillingContext, user_sub: str) -> None:
    def mutate(rec: SubscriptionRecord) -> SubscriptionRecord:
        rec.customer_claim_token = None
        rec.customer_claim_expires_at = 0
        return rec

    ctx.store.update(user_sub, mutate)


def resolve_or_create(
    ctx: BillingContext,
    user_sub: str,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> str:
    """Return the provider customer id for ``user_sub``, creating the customer at most once."""
    rec = ctx.store.require(user_sub)
    email = rec.email or email
    name = rec.name or name
    if email:
        email = normalize_email(email)

    if rec.billing_customer_id:
        try:
            if ctx.provider.get_customer(rec.billing_customer_id):
                return rec.billing_customer_id
            logger.warning("stored customer %s for %s no longer exists; re-resolving", rec.billing_customer_id, user_sub)
        except ProviderError as exc:
            logger.warning("could not verify customer %s for %s: %s", rec.billing_customer_id, user_sub, exc.message)

    search_failed = False
    try:
        found = _search(ctx, user_sub, email)
    except ProviderError as exc:
        logger.warning("customer search failed for %s: %s", user_sub, exc.message)
        found, search_failed = None, True
    if found:
        logger.info("adopting existing customer %s for %s", found["id"], user_sub)
        return _adopt(ctx, user_sub, found["id"])

    if not email:
        raise ValidationError("An account email is required to create a billing customer")

    if not _claim(ctx, user_sub):
        # Another request is creating the customer; it may already be visible.
        if not search_failed:
            found = _search(ctx, user_sub, email)
            if found:
                return _adopt(ctx, user_sub, found["id"])
        raise ConflictError(ConflictReason.CONCURRENT_UPDATE, "Billing customer creation already in progress")

    given, family = split_display_name(name, email)
    try:
        created = ctx.provider.create_customer(email=email, given_name=given, family_name=family, reference_id=user_sub)
    except ProviderError as exc:
        logger.error("customer create failed for %s: %s %s", user_sub, exc.code, exc.provider_detail)
        _release_claim(ctx, user_sub)
        raise IdentityResolutionFailed(
            "Could not resolve or create billing customer",
            code=exc.code,
            provider_detail=exc.provider_detail,
            http_status=exc.http_status,
        ) from exc
    customer_id = created.get("id")
    if not customer_id:
        _release_claim(ctx, user_sub)
        raise IdentityResolutionFailed("Billing provider returned no customer id")

    # Two creators racing past the claim (expired lease) converge on the oldest customer.
    try:
        canonical = _canonical(ctx.provider.search_customers(reference_id=user_sub))
        if canonical and canonical["id"] != customer_id:
            logger.warning("duplicate customers for %s: %s and %s; keeping %s", user_sub, customer_id, canonical["id"], canonical["id"])
            customer_id = canonical["id"]
    except ProviderError as exc:
        logger.warning("post-create search failed for %s: %s", user_sub, exc.message)

    logger.info("created customer %s for %s", customer_id, user_sub)
    return _adopt(ctx, user_sub, customer_id)
