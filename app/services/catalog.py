from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from app.errors import CatalogUnavailable, ProviderError
from app.models import PlanVariation, PricingMode

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# interval -> (label, per-month multiplier, per-month divisor)
INTERVALS: Dict[str, Tuple[str, int, int]] = {
    "daily": ("Daily", 30, 1),
    "monthly": ("Monthly", 1, 1),
    "semester": ("Semester", 1, 6),
    "yearly": ("Yearly", 1, 12),
}


def _money(m: Optional[Dict[str, Any]]) -> Tuple[Decimal, Optional[str]]:
    if not m or m.get("amount") is None:
        return Decimal(0), None
    return Decimal(int(m["amount"])) / Decimal(100), m.get("currency")


def interval_for(cadence: str, plan_name: str) -> str:
    name = (plan_name or "").lower()
    if cadence == "DAILY" or "daily" in name:
        return "daily"
    if cadence == "EVERY_SIX_MONTHS" or any(h in name for h in ("bi-annual", "biannual", "semester")):
        return "semester"
    if cadence == "ANNUAL" or "annual" in name or "yearly" in name:
        return "yearly"
    return "monthly"


def round_down_price(price: Decimal) -> Decimal:
    """Whole-unit prices are shown one cent lower (30.00 -> 29.99)."""
    q = price.quantize(CENT, rounding=ROUND_HALF_UP)
    if q > 0 and q == q.to_integral_value():
        return q - CENT
    return q


def _variations_of(plan: Dict[str, Any], by_type: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    nested = (plan.get("subscription_plan_data") or {}).get("subscription_plan_variations") or []
    if nested:
        return nested
    # Newer catalog versions return variations as top-level objects.
    return [
        v for v in by_type.get("SUBSCRIPTION_PLAN_VARIATION", [])
        if (v.get("subscription_plan_variation_data") or {}).get("subscription_plan_id") == plan.get("id")
    ]


def _discount_percent(pricing: Dict[str, Any], by_id: Dict[str, Dict[str, Any]]) -> Decimal:
    for discount_id in pricing.get("discount_ids") or []:
        obj = by_id.get(discount_id)
        if not obj or obj.get("type") != "DISCOUNT":
            continue
        pct = (obj.get("discount_data") or {}).get("percentage")
        if pct:
            return Decimal(str(pct))
    return Decimal(0)


def normalize_catalog(objects: List[Dict[str, Any]]) -> List[PlanVariation]:
    by_id = {o.get("id"): o for o in objects if o.get("id")}
    by_type: Dict[str, List[Dict[str, Any]]] = {}
    for o in objects:
        by_type.setdefault(o.get("type", ""), []).append(o)

    out: List[PlanVariation] = []
    for plan in by_type.get("SUBSCRIPTION_PLAN", []):
        plan_data = plan.get("subscription_plan_data") or {}
        plan_name = plan_data.get("name") or "Unnamed Plan"
        eligible = [by_id[i] for i in plan_data.get("eligible_item_ids") or [] if i in by_id]
        item_data = (eligible[0].get("item_data") or {}) if eligible else {}
        description = item_data.get("description") or ""
        active = not plan.get("is_deleted") and plan.get("present_at_all_locations") is not False

        for variation in _variations_of(plan, by_type):
            vdata = variation.get("subscription_plan_variation_data") or {}
            phases = vdata.get("phases") or []
            if not phases:
                continue
            phase = phases[0]
            pricing = phase.get("pricing") or {}

            currency = "USD"
            if pricing.get("type") == "STATIC" and pricing.get("price_money"):
                mode = PricingMode.FIXED
                base, cur = _money(pricing.get("price_money"))
            else:
                mode = PricingMode.RELATIVE
                base, cur = Decimal(0), None
                item_variations = item_data.get("variations") or []
                if item_variations:
                    base, cur = _money((item_variations[0].get("item_variation_data") or {}).get("price_money"))
            currency = cur or currency

            price = base
            discount = _discount_percent(pricing, by_id)
            if discount:
                price = base * (Decimal(1) - discount / Decimal(100))

            cadence = phase.get("cadence") or "MONTHLY"
            interval = interval_for(cadence, plan_name)
            label, mul, div = INTERVALS[interval]
            monthly = price * mul / div

            out.append(PlanVariation(
                plan_id=str(plan.get("id")),
                variation_id=str(variation.get("id")),
                name=plan_name,
                description=description,
                cadence=cadence,
                interval=interval,
                formatted_interval=label,
                pricing_mode=mode,
                base_price=float(base.quantize(CENT, rounding=ROUND_HALF_UP)),
                unit_price=float(round_down_price(price)),
                monthly_price=float(round_down_price(monthly)),
                total_price=float(round_down_price(price)),
                discount_percent=float(discount),
                currency=currency,
                active=active,
                phases=phases,
            ))
    return out


def list_variations(provider: Any) -> List[PlanVariation]:
    try:
        objects = provider.list_catalog()
    except ProviderError as exc:
        logger.error("catalog fetch failed: %s (%s)", exc.message, exc.provider_detail)
        raise CatalogUnavailable(
            "Billing catalog unavailable",
            code=exc.code,
            provider_detail=exc.provider_detail,
            http_status=exc.http_status,
        ) from exc
    variations = normalize_catalog(objects)
    logger.info("catalog: %d plan variations (%d active)", len(variations), sum(1 for v in variations if v.active))
    return variations


def find_variation(variations: List[PlanVariation], variation_id: str) -> Optional[PlanVariation]:
    for v in variations:
        if v.variation_id == variation_id:
            return v
    return None


def group_plans(variations: List[PlanVariation]) -> List[Dict[str, Any]]:
    plans: Dict[str, Dict[str, Any]] = {}
    for v in variations:
        if not v.active:
            continue
        plan = plans.setdefault(v.name, {"id": v.plan_id, "name": v.name, "description": v.description, "variations": []})
        plan["variations"].append(v.to_public())
    return list(plans.values())
