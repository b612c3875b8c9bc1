from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.core.normalize import format_money


class SubscriptionStatus(str, Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_provider(cls, value: Optional[str]) -> "SubscriptionStatus":
        if not value:
            return cls.UNKNOWN
        value = str(value).upper()
        if value in ("ACTIVE", "CANCELED", "PENDING"):
            return cls(value)
        # DEACTIVATED: the provider stopped billing.
        if value == "DEACTIVATED":
            return cls.CANCELED
        return cls.UNKNOWN


class PricingMode(str, Enum):
    FIXED = "FIXED"
    RELATIVE = "RELATIVE"


# ---- persisted record ----

class PendingPlanChange(BaseModel):
    effective_date: str
    new_variation_id: str


class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_sub: str
    email: Optional[str] = None
    name: Optional[str] = None
    billing_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    variation_id: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    canceled_date: Optional[str] = None
    pending_plan_change: Optional[PendingPlanChange] = None
    has_active_subscription: bool = False
    had_subscription: bool = False
    remote_version: int = 0
    customer_claim_token: Optional[str] = None
    customer_claim_expires_at: int = 0
    version: int = 0
    updated_at: int = 0

    def normalized(self, previous: Optional["SubscriptionRecord"] = None) -> "SubscriptionRecord":
        """Return a copy that satisfies the record invariants."""
        rec = self.model_copy(deep=True)
        active = rec.subscription_status == SubscriptionStatus.ACTIVE
        if not active:
            rec.pending_plan_change = None
        if rec.subscription_status != SubscriptionStatus.CANCELED:
            rec.canceled_date = None
        rec.has_active_subscription = active
        rec.had_subscription = rec.had_subscription or active or bool(previous and previous.had_subscription)
        return rec

    def state_key(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"version", "updated_at"})

    def to_item(self) -> Dict[str, Any]:
        item = self.model_dump(mode="json")
        item["sk"] = "SUBSCRIPTION"
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "SubscriptionRecord":
        data = dict(item)
        for key in ("version", "remote_version", "customer_claim_expires_at", "updated_at"):
            if data.get(key) is not None:
                data[key] = int(data[key])
        return cls.model_validate(data)


# ---- provider views ----

class PlannedChange(BaseModel):
    type: str
    effective_date: Optional[str] = None
    new_variation_id: Optional[str] = None


class ProviderSubscriptionView(BaseModel):
    id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    current_variation_id: Optional[str] = None
    pending_variation_id: Optional[str] = None
    start_date: Optional[str] = None
    charged_through_date: Optional[str] = None
    canceled_date: Optional[str] = None
    card_id: Optional[str] = None
    version: Optional[int] = None
    planned_changes: List[PlannedChange] = Field(default_factory=list)

    @property
    def is_canceled(self) -> bool:
        return (self.status or "").upper() == "CANCELED" or bool(self.canceled_date)

    @classmethod
    def from_square(cls, sub: Dict[str, Any]) -> "ProviderSubscriptionView":
        changes: List[PlannedChange] = []
        for entry in list(sub.get("actions") or []) + list(sub.get("planned_changes") or []):
            if not isinstance(entry, dict):
                continue
            changes.append(
                PlannedChange(
                    type=str(entry.get("type") or ""),
                    effective_date=entry.get("effective_date"),
                    new_variation_id=entry.get("new_plan_variation_id"),
                )
            )
        version = sub.get("version")
        return cls(
            id=str(sub.get("id") or ""),
            customer_id=sub.get("customer_id"),
            status=sub.get("status"),
            current_variation_id=sub.get("plan_variation_id") or sub.get("plan_id"),
            pending_variation_id=sub.get("pending_plan_variation_id"),
            start_date=sub.get("start_date"),
            charged_through_date=sub.get("charged_through_date"),
            canceled_date=sub.get("canceled_date"),
            card_id=sub.get("card_id"),
            version=int(version) if version is not None else None,
            planned_changes=changes,
        )


class PlanVariation(BaseModel):
    plan_id: str
    variation_id: str
    name: str
    description: str = ""
    cadence: str
    interval: str
    formatted_interval: str
    pricing_mode: PricingMode
    base_price: float
    unit_price: float
    monthly_price: float
    total_price: float
    discount_percent: float = 0.0
    currency: str = "USD"
    active: bool = True
    phases: List[Dict[str, Any]] = Field(default_factory=list)

    def to_public(self) -> Dict[str, Any]:
        return {
            "variationId": self.variation_id,
            "planId": self.plan_id,
            "name": self.name,
            "description": self.description,
            "basePrice": self.base_price,
            "price": self.unit_price,
            "monthlyPrice": self.monthly_price,
            "totalPrice": self.total_price,
            "discountPercent": self.discount_percent,
            "hasDiscount": self.discount_percent > 0,
            "currency": self.currency,
            "formattedPrice": format_money(self.unit_price),
            "formattedMonthlyPrice": format_money(self.monthly_price),
            "formattedTotalPrice": format_money(self.total_price),
            "formattedBasePrice": format_money(self.base_price),
            "interval": self.interval,
            "formattedInterval": self.formatted_interval,
            "cadence": self.cadence,
            "pricingMode": self.pricing_mode.value,
            "active": self.active,
            "phases": self.phases,
        }


# ---- request bodies ----

class CreateSubscriptionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    variation_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("variationId", "variation_id"))
    payment_source_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("paymentSourceToken", "payment_source_token", "sourceId"),
    )


class SwapPlanIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    new_variation_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("newVariationId", "new_variation_id", "newPlanVariationId"),
    )


class UpdatePaymentMethodIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    source_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sourceId", "source_id"))


def record_projection(rec: SubscriptionRecord) -> Dict[str, Any]:
    pending = rec.pending_plan_change
    return {
        "userId": rec.user_sub,
        "billingCustomerId": rec.billing_customer_id,
        "subscriptionId": rec.subscription_id,
        "variationId": rec.variation_id,
        "subscriptionStatus": rec.subscription_status.value,
        "canceledDate": rec.canceled_date,
        "pendingPlanChange": (
            {"effectiveDate": pending.effective_date, "newVariationId": pending.new_variation_id} if pending else None
        ),
        "hasActiveSubscription": rec.has_active_subscription,
        "hadSubscription": rec.had_subscription,
    }
