from __future__ import annotations

import copy
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.errors import ProviderError  # noqa: E402
from app.services.context import BillingContext  # noqa: E402
from app.services.records import RecordStore  # noqa: E402


def conditional_failure(op: str = "PutItem") -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        op,
    )


class FakeTable:
    """In-memory stand-in for a boto3 DynamoDB table keyed by (user_sub, sk)."""

    def __init__(self) -> None:
        self.items: Dict[tuple, Dict[str, Any]] = {}
        self.puts = 0
        self.before_put: Optional[Callable[["FakeTable", Dict[str, Any]], None]] = None

    def get_item(self, Key: Dict[str, str]) -> Dict[str, Any]:
        item = self.items.get((Key["user_sub"], Key["sk"]))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(
        self,
        Item: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if self.before_put:
            hook, self.before_put = self.before_put, None
            hook(self, Item)
        key = (Item["user_sub"], Item["sk"])
        existing = self.items.get(key)
        if ConditionExpression == "attribute_not_exists(user_sub)" and existing is not None:
            raise conditional_failure()
        if ConditionExpression == "#v = :expected":
            attr = (ExpressionAttributeNames or {})["#v"]
            expected = (ExpressionAttributeValues or {})[":expected"]
            if existing is None or existing.get(attr) != expected:
                raise conditional_failure()
        self.items[key] = copy.deepcopy(Item)
        self.puts += 1
        return {}

    def query(self, KeyConditionExpression: Any, IndexName: Optional[str] = None, Limit: Optional[int] = None, **kwargs: Any) -> Dict[str, Any]:
        expr = KeyConditionExpression.get_expression()
        name = expr["values"][0].name
        value = expr["values"][1]
        found = [copy.deepcopy(it) for it in self.items.values() if it.get(name) == value]
        if Limit:
            found = found[:Limit]
        return {"Items": found}

    def scan(self, FilterExpression: Any = None, ExclusiveStartKey: Any = None, **kwargs: Any) -> Dict[str, Any]:
        found = [
            copy.deepcopy(it)
            for it in self.items.values()
            if it.get("sk") == "SUBSCRIPTION" and it.get("billing_customer_id")
        ]
        return {"Items": found}

    def records(self) -> List[Dict[str, Any]]:
        return [it for it in self.items.values() if it.get("sk") == "SUBSCRIPTION"]

    def partition(self, pk: str) -> List[Dict[str, Any]]:
        return [it for (item_pk, _), it in self.items.items() if item_pk == pk]


def catalog_objects() -> List[Dict[str, Any]]:
    return [
        {
            "type": "SUBSCRIPTION_PLAN",
            "id": "plan-basic",
            "present_at_all_locations": True,
            "subscription_plan_data": {
                "name": "Basic",
                "subscription_plan_variations": [
                    {
                        "type": "SUBSCRIPTION_PLAN_VARIATION",
                        "id": "var-monthly",
                        "subscription_plan_variation_data": {
                            "name": "Monthly",
                            "phases": [
                                {
                                    "cadence": "MONTHLY",
                                    "pricing": {"type": "STATIC", "price_money": {"amount": 1999, "currency": "USD"}},
                                }
                            ],
                        },
                    },
                    {
                        "type": "SUBSCRIPTION_PLAN_VARIATION",
                        "id": "var-daily",
                        "subscription_plan_variation_data": {
                            "name": "Daily",
                            "phases": [
                                {
                                    "cadence": "DAILY",
                                    "pricing": {"type": "STATIC", "price_money": {"amount": 100, "currency": "USD"}},
                                }
                            ],
                        },
                    },
                ],
            },
        },
        {
            "type": "SUBSCRIPTION_PLAN",
            "id": "plan-premium",
            "present_at_all_locations": True,
            "subscription_plan_data": {
                "name": "Premium",
                "eligible_item_ids": ["item-premium"],
                "subscription_plan_variations": [
                    {
                        "type": "SUBSCRIPTION_PLAN_VARIATION",
                        "id": "var-yearly",
                        "subscription_plan_variation_data": {
                            "name": "Yearly",
                            "phases": [
                                {
                                    "cadence": "ANNUAL",
                                    "pricing": {"type": "RELATIVE", "discount_ids": ["disc-10"]},
                                }
                            ],
                        },
                    }
                ],
            },
        },
        {
            "type": "ITEM",
            "id": "item-premium",
            "item_data": {
                "name": "Premium access",
                "description": "Everything, all year",
                "variations": [
                    {"item_variation_data": {"price_money": {"amount": 20000, "currency": "USD"}}}
                ],
            },
        },
        {"type": "DISCOUNT", "id": "disc-10", "discount_data": {"percentage": "10.0"}},
        {
            "type": "SUBSCRIPTION_PLAN",
            "id": "plan-legacy",
            "is_deleted": True,
            "subscription_plan_data": {
                "name": "Legacy",
                "subscription_plan_variations": [
                    {
                        "id": "var-legacy",
                        "subscription_plan_variation_data": {
                            "phases": [
                                {
                                    "cadence": "MONTHLY",
                                    "pricing": {"type": "STATIC", "price_money": {"amount": 500, "currency": "USD"}},
                                }
                            ]
                        },
                    }
                ],
            },
        },
    ]


class FakeSquare:
    """Records every call; state lives in plain dicts."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.customers: List[Dict[str, Any]] = []
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.cards: List[Dict[str, Any]] = []
        self.invoices: List[Dict[str, Any]] = []
        self.catalog = catalog_objects()
        self.errors: Dict[str, Exception] = {}
        self.swap_applies_immediately = False
        self.on_create_customer: Optional[Callable[[], None]] = None
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if name in self.errors:
            raise self.errors[name]

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    # customers
    def search_customers(self, *, email: Optional[str] = None, reference_id: Optional[str] = None) -> List[Dict[str, Any]]:
        self._call("search_customers", email, reference_id)
        out = self.customers
        if email:
            out = [c for c in out if c.get("email_address") == email]
        if reference_id:
            out = [c for c in out if c.get("reference_id") == reference_id]
        return [dict(c) for c in out]

    def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        self._call("get_customer", customer_id)
        for c in self.customers:
            if c["id"] == customer_id:
                return dict(c)
        return None

    def create_customer(self, *, email: str, given_name: str, family_name: str, reference_id: str) -> Dict[str, Any]:
        self._call("create_customer", email, given_name, family_name, reference_id)
        if self.on_create_customer:
            hook, self.on_create_customer = self.on_create_customer, None
            hook()
        customer = {
            "id": self._next("CUST"),
            "email_address": email,
            "given_name": given_name,
            "family_name": family_name,
            "reference_id": reference_id,
            "created_at": f"2024-01-01T00:00:{self._seq:02d}Z",
        }
        self.customers.append(customer)
        return dict(customer)

    # cards
    def create_card(self, customer_id: str, source_id: str) -> Dict[str, Any]:
        self._call("create_card", customer_id, source_id)
        card = {
            "id": self._next("CARD"),
            "customer_id": customer_id,
            "card_brand": "VISA",
            "last_4": "1111",
            "exp_month": 12,
            "exp_year": 2030,
            "enabled": True,
            "created_at": f"2024-01-02T00:00:{self._seq:02d}Z",
        }
        self.cards.append(card)
        return dict(card)

    def list_cards(self, customer_id: str) -> List[Dict[str, Any]]:
        self._call("list_cards", customer_id)
        return [dict(c) for c in self.cards if c["customer_id"] == customer_id]

    def disable_card(self, card_id: str) -> Dict[str, Any]:
        self._call("disable_card", card_id)
        for c in self.cards:
            if c["id"] == card_id:
                c["enabled"] = False
                return dict(c)
        raise ProviderError("card not found", code="NOT_FOUND", http_status=404)

    # locations / catalog / orders
    def location_id(self) -> str:
        return "LOC-1"

    def list_catalog(self) -> List[Dict[str, Any]]:
        self._call("list_catalog")
        return copy.deepcopy(self.catalog)

    def create_order_template(self, *, location_id: str, name: str, amount_cents: int, currency: str) -> str:
        self._call("create_order_template", location_id, name, amount_cents, currency)
        return self._next("ORDER")

    # subscriptions
    def create_subscription(
        self,
        *,
        customer_id: str,
        variation_id: str,
        card_id: str,
        location_id: str,
        start_date: str,
        order_template_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._call("create_subscription", customer_id, variation_id, card_id, order_template_id)
        sub = {
            "id": self._next("SUB"),
            "customer_id": customer_id,
            "plan_variation_id": variation_id,
            "status": "ACTIVE",
            "start_date": start_date,
            "charged_through_date": "2024-02-01",
            "card_id": card_id,
            "version": 1,
        }
        self.subscriptions[sub["id"]] = sub
        return dict(sub)

    def add_subscription(self, **fields: Any) -> Dict[str, Any]:
        sub = {"status": "ACTIVE", "charged_through_date": "2024-02-01", "version": 1}
        sub.update(fields)
        self.subscriptions[sub["id"]] = sub
        return sub

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._call("get_subscription", subscription_id)
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise ProviderError("not found", code="NOT_FOUND", http_status=404)
        return copy.deepcopy(sub)

    def list_customer_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        self._call("list_customer_subscriptions", customer_id)
        return [dict(s) for s in self.subscriptions.values() if s.get("customer_id") == customer_id]

    def swap_plan(self, subscription_id: str, new_variation_id: str) -> Dict[str, Any]:
        self._call("swap_plan", subscription_id, new_variation_id)
        sub = self.subscriptions[subscription_id]
        sub["version"] = sub.get("version", 1) + 1
        if self.swap_applies_immediately:
            sub["plan_variation_id"] = new_variation_id
            return {"subscription": copy.deepcopy(sub)}
        action = {
            "id": self._next("ACTION"),
            "type": "SWAP_PLAN",
            "effective_date": sub.get("charged_through_date"),
            "new_plan_variation_id": new_variation_id,
        }
        sub.setdefault("actions", []).append(action)
        return {"subscription": {k: v for k, v in sub.items() if k != "actions"}, "actions": [action]}

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._call("cancel_subscription", subscription_id)
        sub = self.subscriptions[subscription_id]
        sub["canceled_date"] = sub.get("charged_through_date")
        sub["version"] = sub.get("version", 1) + 1
        return {"subscription": copy.deepcopy(sub)}

    def update_subscription_card(self, subscription_id: str, card_id: str) -> Dict[str, Any]:
        self._call("update_subscription_card", subscription_id, card_id)
        self.subscriptions[subscription_id]["card_id"] = card_id
        return copy.deepcopy(self.subscriptions[subscription_id])

    def search_invoices(self, customer_id: str) -> List[Dict[str, Any]]:
        self._call("search_invoices", customer_id)
        return [i for i in self.invoices if i.get("primary_recipient", {}).get("customer_id") == customer_id]


@pytest.fixture
def fake_table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def square() -> FakeSquare:
    return FakeSquare()


@pytest.fixture
def store(fake_table: FakeTable) -> RecordStore:
    return RecordStore(fake_table, customer_index="billing_customer_id-index", max_attempts=3)


@pytest.fixture
def ctx(store: RecordStore, square: FakeSquare) -> BillingContext:
    return BillingContext(store=store, provider=square, grace_days=7, webhook_signature_key="sig-key")
