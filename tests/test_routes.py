from __future__ import annotations

import asyncio
from datetime import date

import pytest

from app.auth.deps import Caller
from app.errors import ConflictError
from app.models import CreateSubscriptionIn, SwapPlanIn, UpdatePaymentMethodIn
from app.routers import misc, subscriptions


def run_async(coro):
    return asyncio.run(coro)


CALLER = Caller(user_sub="user-1", email="ada@example.com", name="Ada Lovelace")


def test_routes_are_registered() -> None:
    from app.main import app

    paths = {(route.path, method) for route in app.routes for method in getattr(route, "methods", None) or ()}
    for expected in [
        ("/api/ping", "GET"),
        ("/payments/config", "GET"),
        ("/plans", "GET"),
        ("/subscriptions", "GET"),
        ("/subscriptions", "POST"),
        ("/subscriptions/invoices", "GET"),
        ("/subscriptions/payment-method", "GET"),
        ("/subscriptions/{subscription_id}", "DELETE"),
        ("/subscriptions/{subscription_id}/plan", "PATCH"),
        ("/subscriptions/{subscription_id}/payment-method", "PATCH"),
        ("/webhooks/billing", "POST"),
    ]:
        assert expected in paths


def test_request_bodies_accept_camel_case() -> None:
    body = CreateSubscriptionIn.model_validate({"variationId": "var-monthly", "paymentSourceToken": "cnon:ok"})
    assert (body.variation_id, body.payment_source_token) == ("var-monthly", "cnon:ok")
    assert SwapPlanIn.model_validate({"newVariationId": "var-daily"}).new_variation_id == "var-daily"
    assert UpdatePaymentMethodIn.model_validate({"sourceId": "cnon:new"}).source_id == "cnon:new"


def test_plans_and_payments_config(ctx) -> None:
    plans = run_async(subscriptions.list_plans(ctx=ctx))
    assert [p["name"] for p in plans["objects"]] == ["Basic", "Premium"]

    config = run_async(misc.payments_config(ctx=ctx))
    assert config == {"applicationId": "", "locationId": "LOC-1", "environment": "sandbox"}


def test_subscription_lifecycle_through_routes(ctx, store, square) -> None:
    store.create("user-1", email="ada@example.com")

    created = run_async(subscriptions.create_subscription(
        CreateSubscriptionIn(variation_id="var-monthly", payment_source_token="cnon:ok"), caller=CALLER, ctx=ctx
    ))
    sub_id = created["id"]

    state = run_async(subscriptions.get_subscription(caller=CALLER, ctx=ctx))
    assert state["subscriptionStatus"] == "ACTIVE"
    assert state["hasActiveSubscription"] is True
    assert state["isInGracePeriod"] is False
    assert state["gracePeriodEndsAt"] is None
    assert state["isCanceled"] is False
    assert state["subscriptionEndDate"] is None

    swapped = run_async(subscriptions.swap_plan(sub_id, SwapPlanIn(new_variation_id="var-daily"), caller=CALLER, ctx=ctx))
    assert swapped["pending"] is True
    with pytest.raises(ConflictError):
        run_async(subscriptions.swap_plan(sub_id, SwapPlanIn(new_variation_id="var-yearly"), caller=CALLER, ctx=ctx))

    card = run_async(subscriptions.update_payment_method(sub_id, UpdatePaymentMethodIn(source_id="cnon:new"), caller=CALLER, ctx=ctx))
    assert run_async(subscriptions.get_payment_method(caller=CALLER, ctx=ctx)) == card

    assert run_async(subscriptions.cancel_subscription(sub_id, caller=CALLER, ctx=ctx)) == {"canceledDate": "2024-02-01"}
    assert run_async(subscriptions.list_invoices(caller=CALLER, ctx=ctx)) == {"invoices": [], "environment": "sandbox"}


def test_grace_fields_after_cancel(ctx, store, square, monkeypatch) -> None:
    store.create("user-1", email="ada@example.com")
    square.customers.append({"id": "CUST-1", "reference_id": "user-1"})
    square.add_subscription(
        id="SUB-1", customer_id="CUST-1", plan_variation_id="var-monthly",
        status="CANCELED", canceled_date="2024-01-01", charged_through_date="2024-01-01",
    )

    def attach(r):
        r.billing_customer_id = "CUST-1"
        r.subscription_id = "SUB-1"
        r.variation_id = "var-monthly"
        return r

    store.update("user-1", attach)
    monkeypatch.setattr(subscriptions, "today", lambda: date(2024, 1, 8))

    state = run_async(subscriptions.get_subscription(caller=CALLER, ctx=ctx))

    assert state["subscriptionStatus"] == "CANCELED"
    assert state["canceledDate"] == "2024-01-01"
    assert state["isInGracePeriod"] is True
    assert state["gracePeriodEndsAt"] == "2024-01-08"
    assert state["isCanceled"] is True
    assert state["subscriptionEndDate"] == "2024-01-01"
    assert state["hasActiveSubscription"] is False

    monkeypatch.setattr(subscriptions, "today", lambda: date(2024, 1, 9))
    state = run_async(subscriptions.get_subscription(caller=CALLER, ctx=ctx))
    assert state["isInGracePeriod"] is False
    assert state["gracePeriodEndsAt"] is None
