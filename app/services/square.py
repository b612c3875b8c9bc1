from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, List, Optional

import requests

from app.core.settings import S
from app.errors import ProviderError, UnknownOutcomeError
from app.metrics import record_provider_call

logger = logging.getLogger(__name__)


def idempotency_key() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def _first_error(data: Dict[str, Any]) -> Dict[str, Any]:
    errors = data.get("errors") if isinstance(data, dict) else None
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0]
    return {}


class SquareClient:
    """Thin REST client for the Square Customers, Cards, Catalog, Orders,
    Subscriptions and Invoices APIs.

    Every call is bounded by ``timeout``. A mutating call whose answer is lost
    (read timeout, reset connection) raises ``UnknownOutcomeError``; reads and
    calls that never reached the provider raise ``ProviderError``.
    """

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str,
        api_version: str,
        timeout: int = 20,
        location_id: str = "",
        environment: str = "sandbox",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.environment = environment
        self._location_id = location_id
        self._http = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "SquareClient":
        return cls(
            access_token=S.square_access_token,
            base_url=S.square_base_url,
            api_version=S.square_api_version,
            timeout=S.square_timeout_seconds,
            location_id=S.square_location_id,
            environment=S.square_environment,
        )

    # ---- transport ----

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        mutating: bool = False,
    ) -> Dict[str, Any]:
        if not self.access_token:
            raise ProviderError("Missing Square access token")

        start = time.perf_counter()
        try:
            r = self._http.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except requests.ConnectTimeout as exc:
            record_provider_call(operation, "unreachable", time.perf_counter() - start)
            raise ProviderError(f"Square {operation} unreachable") from exc
        except (requests.Timeout, requests.ConnectionError) as exc:
            record_provider_call(operation, "timeout", time.perf_counter() - start)
            if mutating:
                logger.warning("square %s outcome unknown: %s", operation, exc)
                raise UnknownOutcomeError(operation) from exc
            raise ProviderError(f"Square {operation} timed out") from exc

        elapsed = time.perf_counter() - start
        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = {}

        if r.status_code >= 400:
            err = _first_error(data)
            record_provider_call(operation, "error", elapsed)
            raise ProviderError(
                f"Square {operation} failed: {r.status_code}",
                code=err.get("code"),
                provider_detail=err.get("detail"),
                http_status=r.status_code,
            )
        record_provider_call(operation, "ok", elapsed)
        return data

    # ---- customers ----

    def search_customers(self, *, email: Optional[str] = None, reference_id: Optional[str] = None) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {}
        if email:
            flt["email_address"] = {"exact": email}
        if reference_id:
            flt["reference_id"] = {"exact": reference_id}
        data = self._request("search_customers", "POST", "/v2/customers/search", json={"query": {"filter": flt}})
        return data.get("customers") or []

    def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = self._request("get_customer", "GET", f"/v2/customers/{customer_id}")
        except ProviderError as exc:
            if exc.http_status == 404 or exc.code == "NOT_FOUND":
                return None
            raise
        return data.get("customer")

    def create_customer(self, *, email: str, given_name: str, family_name: str, reference_id: str) -> Dict[str, Any]:
        body = {
            "idempotency_key": idempotency_key(),
            "given_name": given_name,
            "family_name": family_name,
            "email_address": email,
            "reference_id": reference_id,
        }
        data = self._request("create_customer", "POST", "/v2/customers", json=body, mutating=True)
        return data.get("customer") or {}

    # ---- cards ----

    def create_card(self, customer_id: str, source_id: str) -> Dict[str, Any]:
        body = {
            "idempotency_key": idempotency_key(),
            "source_id": source_id,
            "card": {"customer_id": customer_id},
        }
        data = self._request("create_card", "POST", "/v2/cards", json=body, mutating=True)
        return data.get("card") or {}

    def list_cards(self, customer_id: str) -> List[Dict[str, Any]]:
        data = self._request("list_cards", "GET", "/v2/cards", params={"customer_id": customer_id})
        return data.get("cards") or []

    def disable_card(self, card_id: str) -> Dict[str, Any]:
        data = self._request("disable_card", "POST", f"/v2/cards/{card_id}/disable", mutating=True)
        return data.get("card") or {}

    # ---- locations / catalog / orders ----

    def location_id(self) -> str:
        if self._location_id:
            return self._location_id
        data = self._request("list_locations", "GET", "/v2/locations")
        for loc in data.get("locations") or []:
            if loc.get("status") == "ACTIVE" and loc.get("id"):
                self._location_id = loc["id"]
                return self._location_id
        raise ProviderError("No active Square location found")

    def list_catalog(self) -> List[Dict[str, Any]]:
        objects: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {}
            if cursor:
                params["cursor"] = cursor
            data = self._request("list_catalog", "GET", "/v2/catalog/list", params=params or None)
            objects.extend(data.get("objects") or [])
            cursor = data.get("cursor")
            if not cursor:
                break
        return objects

    def create_order_template(self, *, location_id: str, name: str, amount_cents: int, currency: str) -> str:
        body = {
            "idempotency_key": idempotency_key(),
            "order": {
                "location_id": location_id,
                "state": "DRAFT",
                "line_items": [
                    {
                        "name": name or "Subscription",
                        "quantity": "1",
                        "base_price_money": {"amount": int(amount_cents), "currency": currency},
                    }
                ],
            },
        }
        data = self._request("create_order_template", "POST", "/v2/orders", json=body, mutating=True)
        order_id = (data.get("order") or {}).get("id")
        if not order_id:
            raise ProviderError("No order template id returned from Square")
        return order_id

    # ---- subscriptions ----

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
        body: Dict[str, Any] = {
            "idempotency_key": idempotency_key(),
            "location_id": location_id,
            "customer_id": customer_id,
            "plan_variation_id": variation_id,
            "start_date": start_date,
            "card_id": card_id,
        }
        if order_template_id:
            body["phases"] = [{"ordinal": 0, "order_template_id": order_template_id}]
        data = self._request("create_subscription", "POST", "/v2/subscriptions", json=body, mutating=True)
        sub = data.get("subscription")
        if not sub:
            raise ProviderError("No subscription returned from Square")
        return sub

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        data = self._request(
            "get_subscription",
            "GET",
            f"/v2/subscriptions/{subscription_id}",
            params={"include": "actions"},
        )
        return data.get("subscription") or {}

    def list_customer_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        query = {
            "filter": {
                "customer_ids": [customer_id],
                "location_ids": [self.location_id()],
            }
        }
        subs: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            body: Dict[str, Any] = {"query": query}
            if cursor:
                body["cursor"] = cursor
            try:
                data = self._request("search_subscriptions", "POST", "/v2/subscriptions/search", json=body)
            except ProviderError as exc:
                if exc.code == "NOT_FOUND":
                    break
                raise
            subs.extend(data.get("subscriptions") or [])
            cursor = data.get("cursor")
            if not cursor:
                break
        return [s for s in subs if s.get("customer_id") == customer_id]

    def swap_plan(self, subscription_id: str, new_variation_id: str) -> Dict[str, Any]:
        return self._request(
            "swap_plan",
            "POST",
            f"/v2/subscriptions/{subscription_id}/swap-plan",
            json={"new_plan_variation_id": new_variation_id},
            mutating=True,
        )

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request(
            "cancel_subscription",
            "POST",
            f"/v2/subscriptions/{subscription_id}/cancel",
            mutating=True,
        )

    def update_subscription_card(self, subscription_id: str, card_id: str) -> Dict[str, Any]:
        data = self._request(
            "update_subscription",
            "PUT",
            f"/v2/subscriptions/{subscription_id}",
            json={"subscription": {"card_id": card_id}},
            mutating=True,
        )
        return data.get("subscription") or {}

    # ---- invoices ----

    def search_invoices(self, customer_id: str) -> List[Dict[str, Any]]:
        body = {
            "query": {
                "filter": {"customer_ids": [customer_id], "location_ids": [self.location_id()]},
                "sort": {"field": "INVOICE_SORT_DATE", "order": "DESC"},
            },
            "limit": 100,
        }
        data = self._request("search_invoices", "POST", "/v2/invoices/search", json=body)
        return data.get("invoices") or []
