from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from app.core.settings import S
from app.core.tables import T
from app.services.records import RecordStore
from app.services.square import SquareClient


@dataclass
class BillingContext:
    store: RecordStore
    provider: Any
    grace_days: int = 7
    webhook_signature_key: str = ""
    webhook_url: str = ""
    environment: str = "sandbox"
    application_id: str = ""


@lru_cache(maxsize=1)
def get_billing_context() -> BillingContext:
    return BillingContext(
        store=RecordStore(
            T.subscriptions,
            customer_index=S.subscriptions_customer_index,
            max_attempts=S.record_update_max_attempts,
            webhook_ttl_seconds=S.webhook_dedupe_ttl_seconds,
        ),
        provider=SquareClient.from_settings(),
        grace_days=S.grace_period_days,
        webhook_signature_key=S.square_webhook_signature_key,
        webhook_url=S.square_webhook_url,
        environment=S.square_environment,
        application_id=S.square_application_id,
    )
