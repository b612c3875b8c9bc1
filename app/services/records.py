from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from app.core.time import now_ts
from app.errors import ConflictError, ConflictReason, NotFoundError
from app.metrics import record_update_conflict
from app.models import SubscriptionRecord

logger = logging.getLogger(__name__)

RECORD_SK = "SUBSCRIPTION"
WEBHOOK_PK = "SQUARE_WEBHOOK"
WEBHOOK_UNMATCHED_PK = "SQUARE_WEBHOOK_UNMATCHED"
WEBHOOK_OTHER_PK = "SQUARE_WEBHOOK_OTHER"

Mutation = Callable[[SubscriptionRecord], SubscriptionRecord]


def _conditional_failed(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class RecordStore:
    """One subscription row per user in DynamoDB.

    Every write goes through :meth:`update`, a versioned compare-and-set, so a
    webhook and a user request touching the same row cannot interleave a
    half-applied merge.
    """

    def __init__(
        self,
        table: Any,
        *,
        customer_index: str = "",
        max_attempts: int = 3,
        webhook_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self.table = table
        self.customer_index = customer_index
        self.max_attempts = max(1, int(max_attempts))
        self.webhook_ttl_seconds = webhook_ttl_seconds

    # ---- reads ----

    def get(self, user_sub: str) -> Optional[SubscriptionRecord]:
        item = self.table.get_item(Key={"user_sub": user_sub, "sk": RECORD_SK}).get("Item")
        return SubscriptionRecord.from_item(item) if item else None

    def require(self, user_sub: str) -> SubscriptionRecord:
        rec = self.get(user_sub)
        if rec is None:
            raise NotFoundError("No subscription record for this user")
        return rec

    def find_by_customer_id(self, customer_id: str) -> Optional[SubscriptionRecord]:
        resp = self.table.query(
            IndexName=self.customer_index,
            KeyConditionExpression=Key("billing_customer_id").eq(customer_id),
            Limit=2,
        )
        items = resp.get("Items", [])
        if len(items) > 1:
            logger.warning("customer %s is attached to more than one record", customer_id)
        return SubscriptionRecord.from_item(items[0]) if items else None

    def iter_with_customer_ids(self) -> Iterator[SubscriptionRecord]:
        last_key = None
        while True:
            kwargs: Dict[str, Any] = {
                "FilterExpression": Attr("sk").eq(RECORD_SK) & Attr("billing_customer_id").exists(),
            }
            if last_key:
                kwargs["ExclusiveStartKey"] = last_key
            resp = self.table.scan(**kwargs)
            for item in resp.get("Items", []):
                if item.get("billing_customer_id"):
                    yield SubscriptionRecord.from_item(item)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break

    # ---- writes ----

    def create(self, user_sub: str, *, email: Optional[str] = None, name: Optional[str] = None) -> SubscriptionRecord:
        """Write the all-NONE record for a new account; an existing row is returned untouched."""
        rec = SubscriptionRecord(user_sub=user_sub, email=email, name=name, version=1, updated_at=now_ts())
        try:
            self.table.put_item(Item=rec.to_item(), ConditionExpression="attribute_not_exists(user_sub)")
        except ClientError as exc:
            if _conditional_failed(exc):
                return self.require(user_sub)
            raise
        return rec

    def update(self, user_sub: str, mutate: Mutation) -> SubscriptionRecord:
        """Read-modify-write with a version check, retried on conflict with a fresh read."""
        for attempt in range(1, self.max_attempts + 1):
            current = self.require(user_sub)
            proposed = mutate(current.model_copy(deep=True)).normalized(previous=current)
            if proposed.state_key() == current.state_key():
                logger.debug("record %s unchanged; skipping write", user_sub)
                return current

            expected = current.version
            proposed.version = expected + 1
            proposed.updated_at = now_ts()
            try:
                self.table.put_item(
                    Item=proposed.to_item(),
                    ConditionExpression="#v = :expected",
                    ExpressionAttributeNames={"#v": "version"},
                    ExpressionAttributeValues={":expected": expected},
                )
                return proposed
            except ClientError as exc:
                if not _conditional_failed(exc):
                    raise
                record_update_conflict()
                logger.info("record %s changed underneath us (attempt %d/%d)", user_sub, attempt, self.max_attempts)

        raise ConflictError(ConflictReason.CONCURRENT_UPDATE, "Subscription record is being updated concurrently; try again")

    # ---- webhook bookkeeping ----

    def mark_webhook_processed(self, dedupe_key: str) -> bool:
        ts = now_ts()
        try:
            self.table.put_item(
                Item={
                    "user_sub": WEBHOOK_PK,
                    "sk": dedupe_key,
                    "ts": ts,
                    "ttl": ts + self.webhook_ttl_seconds,
                },
                ConditionExpression="attribute_not_exists(user_sub)",
            )
            return True
        except ClientError as exc:
            if _conditional_failed(exc):
                return False
            raise

    def store_webhook_copy(self, pk: str, dedupe_key: str, event: Dict[str, Any]) -> None:
        ts = now_ts()
        self.table.put_item(Item={
            "user_sub": pk,
            "sk": f"{ts}#{dedupe_key}",
            "event_type": event.get("type"),
            "event_id": event.get("event_id"),
            "event": event,
            "created_at": ts,
            "ttl": ts + self.webhook_ttl_seconds,
        })

