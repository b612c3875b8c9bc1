from __future__ import annotations

import logging

from app.core.time import today
from app.models import ProviderSubscriptionView, SubscriptionRecord, SubscriptionStatus
from app.services.pending import apply_outcome, detect

logger = logging.getLogger(__name__)


def is_stale(rec: SubscriptionRecord, view: ProviderSubscriptionView) -> bool:
    """A snapshot older than the last one applied for the same subscription."""
    if view.version is None or not rec.remote_version:
        return False
    return rec.subscription_id == view.id and view.version < rec.remote_version


def merge_snapshot(rec: SubscriptionRecord, view: ProviderSubscriptionView, *, created: bool = False) -> SubscriptionRecord:
    """Fold a provider subscription snapshot into the local record.

    Used by webhook delivery and by explicit state refreshes so both paths
    converge on identical fields. The caller persists the result.
    """
    if is_stale(rec, view):
        logger.info(
            "ignoring stale snapshot for %s (version %s < %s)", view.id, view.version, rec.remote_version
        )
        return rec

    replacing = bool(rec.subscription_id and view.id and rec.subscription_id != view.id)
    if replacing:
        # Only a new live subscription displaces the one on record.
        if not created or view.is_canceled:
            logger.info(
                "ignoring snapshot for %s; record %s tracks subscription %s", view.id, rec.user_sub, rec.subscription_id
            )
            return rec
        logger.info("record %s moves from subscription %s to %s", rec.user_sub, rec.subscription_id, view.id)
        rec.remote_version = 0
        rec.pending_plan_change = None
        rec.canceled_date = None

    same_subscription = rec.subscription_id == view.id
    if view.id:
        rec.subscription_id = view.id

    if created and not view.is_canceled:
        if same_subscription and rec.subscription_status == SubscriptionStatus.CANCELED:
            logger.info("subscription %s already canceled locally; not reactivating from create event", view.id)
        else:
            rec.subscription_status = SubscriptionStatus.ACTIVE
            if view.current_variation_id:
                rec.variation_id = view.current_variation_id
            rec.pending_plan_change = None
    else:
        apply_outcome(rec, detect(rec, view))
        if view.is_canceled:
            rec.subscription_status = SubscriptionStatus.CANCELED
            rec.canceled_date = view.canceled_date or rec.canceled_date or today().isoformat()
        else:
            rec.subscription_status = SubscriptionStatus.from_provider(view.status)

    if view.version is not None:
        rec.remote_version = max(rec.remote_version, view.version)
    return rec
