from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.models import PendingPlanChange, ProviderSubscriptionView, SubscriptionRecord

PLAN_CHANGE_TYPES = ("SWAP_PLAN", "PLAN_CHANGE")

NO_CHANGE = "no_change"
EFFECTIVE = "effective"
PENDING = "pending"


@dataclass(frozen=True)
class PendingChangeOutcome:
    kind: str
    variation_id: Optional[str] = None
    effective_date: Optional[str] = None
    # Variation still billing while a change is pending.
    current_variation_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.kind == PENDING


def _first_plan_change(remote: ProviderSubscriptionView):
    for change in remote.planned_changes:
        if change.type.upper() in PLAN_CHANGE_TYPES and change.effective_date and change.new_variation_id:
            return change
    return None


def detect(local: SubscriptionRecord, remote: ProviderSubscriptionView) -> PendingChangeOutcome:
    """Decide whether a plan change is pending, has taken effect, or neither.

    Evidence is weighed in order: a stored pending change that the provider now
    reports as current; the provider's single pending-variation field; the first
    dated plan-change entry in its actions/planned changes; finally a plain
    mismatch between the provider's current variation and ours.
    """
    current = remote.current_variation_id
    stored = local.pending_plan_change

    if stored and current and stored.new_variation_id == current:
        return PendingChangeOutcome(EFFECTIVE, variation_id=current)

    planned = _first_plan_change(remote)

    if remote.pending_variation_id and remote.pending_variation_id != current:
        effective_date = remote.charged_through_date
        if planned and planned.new_variation_id == remote.pending_variation_id:
            effective_date = planned.effective_date
        if not effective_date and stored and stored.new_variation_id == remote.pending_variation_id:
            effective_date = stored.effective_date
        if effective_date:
            return PendingChangeOutcome(
                PENDING,
                variation_id=remote.pending_variation_id,
                effective_date=effective_date,
                current_variation_id=current,
            )

    if planned and planned.new_variation_id != current:
        return PendingChangeOutcome(
            PENDING,
            variation_id=planned.new_variation_id,
            effective_date=planned.effective_date,
            current_variation_id=current,
        )

    if current and current != local.variation_id:
        return PendingChangeOutcome(EFFECTIVE, variation_id=current)

    return PendingChangeOutcome(NO_CHANGE)


def apply_outcome(rec: SubscriptionRecord, outcome: PendingChangeOutcome) -> SubscriptionRecord:
    if outcome.kind == EFFECTIVE:
        rec.variation_id = outcome.variation_id
        rec.pending_plan_change = None
    elif outcome.kind == PENDING:
        if outcome.current_variation_id:
            rec.variation_id = outcome.current_variation_id
        rec.pending_plan_change = PendingPlanChange(
            effective_date=str(outcome.effective_date),
            new_variation_id=str(outcome.variation_id),
        )
    return rec
