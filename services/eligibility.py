# User value: This file tells users up front whether an analysis is free, paid, or blocked by low credits.
import logging

from schemas.job_contract import (
    ELIGIBILITY_REASON_INSUFFICIENT,
    ELIGIBILITY_REASON_USER_NOT_FOUND,
    PAID_TIER_COST,
    TIER_FREE,
    TIER_PAID,
)
from schemas.records import Balance, Eligibility
from services.errors import EligibilityDenied
from services.job_store import JobStore
from utils.metrics import incr

logger = logging.getLogger("api.eligibility")


def decide_eligibility(balance: Balance | None, paid_cost: int = PAID_TIER_COST) -> Eligibility:
    if balance is None:
        return Eligibility(
            eligible=False,
            tier=TIER_FREE,
            cost=0,
            credits_available=0,
            free_tier_available=False,
            reason=ELIGIBILITY_REASON_USER_NOT_FOUND,
        )

    if balance.free_tier_available:
        return Eligibility(
            eligible=True,
            tier=TIER_FREE,
            cost=0,
            credits_available=balance.credits,
            free_tier_available=True,
        )

    if balance.credits >= paid_cost:
        return Eligibility(
            eligible=True,
            tier=TIER_PAID,
            cost=paid_cost,
            credits_available=balance.credits,
            free_tier_available=False,
        )

    return Eligibility(
        eligible=False,
        tier=TIER_PAID,
        cost=paid_cost,
        credits_available=balance.credits,
        free_tier_available=False,
        reason=ELIGIBILITY_REASON_INSUFFICIENT,
    )


class EligibilityGate:
    """Read-only check; safe to call as often as the UI likes."""

    def __init__(self, store: JobStore, paid_cost: int = PAID_TIER_COST):
        self._store = store
        self._paid_cost = paid_cost

    async def check_eligibility(self, user_id: str) -> Eligibility:
        balance = await self._store.get_balance(user_id)
        decision = decide_eligibility(balance, self._paid_cost)
        incr("eligibility_checks_total", tier=decision.tier, eligible=str(decision.eligible).lower())
        logger.info(
            "eligibility_checked user=%s eligible=%s tier=%s cost=%s credits=%s reason=%s",
            user_id,
            decision.eligible,
            decision.tier,
            decision.cost,
            decision.credits_available,
            decision.reason or "",
        )
        return decision

    async def require_eligibility(self, user_id: str) -> Eligibility:
        decision = await self.check_eligibility(user_id)
        if not decision.eligible:
            if decision.reason == ELIGIBILITY_REASON_USER_NOT_FOUND:
                message = "User profile not found"
            else:
                message = f"Insufficient credits: {decision.cost} credits are required per analysis."
            raise EligibilityDenied(
                message,
                reason=decision.reason or "",
                credits_required=decision.cost,
                credits_available=decision.credits_available,
            )
        return decision
