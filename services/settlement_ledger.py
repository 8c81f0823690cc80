"""Idempotent credit settlement keyed by job id.

Every debit, free-tier consumption and refund is a single conditional
update: the settlement record, the balance change and (for reaps) the job
deletion commit together or not at all. A second caller for the same job
always finds the record and gets ``ALREADY_SETTLED`` back.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from schemas.job_contract import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_PROCESSING,
    PAID_TIER_COST,
    SETTLEMENT_DEBIT,
    SETTLEMENT_FREE,
    SETTLEMENT_REFUND,
    TIER_PAID,
)
from schemas.records import JobRecord, SettlementRecord
from services.conditional_update import ConditionalOp, ConditionalResult, ConditionalVerdict
from services.job_store import JobStore
from utils.metrics import incr
from utils.stage_logging import log_stage

logger = logging.getLogger("api.ledger")


class SettlementOutcome(str, Enum):
    APPLIED = "APPLIED"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    INVALID_RESULT = "INVALID_RESULT"
    NOT_COMPLETED = "NOT_COMPLETED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    FREE_TIER_ALREADY_USED = "FREE_TIER_ALREADY_USED"
    JOB_MISSING = "JOB_MISSING"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    CONFLICT = "CONFLICT"


_OUTCOMES = {
    ConditionalVerdict.APPLIED: SettlementOutcome.APPLIED,
    ConditionalVerdict.ALREADY_SETTLED: SettlementOutcome.ALREADY_SETTLED,
    ConditionalVerdict.DELETED_ONLY: SettlementOutcome.ALREADY_SETTLED,
    ConditionalVerdict.INVALID_RESULT: SettlementOutcome.INVALID_RESULT,
    ConditionalVerdict.STATUS_MISMATCH: SettlementOutcome.NOT_COMPLETED,
    ConditionalVerdict.INSUFFICIENT_BALANCE: SettlementOutcome.INSUFFICIENT_BALANCE,
    ConditionalVerdict.FREE_TIER_USED: SettlementOutcome.FREE_TIER_ALREADY_USED,
    ConditionalVerdict.JOB_MISSING: SettlementOutcome.JOB_MISSING,
    ConditionalVerdict.USER_NOT_FOUND: SettlementOutcome.USER_NOT_FOUND,
    ConditionalVerdict.CONFLICT: SettlementOutcome.CONFLICT,
}


@dataclass
class SettlementResult:
    job_id: str
    outcome: SettlementOutcome
    credits_applied: int = 0
    balance_after: Optional[int] = None
    record: Optional[SettlementRecord] = None

    @property
    def settled(self) -> bool:
        return self.outcome in (SettlementOutcome.APPLIED, SettlementOutcome.ALREADY_SETTLED)


class SettlementLedger:
    def __init__(self, store: JobStore, paid_cost: int = PAID_TIER_COST):
        self._store = store
        self.paid_cost = paid_cost

    def completion_op(self, job_id: str, user_id: str, tier: str) -> ConditionalOp:
        if tier == TIER_PAID:
            return ConditionalOp(
                job_id=job_id,
                user_id=user_id,
                require_status=JOB_STATUS_COMPLETED,
                require_valid_result=True,
                min_balance=self.paid_cost,
                balance_delta=-self.paid_cost,
                settlement=SettlementRecord(
                    job_id=job_id,
                    user_id=user_id,
                    kind=SETTLEMENT_DEBIT,
                    credits_applied=-self.paid_cost,
                ),
            )
        return ConditionalOp(
            job_id=job_id,
            user_id=user_id,
            require_status=JOB_STATUS_COMPLETED,
            require_valid_result=True,
            mark_free_tier_used=True,
            require_free_tier_available=True,
            settlement=SettlementRecord(job_id=job_id, user_id=user_id, kind=SETTLEMENT_FREE, credits_applied=0),
        )

    def reap_op(self, job: JobRecord, refund_amount: int = 0) -> ConditionalOp:
        """Delete a stuck job and, for paid jobs, close its billing with a refund."""
        settlement = None
        if job.tier == TIER_PAID:
            settlement = SettlementRecord(
                job_id=job.job_id,
                user_id=job.user_id,
                kind=SETTLEMENT_REFUND,
                credits_applied=refund_amount,
            )
        return ConditionalOp(
            job_id=job.job_id,
            user_id=job.user_id,
            require_status=JOB_STATUS_PROCESSING,
            delete_job=True,
            delete_when_settled=True,
            balance_delta=refund_amount if settlement is not None else 0,
            settlement=settlement,
        )

    def _result(self, op: ConditionalOp, applied: ConditionalResult) -> SettlementResult:
        outcome = _OUTCOMES[applied.verdict]
        credits = op.settlement.credits_applied if (applied.applied and op.settlement is not None) else 0
        return SettlementResult(
            job_id=op.job_id,
            outcome=outcome,
            credits_applied=credits,
            balance_after=applied.balance_after,
            record=applied.settlement,
        )

    # User value: charges a completed analysis exactly once, however many times completion is reported.
    async def settle_on_completion(self, job_id: str, user_id: str, tier: str) -> SettlementResult:
        op = self.completion_op(job_id, user_id, tier)
        result = self._result(op, await self._store.conditional_settle(op))
        if result.outcome == SettlementOutcome.ALREADY_SETTLED and result.record is None:
            result.record = await self._store.get_settlement(job_id)

        incr("ledger_settlements_total", kind="completion", tier=tier, outcome=result.outcome.value)
        log_stage(
            job_id=job_id,
            stage="SETTLEMENT",
            event="COMPLETED" if result.settled else "SKIPPED",
            user=user_id,
            tier=tier,
            outcome=result.outcome.value,
            credits_applied=result.credits_applied,
            balance_after=result.balance_after,
        )
        if result.outcome == SettlementOutcome.CONFLICT:
            logger.error("settlement_conflict job_id=%s user=%s tier=%s", job_id, user_id, tier)
        elif result.outcome == SettlementOutcome.FREE_TIER_ALREADY_USED:
            logger.warning("free_tier_already_consumed job_id=%s user=%s", job_id, user_id)
        return result

    # User value: gives credits back once, even if the refund is requested repeatedly.
    async def refund(self, job_id: str, user_id: str, amount: int) -> SettlementResult:
        if amount < 0:
            raise ValueError("refund amount must not be negative")
        op = ConditionalOp(
            job_id=job_id,
            user_id=user_id,
            balance_delta=amount,
            settlement=SettlementRecord(job_id=job_id, user_id=user_id, kind=SETTLEMENT_REFUND, credits_applied=amount),
        )
        result = self._result(op, await self._store.conditional_settle(op))

        incr("ledger_settlements_total", kind="refund", tier=TIER_PAID, outcome=result.outcome.value)
        log_stage(
            job_id=job_id,
            stage="REFUND",
            event="COMPLETED" if result.settled else "SKIPPED",
            user=user_id,
            outcome=result.outcome.value,
            credits_applied=result.credits_applied,
            balance_after=result.balance_after,
        )
        return result

    async def get_settlement(self, job_id: str) -> Optional[SettlementRecord]:
        return await self._store.get_settlement(job_id)

    async def history(self, user_id: str, limit: int = 50) -> List[SettlementRecord]:
        return await self._store.ledger_history(user_id, limit=limit)
