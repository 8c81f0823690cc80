"""Atomic conditional update used for every balance mutation.

A ``ConditionalOp`` describes a predicate over (job, balance, existing
settlement) and the effect to apply when it holds. Backends must evaluate the
predicate and apply the effect as one indivisible step. ``evaluate`` is the
single source of truth for the decision; the Redis script mirrors it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from schemas.records import Balance, JobRecord, SettlementRecord
from utils.status_machine import has_valid_result


class ConditionalVerdict(str, Enum):
    APPLIED = "applied"
    ALREADY_SETTLED = "already_settled"
    DELETED_ONLY = "deleted_only"
    JOB_MISSING = "job_missing"
    STATUS_MISMATCH = "status_mismatch"
    INVALID_RESULT = "invalid_result"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    FREE_TIER_USED = "free_tier_used"
    USER_NOT_FOUND = "user_not_found"
    CONFLICT = "conflict"

    @property
    def mutated(self) -> bool:
        return self in (ConditionalVerdict.APPLIED, ConditionalVerdict.DELETED_ONLY)


@dataclass
class ConditionalOp:
    job_id: str
    user_id: str
    require_status: Optional[str] = None
    require_valid_result: bool = False
    min_balance: int = 0
    balance_delta: int = 0
    mark_free_tier_used: bool = False
    require_free_tier_available: bool = False
    delete_job: bool = False
    # Reaper: when the job is already settled still delete it, but skip the
    # balance and settlement effects.
    delete_when_settled: bool = False
    settlement: Optional[SettlementRecord] = None

    @property
    def needs_job(self) -> bool:
        return bool(self.require_status or self.require_valid_result or self.delete_job)

    @property
    def needs_balance(self) -> bool:
        return (
            self.balance_delta != 0
            or self.min_balance > 0
            or self.mark_free_tier_used
            or self.require_free_tier_available
        )


@dataclass
class ConditionalResult:
    verdict: ConditionalVerdict
    job_status: Optional[str] = None
    settlement: Optional[SettlementRecord] = None
    balance_after: Optional[int] = None
    notes: dict = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.verdict == ConditionalVerdict.APPLIED


def evaluate(
    op: ConditionalOp,
    *,
    job: Optional[JobRecord],
    balance: Optional[Balance],
    settled: bool,
) -> ConditionalVerdict:
    guarded = op.settlement is not None
    if settled and guarded and not op.delete_when_settled:
        return ConditionalVerdict.ALREADY_SETTLED

    if op.needs_job and job is None:
        return ConditionalVerdict.JOB_MISSING
    if op.require_status and job is not None and job.status != op.require_status:
        return ConditionalVerdict.STATUS_MISMATCH

    if settled and guarded:
        return ConditionalVerdict.DELETED_ONLY

    if op.require_valid_result and (job is None or not has_valid_result(job.result)):
        return ConditionalVerdict.INVALID_RESULT

    if op.needs_balance:
        if balance is None:
            return ConditionalVerdict.USER_NOT_FOUND
        if op.require_free_tier_available and balance.free_tier_used:
            return ConditionalVerdict.FREE_TIER_USED
        if balance.credits < op.min_balance or balance.credits + op.balance_delta < 0:
            return ConditionalVerdict.INSUFFICIENT_BALANCE

    return ConditionalVerdict.APPLIED


class ConditionalUpdater(ABC):
    """One backend strategy for applying a ConditionalOp atomically."""

    name = "abstract"

    @abstractmethod
    async def apply(self, op: ConditionalOp) -> ConditionalResult:
        ...
