# User value: This file keeps API responses stable so clients always know where a job and its credits stand.
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

from schemas.records import JobRecord, SettlementRecord


class EligibilityResponse(BaseModel):
    # User value: tells users before submitting whether the next analysis is free, paid, or blocked.
    eligible: bool
    tier: Literal["free", "paid"]
    cost: int = 0
    credits_available: int = 0
    free_tier_available: bool = False
    reason: Optional[str] = None


class JobCreatedResponse(BaseModel):
    job_id: str
    status: str = "processing"
    tier: Literal["free", "paid"]
    cost: int = 0
    reused: bool = False


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    tier: str
    input_name: str
    can_upgrade: bool = False
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusResponse":
        return cls(
            job_id=record.job_id,
            status=record.status,
            tier=record.tier,
            input_name=record.input.name,
            can_upgrade=record.can_upgrade,
            result=record.result,
            error=record.error,
            created_at=record.created_at.isoformat(),
            updated_at=record.updated_at.isoformat(),
        )


class SettlementResponse(BaseModel):
    job_id: str
    kind: str
    credits_applied: int
    created_at: str

    @classmethod
    def from_record(cls, record: SettlementRecord) -> "SettlementResponse":
        return cls(
            job_id=record.job_id,
            kind=record.kind,
            credits_applied=record.credits_applied,
            created_at=record.created_at.isoformat(),
        )


class SettlementHistoryResponse(BaseModel):
    user_id: str
    items: List[SettlementResponse] = Field(default_factory=list)


class OutcomeResponse(BaseModel):
    # User value: one final answer per job, with the credit effect alongside it.
    job_id: str
    resolved: bool
    outcome: Optional[Literal["completed", "invalid", "failed", "reclaimed"]] = None
    status: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    settlement_outcome: Optional[str] = None
    credits_applied: int = 0
    balance_after: Optional[int] = None


class BalanceResponse(BaseModel):
    user_id: str
    credits: int
    free_tier_used: bool
