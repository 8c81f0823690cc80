"""Domain records shared by the stores, the ledger and the observer."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from schemas.job_contract import (
    JOB_STATUS_PROCESSING,
    PAID_TIER_COST,
    TIER_FREE,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class InputDescriptor(BaseModel):
    """What the user asked to analyse; the bytes themselves live elsewhere."""

    name: str = Field(..., min_length=1)
    size_bytes: int = Field(default=0, ge=0)
    reference: Optional[str] = None
    job_description: str = ""


class JobRecord(BaseModel):
    """One analysis job as stored in the job store."""

    job_id: str = Field(default_factory=new_job_id)
    user_id: str
    input: InputDescriptor
    tier: Literal["free", "paid"] = TIER_FREE
    status: Literal["processing", "completed", "failed"] = JOB_STATUS_PROCESSING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    can_upgrade: bool = False
    credits_held: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def cost(self) -> int:
        return PAID_TIER_COST if self.tier == "paid" else 0

    def to_hash(self) -> Dict[str, str]:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "input_name": self.input.name,
            "input_size_bytes": str(self.input.size_bytes),
            "input_reference": self.input.reference or "",
            "job_description": self.input.job_description,
            "tier": self.tier,
            "status": self.status,
            "result": json.dumps(self.result) if self.result is not None else "",
            "error": self.error or "",
            "can_upgrade": "1" if self.can_upgrade else "0",
            "credits_held": str(self.credits_held),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "JobRecord":
        raw_result = data.get("result") or ""
        return cls(
            job_id=data["job_id"],
            user_id=data["user_id"],
            input=InputDescriptor(
                name=data.get("input_name") or "document",
                size_bytes=int(data.get("input_size_bytes") or 0),
                reference=data.get("input_reference") or None,
                job_description=data.get("job_description") or "",
            ),
            tier=data.get("tier") or TIER_FREE,
            status=data.get("status") or JOB_STATUS_PROCESSING,
            result=json.loads(raw_result) if raw_result else None,
            error=data.get("error") or None,
            can_upgrade=str(data.get("can_upgrade") or "0") == "1",
            credits_held=int(data.get("credits_held") or 0),
            created_at=_parse_ts(data.get("created_at")) or utcnow(),
            updated_at=_parse_ts(data.get("updated_at")) or utcnow(),
        )


class SettlementRecord(BaseModel):
    """Proof that billing happened for a job. Written once, never changed."""

    job_id: str
    user_id: str
    kind: Literal["debit", "free", "refund"]
    credits_applied: int
    created_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "SettlementRecord":
        return cls.model_validate_json(raw)


class Balance(BaseModel):
    user_id: str
    credits: int = Field(default=0, ge=0)
    free_tier_used: bool = False

    @property
    def free_tier_available(self) -> bool:
        return not self.free_tier_used


class Eligibility(BaseModel):
    eligible: bool
    tier: Literal["free", "paid"]
    cost: int = 0
    credits_available: int = 0
    free_tier_available: bool = False
    reason: Optional[str] = None


class SubmittedJob(BaseModel):
    job_id: str
    tier: Literal["free", "paid"]
    cost: int = 0
    reused: bool = False


class ReapDetail(BaseModel):
    job_id: str
    user_id: str
    input_name: str = ""
    action: Literal["deleted", "credit_restored", "skipped", "error"]
    error: Optional[str] = None


class ReapReport(BaseModel):
    success: bool = True
    processed: int = 0
    dry_run: bool = False
    errors: List[str] = Field(default_factory=list)
    details: List[ReapDetail] = Field(default_factory=list)
