# User value: This file defines the one job/credit store contract every backend must honour.
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from schemas.records import Balance, JobRecord, SettlementRecord
from services.conditional_update import ConditionalOp, ConditionalResult, ConditionalUpdater
from services.notification_bus import NotificationBus

logger = logging.getLogger("api.job_store")


class JobStore(ABC):
    """Durable job table, balances and the append-only settlement ledger.

    Balance mutations go exclusively through ``conditional_settle``; the
    updater strategy behind it is fixed when the store is built.
    """

    backend = "abstract"

    def __init__(self, *, updater: ConditionalUpdater, bus: Optional[NotificationBus] = None):
        self.updater = updater
        self.bus = bus

    @abstractmethod
    async def create_job(self, record: JobRecord) -> str:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def list_stuck_jobs(self, older_than: datetime) -> List[JobRecord]:
        ...

    @abstractmethod
    async def list_user_jobs(self, user_id: str, status: Optional[str] = None) -> List[JobRecord]:
        ...

    @abstractmethod
    async def _delete(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def _write_outcome(
        self, job_id: str, *, status: str, result: Optional[dict], error: Optional[str]
    ) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def get_settlement(self, job_id: str) -> Optional[SettlementRecord]:
        ...

    @abstractmethod
    async def get_balance(self, user_id: str) -> Optional[Balance]:
        ...

    @abstractmethod
    async def set_balance(self, user_id: str, credits: int, free_tier_used: bool = False) -> Balance:
        ...

    @abstractmethod
    async def ledger_history(self, user_id: str, limit: int = 50) -> List[SettlementRecord]:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    async def delete_job(self, job_id: str) -> bool:
        deleted = await self._delete(job_id)
        if deleted:
            await self._publish(job_id, None)
        return deleted

    # User value: the processor's write path; finished jobs can never be rewritten.
    async def record_outcome(
        self, job_id: str, *, status: str, result: Optional[dict] = None, error: Optional[str] = None
    ) -> Optional[JobRecord]:
        record = await self._write_outcome(job_id, status=status, result=result, error=error)
        if record is not None:
            await self._publish(job_id, record)
        return record

    async def conditional_settle(self, op: ConditionalOp) -> ConditionalResult:
        result = await self.updater.apply(op)
        if op.delete_job and result.verdict.mutated:
            await self._publish(op.job_id, None)
        return result

    async def _publish(self, job_id: str, record: Optional[JobRecord]) -> None:
        if self.bus is None:
            return
        await self.bus.publish(job_id, record)
