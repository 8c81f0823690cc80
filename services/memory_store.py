"""In-process job store and notification bus.

Used for local development (``STORE_BACKEND=memory``) and unit tests. No
external dependencies (Redis) needed; atomicity comes from a single asyncio
lock shared by every conditional update.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from schemas.job_contract import JOB_STATUS_PROCESSING
from schemas.records import Balance, JobRecord, SettlementRecord, utcnow
from services.conditional_update import (
    ConditionalOp,
    ConditionalResult,
    ConditionalUpdater,
    ConditionalVerdict,
    evaluate,
)
from services.errors import JobNotFound, StateConflict
from services.job_store import JobStore
from services.notification_bus import (
    CHANNEL_SUBSCRIBED,
    NotificationBus,
    OnChange,
    OnState,
    Subscription,
    invoke_callback,
)
from utils.status_machine import check_transition, is_terminal

logger = logging.getLogger("api.memory_store")


class _MemoryState:
    def __init__(self):
        self.jobs: Dict[str, JobRecord] = {}
        self.settlements: Dict[str, SettlementRecord] = {}
        self.balances: Dict[str, Balance] = {}
        self.history: Dict[str, List[SettlementRecord]] = {}
        self.lock = asyncio.Lock()


class InMemoryUpdater(ConditionalUpdater):
    name = "memory_lock"

    def __init__(self, state: _MemoryState):
        self._state = state

    async def apply(self, op: ConditionalOp) -> ConditionalResult:
        async with self._state.lock:
            job = self._state.jobs.get(op.job_id)
            balance = self._state.balances.get(op.user_id)
            settled = op.job_id in self._state.settlements
            verdict = evaluate(op, job=job, balance=balance, settled=settled)
            status = job.status if job is not None else None

            if verdict == ConditionalVerdict.DELETED_ONLY:
                self._state.jobs.pop(op.job_id, None)
                return ConditionalResult(verdict=verdict, job_status=status)

            if verdict != ConditionalVerdict.APPLIED:
                return ConditionalResult(
                    verdict=verdict,
                    job_status=status,
                    settlement=self._state.settlements.get(op.job_id),
                    balance_after=balance.credits if balance else None,
                )

            if balance is not None and (op.balance_delta or op.mark_free_tier_used):
                balance = balance.model_copy(
                    update={
                        "credits": balance.credits + op.balance_delta,
                        "free_tier_used": balance.free_tier_used or op.mark_free_tier_used,
                    }
                )
                self._state.balances[op.user_id] = balance
            if op.delete_job:
                self._state.jobs.pop(op.job_id, None)
            if op.settlement is not None:
                self._state.settlements[op.job_id] = op.settlement
                self._state.history.setdefault(op.user_id, []).append(op.settlement)

            return ConditionalResult(
                verdict=verdict,
                job_status=status,
                settlement=op.settlement,
                balance_after=balance.credits if balance else None,
            )


class InMemoryNotificationBus(NotificationBus):
    def __init__(self, *, auto_confirm: bool = True):
        self.auto_confirm = auto_confirm
        self._subs: Dict[str, List[Subscription]] = {}

    def subscriber_count(self, job_id: str) -> int:
        return sum(1 for s in self._subs.get(job_id, []) if s.active)

    async def subscribe(self, job_id: str, on_change: OnChange, on_state: Optional[OnState] = None) -> Subscription:
        sub = Subscription(job_id=job_id, on_change=on_change, on_state=on_state)
        self._subs.setdefault(job_id, []).append(sub)
        if self.auto_confirm:
            await invoke_callback(on_state, CHANNEL_SUBSCRIBED, None)
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        subs = self._subs.get(subscription.job_id, [])
        self._subs[subscription.job_id] = [s for s in subs if s.handle_id != subscription.handle_id]

    async def publish(self, job_id: str, record: Optional[JobRecord]) -> int:
        delivered = 0
        for sub in list(self._subs.get(job_id, [])):
            if not sub.active:
                continue
            payload = record.model_copy(deep=True) if record is not None else None
            try:
                await invoke_callback(sub.on_change, payload)
            except Exception:
                logger.exception("notification_subscriber_failed job_id=%s", job_id)
            delivered += 1
        return delivered


class InMemoryJobStore(JobStore):
    backend = "memory"

    def __init__(self, *, bus: Optional[NotificationBus] = None):
        self._state = _MemoryState()
        super().__init__(updater=InMemoryUpdater(self._state), bus=bus)

    async def create_job(self, record: JobRecord) -> str:
        await asyncio.sleep(0)
        if record.job_id in self._state.jobs:
            raise StateConflict(f"Job {record.job_id} already exists", job_id=record.job_id)
        self._state.jobs[record.job_id] = record.model_copy(deep=True)
        return record.job_id

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        await asyncio.sleep(0)
        job = self._state.jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def list_stuck_jobs(self, older_than: datetime) -> List[JobRecord]:
        await asyncio.sleep(0)
        return [
            job.model_copy(deep=True)
            for job in sorted(self._state.jobs.values(), key=lambda j: j.created_at)
            if job.status == JOB_STATUS_PROCESSING and job.created_at < older_than
        ]

    async def list_user_jobs(self, user_id: str, status: Optional[str] = None) -> List[JobRecord]:
        await asyncio.sleep(0)
        jobs = [
            job.model_copy(deep=True)
            for job in self._state.jobs.values()
            if job.user_id == user_id and (status is None or job.status == status)
        ]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def _delete(self, job_id: str) -> bool:
        await asyncio.sleep(0)
        return self._state.jobs.pop(job_id, None) is not None

    async def _write_outcome(
        self, job_id: str, *, status: str, result: Optional[dict], error: Optional[str]
    ) -> Optional[JobRecord]:
        await asyncio.sleep(0)
        async with self._state.lock:
            job = self._state.jobs.get(job_id)
            if job is None:
                raise JobNotFound("Job not found", job_id=job_id)
            if not check_transition(job_id=job_id, current=job.status, target=status, context="record_outcome"):
                raise StateConflict(f"Cannot move job from {job.status} to {status}", job_id=job_id)
            if is_terminal(job.status):
                return job.model_copy(deep=True)
            now = utcnow()
            if now <= job.updated_at:
                now = job.updated_at + timedelta(microseconds=1)
            updated = job.model_copy(update={"status": status, "result": result, "error": error, "updated_at": now})
            self._state.jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def get_settlement(self, job_id: str) -> Optional[SettlementRecord]:
        await asyncio.sleep(0)
        return self._state.settlements.get(job_id)

    async def get_balance(self, user_id: str) -> Optional[Balance]:
        await asyncio.sleep(0)
        balance = self._state.balances.get(user_id)
        return balance.model_copy() if balance is not None else None

    async def set_balance(self, user_id: str, credits: int, free_tier_used: bool = False) -> Balance:
        async with self._state.lock:
            balance = Balance(user_id=user_id, credits=credits, free_tier_used=free_tier_used)
            self._state.balances[user_id] = balance
            return balance.model_copy()

    async def ledger_history(self, user_id: str, limit: int = 50) -> List[SettlementRecord]:
        await asyncio.sleep(0)
        return list(reversed(self._state.history.get(user_id, [])))[:limit]
