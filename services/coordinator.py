"""Composition root for the analysis lifecycle.

``AnalysisCoordinator`` wires one store, bus, ledger, submitter and reaper
together and is the only object the HTTP layer talks to.
"""

import logging
from typing import Optional

from config import (
    KEY_PREFIX,
    MIN_FETCH_GAP_SEC,
    POLL_INTERVAL_SEC,
    PROCESSOR_WEBHOOK_URL,
    PUSH_CONNECT_TIMEOUT_SEC,
    REAPER_DEADLINE_SEC,
    REAPER_INTERVAL_SEC,
    REDIS_URL,
    STORE_BACKEND,
)
from schemas.job_contract import PAID_TIER_COST
from schemas.records import Eligibility, InputDescriptor, JobRecord, ReapReport, SubmittedJob
from services.eligibility import EligibilityGate
from services.errors import JobNotFound
from services.feature_flags import is_atomic_script_enabled, is_push_enabled, is_reaper_enabled
from services.job_store import JobStore
from services.job_submitter import JobSubmitter
from services.lifecycle_observer import LifecycleObserver, OnComplete, OnError, OnStatusChange
from services.memory_store import InMemoryJobStore, InMemoryNotificationBus
from services.notification_bus import NotificationBus, RedisNotificationBus
from services.processor_client import ProcessorClient
from services.redis_client import build_redis_client, log_connection_diagnostics
from services.redis_store import RedisJobStore
from services.settlement_ledger import SettlementLedger, SettlementResult
from services.timeout_reaper import TimeoutReaper
from utils.status_machine import OUTCOME_COMPLETED, classify_terminal

logger = logging.getLogger("api.coordinator")


class AnalysisCoordinator:
    def __init__(
        self,
        store: JobStore,
        *,
        processor: Optional[ProcessorClient] = None,
        paid_cost: int = PAID_TIER_COST,
        reaper_enabled: bool = True,
        push_enabled: bool = True,
        reaper_deadline_sec: float = REAPER_DEADLINE_SEC,
        reaper_interval_sec: float = REAPER_INTERVAL_SEC,
        poll_interval_sec: float = POLL_INTERVAL_SEC,
        min_fetch_gap_sec: float = MIN_FETCH_GAP_SEC,
        push_connect_timeout_sec: float = PUSH_CONNECT_TIMEOUT_SEC,
    ):
        self.store = store
        self.processor = processor or ProcessorClient()
        self.gate = EligibilityGate(store, paid_cost)
        self.ledger = SettlementLedger(store, paid_cost)
        self.submitter = JobSubmitter(store, self.processor)
        self.reaper = TimeoutReaper(
            store,
            self.ledger,
            deadline_sec=reaper_deadline_sec,
            interval_sec=reaper_interval_sec,
        )
        self.reaper_enabled = reaper_enabled
        self.push_enabled = push_enabled
        self.poll_interval_sec = poll_interval_sec
        self.min_fetch_gap_sec = min_fetch_gap_sec
        self.push_connect_timeout_sec = push_connect_timeout_sec

    @property
    def bus(self) -> Optional[NotificationBus]:
        return self.store.bus

    async def start(self) -> None:
        if self.reaper_enabled:
            await self.reaper.start()
        else:
            logger.info("reaper_disabled FEATURE_REAPER_ENABLED=false")
        logger.info(
            "coordinator_started backend=%s updater=%s push=%s",
            self.store.backend,
            self.store.updater.name,
            self.push_enabled,
        )

    async def stop(self) -> None:
        await self.reaper.stop()
        await self.processor.close()
        await self.store.close()
        logger.info("coordinator_stopped")

    async def check_eligibility(self, user_id: str) -> Eligibility:
        return await self.gate.check_eligibility(user_id)

    # User value: one call checks credits and starts the analysis; nothing is charged yet.
    async def submit_job(self, input: InputDescriptor, user_id: str) -> SubmittedJob:
        eligibility = await self.gate.require_eligibility(user_id)
        return await self.submitter.submit(input, user_id, eligibility)

    async def get_job(self, job_id: str, user_id: Optional[str] = None) -> JobRecord:
        job = await self.store.get_job(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFound("Job not found", job_id=job_id)
        return job

    async def settle(self, record: JobRecord) -> SettlementResult:
        return await self.ledger.settle_on_completion(record.job_id, record.user_id, record.tier)

    async def observe(
        self,
        job_id: str,
        on_complete: Optional[OnComplete] = None,
        on_error: Optional[OnError] = None,
        on_status_change: Optional[OnStatusChange] = None,
    ) -> LifecycleObserver:
        observer = LifecycleObserver(
            job_id,
            self.store,
            on_complete=on_complete,
            on_error=on_error,
            on_status_change=on_status_change,
            settle=self.settle,
            bus=self.bus,
            push_enabled=self.push_enabled,
            poll_interval_sec=self.poll_interval_sec,
            min_fetch_gap_sec=self.min_fetch_gap_sec,
            push_connect_timeout_sec=self.push_connect_timeout_sec,
        )
        return await observer.start()

    async def record_outcome(
        self, job_id: str, *, status: str, result: Optional[dict] = None, error: Optional[str] = None
    ) -> JobRecord:
        record = await self.store.record_outcome(job_id, status=status, result=result, error=error)
        if record is None:
            raise JobNotFound("Job not found", job_id=job_id)
        # Bill on the write path; an observer settling the same job gets ALREADY_SETTLED.
        if classify_terminal(record.status, record.result) == OUTCOME_COMPLETED:
            await self.settle(record)
        return record

    async def sweep(self, dry_run: bool = False) -> ReapReport:
        return await self.reaper.sweep(dry_run=dry_run)

    async def force_reap(self, job_id: str) -> ReapReport:
        return await self.reaper.force_reap(job_id)


async def build_store(backend: str = STORE_BACKEND, redis_url: str = REDIS_URL) -> JobStore:
    backend = (backend or "redis").strip().lower()
    if backend == "memory":
        logger.info("store_backend_selected backend=memory")
        return InMemoryJobStore(bus=InMemoryNotificationBus())

    client = build_redis_client(redis_url)
    await log_connection_diagnostics(client)
    bus = RedisNotificationBus(client, channel_prefix=f"{KEY_PREFIX}:job_updates")
    store = await RedisJobStore.create(
        client,
        prefix=KEY_PREFIX,
        bus=bus,
        prefer_script=is_atomic_script_enabled(),
    )
    logger.info("store_backend_selected backend=redis updater=%s", store.updater.name)
    return store


async def build_coordinator(store: Optional[JobStore] = None) -> AnalysisCoordinator:
    if store is None:
        store = await build_store()
    return AnalysisCoordinator(
        store,
        processor=ProcessorClient(PROCESSOR_WEBHOOK_URL),
        reaper_enabled=is_reaper_enabled(),
        push_enabled=is_push_enabled(),
    )
