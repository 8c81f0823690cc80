"""Background reclamation of jobs the processor never finished.

A job still ``processing`` past the deadline is deleted and, for paid jobs,
its billing is closed with a refund record in the same conditional step.
Observers watching a reaped job see the deletion and resolve as reclaimed.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from config import REAPER_DEADLINE_SEC, REAPER_INTERVAL_SEC
from schemas.job_contract import (
    JOB_STATUS_PROCESSING,
    REAP_ACTION_DELETED,
    REAP_ACTION_ERROR,
    REAP_ACTION_REFUNDED,
    REAP_ACTION_SKIPPED,
)
from schemas.records import JobRecord, ReapDetail, ReapReport, utcnow
from services.conditional_update import ConditionalVerdict
from services.job_store import JobStore
from services.settlement_ledger import SettlementLedger
from utils.metrics import incr, observe_ms
from utils.stage_logging import log_stage

logger = logging.getLogger("api.reaper")


class TimeoutReaper:
    def __init__(
        self,
        store: JobStore,
        ledger: SettlementLedger,
        *,
        deadline_sec: float = REAPER_DEADLINE_SEC,
        interval_sec: float = REAPER_INTERVAL_SEC,
    ):
        self._store = store
        self._ledger = ledger
        self.deadline_sec = deadline_sec
        self.interval_sec = interval_sec
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("reaper_started deadline_sec=%s interval_sec=%s", self.deadline_sec, self.interval_sec)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reaper_stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                report = await self.sweep()
                if report.processed or report.errors:
                    logger.info("reaper_sweep processed=%s errors=%s", report.processed, len(report.errors))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("reaper_sweep_failed")
            await asyncio.sleep(self.interval_sec)

    def deadline_for(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(seconds=self.deadline_sec)

    # User value: a job stuck past the deadline is cleared so the user can retry without losing credits.
    async def sweep(self, now: Optional[datetime] = None, dry_run: bool = False) -> ReapReport:
        report = ReapReport(dry_run=dry_run)
        t0 = time.time()
        try:
            stuck = await self._store.list_stuck_jobs(self.deadline_for(now))
        except Exception as exc:
            logger.error("reaper_list_failed error=%s", exc)
            report.success = False
            report.errors.append(f"Failed to list stuck jobs: {exc}")
            return report

        if not stuck:
            return report

        logger.info("reaper_found_stuck count=%s dry_run=%s", len(stuck), dry_run)
        for job in stuck:
            if dry_run:
                report.details.append(
                    ReapDetail(job_id=job.job_id, user_id=job.user_id, input_name=job.input.name, action=REAP_ACTION_DELETED)
                )
                report.processed += 1
                continue
            await self._reap_one(job, report)

        observe_ms("reaper_sweep_ms", (time.time() - t0) * 1000)
        return report

    async def _reap_one(self, job: JobRecord, report: ReapReport) -> None:
        detail = {"job_id": job.job_id, "user_id": job.user_id, "input_name": job.input.name}
        try:
            op = self._ledger.reap_op(job, refund_amount=job.credits_held)
            result = await self._store.conditional_settle(op)
        except Exception as exc:
            message = f"Job {job.job_id}: {exc}"
            logger.error("reaper_job_failed job_id=%s error=%s", job.job_id, exc)
            report.success = False
            report.errors.append(message)
            report.details.append(ReapDetail(action=REAP_ACTION_ERROR, error=str(exc), **detail))
            incr("reaper_jobs_total", action=REAP_ACTION_ERROR)
            return

        verdict = result.verdict
        if verdict in (ConditionalVerdict.STATUS_MISMATCH, ConditionalVerdict.JOB_MISSING):
            # Finished or removed between listing and the conditional step.
            report.details.append(ReapDetail(action=REAP_ACTION_SKIPPED, **detail))
            incr("reaper_jobs_total", action=REAP_ACTION_SKIPPED)
            log_stage(job_id=job.job_id, stage="REAP", event="SKIPPED", user=job.user_id, reason=verdict.value)
            return

        if not verdict.mutated:
            message = f"Job {job.job_id}: reap rejected ({verdict.value})"
            logger.error("reaper_job_rejected job_id=%s verdict=%s", job.job_id, verdict.value)
            report.success = False
            report.errors.append(message)
            report.details.append(ReapDetail(action=REAP_ACTION_ERROR, error=verdict.value, **detail))
            incr("reaper_jobs_total", action=REAP_ACTION_ERROR)
            return

        report.processed += 1
        report.details.append(ReapDetail(action=REAP_ACTION_DELETED, **detail))
        incr("reaper_jobs_total", action=REAP_ACTION_DELETED)
        refunded = (
            verdict == ConditionalVerdict.APPLIED
            and op.settlement is not None
            and op.settlement.credits_applied > 0
        )
        if refunded:
            report.details.append(ReapDetail(action=REAP_ACTION_REFUNDED, **detail))
            incr("reaper_jobs_total", action=REAP_ACTION_REFUNDED)
        log_stage(
            job_id=job.job_id,
            stage="REAP",
            event="COMPLETED",
            user=job.user_id,
            tier=job.tier,
            refunded=refunded,
            credits_applied=op.settlement.credits_applied if refunded else 0,
            age_sec=int((utcnow() - job.created_at).total_seconds()),
        )

    # User value: support can unstick one analysis immediately instead of waiting for the sweep.
    async def force_reap(self, job_id: str) -> ReapReport:
        report = ReapReport()
        try:
            job = await self._store.get_job(job_id)
        except Exception as exc:
            report.success = False
            report.errors.append(f"Failed to load job {job_id}: {exc}")
            return report

        if job is None:
            report.success = False
            report.errors.append(f"Job {job_id} not found")
            return report
        if job.status != JOB_STATUS_PROCESSING:
            report.success = False
            report.errors.append(f"Job {job_id} is not processing (status: {job.status})")
            return report

        await self._reap_one(job, report)
        return report

    async def is_timed_out(self, job_id: str, now: Optional[datetime] = None) -> bool:
        job = await self._store.get_job(job_id)
        if job is None or job.status != JOB_STATUS_PROCESSING:
            return False
        return job.created_at < self.deadline_for(now)

