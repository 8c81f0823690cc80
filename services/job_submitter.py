# User value: This file starts an analysis without touching the user's credits until a result exists.
import logging
import time
from typing import Optional

from schemas.job_contract import JOB_STATUS_PROCESSING, TIER_FREE
from schemas.records import Eligibility, InputDescriptor, JobRecord, SubmittedJob
from services.errors import EligibilityDenied
from services.feature_flags import is_reuse_pending_job_enabled
from services.job_store import JobStore
from services.processor_client import ProcessorClient
from utils.metrics import incr, observe_ms
from utils.stage_logging import log_stage

logger = logging.getLogger("api.submitter")


class JobSubmitter:
    def __init__(self, store: JobStore, processor: ProcessorClient):
        self._store = store
        self._processor = processor

    async def _find_pending(self, user_id: str, input_name: str) -> Optional[JobRecord]:
        for job in await self._store.list_user_jobs(user_id, status=JOB_STATUS_PROCESSING):
            if job.input.name == input_name:
                return job
        return None

    # User value: double-clicking "analyse" does not start (or bill) the same document twice.
    async def submit(self, input: InputDescriptor, user_id: str, eligibility: Eligibility) -> SubmittedJob:
        if not eligibility.eligible:
            raise EligibilityDenied(
                "Analysis not available",
                reason=eligibility.reason or "",
                credits_required=eligibility.cost,
                credits_available=eligibility.credits_available,
            )

        if is_reuse_pending_job_enabled():
            pending = await self._find_pending(user_id, input.name)
            if pending is not None:
                incr("jobs_submitted_total", tier=pending.tier, reused="true")
                log_stage(
                    job_id=pending.job_id,
                    stage="SUBMIT",
                    event="REUSED",
                    user=user_id,
                    tier=pending.tier,
                    input_name=input.name,
                )
                return SubmittedJob(job_id=pending.job_id, tier=pending.tier, cost=pending.cost, reused=True)

        record = JobRecord(
            user_id=user_id,
            input=input,
            tier=eligibility.tier,
            status=JOB_STATUS_PROCESSING,
            can_upgrade=eligibility.tier == TIER_FREE,
        )
        job_id = await self._store.create_job(record)
        log_stage(job_id=job_id, stage="SUBMIT", event="CREATED", user=user_id, tier=record.tier, input_name=input.name)

        t0 = time.time()
        try:
            await self._processor.submit(input, job_id, user_id, record.tier)
        except Exception as exc:
            # Job stays processing; the reaper reclaims it after the deadline.
            log_stage(
                job_id=job_id,
                stage="DISPATCH",
                event="FAILED",
                user=user_id,
                tier=record.tier,
                error=str(exc),
            )
            incr("jobs_submitted_total", tier=record.tier, reused="false", dispatched="false")
            raise

        observe_ms("job_submit_ms", (time.time() - t0) * 1000, tier=record.tier)
        incr("jobs_submitted_total", tier=record.tier, reused="false", dispatched="true")
        log_stage(job_id=job_id, stage="DISPATCH", event="COMPLETED", user=user_id, tier=record.tier)
        return SubmittedJob(job_id=job_id, tier=record.tier, cost=eligibility.cost, reused=False)
