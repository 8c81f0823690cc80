# User value: This file lets users start an analysis and wait for its single final outcome.
import logging

from fastapi import APIRouter, Depends, Query

from auth import current_user
from config import OUTCOME_WAIT_MAX_SEC
from routes.deps import get_coordinator
from schemas.records import InputDescriptor
from schemas.requests import SubmitJobRequest
from schemas.responses import JobCreatedResponse, JobStatusResponse, OutcomeResponse
from services.coordinator import AnalysisCoordinator
from services.lifecycle_observer import LifecycleObserver
from utils.metrics import incr
from utils.status_machine import classify_terminal

logger = logging.getLogger("api.jobs")

router = APIRouter(prefix="/jobs", tags=["jobs"])


def outcome_from_observer(job_id: str, observer: LifecycleObserver) -> OutcomeResponse:
    if not observer.resolved:
        return OutcomeResponse(job_id=job_id, resolved=False, status="processing")

    record = observer.record
    if record is None:
        outcome = "reclaimed"
    else:
        outcome = classify_terminal(record.status, record.result)

    body = OutcomeResponse(
        job_id=job_id,
        resolved=True,
        outcome=outcome,
        status=record.status if record else None,
        result=record.result if record and observer.error is None else None,
    )
    if observer.error is not None:
        body.error_code = observer.error.error_code
        body.error_message = observer.error.error_message
    if observer.settlement is not None:
        body.settlement_outcome = observer.settlement.outcome.value
        settled = observer.settlement.record
        body.credits_applied = settled.credits_applied if settled is not None else observer.settlement.credits_applied
        body.balance_after = observer.settlement.balance_after
    return body


@router.post("", response_model=JobCreatedResponse, status_code=202)
async def create_job(
    payload: SubmitJobRequest,
    user_id: str = Depends(current_user),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    descriptor = InputDescriptor(
        name=payload.input_name,
        size_bytes=payload.size_bytes,
        reference=payload.reference,
        job_description=payload.job_description,
    )
    submitted = await coordinator.submit_job(descriptor, user_id)
    return JobCreatedResponse(
        job_id=submitted.job_id,
        tier=submitted.tier,
        cost=submitted.cost,
        reused=submitted.reused,
    )


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    user_id: str = Depends(current_user),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    record = await coordinator.get_job(job_id, user_id=user_id)
    return JobStatusResponse.from_record(record)


# User value: a single long-poll returns the final result and the credit effect together.
@router.get("/{job_id}/outcome", response_model=OutcomeResponse)
async def wait_for_outcome(
    job_id: str,
    timeout_sec: float = Query(default=25.0, gt=0),
    user_id: str = Depends(current_user),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    await coordinator.get_job(job_id, user_id=user_id)
    wait_sec = min(timeout_sec, OUTCOME_WAIT_MAX_SEC)

    observer = await coordinator.observe(job_id)
    try:
        resolved = await observer.wait(wait_sec)
    finally:
        await observer.dispose()

    incr("job_outcome_requests_total", resolved=str(resolved).lower())
    if not resolved:
        logger.info("job_outcome_wait_timeout job_id=%s wait_sec=%s", job_id, wait_sec)
        return OutcomeResponse(job_id=job_id, resolved=False, status="processing")
    return outcome_from_observer(job_id, observer)
