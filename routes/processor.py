# User value: This file is where the processor reports results, so watching users hear about them right away.
from fastapi import APIRouter, Depends

from auth import verify_service_token
from routes.deps import get_coordinator
from schemas.requests import ProcessorResultRequest
from schemas.responses import JobStatusResponse
from services.coordinator import AnalysisCoordinator
from utils.metrics import incr
from utils.stage_logging import log_stage

router = APIRouter(prefix="/processor", tags=["processor"])


@router.post("/jobs/{job_id}/result", response_model=JobStatusResponse)
async def report_result(
    job_id: str,
    payload: ProcessorResultRequest,
    _token: str = Depends(verify_service_token),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    record = await coordinator.record_outcome(
        job_id,
        status=payload.status,
        result=payload.result,
        error=payload.error,
    )
    incr("processor_results_total", status=payload.status)
    log_stage(
        job_id=job_id,
        stage="PROCESSOR_RESULT",
        event="COMPLETED" if payload.status == "completed" else "FAILED",
        user=record.user_id,
        tier=record.tier,
        source="processor",
    )
    return JobStatusResponse.from_record(record)
