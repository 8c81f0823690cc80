# User value: This file gives support a way to clear stuck analyses and top up credits without a deploy.
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from auth import verify_service_token
from routes.deps import get_coordinator
from schemas.records import ReapReport
from schemas.requests import SetBalanceRequest
from schemas.responses import BalanceResponse
from services.coordinator import AnalysisCoordinator
from utils.request_id import normalize_user_id

logger = logging.getLogger("api.admin")

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/reap", response_model=ReapReport)
async def reap_stuck_jobs(
    dry_run: bool = Query(default=False),
    _token: str = Depends(verify_service_token),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    report = await coordinator.sweep(dry_run=dry_run)
    logger.info(
        "admin_reap dry_run=%s processed=%s errors=%s",
        dry_run,
        report.processed,
        len(report.errors),
    )
    return report


@router.post("/reap/{job_id}", response_model=ReapReport)
async def reap_one_job(
    job_id: str,
    _token: str = Depends(verify_service_token),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    return await coordinator.force_reap(job_id)


# Stands in for the external purchase flow.
@router.put("/balances/{user_id}", response_model=BalanceResponse)
async def set_balance(
    user_id: str,
    payload: SetBalanceRequest,
    _token: str = Depends(verify_service_token),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    normalized = normalize_user_id(user_id)
    if not normalized:
        raise HTTPException(
            status_code=400,
            detail={"error_code": "INVALID_USER_ID", "error_message": "user_id is not valid"},
        )
    balance = await coordinator.store.set_balance(normalized, payload.credits, payload.free_tier_used)
    logger.info("admin_balance_set user=%s credits=%s free_tier_used=%s", normalized, balance.credits, balance.free_tier_used)
    return BalanceResponse(**balance.model_dump())
