# User value: This file lets users see what their next analysis will cost and where their credits went.
from fastapi import APIRouter, Depends, Query

from auth import current_user
from routes.deps import get_coordinator
from schemas.responses import EligibilityResponse, SettlementHistoryResponse, SettlementResponse
from services.coordinator import AnalysisCoordinator

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/eligibility", response_model=EligibilityResponse)
async def get_eligibility(
    user_id: str = Depends(current_user),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    decision = await coordinator.check_eligibility(user_id)
    return EligibilityResponse(**decision.model_dump())


@router.get("/history", response_model=SettlementHistoryResponse)
async def get_history(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(current_user),
    coordinator: AnalysisCoordinator = Depends(get_coordinator),
):
    records = await coordinator.ledger.history(user_id, limit=limit)
    return SettlementHistoryResponse(
        user_id=user_id,
        items=[SettlementResponse.from_record(r) for r in records],
    )
