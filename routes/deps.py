from fastapi import HTTPException, Request

from services.coordinator import AnalysisCoordinator


def get_coordinator(request: Request) -> AnalysisCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=503,
            detail={"error_code": "SERVICE_STARTING", "error_message": "Coordinator is not ready"},
        )
    return coordinator
