import logging

from fastapi import APIRouter, Depends

from routes.deps import get_coordinator
from services.coordinator import AnalysisCoordinator
from utils.metrics import snapshot

logger = logging.getLogger("api.health")

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(coordinator: AnalysisCoordinator = Depends(get_coordinator)):
    try:
        store_ok = await coordinator.store.ping()
    except Exception as exc:
        logger.warning("health_store_ping_failed error=%s", exc)
        store_ok = False
    return {
        "status": "OK" if store_ok else "DEGRADED",
        "store": coordinator.store.backend,
        "store_connected": store_ok,
        "updater": coordinator.store.updater.name,
        "reaper_running": coordinator.reaper.running,
        "push_enabled": coordinator.push_enabled,
        "metrics": snapshot(),
    }
