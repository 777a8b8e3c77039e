"""
监控 API 路由
"""
from fastapi import APIRouter
from datetime import datetime, timezone
import logging

from ..models import HealthCheckResponse
from ..dependencies import get_app_state
from ... import __version__


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check() -> HealthCheckResponse:
    """健康检查"""
    state = get_app_state()
    checks = {}

    # 检查数据库连接
    store = state.get("session_store")
    if store is None:
        checks["database"] = False
    else:
        try:
            await store.list_by_workspace("__health__", limit=1)
            checks["database"] = True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            checks["database"] = False

    workspaces = state.get("workspaces")
    checks["workspaces"] = len(await workspaces.list()) if workspaces is not None else 0
    checks["engine"] = state.get("engine") is not None
    checks["ai"] = bool(state.get("engine") and state["engine"].text_generator is not None)

    healthy = checks["database"] and checks["engine"]
    return HealthCheckResponse(
        status="healthy" if healthy else "unhealthy",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        checks=checks
    )
