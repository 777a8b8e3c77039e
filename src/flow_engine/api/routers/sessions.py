"""
会话管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
import logging

from ..models import SessionResponse, SessionListResponse, SuccessResponse
from ..dependencies import get_session_store
from ...storage.repository import SessionStore


logger = logging.getLogger(__name__)
router = APIRouter()


def _not_found(session_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": "not_found",
            "message": f"Session '{session_id}' not found"
        }
    )


@router.get("/", response_model=SessionListResponse)
async def list_sessions(
    workspace_id: str = Query(..., description="工作区ID"),
    limit: int = Query(100, ge=1, le=1000, description="最大数量"),
    store: SessionStore = Depends(get_session_store)
) -> SessionListResponse:
    """列出工作区的活跃会话"""
    sessions = await store.list_by_workspace(workspace_id, limit)
    items = [SessionResponse.from_session(s) for s in sessions]
    return SessionListResponse(items=items, total=len(items))


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store)
) -> SessionResponse:
    """获取会话详情"""
    session = await store.load(session_id)
    if session is None:
        raise _not_found(session_id)
    return SessionResponse.from_session(session)


@router.delete("/{session_id}", response_model=SuccessResponse)
async def end_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store)
) -> SuccessResponse:
    """结束会话"""
    async with store.lock(session_id):
        deleted = await store.delete(session_id)
    if not deleted:
        raise _not_found(session_id)
    logger.info(f"Session {session_id} ended via API")
    return SuccessResponse(message=f"Session '{session_id}' ended")
