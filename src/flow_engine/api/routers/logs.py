"""
流程日志 API 路由
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional
import logging

from ..models import FlowLogResponse
from ..dependencies import get_flow_logs
from ...storage.repository import FlowLogRepository


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{workspace_id}", response_model=List[FlowLogResponse])
async def list_logs(
    workspace_id: str,
    log_type: Optional[str] = Query(None, description="日志类型（webhook / api-call）"),
    node_id: Optional[str] = Query(None, description="只返回该节点的日志"),
    limit: int = Query(50, ge=1, le=500, description="最大数量"),
    flow_logs: FlowLogRepository = Depends(get_flow_logs)
) -> List[FlowLogResponse]:
    """查询工作区的流程日志（最新的在前）"""
    logs = await flow_logs.list(workspace_id, log_type=log_type, limit=limit)
    if node_id:
        logs = [log for log in logs if log.details.get("nodeId") == node_id]
    return [FlowLogResponse.from_log(log) for log in logs]
