"""
FastAPI 依赖注入
"""
from fastapi import HTTPException, status
from typing import Dict, Any
import logging

from ..core import SessionManager, FlowParser
from ..storage.repository import SessionStore, WorkspaceRepository, FlowLogRepository


logger = logging.getLogger(__name__)


# 全局实例（由应用生命周期填充）
app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    """获取应用状态"""
    return app_state


def _require(key: str, label: str) -> Any:
    component = get_app_state().get(key)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": f"{label} not initialized"
            }
        )
    return component


def get_session_manager() -> SessionManager:
    """获取会话管理器"""
    return _require("session_manager", "Session manager")


def get_session_store() -> SessionStore:
    """获取会话存储"""
    return _require("session_store", "Session store")


def get_workspaces() -> WorkspaceRepository:
    """获取工作区仓库"""
    return _require("workspaces", "Workspace repository")


def get_flow_logs() -> FlowLogRepository:
    """获取流程日志仓库"""
    return _require("flow_logs", "Flow log repository")


def get_parser() -> FlowParser:
    """获取流程解析器（未初始化时创建新的）"""
    return get_app_state().get("parser") or FlowParser()
