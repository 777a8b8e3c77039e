"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..models.session import FlowSession
from ..models.workspace import FlowLog


class ErrorResponse(BaseModel):
    """错误响应"""
    error: str = Field(..., description="错误代码")
    message: str = Field(..., description="错误信息")
    details: Optional[Dict[str, Any]] = Field(None, description="错误详情")


class SuccessResponse(BaseModel):
    """成功响应"""
    success: bool = Field(True, description="是否成功")
    message: str = Field(..., description="响应消息")


# Webhook 相关模型

class WebhookResponse(BaseModel):
    """webhook 处理结果"""
    status: str = Field(..., description="处理状态")
    message: str = Field(..., description="处理说明")
    session_id: Optional[str] = Field(None, description="会话ID")
    workspace_id: Optional[str] = Field(None, description="执行的工作区ID")
    run_status: Optional[str] = Field(None, description="本次运行的结束状态")


class WebhookInfoResponse(BaseModel):
    """webhook 地址信息"""
    workspace_id: str = Field(..., description="工作区ID")
    message: str = Field(..., description="说明")


# 会话相关模型

class SessionResponse(BaseModel):
    """会话详情"""
    session_id: str = Field(..., description="会话ID")
    workspace_id: str = Field(..., description="工作区ID")
    current_node_id: Optional[str] = Field(None, description="当前节点ID")
    flow_variables: Dict[str, Any] = Field(default_factory=dict, description="流程变量")
    awaiting_input_type: Optional[str] = Field(None, description="等待的输入类型")
    awaiting_input_details: Optional[Dict[str, Any]] = Field(None, description="等待输入详情")
    flow_context: Optional[str] = Field(None, description="会话渠道")
    session_timeout_seconds: int = Field(0, description="会话超时时间（秒）")
    last_interaction_at: datetime = Field(..., description="最后交互时间")
    created_at: datetime = Field(..., description="创建时间")
    steps: List[str] = Field(default_factory=list, description="已执行的节点ID")

    @classmethod
    def from_session(cls, session: FlowSession) -> "SessionResponse":
        record = session.to_record()
        record["last_interaction_at"] = session.last_interaction_at
        record["created_at"] = session.created_at
        return cls(**record)


class SessionListResponse(BaseModel):
    """会话列表"""
    items: List[SessionResponse] = Field(..., description="会话列表")
    total: int = Field(..., description="总数")


# 流程相关模型

class DiagnosticModel(BaseModel):
    """流程图诊断"""
    code: str = Field(..., description="诊断代码")
    message: str = Field(..., description="诊断信息")
    node_id: Optional[str] = Field(None, description="相关节点ID")
    edge_id: Optional[str] = Field(None, description="相关连线ID")


class FlowValidationResponse(BaseModel):
    """流程校验结果"""
    valid: bool = Field(..., description="是否没有诊断问题")
    workspace_id: Optional[str] = Field(None, description="工作区ID")
    node_count: int = Field(0, description="节点数量")
    edge_count: int = Field(0, description="连线数量")
    diagnostics: List[DiagnosticModel] = Field(default_factory=list, description="诊断列表")


class WorkspaceSummary(BaseModel):
    """已加载的工作区摘要"""
    id: str = Field(..., description="工作区ID")
    name: str = Field(..., description="工作区名称")
    organization_id: Optional[str] = Field(None, description="组织ID")
    node_count: int = Field(0, description="节点数量")
    edge_count: int = Field(0, description="连线数量")


# 日志相关模型

class FlowLogResponse(BaseModel):
    """流程日志"""
    workspace_id: str = Field(..., description="工作区ID")
    log_type: str = Field(..., description="日志类型")
    session_id: Optional[str] = Field(None, description="会话ID")
    details: Dict[str, Any] = Field(default_factory=dict, description="日志详情")
    timestamp: datetime = Field(..., description="记录时间")

    @classmethod
    def from_log(cls, log: FlowLog) -> "FlowLogResponse":
        return cls(
            workspace_id=log.workspace_id,
            log_type=log.log_type,
            session_id=log.session_id,
            details=log.details,
            timestamp=log.timestamp,
        )


# 监控相关模型

class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态")
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(..., description="检查时间")
    checks: Dict[str, Any] = Field(..., description="各项检查结果")
