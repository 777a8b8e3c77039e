"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Integer, DateTime, Index, JSON
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class FlowSessionRecord(Base):
    """流程会话模型"""
    __tablename__ = 'flow_sessions'

    session_id = Column(String(255), primary_key=True)
    workspace_id = Column(String(255), nullable=False)
    current_node_id = Column(String(255))
    flow_variables = Column(JSON, nullable=False, default=dict)
    awaiting_input_type = Column(String(50))
    awaiting_input_details = Column(JSON)
    flow_context = Column(String(50))
    session_timeout_seconds = Column(Integer, default=0)
    steps = Column(JSON, default=list)
    last_interaction_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_flow_sessions_workspace', 'workspace_id'),
    )


class ChannelInstanceRecord(Base):
    """渠道实例模型"""
    __tablename__ = 'channel_instances'

    id = Column(String(255), primary_key=True)
    kind = Column(String(50), nullable=False)
    name = Column(String(255))
    base_url = Column(Text, nullable=False)
    api_key = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class FlowLogRecord(Base):
    """流程日志模型"""
    __tablename__ = 'flow_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String(255), nullable=False)
    session_id = Column(String(255))
    log_type = Column(String(50), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    details = Column(JSON, default=dict)

    __table_args__ = (
        Index('idx_flow_logs_workspace_type', 'workspace_id', 'log_type'),
        Index('idx_flow_logs_timestamp', 'timestamp'),
    )
