"""
SQLAlchemy 仓库实现
"""
import logging
from typing import Optional, List
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy import select, delete, and_

from ..models.session import FlowSession
from ..models.workspace import ChannelInstance, ChannelInstanceKind, FlowLog
from ..exceptions import SessionStoreError
from .repository import SessionStore, ChannelInstanceRepository, FlowLogRepository
from .sqlalchemy_models import (
    FlowSessionRecord, ChannelInstanceRecord, FlowLogRecord, Base
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """初始化数据库连接"""
        if self.database_url.startswith("sqlite"):
            options = {"poolclass": StaticPool}
        else:
            options = {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}

        self.engine = create_async_engine(self.database_url, echo=False, **options)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # 创建表（开发环境）
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        if self.async_session_maker is None:
            raise SessionStoreError("Database manager is not initialized")
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


class SQLAlchemySessionStore(SessionStore):
    """SQLAlchemy 会话存储实现"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__()
        self.db = db_manager

    async def load(self, session_id: str) -> Optional[FlowSession]:
        """加载会话"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(FlowSessionRecord).where(FlowSessionRecord.session_id == session_id)
            )
            record = result.scalar_one_or_none()
            return self._record_to_session(record) if record else None

    async def save(self, flow_session: FlowSession) -> None:
        """保存会话（存在则覆盖）"""
        record = flow_session.to_record()
        async with self.db.get_session() as session:
            await session.merge(FlowSessionRecord(
                session_id=flow_session.session_id,
                workspace_id=flow_session.workspace_id,
                current_node_id=flow_session.current_node_id,
                flow_variables=record["flow_variables"],
                awaiting_input_type=record["awaiting_input_type"],
                awaiting_input_details=record["awaiting_input_details"],
                flow_context=record["flow_context"],
                session_timeout_seconds=flow_session.session_timeout_seconds,
                steps=record["steps"],
                last_interaction_at=flow_session.last_interaction_at,
                created_at=flow_session.created_at,
            ))

    async def delete(self, session_id: str) -> bool:
        """删除会话"""
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(FlowSessionRecord).where(FlowSessionRecord.session_id == session_id)
            )
            return result.rowcount > 0

    async def list_by_workspace(self, workspace_id: str, limit: int = 100) -> List[FlowSession]:
        """列出工作区的会话"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(FlowSessionRecord)
                .where(FlowSessionRecord.workspace_id == workspace_id)
                .order_by(FlowSessionRecord.last_interaction_at.desc())
                .limit(limit)
            )
            return [self._record_to_session(r) for r in result.scalars().all()]

    def _record_to_session(self, record: FlowSessionRecord) -> FlowSession:
        """数据库记录转换为会话对象"""
        data = {
            "session_id": record.session_id,
            "workspace_id": record.workspace_id,
            "current_node_id": record.current_node_id,
            "flow_variables": record.flow_variables or {},
            "awaiting_input_type": record.awaiting_input_type,
            "awaiting_input_details": record.awaiting_input_details,
            "flow_context": record.flow_context,
            "session_timeout_seconds": record.session_timeout_seconds,
            "steps": record.steps or [],
        }
        if record.last_interaction_at is not None:
            data["last_interaction_at"] = record.last_interaction_at
        if record.created_at is not None:
            data["created_at"] = record.created_at
        return FlowSession.from_record(data)


class SQLAlchemyChannelInstanceRepository(ChannelInstanceRepository):
    """SQLAlchemy 渠道实例仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def get(self, instance_id: str) -> Optional[ChannelInstance]:
        """获取渠道实例"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ChannelInstanceRecord).where(ChannelInstanceRecord.id == instance_id)
            )
            record = result.scalar_one_or_none()
            if not record:
                return None
            return ChannelInstance(
                id=record.id,
                kind=ChannelInstanceKind(record.kind),
                base_url=record.base_url,
                api_key=record.api_key or "",
                name=record.name or "",
            )

    async def save(self, instance: ChannelInstance) -> str:
        """保存渠道实例"""
        async with self.db.get_session() as session:
            await session.merge(ChannelInstanceRecord(
                id=instance.id,
                kind=instance.kind.value,
                name=instance.name,
                base_url=instance.base_url,
                api_key=instance.api_key,
            ))
        return instance.id


class SQLAlchemyFlowLogRepository(FlowLogRepository):
    """SQLAlchemy 流程日志仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, log: FlowLog) -> None:
        """保存日志"""
        async with self.db.get_session() as session:
            session.add(FlowLogRecord(
                workspace_id=log.workspace_id,
                session_id=log.session_id,
                log_type=log.log_type,
                timestamp=log.timestamp,
                details=log.details,
            ))

    async def list(
        self,
        workspace_id: str,
        log_type: Optional[str] = None,
        limit: int = 100
    ) -> List[FlowLog]:
        """列出日志（最新在前）"""
        conditions = [FlowLogRecord.workspace_id == workspace_id]
        if log_type:
            conditions.append(FlowLogRecord.log_type == log_type)

        async with self.db.get_session() as session:
            result = await session.execute(
                select(FlowLogRecord)
                .where(and_(*conditions))
                .order_by(FlowLogRecord.timestamp.desc(), FlowLogRecord.id.desc())
                .limit(limit)
            )
            return [
                FlowLog(
                    workspace_id=r.workspace_id,
                    log_type=r.log_type,
                    session_id=r.session_id,
                    details=r.details or {},
                    timestamp=r.timestamp,
                )
                for r in result.scalars().all()
            ]
