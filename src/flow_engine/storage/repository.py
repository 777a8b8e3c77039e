"""
存储仓库接口定义
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any
from pathlib import Path

from ..models.session import FlowSession
from ..models.workspace import Workspace, ChannelInstance, FlowLog


logger = logging.getLogger(__name__)


class KeyedLock:
    """按键加锁（同一键的持有者串行执行）"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class SessionStore(ABC):
    """会话存储接口"""

    def __init__(self):
        self._keyed_lock = KeyedLock()

    def lock(self, session_id: str):
        """
        获取会话的单写者锁（异步上下文管理器）

        锁只在当前进程内生效，数据库存储也不例外。多进程部署时需要把同一
        会话的 webhook 固定路由到同一个进程。
        """
        return self._keyed_lock.hold(session_id)

    @abstractmethod
    async def load(self, session_id: str) -> Optional[FlowSession]:
        """加载会话"""
        pass

    @abstractmethod
    async def save(self, session: FlowSession) -> None:
        """保存会话"""
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """删除会话"""
        pass

    @abstractmethod
    async def list_by_workspace(self, workspace_id: str, limit: int = 100) -> List[FlowSession]:
        """列出工作区的会话"""
        pass


class WorkspaceRepository(ABC):
    """工作区仓库接口"""

    @abstractmethod
    async def get(self, workspace_id: str) -> Optional[Workspace]:
        """获取工作区"""
        pass

    @abstractmethod
    async def save(self, workspace: Workspace) -> str:
        """保存工作区"""
        pass

    @abstractmethod
    async def list(self, organization_id: Optional[str] = None) -> List[Workspace]:
        """列出工作区"""
        pass


class ChannelInstanceRepository(ABC):
    """渠道实例仓库接口"""

    @abstractmethod
    async def get(self, instance_id: str) -> Optional[ChannelInstance]:
        """获取渠道实例"""
        pass

    @abstractmethod
    async def save(self, instance: ChannelInstance) -> str:
        """保存渠道实例"""
        pass


class FlowLogRepository(ABC):
    """流程日志仓库接口"""

    @abstractmethod
    async def save(self, log: FlowLog) -> None:
        """保存日志"""
        pass

    @abstractmethod
    async def list(
        self,
        workspace_id: str,
        log_type: Optional[str] = None,
        limit: int = 100
    ) -> List[FlowLog]:
        """列出日志（最新在前）"""
        pass


# 内存实现（用于测试和命令行）
class InMemorySessionStore(SessionStore):
    """内存会话存储实现"""

    def __init__(self):
        super().__init__()
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def load(self, session_id: str) -> Optional[FlowSession]:
        record = self.sessions.get(session_id)
        if record is None:
            return None
        return FlowSession.from_record(copy.deepcopy(record))

    async def save(self, session: FlowSession) -> None:
        self.sessions[session.session_id] = copy.deepcopy(session.to_record())

    async def delete(self, session_id: str) -> bool:
        return self.sessions.pop(session_id, None) is not None

    async def list_by_workspace(self, workspace_id: str, limit: int = 100) -> List[FlowSession]:
        records = [r for r in self.sessions.values() if r["workspace_id"] == workspace_id]
        return [FlowSession.from_record(copy.deepcopy(r)) for r in records[:limit]]


class InMemoryWorkspaceRepository(WorkspaceRepository):
    """内存工作区仓库实现"""

    def __init__(self, workspaces: Optional[List[Workspace]] = None):
        self.workspaces: Dict[str, Workspace] = {}
        for workspace in workspaces or []:
            self.workspaces[workspace.id] = workspace

    async def get(self, workspace_id: str) -> Optional[Workspace]:
        return self.workspaces.get(workspace_id)

    async def save(self, workspace: Workspace) -> str:
        self.workspaces[workspace.id] = workspace
        return workspace.id

    async def list(self, organization_id: Optional[str] = None) -> List[Workspace]:
        workspaces = list(self.workspaces.values())
        if organization_id is not None:
            workspaces = [w for w in workspaces if w.organization_id == organization_id]
        return workspaces

    @classmethod
    def from_directory(cls, directory: Path, parser) -> "InMemoryWorkspaceRepository":
        """从目录加载所有流程文件"""
        repository = cls()
        directory = Path(directory)
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() not in (".yaml", ".yml", ".json"):
                continue
            workspace = parser.parse_workspace(path)
            repository.workspaces[workspace.id] = workspace
            logger.info(f"Loaded workspace '{workspace.id}' from {path.name}")
        return repository


class InMemoryChannelInstanceRepository(ChannelInstanceRepository):
    """内存渠道实例仓库实现"""

    def __init__(self, instances: Optional[List[ChannelInstance]] = None):
        self.instances: Dict[str, ChannelInstance] = {i.id: i for i in instances or []}

    async def get(self, instance_id: str) -> Optional[ChannelInstance]:
        return self.instances.get(instance_id)

    async def save(self, instance: ChannelInstance) -> str:
        self.instances[instance.id] = instance
        return instance.id


class InMemoryFlowLogRepository(FlowLogRepository):
    """内存流程日志仓库实现"""

    def __init__(self):
        self.logs: List[FlowLog] = []

    async def save(self, log: FlowLog) -> None:
        self.logs.append(log)

    async def list(
        self,
        workspace_id: str,
        log_type: Optional[str] = None,
        limit: int = 100
    ) -> List[FlowLog]:
        logs = [
            log for log in reversed(self.logs)
            if log.workspace_id == workspace_id and (log_type is None or log.log_type == log_type)
        ]
        return logs[:limit]
