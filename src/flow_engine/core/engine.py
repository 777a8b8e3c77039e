"""
流程执行引擎
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Callable, List
from datetime import datetime
from enum import Enum

from ..models.graph import NodeType, DEFAULT_HANDLE
from ..models.session import FlowSession, FLOW_PAUSED_FLAG
from ..models.workspace import Workspace
from ..exceptions import FlowEngineError, FlowIntegrityError
from ..integrations.messaging import MessagingClient
from ..integrations.ai import TextGenerator
from ..integrations.http_client import HttpRequester
from ..storage.repository import SessionStore, FlowLogRepository
from .context import ExecutionContext, EngineMessages, session_logger, utc_now
from .dispatcher import OutboundDispatcher
from .executors import NodeExecutor, NodeOutcome, default_executors


logger = logging.getLogger(__name__)


class RunStatus(Enum):
    """单次运行的结束状态"""
    SUSPENDED = "suspended"    # 等待用户输入
    COMPLETED = "completed"    # 到达结束节点，会话已删除
    PAUSED = "paused"          # 死路，会话保留但不再推进
    ABORTED = "aborted"        # 完整性错误，会话已删除


@dataclass
class RunResult:
    """运行结果"""
    session_id: str
    status: RunStatus
    visited: List[str] = field(default_factory=list)
    error: Optional[str] = None


class FlowEngine:
    """流程执行引擎"""

    def __init__(
        self,
        session_store: SessionStore,
        dispatcher: OutboundDispatcher,
        messaging: MessagingClient,
        text_generator: Optional[TextGenerator] = None,
        http: Optional[HttpRequester] = None,
        flow_logs: Optional[FlowLogRepository] = None,
        messages: Optional[EngineMessages] = None,
        executors: Optional[Dict[NodeType, NodeExecutor]] = None,
        clock: Callable[[], datetime] = utc_now,
        max_steps: int = 1000
    ):
        self.session_store = session_store
        self.dispatcher = dispatcher
        self.messaging = messaging
        self.text_generator = text_generator
        self.http = http
        self.flow_logs = flow_logs
        self.messages = messages or EngineMessages()
        self.clock = clock
        self.max_steps = max_steps

        # 节点执行器表必须覆盖所有节点类型
        self.node_executors: Dict[NodeType, NodeExecutor] = default_executors()
        if executors:
            self.node_executors.update(executors)
        missing = [t.value for t in NodeType if t not in self.node_executors]
        if missing:
            raise FlowEngineError(f"No executor registered for node types: {', '.join(missing)}")

    def _context(self, session: FlowSession, workspace: Workspace) -> ExecutionContext:
        return ExecutionContext(
            session=session,
            workspace=workspace,
            log=session_logger(logger, session.session_id),
            dispatcher=self.dispatcher,
            messaging=self.messaging,
            text_generator=self.text_generator,
            http=self.http,
            flow_logs=self.flow_logs,
            messages=self.messages,
            clock=self.clock,
        )

    async def run(self, session: FlowSession, workspace: Workspace) -> RunResult:
        """
        从会话当前节点开始执行，直到挂起、结束或死路

        Args:
            session: 会话（运行期间独占）
            workspace: 工作区（只读）

        Returns:
            RunResult: 运行结果
        """
        ctx = self._context(session, workspace)
        log = ctx.log
        graph = workspace.graph
        visited: List[str] = []
        current_id = session.current_node_id

        log.info(f"Starting execution at node {current_id}")

        while current_id:
            node = graph.get_node(current_id)
            if node is None:
                error = FlowIntegrityError(current_id)
                log.error(f"{error}, deleting session")
                await self.session_store.delete(session.session_id)
                return RunResult(session.session_id, RunStatus.ABORTED, visited, str(error))

            if len(visited) >= self.max_steps:
                log.error(f"Step limit {self.max_steps} reached at node {node.id}, pausing session")
                break

            session.current_node_id = node.id
            session.steps.append(node.id)
            visited.append(node.id)
            log.info(f"Executing node {node.id} ({node.type.value} - {node.title})")

            executor = self.node_executors[node.type]
            try:
                outcome = await executor.execute(node, ctx)
            except Exception as e:
                log.error(f"Node {node.id} failed: {e}", exc_info=True)
                outcome = NodeOutcome.route(DEFAULT_HANDLE)

            if outcome.suspend is not None:
                session.awaiting_input = outcome.suspend
                session.variables.pop(FLOW_PAUSED_FLAG, None)
                await self.session_store.save(session)
                log.info(f"Session suspended awaiting {outcome.suspend.kind.value} at node {node.id}")
                return RunResult(session.session_id, RunStatus.SUSPENDED, visited)

            if outcome.terminate:
                await self.session_store.delete(session.session_id)
                log.info("Flow completed, session deleted")
                return RunResult(session.session_id, RunStatus.COMPLETED, visited)

            session.awaiting_input = None
            current_id = graph.next_node_id(node.id, outcome.next_handle) if outcome.next_handle else None

        session.current_node_id = None
        session.awaiting_input = None
        session.variables[FLOW_PAUSED_FLAG] = True
        await self.session_store.save(session)
        log.info("Execution reached a dead end, session paused")
        return RunResult(session.session_id, RunStatus.PAUSED, visited)
