"""
执行上下文
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Callable, Union
from datetime import datetime, timezone

from ..models.graph import FlowGraph
from ..models.session import FlowSession
from ..models.workspace import Workspace
from ..integrations.messaging import MessagingClient
from ..integrations.ai import TextGenerator
from ..integrations.http_client import HttpRequester
from ..storage.repository import FlowLogRepository
from .dispatcher import OutboundDispatcher


DEFAULT_INVALID_OPTION_MESSAGE = "Invalid option. Please try again."
DEFAULT_OPTION_REPLY_HINT = "Reply with the number of the desired option or its exact text."


class SessionLoggerAdapter(logging.LoggerAdapter):
    """在日志前加上会话ID"""

    def process(self, msg, kwargs):
        return f"[{self.extra['session_id']}] {msg}", kwargs


def session_logger(logger: logging.Logger, session_id: str) -> SessionLoggerAdapter:
    """创建会话日志适配器"""
    return SessionLoggerAdapter(logger, {"session_id": session_id})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineMessages:
    """引擎发出的固定提示文本"""
    invalid_option: str = DEFAULT_INVALID_OPTION_MESSAGE
    option_reply_hint: str = DEFAULT_OPTION_REPLY_HINT


@dataclass
class ExecutionContext:
    """单次运行的执行上下文"""
    session: FlowSession
    workspace: Workspace
    log: Union[logging.Logger, logging.LoggerAdapter]
    dispatcher: OutboundDispatcher
    messaging: MessagingClient
    text_generator: Optional[TextGenerator] = None
    http: Optional[HttpRequester] = None
    flow_logs: Optional[FlowLogRepository] = None
    messages: EngineMessages = field(default_factory=EngineMessages)
    clock: Callable[[], datetime] = utc_now

    @property
    def graph(self) -> FlowGraph:
        return self.workspace.graph

    @property
    def variables(self):
        return self.session.variables

    async def send(self, content: str) -> bool:
        """通过会话渠道发送消息"""
        return await self.dispatcher.send(self.session, self.workspace, content, self.log)
