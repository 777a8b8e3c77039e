"""Core flow engine components"""

from .engine import FlowEngine, RunResult, RunStatus
from .parser import FlowParser
from .dispatcher import OutboundDispatcher
from .session_manager import SessionManager, HandleResult, HandleStatus
from .inbound import InboundMessage
from .context import EngineMessages, ExecutionContext
from .executors import NodeExecutor, NodeOutcome

__all__ = [
    "FlowEngine",
    "RunResult",
    "RunStatus",
    "FlowParser",
    "OutboundDispatcher",
    "SessionManager",
    "HandleResult",
    "HandleStatus",
    "InboundMessage",
    "EngineMessages",
    "ExecutionContext",
    "NodeExecutor",
    "NodeOutcome"
]
