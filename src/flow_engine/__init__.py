"""
Conversation Flow Engine - 对话流程引擎
"""

__version__ = "0.1.0"

from .core.engine import FlowEngine
from .core.parser import FlowParser
from .core.session_manager import SessionManager
from .models.graph import FlowGraph, Node, Edge
from .models.session import FlowSession

__all__ = [
    "FlowEngine",
    "FlowParser",
    "SessionManager",
    "FlowGraph",
    "Node",
    "Edge",
    "FlowSession"
]
