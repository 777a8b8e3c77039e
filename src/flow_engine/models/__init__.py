"""Flow graph, session and workspace models"""

from .graph import (
    FlowGraph, Node, Edge, NodeType, HandleId, GraphDiagnostic, StartTrigger,
    DEFAULT_HANDLE, TRUE_HANDLE, FALSE_HANDLE, OTHERWISE_HANDLE
)
from .session import (
    FlowSession, AwaitingInput, AwaitingInputType, ChannelContext, OptionChoice,
    FLOW_PAUSED_FLAG
)
from .workspace import (
    Workspace, ChannelInstance, ChannelInstanceKind, WhatsAppCredentials, FlowLog
)

__all__ = [
    "FlowGraph",
    "Node",
    "Edge",
    "NodeType",
    "HandleId",
    "GraphDiagnostic",
    "StartTrigger",
    "DEFAULT_HANDLE",
    "TRUE_HANDLE",
    "FALSE_HANDLE",
    "OTHERWISE_HANDLE",
    "FlowSession",
    "AwaitingInput",
    "AwaitingInputType",
    "ChannelContext",
    "OptionChoice",
    "FLOW_PAUSED_FLAG",
    "Workspace",
    "ChannelInstance",
    "ChannelInstanceKind",
    "WhatsAppCredentials",
    "FlowLog"
]
