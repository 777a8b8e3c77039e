"""Session store and repository interfaces"""

from .repository import (
    SessionStore,
    WorkspaceRepository,
    ChannelInstanceRepository,
    FlowLogRepository,
    InMemorySessionStore,
    InMemoryWorkspaceRepository,
    InMemoryChannelInstanceRepository,
    InMemoryFlowLogRepository
)

__all__ = [
    "SessionStore",
    "WorkspaceRepository",
    "ChannelInstanceRepository",
    "FlowLogRepository",
    "InMemorySessionStore",
    "InMemoryWorkspaceRepository",
    "InMemoryChannelInstanceRepository",
    "InMemoryFlowLogRepository"
]
