"""
流程引擎异常定义
"""


class FlowEngineError(Exception):
    """流程引擎基础异常"""
    pass


class FlowParseError(FlowEngineError):
    """流程解析异常"""
    pass


class FlowIntegrityError(FlowEngineError):
    """流程完整性异常（节点引用不存在）"""
    def __init__(self, node_id: str, message: str = None):
        self.node_id = node_id
        msg = f"Node '{node_id}' not found in flow graph"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class SessionStoreError(FlowEngineError):
    """会话存储异常"""
    pass


class WorkspaceNotFoundError(FlowEngineError):
    """工作区未找到异常"""
    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"Workspace '{workspace_id}' not found")


class SessionNotFoundError(FlowEngineError):
    """会话未找到异常"""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class NoTriggerError(FlowEngineError):
    """没有可用触发器异常"""
    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"Workspace '{workspace_id}' has no enabled webhook trigger")
