"""
工作区与渠道实例模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from datetime import datetime, timezone

from .graph import FlowGraph


class ChannelInstanceKind(Enum):
    """渠道实例类型"""
    CHATWOOT = "chatwoot"
    DIALOGY = "dialogy"


@dataclass
class ChannelInstance:
    """外部渠道实例（地址和凭证）"""
    id: str
    kind: ChannelInstanceKind
    base_url: str
    api_key: str
    name: str = ""

    @property
    def api_base(self) -> str:
        return self.base_url.rstrip("/")


@dataclass
class WhatsAppCredentials:
    """Evolution API（WhatsApp）默认凭证"""
    base_url: str = ""
    api_key: str = ""
    instance_name: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.instance_name)


@dataclass
class Workspace:
    """工作区：流程图及渠道关联"""
    id: str
    name: str
    graph: FlowGraph
    organization_id: Optional[str] = None
    whatsapp: WhatsAppCredentials = field(default_factory=WhatsAppCredentials)
    chatwoot_instance_id: Optional[str] = None
    dialogy_instance_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FlowLog:
    """流程执行日志（如 API 调用记录）"""
    workspace_id: str
    log_type: str
    session_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
