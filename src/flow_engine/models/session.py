"""
会话状态模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime, timedelta, timezone


# 流程暂停标记（死路时写入变量）
FLOW_PAUSED_FLAG = "__flowPaused"


class AwaitingInputType(Enum):
    """等待输入类型"""
    INPUT = "input"
    DATE_INPUT = "date-input"
    FILE_UPLOAD = "file-upload"
    RATING_INPUT = "rating-input"
    OPTION = "option"


class ChannelContext(Enum):
    """会话所属渠道"""
    WHATSAPP = "whatsapp"
    CHATWOOT = "chatwoot"
    DIALOGY = "dialogy"

    @classmethod
    def from_session_id(cls, session_id: str) -> "ChannelContext":
        """根据会话ID前缀推断渠道"""
        if session_id.startswith("dialogy_conv_"):
            return cls.DIALOGY
        if session_id.startswith("chatwoot_conv_"):
            return cls.CHATWOOT
        return cls.WHATSAPP

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ChannelContext"]:
        """解析持久化值，兼容 evolution 别名"""
        if not value:
            return None
        if value == "evolution":
            return cls.WHATSAPP
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class OptionChoice:
    """可选项（id 用于路由，value 为展示文本）"""
    id: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "value": self.value}


@dataclass
class AwaitingInput:
    """等待用户输入的详情"""
    kind: AwaitingInputType
    variable_to_save: str
    original_node_id: str
    options: List[OptionChoice] = field(default_factory=list)

    def to_details(self) -> Dict[str, Any]:
        """转换为持久化详情"""
        details = {
            "variableToSave": self.variable_to_save,
            "originalNodeId": self.original_node_id,
        }
        if self.kind == AwaitingInputType.OPTION:
            details["options"] = [option.to_dict() for option in self.options]
        return details

    @classmethod
    def from_record(cls, kind: Optional[str], details: Optional[Dict[str, Any]]) -> Optional["AwaitingInput"]:
        """从持久化记录恢复"""
        if not kind or not details:
            return None
        options = []
        for index, raw in enumerate(details.get("options") or []):
            if isinstance(raw, dict):
                value = str(raw.get("value", ""))
                options.append(OptionChoice(id=str(raw.get("id") or value), value=value))
            else:
                options.append(OptionChoice(id=str(raw), value=str(raw)))
        return cls(
            kind=AwaitingInputType(kind),
            variable_to_save=details.get("variableToSave") or "last_user_input",
            original_node_id=details.get("originalNodeId", ""),
            options=options,
        )


@dataclass
class FlowSession:
    """流程会话（可恢复的执行状态）"""
    session_id: str
    workspace_id: str
    current_node_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    awaiting_input: Optional[AwaitingInput] = None
    channel_context: Optional[ChannelContext] = None
    session_timeout_seconds: int = 0
    last_interaction_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    steps: List[str] = field(default_factory=list)

    @property
    def context(self) -> ChannelContext:
        """实际渠道（未设置时按会话ID推断）"""
        return self.channel_context or ChannelContext.from_session_id(self.session_id)

    @property
    def is_paused(self) -> bool:
        """是否处于死路暂停状态"""
        if self.variables.get(FLOW_PAUSED_FLAG) is True:
            return True
        return self.current_node_id is None and self.awaiting_input is None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """是否已超过会话超时时间"""
        if not self.session_timeout_seconds or self.session_timeout_seconds <= 0:
            return False
        now = now or datetime.now(timezone.utc)
        last = self.last_interaction_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now > last + timedelta(seconds=self.session_timeout_seconds)

    def touch(self):
        """刷新最后交互时间"""
        self.last_interaction_at = datetime.now(timezone.utc)

    def to_record(self) -> Dict[str, Any]:
        """转换为持久化记录"""
        return {
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "current_node_id": self.current_node_id,
            "flow_variables": self.variables,
            "awaiting_input_type": self.awaiting_input.kind.value if self.awaiting_input else None,
            "awaiting_input_details": self.awaiting_input.to_details() if self.awaiting_input else None,
            "flow_context": self.channel_context.value if self.channel_context else None,
            "session_timeout_seconds": self.session_timeout_seconds,
            "last_interaction_at": self.last_interaction_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "steps": list(self.steps),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FlowSession":
        """从持久化记录恢复会话"""
        session = cls(
            session_id=record["session_id"],
            workspace_id=record["workspace_id"],
            current_node_id=record.get("current_node_id"),
            variables=dict(record.get("flow_variables") or {}),
            awaiting_input=AwaitingInput.from_record(
                record.get("awaiting_input_type"),
                record.get("awaiting_input_details")
            ),
            channel_context=ChannelContext.parse(record.get("flow_context")),
            session_timeout_seconds=int(record.get("session_timeout_seconds") or 0),
            steps=list(record.get("steps") or []),
        )
        for key in ("last_interaction_at", "created_at"):
            value = record.get(key)
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            if isinstance(value, datetime):
                setattr(session, key, value)
        return session
