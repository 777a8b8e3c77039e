"""
入站消息解析

把 Chatwoot / Dialogy / Evolution 的 webhook 负载统一成 InboundMessage
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from ..models.session import ChannelContext
from .dispatcher import EVOLUTION_PREFIX, DIALOGY_PREFIX, CHATWOOT_PREFIX
from .variables import get_path


# Evolution 负载中可能携带文本的位置（按顺序取第一个非空值）
EVOLUTION_TEXT_PATHS = (
    "data.message.conversation",
    "message.conversation",
    "message.body",
    "message.textMessage.text",
    "text",
    "data.message.extendedTextMessage.text",
)


@dataclass
class InboundMessage:
    """标准化后的入站消息"""
    context: ChannelContext
    session_key: Optional[str]
    text: Optional[str]
    payload: Any
    raw: Any = None
    resume_session_id: Optional[str] = None
    is_api_call_response: bool = False
    ignore_reason: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ignored(self) -> bool:
        return self.ignore_reason is not None

    @classmethod
    def from_payload(cls, payload: Any, headers: Optional[Dict[str, str]] = None) -> "InboundMessage":
        """
        解析 webhook 负载

        Args:
            payload: 已解析的 JSON 负载（列表时取第一个元素）
            headers: 请求头（仅用于记录）

        Returns:
            InboundMessage: 标准化消息；无法识别会话时 session_key 为 None
        """
        body = payload
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            body = payload[0]

        context = ChannelContext.WHATSAPP
        session_key = None
        text = None
        ignore_reason = None

        if isinstance(body, dict):
            event = get_path(body, "event")
            conversation_id = get_path(body, "conversation.id")

            if (event == "message_created" and conversation_id
                    and get_path(body, "message_type") == "incoming"):
                context = ChannelContext.CHATWOOT
                session_key = f"{CHATWOOT_PREFIX}{conversation_id}"
                text = str(get_path(body, "content") or "").strip()
                if get_path(body, "sender_type") == "User":
                    ignore_reason = "Automation paused due to human intervention."

            elif event == "message.created" and conversation_id:
                context = ChannelContext.DIALOGY
                session_key = f"{DIALOGY_PREFIX}{conversation_id}"
                text = str(get_path(body, "message.content") or "").strip()
                if get_path(body, "message.from_me") is True:
                    ignore_reason = "Message from agent, automation ignored."
                elif get_path(body, "conversation.status") == "atendimentos":
                    ignore_reason = "Conversation in 'atendimentos', automation ignored."

            elif get_path(body, "data.key.remoteJid"):
                session_key = f"{EVOLUTION_PREFIX}{get_path(body, 'data.key.remoteJid')}"
                for path in EVOLUTION_TEXT_PATHS:
                    value = get_path(body, path)
                    if isinstance(value, str) and value.strip():
                        text = value.strip()
                        break

        resume = get_path(body, "resume_session_id") if isinstance(body, dict) else None
        return cls(
            context=context,
            session_key=session_key,
            text=text,
            payload=body,
            raw=payload,
            resume_session_id=str(resume) if resume else None,
            is_api_call_response=isinstance(body, dict) and body.get("isApiCallResponse") is True,
            ignore_reason=ignore_reason,
            headers=dict(headers or {}),
        )

    def reply_value(self) -> Any:
        """写入 mensagem_whatsapp 的值"""
        if self.is_api_call_response:
            response_text = get_path(self.payload, "responseText")
            return response_text if response_text is not None else self.payload
        return self.text or ""

    def log_details(self) -> Dict[str, Any]:
        """webhook 日志详情"""
        return {
            "extractedMessage": self.text,
            "session_key_identifier": self.session_key,
            "flow_context": self.context.value,
            "payload": self.raw,
        }
