"""
消息渠道客户端（Evolution/WhatsApp、Chatwoot、Dialogy）
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable

import httpx

from ..models.workspace import ChannelInstance, WhatsAppCredentials
from .exceptions import MessagingError


logger = logging.getLogger(__name__)


MEDIA_TYPES = ("image", "video", "document", "audio")


@dataclass
class DeliveryResult:
    """投递结果"""
    channel: str
    recipient: str
    response: Any = None


@dataclass
class SentMessage:
    """已记录的外发消息"""
    channel: str
    recipient: str
    content: str
    extra: Dict[str, Any] = field(default_factory=dict)


class MessagingClient(ABC):
    """消息渠道客户端接口"""

    @abstractmethod
    async def send_whatsapp_text(
        self,
        credentials: WhatsAppCredentials,
        recipient: str,
        text: str,
        instance_name: Optional[str] = None
    ) -> DeliveryResult:
        """通过 Evolution API 发送文本"""
        pass

    @abstractmethod
    async def send_whatsapp_media(
        self,
        credentials: WhatsAppCredentials,
        recipient: str,
        media_url: str,
        media_type: str = "image",
        caption: str = "",
        instance_name: Optional[str] = None
    ) -> DeliveryResult:
        """通过 Evolution API 发送媒体"""
        pass

    @abstractmethod
    async def send_chatwoot_message(
        self,
        instance: ChannelInstance,
        account_id: str,
        conversation_id: str,
        content: str
    ) -> DeliveryResult:
        """发送 Chatwoot 会话消息"""
        pass

    @abstractmethod
    async def send_dialogy_message(
        self,
        instance: ChannelInstance,
        chat_id: str,
        content: str
    ) -> DeliveryResult:
        """发送 Dialogy 会话消息"""
        pass


def whatsapp_number(recipient: str) -> str:
    """JID 转换为号码（去掉 @ 之后的部分）"""
    return str(recipient).split("@")[0]


class HttpMessagingClient(MessagingClient):
    """基于 httpx 的消息渠道客户端"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        """关闭 HTTP 客户端"""
        await self._client.aclose()

    async def _post(self, channel: str, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json", **headers}
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise MessagingError(channel, f"Request to {channel} failed: {e}")

        if response.status_code >= 400:
            raise MessagingError(
                channel,
                f"{channel} API error (HTTP {response.status_code}): {response.text[:500]}",
                status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError:
            return response.text

    def _evolution_url(self, credentials: WhatsAppCredentials, instance_name: Optional[str], action: str) -> str:
        instance = instance_name or credentials.instance_name
        if not credentials.base_url or not instance:
            raise MessagingError("whatsapp", "Evolution base URL or instance name missing")
        return f"{credentials.base_url.rstrip('/')}/message/{action}/{instance}"

    def _evolution_headers(self, credentials: WhatsAppCredentials) -> Dict[str, str]:
        return {"apikey": credentials.api_key} if credentials.api_key else {}

    async def send_whatsapp_text(
        self,
        credentials: WhatsAppCredentials,
        recipient: str,
        text: str,
        instance_name: Optional[str] = None
    ) -> DeliveryResult:
        if not recipient:
            raise MessagingError("whatsapp", "Recipient phone number missing")
        if not text:
            raise MessagingError("whatsapp", "Text content missing")

        number = whatsapp_number(recipient)
        url = self._evolution_url(credentials, instance_name, "sendText")
        payload = {
            "number": number,
            "options": {"presence": "composing", "delay": 1200},
            "textMessage": {"text": text},
        }
        logger.info(f"Sending WhatsApp text to {number}")
        data = await self._post("whatsapp", url, self._evolution_headers(credentials), payload)
        return DeliveryResult(channel="whatsapp", recipient=number, response=data)

    async def send_whatsapp_media(
        self,
        credentials: WhatsAppCredentials,
        recipient: str,
        media_url: str,
        media_type: str = "image",
        caption: str = "",
        instance_name: Optional[str] = None
    ) -> DeliveryResult:
        if not recipient:
            raise MessagingError("whatsapp", "Recipient phone number missing")
        if media_type not in MEDIA_TYPES:
            raise MessagingError("whatsapp", f"Unsupported media type '{media_type}'")
        if not media_url:
            raise MessagingError("whatsapp", "Media URL missing")

        number = whatsapp_number(recipient)
        url = self._evolution_url(credentials, instance_name, "sendMedia")
        media = {"mediaType": media_type, "url": media_url, "caption": caption}
        if media_type == "document" and caption:
            media["filename"] = caption
        logger.info(f"Sending WhatsApp {media_type} to {number}")
        data = await self._post(
            "whatsapp", url, self._evolution_headers(credentials),
            {"number": number, "mediaMessage": media}
        )
        return DeliveryResult(channel="whatsapp", recipient=number, response=data)

    async def send_chatwoot_message(
        self,
        instance: ChannelInstance,
        account_id: str,
        conversation_id: str,
        content: str
    ) -> DeliveryResult:
        url = (
            f"{instance.api_base}/api/v1/accounts/{account_id}"
            f"/conversations/{conversation_id}/messages"
        )
        payload = {"content": content, "message_type": "outgoing", "private": False}
        logger.info(f"Sending Chatwoot message to conversation {conversation_id}")
        data = await self._post("chatwoot", url, {"api_access_token": instance.api_key}, payload)
        return DeliveryResult(channel="chatwoot", recipient=str(conversation_id), response=data)

    async def send_dialogy_message(
        self,
        instance: ChannelInstance,
        chat_id: str,
        content: str
    ) -> DeliveryResult:
        url = f"{instance.api_base}/api/agent/messages"
        payload = {"chatId": chat_id, "content": content}
        logger.info(f"Sending Dialogy message to chat {chat_id}")
        data = await self._post(
            "dialogy", url, {"Authorization": f"Bearer {instance.api_key}"}, payload
        )
        return DeliveryResult(channel="dialogy", recipient=str(chat_id), response=data)


class RecordingMessagingClient(MessagingClient):
    """记录外发消息的客户端（用于测试和命令行对话）"""

    def __init__(self, on_message: Optional[Callable[[SentMessage], None]] = None):
        self.sent: List[SentMessage] = []
        self.on_message = on_message

    def _record(self, message: SentMessage) -> DeliveryResult:
        self.sent.append(message)
        if self.on_message:
            self.on_message(message)
        return DeliveryResult(channel=message.channel, recipient=message.recipient)

    @property
    def contents(self) -> List[str]:
        return [message.content for message in self.sent]

    async def send_whatsapp_text(self, credentials, recipient, text, instance_name=None):
        return self._record(SentMessage(
            "whatsapp", whatsapp_number(recipient), text,
            {"instance": instance_name or credentials.instance_name}
        ))

    async def send_whatsapp_media(
        self, credentials, recipient, media_url, media_type="image", caption="", instance_name=None
    ):
        return self._record(SentMessage(
            "whatsapp", whatsapp_number(recipient), caption,
            {"media_url": media_url, "media_type": media_type,
             "instance": instance_name or credentials.instance_name}
        ))

    async def send_chatwoot_message(self, instance, account_id, conversation_id, content):
        return self._record(SentMessage(
            "chatwoot", str(conversation_id), content, {"account_id": account_id}
        ))

    async def send_dialogy_message(self, instance, chat_id, content):
        return self._record(SentMessage("dialogy", str(chat_id), content))
