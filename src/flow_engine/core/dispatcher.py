"""
外发消息分发器
"""
import logging
from typing import Optional, Union

from ..models.session import FlowSession, ChannelContext
from ..models.workspace import Workspace
from ..integrations.messaging import MessagingClient
from ..integrations.exceptions import IntegrationError
from ..storage.repository import ChannelInstanceRepository
from .variables import get_path


logger = logging.getLogger(__name__)


EVOLUTION_PREFIX = "evolution_jid_"
DIALOGY_PREFIX = "dialogy_conv_"
CHATWOOT_PREFIX = "chatwoot_conv_"


def session_recipient(session: FlowSession) -> str:
    """从会话ID推断 WhatsApp 接收者（evolution_jid_<jid>@@<workspace>）"""
    prefix = session.session_id.split("@@")[0]
    if prefix.startswith(EVOLUTION_PREFIX):
        prefix = prefix[len(EVOLUTION_PREFIX):]
    return prefix


def whatsapp_recipient(session: FlowSession) -> str:
    """WhatsApp 接收者（优先使用入站时记录的发送者 JID）"""
    jid = session.variables.get("whatsapp_sender_jid")
    return str(jid) if jid else session_recipient(session)


def _first_present(*values) -> Optional[str]:
    for value in values:
        if value not in (None, ""):
            return str(value)
    return None


class OutboundDispatcher:
    """按会话渠道投递文本消息，投递失败只记录日志"""

    def __init__(self, messaging: MessagingClient, channel_instances: ChannelInstanceRepository):
        self.messaging = messaging
        self.channel_instances = channel_instances

    async def send(
        self,
        session: FlowSession,
        workspace: Workspace,
        content: str,
        log: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
    ) -> bool:
        """
        发送消息到会话所属渠道

        Returns:
            是否已成功投递；内容为空或配置缺失时返回 False
        """
        log = log or logger
        if not content:
            return False

        context = session.context
        try:
            if context == ChannelContext.DIALOGY:
                return await self._send_dialogy(session, workspace, content, log)
            if context == ChannelContext.CHATWOOT:
                return await self._send_chatwoot(session, workspace, content, log)
            return await self._send_whatsapp(session, workspace, content, log)
        except IntegrationError as e:
            log.error(f"Failed to deliver {context.value} message: {e.message}")
        except Exception as e:
            log.error(f"Unexpected error delivering {context.value} message: {e}", exc_info=True)
        return False

    async def _send_dialogy(self, session, workspace, content, log) -> bool:
        variables = session.variables
        chat_id = _first_present(
            variables.get("dialogy_conversation_id"),
            get_path(variables, "webhook_payload.conversation.id"),
            session.session_id[len(DIALOGY_PREFIX):]
            if session.session_id.startswith(DIALOGY_PREFIX) else None,
        )
        if not chat_id:
            log.warning("Dialogy chat id not found in session")
            return False
        if not workspace.dialogy_instance_id:
            log.warning(f"Workspace '{workspace.id}' has no Dialogy instance linked")
            return False
        instance = await self.channel_instances.get(workspace.dialogy_instance_id)
        if instance is None:
            log.warning(f"Dialogy instance '{workspace.dialogy_instance_id}' not found")
            return False

        await self.messaging.send_dialogy_message(instance, chat_id.split("@@")[0], content)
        return True

    async def _send_chatwoot(self, session, workspace, content, log) -> bool:
        variables = session.variables
        account_id = _first_present(
            variables.get("chatwoot_account_id"),
            get_path(variables, "webhook_payload.account.id"),
        )
        conversation_id = _first_present(
            variables.get("chatwoot_conversation_id"),
            get_path(variables, "webhook_payload.conversation.id"),
        )
        if not account_id or not conversation_id:
            log.warning("Chatwoot account or conversation id missing in session")
            return False
        if not workspace.chatwoot_instance_id:
            log.warning(f"Workspace '{workspace.id}' has no Chatwoot instance linked")
            return False
        instance = await self.channel_instances.get(workspace.chatwoot_instance_id)
        if instance is None:
            log.warning(f"Chatwoot instance '{workspace.chatwoot_instance_id}' not found")
            return False

        await self.messaging.send_chatwoot_message(instance, account_id, conversation_id, content)
        return True

    async def _send_whatsapp(self, session, workspace, content, log) -> bool:
        recipient = whatsapp_recipient(session)
        if not recipient:
            log.warning("WhatsApp recipient could not be determined")
            return False
        if not workspace.whatsapp.is_configured:
            log.warning(f"Workspace '{workspace.id}' has no WhatsApp credentials configured")
            return False

        await self.messaging.send_whatsapp_text(workspace.whatsapp, recipient, content)
        return True
