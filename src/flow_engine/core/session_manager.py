"""
会话管理器

负责入站消息与会话的对接：创建、恢复、超时、选项匹配
"""
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Tuple
from enum import Enum

from ..models.graph import StartNode, StartTrigger, DEFAULT_HANDLE
from ..models.session import (
    FlowSession, AwaitingInput, AwaitingInputType, ChannelContext, OptionChoice,
    FLOW_PAUSED_FLAG
)
from ..models.workspace import Workspace, FlowLog
from ..exceptions import WorkspaceNotFoundError, SessionNotFoundError, NoTriggerError
from ..storage.repository import SessionStore, WorkspaceRepository, FlowLogRepository
from .engine import FlowEngine, RunResult
from .executors import TRIGGER_HANDLE_VARIABLE, INVALID_OPTION_FLAG
from .inbound import InboundMessage
from .variables import get_path, has_path, set_path, stringify
from .context import session_logger, utc_now


logger = logging.getLogger(__name__)


# 自动注入的渠道变量（变量名 -> 负载路径）
CHATWOOT_VARIABLES = {
    "chatwoot_conversation_id": "conversation.id",
    "chatwoot_contact_id": "sender.id",
    "chatwoot_account_id": "account.id",
    "chatwoot_inbox_id": "inbox.id",
    "contact_name": "sender.name",
    "contact_phone": "sender.phone_number",
}

DIALOGY_VARIABLES = {
    "dialogy_conversation_id": "conversation.id",
    "dialogy_contact_id": "contact.id",
    "dialogy_account_id": "account.id",
    "contact_name": "contact.name",
    "contact_phone": "contact.phone_number",
}

REPLY_VARIABLE = "mensagem_whatsapp"
EXTERNAL_RESPONSE_VARIABLE = "external_response_data"


class HandleStatus(Enum):
    """入站消息处理结果"""
    IGNORED = "ignored"
    STARTED = "started"
    RESUMED = "resumed"
    INVALID_OPTION = "invalid_option"
    PAUSED = "paused"
    SAVED = "saved"


@dataclass
class HandleResult:
    """入站消息处理结果"""
    status: HandleStatus
    message: str
    session_id: Optional[str] = None
    workspace_id: Optional[str] = None
    run: Optional[RunResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "run_status": self.run.status.value if self.run else None,
        }


def match_option(options: List[OptionChoice], reply: str) -> Optional[OptionChoice]:
    """按编号（1..n）或忽略大小写的完整文本匹配选项"""
    reply = (reply or "").strip()
    # 仅接受 ASCII 数字，"²" 之类的字符按文本匹配
    if reply.isascii() and reply.isdecimal():
        index = int(reply)
        if 0 < index <= len(options):
            return options[index - 1]
    lowered = reply.lower()
    for option in options:
        if option.value.lower() == lowered:
            return option
    return None


class SessionManager:
    """会话管理器"""

    def __init__(
        self,
        engine: FlowEngine,
        session_store: SessionStore,
        workspaces: WorkspaceRepository,
        flow_logs: Optional[FlowLogRepository] = None
    ):
        self.engine = engine
        self.session_store = session_store
        self.workspaces = workspaces
        self.flow_logs = flow_logs

    async def handle_inbound(self, workspace_id: str, inbound: InboundMessage) -> HandleResult:
        """
        处理一条入站消息

        Args:
            workspace_id: webhook 地址中的工作区ID
            inbound: 标准化后的入站消息

        Returns:
            HandleResult: 处理结果

        Raises:
            WorkspaceNotFoundError: 工作区不存在
            SessionNotFoundError: 要恢复的会话不存在
            NoTriggerError: 无法为新会话找到触发器
        """
        workspace = await self.workspaces.get(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)

        await self._log_webhook(workspace_id, inbound)

        if inbound.ignored:
            logger.info(f"Inbound message for {inbound.session_key} ignored: {inbound.ignore_reason}")
            return HandleResult(HandleStatus.IGNORED, inbound.ignore_reason, inbound.session_key, workspace_id)

        if inbound.resume_session_id:
            return await self._resume_external(inbound)

        if not inbound.session_key:
            return HandleResult(
                HandleStatus.IGNORED,
                "Could not determine a unique session identifier from the payload.",
                workspace_id=workspace_id
            )

        async with self.session_store.lock(inbound.session_key):
            session, session_workspace = await self._load_active(inbound.session_key)
            if session is not None:
                result = await self._continue(session, session_workspace, inbound)
                if result is not None:
                    return result

            if inbound.is_api_call_response:
                return HandleResult(
                    HandleStatus.IGNORED, "API response ignored, no active session.",
                    inbound.session_key, workspace_id
                )
            return await self._start(workspace, inbound)

    async def _load_active(self, session_key: str) -> Tuple[Optional[FlowSession], Optional[Workspace]]:
        """加载会话，清理孤立和超时的会话"""
        session = await self.session_store.load(session_key)
        if session is None:
            return None, None

        log = session_logger(logger, session_key)
        workspace = await self.workspaces.get(session.workspace_id)
        if workspace is None:
            log.error(f"Workspace {session.workspace_id} not found, deleting orphan session")
            await self.session_store.delete(session_key)
            return None, None

        if session.is_expired(utc_now()):
            log.info(f"Session timed out after {session.session_timeout_seconds}s, starting a new one")
            await self.session_store.delete(session_key)
            return None, None

        return session, workspace

    async def _continue(
        self,
        session: FlowSession,
        workspace: Workspace,
        inbound: InboundMessage
    ) -> Optional[HandleResult]:
        """把回复合并进已有会话；返回 None 表示需要重新开始"""
        log = session_logger(logger, session.session_id)
        session.touch()

        if session.is_paused:
            log.info("Session is paused at a dead end, restarting flow")
            await self.session_store.delete(session.session_id)
            return None

        awaiting = session.awaiting_input
        if awaiting is None:
            log.info("Session is not awaiting input, restarting flow")
            await self.session_store.delete(session.session_id)
            return None

        node = workspace.graph.get_node(awaiting.original_node_id)
        if node is None:
            log.warning(f"Awaiting node {awaiting.original_node_id} not found, restarting flow")
            await self.session_store.delete(session.session_id)
            return None

        if getattr(node, "api_response_as_input", False) and not inbound.is_api_call_response:
            log.info(f"Node {node.id} expects an API response, ignoring user message")
            return HandleResult(
                HandleStatus.IGNORED, "Awaiting API response, user message ignored.",
                session.session_id, workspace.id
            )

        reply = inbound.reply_value()
        reply_text = reply if isinstance(reply, str) else stringify(reply)
        session.variables[REPLY_VARIABLE] = reply_text
        value_text = self._reply_for_node(node, inbound, reply_text)

        if awaiting.kind != AwaitingInputType.OPTION:
            set_path(session.variables, awaiting.variable_to_save, value_text)
            return await self._advance(session, workspace, node.id, DEFAULT_HANDLE)

        choice = match_option(awaiting.options, value_text)
        if choice is None:
            if inbound.is_api_call_response:
                await self.session_store.save(session)
                return HandleResult(
                    HandleStatus.SAVED, "API response did not match any option.",
                    session.session_id, workspace.id
                )
            log.info(f"Reply {value_text!r} matches no option of node {node.id}")
            session.variables[INVALID_OPTION_FLAG] = True
            session.current_node_id = node.id
            session.awaiting_input = None
            run = await self.engine.run(session, workspace)
            return HandleResult(
                HandleStatus.INVALID_OPTION, "Invalid option, question repeated.",
                session.session_id, workspace.id, run
            )

        set_path(session.variables, awaiting.variable_to_save, choice.value)
        log.info(f"Option '{choice.value}' chosen at node {node.id}")
        return await self._advance(session, workspace, node.id, choice.id)

    @staticmethod
    def _reply_for_node(node, inbound: InboundMessage, reply_text: str) -> str:
        """API 回调按节点配置的路径取值，取不到时使用原回复"""
        path = getattr(node, "api_response_path_for_value", "")
        if inbound.is_api_call_response and path and has_path(inbound.payload, path):
            return stringify(get_path(inbound.payload, path))
        return reply_text

    async def _advance(
        self,
        session: FlowSession,
        workspace: Workspace,
        node_id: str,
        handle: str
    ) -> HandleResult:
        """沿句柄进入下一个节点并继续执行；没有连线时暂停"""
        session.awaiting_input = None
        next_id = workspace.graph.next_node_id(node_id, handle)
        if next_id is None:
            session.current_node_id = None
            session.variables[FLOW_PAUSED_FLAG] = True
            await self.session_store.save(session)
            session_logger(logger, session.session_id).info(
                f"No edge for handle '{handle}' from node {node_id}, session paused"
            )
            return HandleResult(HandleStatus.PAUSED, "Flow paused at dead end.", session.session_id, workspace.id)

        session.current_node_id = next_id
        run = await self.engine.run(session, workspace)
        return HandleResult(HandleStatus.RESUMED, "Flow resumed.", session.session_id, workspace.id, run)

    async def _resume_external(self, inbound: InboundMessage) -> HandleResult:
        """外部回调恢复会话（负载携带 resume_session_id）"""
        session_id = inbound.resume_session_id
        async with self.session_store.lock(session_id):
            session = await self.session_store.load(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            workspace = await self.workspaces.get(session.workspace_id)
            if workspace is None:
                raise WorkspaceNotFoundError(session.workspace_id)

            session_logger(logger, session_id).info("Resuming session from external callback")
            session.touch()
            awaiting = session.awaiting_input
            variable = awaiting.variable_to_save if awaiting else EXTERNAL_RESPONSE_VARIABLE
            set_path(session.variables, variable, inbound.raw)

            if awaiting is not None:
                return await self._advance(session, workspace, awaiting.original_node_id, DEFAULT_HANDLE)

            session.variables.pop(FLOW_PAUSED_FLAG, None)
            run = await self.engine.run(session, workspace)
            return HandleResult(HandleStatus.RESUMED, "Flow resumed.", session_id, workspace.id, run)

    async def _start(self, workspace: Workspace, inbound: InboundMessage) -> HandleResult:
        """为入站消息创建新会话并执行"""
        target, start_node, trigger, keyword = await self._select_trigger(workspace, inbound.text)
        handle = keyword or trigger.name
        logger.info(
            f"Starting flow '{target.name}' ({target.id}) for {inbound.session_key} "
            f"with trigger handle '{handle}'"
        )

        session = FlowSession(
            session_id=inbound.session_key,
            workspace_id=target.id,
            current_node_id=start_node.id,
            variables=self._initial_variables(inbound, trigger, handle),
            channel_context=inbound.context,
            session_timeout_seconds=trigger.session_timeout_seconds or 0,
        )
        run = await self.engine.run(session, target)
        return HandleResult(HandleStatus.STARTED, "Flow started.", session.session_id, target.id, run)

    async def _select_trigger(
        self,
        workspace: Workspace,
        text: Optional[str]
    ) -> Tuple[Workspace, StartNode, StartTrigger, Optional[str]]:
        """按关键字在组织内匹配触发器，否则使用当前工作区的第一个 webhook 触发器"""
        if text:
            if workspace.organization_id:
                candidates = await self.workspaces.list(workspace.organization_id)
            else:
                candidates = [workspace]
            wanted = text.strip().lower()
            for candidate in candidates:
                start_node = candidate.graph.start_node()
                if start_node is None:
                    continue
                for trigger in start_node.triggers:
                    if trigger.is_webhook and wanted in trigger.keywords:
                        return candidate, start_node, trigger, wanted

        start_node = workspace.graph.start_node()
        if start_node is not None:
            for trigger in start_node.triggers:
                if trigger.is_webhook:
                    return workspace, start_node, trigger, None
        raise NoTriggerError(workspace.id)

    def _initial_variables(self, inbound: InboundMessage, trigger: StartTrigger, handle: str) -> Dict[str, Any]:
        """构建新会话的初始变量"""
        payload = inbound.payload
        variables: Dict[str, Any] = {
            REPLY_VARIABLE: inbound.text or "",
            "webhook_payload": payload,
            "session_id": inbound.session_key,
            TRIGGER_HANDLE_VARIABLE: handle,
        }

        if inbound.context == ChannelContext.CHATWOOT:
            mappings = CHATWOOT_VARIABLES
        elif inbound.context == ChannelContext.DIALOGY:
            mappings = DIALOGY_VARIABLES
        else:
            mappings = {}
            jid = get_path(payload, "data.key.remoteJid") or get_path(payload, "sender.identifier")
            if jid:
                variables["whatsapp_sender_jid"] = jid

        for name, path in mappings.items():
            if has_path(payload, path):
                set_path(variables, name, get_path(payload, path))

        for mapping in trigger.variable_mappings:
            if mapping.json_path and mapping.flow_variable and has_path(payload, mapping.json_path):
                set_path(variables, mapping.flow_variable, get_path(payload, mapping.json_path))

        return variables

    async def _log_webhook(self, workspace_id: str, inbound: InboundMessage):
        """记录 webhook 日志，失败不影响处理"""
        if self.flow_logs is None:
            return
        try:
            await self.flow_logs.save(FlowLog(
                workspace_id=workspace_id,
                log_type="webhook",
                session_id=inbound.session_key,
                details=inbound.log_details(),
            ))
        except Exception as e:
            logger.error(f"Failed to save webhook log: {e}")
