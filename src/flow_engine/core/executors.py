"""
节点执行器
"""
import re
import base64
import asyncio
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Tuple
from datetime import time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.graph import (
    Node, NodeType, HandleId, StartNode, MessageNode, PromptNode, OptionNode,
    ConditionNode, TimeOfDayNode, SwitchNode, SetVariableNode, ApiCallNode,
    WhatsAppTextNode, WhatsAppMediaNode, DialogySendMessageNode,
    AiTextGenerationNode, IntelligentAgentNode, DelayNode, LogConsoleNode,
    UnknownNode, DEFAULT_HANDLE, TRUE_HANDLE, FALSE_HANDLE, OTHERWISE_HANDLE
)
from ..models.session import (
    AwaitingInput, AwaitingInputType, ChannelContext, OptionChoice
)
from ..models.workspace import FlowLog
from ..integrations.exceptions import IntegrationError, HttpCallError
from .context import ExecutionContext
from .conditions import evaluate
from .dispatcher import whatsapp_recipient
from .variables import substitute, get_path, has_path, set_path, strip_braces, stringify


TIME_PATTERN = re.compile(r"^(\d{2}):(\d{2})(?::(\d{2}))?$")

TRIGGER_HANDLE_VARIABLE = "_triggerHandle"
INVALID_OPTION_FLAG = "_invalidOption"


@dataclass
class NodeOutcome:
    """节点执行结果：下一个句柄、挂起或结束"""
    next_handle: Optional[HandleId] = DEFAULT_HANDLE
    suspend: Optional[AwaitingInput] = None
    terminate: bool = False

    @classmethod
    def route(cls, handle: HandleId = DEFAULT_HANDLE) -> "NodeOutcome":
        return cls(next_handle=handle)

    @classmethod
    def suspended(cls, awaiting: AwaitingInput) -> "NodeOutcome":
        return cls(next_handle=None, suspend=awaiting)

    @classmethod
    def end(cls) -> "NodeOutcome":
        return cls(next_handle=None, terminate=True)


class NodeExecutor:
    """节点执行器基类"""

    async def execute(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        """执行节点"""
        raise NotImplementedError


class StartNodeExecutor(NodeExecutor):
    """开始节点：按触发句柄路由"""

    async def execute(self, node: StartNode, ctx: ExecutionContext) -> NodeOutcome:
        handle = ctx.variables.pop(TRIGGER_HANDLE_VARIABLE, None) or DEFAULT_HANDLE
        if handle != DEFAULT_HANDLE and ctx.graph.next_node_id(node.id, handle) is None:
            ctx.log.info(f"Start node has no edge for trigger '{handle}', using default")
            handle = DEFAULT_HANDLE
        return NodeOutcome.route(handle)


class MessageNodeExecutor(NodeExecutor):
    """文本消息节点"""

    async def execute(self, node: MessageNode, ctx: ExecutionContext) -> NodeOutcome:
        await ctx.send(substitute(node.text, ctx.variables))
        return NodeOutcome.route()


async def _resend_after_invalid_choice(ctx: ExecutionContext, awaiting: AwaitingInput) -> Optional[NodeOutcome]:
    """上一次回复无效时提示并继续等待"""
    if ctx.variables.pop(INVALID_OPTION_FLAG, None) is not True:
        return None
    await ctx.send(ctx.messages.invalid_option)
    return NodeOutcome.suspended(awaiting)


class PromptNodeExecutor(NodeExecutor):
    """输入类节点：发送提示并挂起"""

    async def execute(self, node: PromptNode, ctx: ExecutionContext) -> NodeOutcome:
        awaiting = AwaitingInput(
            kind=node.awaiting_kind,
            variable_to_save=node.variable_to_save or "last_user_input",
            original_node_id=node.id,
        )
        retry = await _resend_after_invalid_choice(ctx, awaiting)
        if retry:
            return retry

        prompt = substitute(node.prompt_text, ctx.variables)
        if prompt:
            await ctx.send(prompt)
        return NodeOutcome.suspended(awaiting)


class OptionNodeExecutor(NodeExecutor):
    """选项节点：发送编号选项并挂起"""

    async def execute(self, node: OptionNode, ctx: ExecutionContext) -> NodeOutcome:
        question = substitute(node.question_text, ctx.variables)
        choices = []
        for option in node.options:
            label = substitute(option.value.strip(), ctx.variables)
            if label:
                choices.append(OptionChoice(id=option.id, value=label))

        awaiting = AwaitingInput(
            kind=AwaitingInputType.OPTION,
            variable_to_save=node.variable_to_save or "last_user_choice",
            original_node_id=node.id,
            options=choices,
        )
        retry = await _resend_after_invalid_choice(ctx, awaiting)
        if retry:
            return retry

        if not question or not choices:
            ctx.log.warning(f"Option node '{node.id}' has no question or options, skipping")
            return NodeOutcome.route()

        lines = [question, ""]
        lines.extend(f"{index}. {choice.value}" for index, choice in enumerate(choices, 1))
        message = "\n".join(lines).strip()
        if ctx.session.context != ChannelContext.CHATWOOT:
            message += "\n" + ctx.messages.option_reply_hint

        await ctx.send(message)
        return NodeOutcome.suspended(awaiting)


class ConditionNodeExecutor(NodeExecutor):
    """条件节点"""

    async def execute(self, node: ConditionNode, ctx: ExecutionContext) -> NodeOutcome:
        path = strip_braces(node.condition_variable)
        if path and has_path(ctx.variables, path):
            left = get_path(ctx.variables, path)
        else:
            left = node.condition_variable
        right = substitute(node.condition_value, ctx.variables)

        met = evaluate(left, right, node.condition_data_type, node.condition_operator)
        ctx.log.debug(
            f"Condition {path!r} {node.condition_operator} {right!r} "
            f"({node.condition_data_type}) -> {met}"
        )
        return NodeOutcome.route(TRUE_HANDLE if met else FALSE_HANDLE)


def _parse_clock(value: str) -> Optional[time]:
    match = TIME_PATTERN.match((value or "").strip())
    if not match:
        return None
    hh, mm, ss = match.groups()
    try:
        return time(int(hh), int(mm), int(ss or 0))
    except ValueError:
        return None


class TimeOfDayNodeExecutor(NodeExecutor):
    """时间段节点"""

    async def execute(self, node: TimeOfDayNode, ctx: ExecutionContext) -> NodeOutcome:
        start = _parse_clock(node.start_time)
        end = _parse_clock(node.end_time)
        if start is None or end is None:
            ctx.log.warning(
                f"time-of-day: invalid or missing times (start={node.start_time!r} "
                f"end={node.end_time!r}), treating as out of range"
            )
            return NodeOutcome.route(FALSE_HANDLE)

        try:
            zone = ZoneInfo(node.timezone) if node.timezone else None
        except (ZoneInfoNotFoundError, ValueError):
            ctx.log.warning(f"time-of-day: unknown timezone {node.timezone!r}")
            return NodeOutcome.route(FALSE_HANDLE)

        now = ctx.clock().astimezone(zone).time().replace(tzinfo=None)
        if end < start:
            # 跨午夜的时间段
            in_range = now >= start or now <= end
        else:
            in_range = start <= now <= end

        ctx.log.info(f"Time of day check {node.start_time}-{node.end_time} at {now}: {in_range}")
        return NodeOutcome.route(TRUE_HANDLE if in_range else FALSE_HANDLE)


class SwitchNodeExecutor(NodeExecutor):
    """多路分支节点"""

    async def execute(self, node: SwitchNode, ctx: ExecutionContext) -> NodeOutcome:
        path = strip_braces(node.switch_variable)
        actual = get_path(ctx.variables, path) if path else None

        if actual is not None:
            actual_text = stringify(actual)
            for case in node.switch_cases:
                if actual_text == substitute(case.value, ctx.variables):
                    ctx.log.info(f"Switch matched case '{case.id}'")
                    return NodeOutcome.route(case.id)

        ctx.log.info("Switch matched no case, using 'otherwise'")
        return NodeOutcome.route(OTHERWISE_HANDLE)


class SetVariableNodeExecutor(NodeExecutor):
    """设置变量节点"""

    async def execute(self, node: SetVariableNode, ctx: ExecutionContext) -> NodeOutcome:
        name = strip_braces(node.variable_name)
        if name:
            value = substitute(node.variable_value, ctx.variables)
            set_path(ctx.variables, name, value)
            ctx.log.info(f"Variable '{name}' set to {value!r}")
        return NodeOutcome.route()


def _response_path(path: str) -> str:
    """去掉 $ 前缀，兼容 "$.data.id" 写法"""
    path = (path or "").strip()
    if path.startswith("$."):
        return path[2:]
    if path == "$":
        return ""
    return path


class ApiCallNodeExecutor(NodeExecutor):
    """HTTP 调用节点"""

    async def execute(self, node: ApiCallNode, ctx: ExecutionContext) -> NodeOutcome:
        variables = ctx.variables
        output = strip_braces(node.api_output_variable)
        url = substitute(node.api_url, variables).strip()
        response_data = None
        error_data = None

        try:
            if ctx.http is None:
                raise HttpCallError(url, "No HTTP requester configured")
            if not url:
                raise HttpCallError(url, "API URL is empty")

            method = (node.api_method or "GET").upper()
            headers, params, body = self._build_request(node, method, variables)

            ctx.log.info(f"API call: {method} {url}")
            response = await ctx.http.request(method, url, headers=headers, params=params, content=body)
            response_data = response.data

            if not response.ok:
                raise HttpCallError(url, f"API returned status {response.status_code}", response.status_code)

            if output:
                value = response_data
                path = _response_path(node.api_response_path)
                if path and has_path(response_data, path):
                    value = get_path(response_data, path)
                set_path(variables, output, value)

            self._apply_mappings(node, response_data, ctx)

        except Exception as e:
            message = e.message if isinstance(e, IntegrationError) else str(e)
            ctx.log.error(f"API call failed: {message}")
            error_data = {"error": message}
            if output:
                set_path(variables, output, error_data)

        await self._record(node, ctx, url, response_data, error_data)
        return NodeOutcome.route()

    def _build_request(
        self,
        node: ApiCallNode,
        method: str,
        variables: Dict[str, Any]
    ) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]], Optional[str]]:
        """构建请求头、查询参数和请求体"""
        headers = [
            (substitute(h.key, variables), substitute(h.value, variables))
            for h in node.api_headers
        ]

        auth_type = (node.api_auth_type or "none").lower()
        if auth_type == "bearer" and node.api_auth_bearer_token:
            token = substitute(node.api_auth_bearer_token, variables)
            headers.append(("Authorization", f"Bearer {token}"))
        elif auth_type == "basic" and node.api_auth_basic_user and node.api_auth_basic_password:
            user = substitute(node.api_auth_basic_user, variables)
            password = substitute(node.api_auth_basic_password, variables)
            encoded = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
            headers.append(("Authorization", f"Basic {encoded}"))

        params = [
            (substitute(p.key, variables), substitute(p.value, variables))
            for p in node.api_query_params
        ]

        body = None
        body_type = (node.api_body_type or "none").lower()
        if method not in ("GET", "HEAD"):
            if body_type == "json" and node.api_body_json:
                body = substitute(node.api_body_json, variables)
                if not any(key.lower() == "content-type" for key, _ in headers):
                    headers.append(("Content-Type", "application/json"))
            elif body_type == "raw" and node.api_body_raw:
                body = substitute(node.api_body_raw, variables)

        return headers, params, body

    def _apply_mappings(self, node: ApiCallNode, response_data: Any, ctx: ExecutionContext):
        """把响应中的字段写入流程变量"""
        for mapping in node.api_response_mappings:
            path = _response_path(mapping.json_path)
            value = get_path(response_data, path) if path else response_data
            if mapping.extract_as == "list" and not isinstance(value, list):
                value = [] if value is None else [value]
            set_path(ctx.variables, strip_braces(mapping.flow_variable), value)
            ctx.log.info(f"API mapping: set '{mapping.flow_variable}' from '{mapping.json_path}'")

    async def _record(self, node: ApiCallNode, ctx: ExecutionContext, url: str, response: Any, error: Any):
        """记录 API 调用日志，失败不影响流程"""
        if ctx.flow_logs is None:
            return
        try:
            await ctx.flow_logs.save(FlowLog(
                workspace_id=ctx.workspace.id,
                log_type="api-call",
                session_id=ctx.session.session_id,
                details={
                    "nodeId": node.id,
                    "nodeTitle": node.title,
                    "requestUrl": url,
                    "response": response,
                    "error": error,
                },
            ))
        except Exception as e:
            ctx.log.error(f"Failed to save API call log: {e}")


class WhatsAppTextNodeExecutor(NodeExecutor):
    """WhatsApp 文本发送节点"""

    async def execute(self, node: WhatsAppTextNode, ctx: ExecutionContext) -> NodeOutcome:
        text = substitute(node.text_message, ctx.variables)
        if not text:
            ctx.log.warning(f"WhatsApp text node '{node.id}' has no message")
            return NodeOutcome.route()

        recipient = substitute(node.phone_number, ctx.variables) or whatsapp_recipient(ctx.session)
        instance = substitute(node.instance_name, ctx.variables) or None
        try:
            await ctx.messaging.send_whatsapp_text(ctx.workspace.whatsapp, recipient, text, instance)
        except IntegrationError as e:
            ctx.log.error(f"WhatsApp text delivery failed: {e.message}")
        return NodeOutcome.route()


class WhatsAppMediaNodeExecutor(NodeExecutor):
    """WhatsApp 媒体发送节点"""

    async def execute(self, node: WhatsAppMediaNode, ctx: ExecutionContext) -> NodeOutcome:
        media_url = substitute(node.media_url, ctx.variables)
        if not media_url:
            ctx.log.warning(f"WhatsApp media node '{node.id}' has no media URL")
            return NodeOutcome.route()

        recipient = substitute(node.phone_number, ctx.variables) or whatsapp_recipient(ctx.session)
        instance = substitute(node.instance_name, ctx.variables) or None
        try:
            await ctx.messaging.send_whatsapp_media(
                ctx.workspace.whatsapp,
                recipient,
                media_url,
                (node.media_type or "image").lower(),
                substitute(node.caption, ctx.variables),
                instance
            )
        except IntegrationError as e:
            ctx.log.error(f"WhatsApp media delivery failed: {e.message}")
        return NodeOutcome.route()


class DialogySendMessageNodeExecutor(NodeExecutor):
    """Dialogy 消息发送节点"""

    async def execute(self, node: DialogySendMessageNode, ctx: ExecutionContext) -> NodeOutcome:
        await ctx.send(substitute(node.dialogy_message_content, ctx.variables))
        return NodeOutcome.route()


class AiTextGenerationNodeExecutor(NodeExecutor):
    """AI 文本生成节点"""

    async def execute(self, node: AiTextGenerationNode, ctx: ExecutionContext) -> NodeOutcome:
        output = strip_braces(node.ai_output_variable)
        if not output or not node.ai_prompt_text:
            ctx.log.warning(f"AI text node '{node.id}' needs a prompt and an output variable")
            return NodeOutcome.route()

        prompt = substitute(node.ai_prompt_text, ctx.variables)
        try:
            if ctx.text_generator is None:
                raise IntegrationError("no text generator configured")
            text = await ctx.text_generator.generate_text(prompt, model=node.ai_model_name or None)
        except Exception as e:
            ctx.log.error(f"AI text generation failed: {e}")
            text = f"Error generating text: {e}"
        set_path(ctx.variables, output, text)
        return NodeOutcome.route()


class IntelligentAgentNodeExecutor(NodeExecutor):
    """智能对话代理节点"""

    async def execute(self, node: IntelligentAgentNode, ctx: ExecutionContext) -> NodeOutcome:
        output = strip_braces(node.agent_response_variable)
        source = strip_braces(node.user_input_variable)
        if not output or not source:
            ctx.log.warning(f"Agent node '{node.id}' needs input and response variables")
            return NodeOutcome.route()

        user_input = get_path(ctx.variables, source)
        if not user_input:
            ctx.log.warning(f"Agent input variable '{source}' not found")
            set_path(ctx.variables, output, "Error: User input not found.")
            return NodeOutcome.route()

        try:
            if ctx.text_generator is None:
                raise IntegrationError("no text generator configured")
            reply = await ctx.text_generator.chat_reply(
                stringify(user_input), node.agent_system_prompt or None
            )
        except Exception as e:
            ctx.log.error(f"Agent reply failed: {e}")
            reply = f"Error with agent: {e}"
        set_path(ctx.variables, output, reply)
        return NodeOutcome.route()


class DelayNodeExecutor(NodeExecutor):
    """延迟节点"""

    async def execute(self, node: DelayNode, ctx: ExecutionContext) -> NodeOutcome:
        await asyncio.sleep(max(0, node.delay_duration) / 1000)
        return NodeOutcome.route()


class LogConsoleNodeExecutor(NodeExecutor):
    """日志输出节点"""

    async def execute(self, node: LogConsoleNode, ctx: ExecutionContext) -> NodeOutcome:
        ctx.log.info(f"FLOW LOG: {substitute(node.log_message, ctx.variables)}")
        return NodeOutcome.route()


class EndFlowNodeExecutor(NodeExecutor):
    """结束节点"""

    async def execute(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        ctx.log.info("Reached end-flow node")
        return NodeOutcome.end()


class UnknownNodeExecutor(NodeExecutor):
    """未识别节点：走 default 出口"""

    async def execute(self, node: UnknownNode, ctx: ExecutionContext) -> NodeOutcome:
        ctx.log.warning(f"Node type '{node.raw_type}' is not supported, trying 'default' exit")
        return NodeOutcome.route()


def default_executors() -> Dict[NodeType, NodeExecutor]:
    """默认的节点执行器表"""
    prompt = PromptNodeExecutor()
    return {
        NodeType.START: StartNodeExecutor(),
        NodeType.MESSAGE: MessageNodeExecutor(),
        NodeType.INPUT: prompt,
        NodeType.DATE_INPUT: prompt,
        NodeType.FILE_UPLOAD: prompt,
        NodeType.RATING_INPUT: prompt,
        NodeType.OPTION: OptionNodeExecutor(),
        NodeType.CONDITION: ConditionNodeExecutor(),
        NodeType.TIME_OF_DAY: TimeOfDayNodeExecutor(),
        NodeType.SWITCH: SwitchNodeExecutor(),
        NodeType.SET_VARIABLE: SetVariableNodeExecutor(),
        NodeType.API_CALL: ApiCallNodeExecutor(),
        NodeType.WHATSAPP_TEXT: WhatsAppTextNodeExecutor(),
        NodeType.WHATSAPP_MEDIA: WhatsAppMediaNodeExecutor(),
        NodeType.DIALOGY_SEND_MESSAGE: DialogySendMessageNodeExecutor(),
        NodeType.AI_TEXT_GENERATION: AiTextGenerationNodeExecutor(),
        NodeType.INTELLIGENT_AGENT: IntelligentAgentNodeExecutor(),
        NodeType.DELAY: DelayNodeExecutor(),
        NodeType.LOG_CONSOLE: LogConsoleNodeExecutor(),
        NodeType.END_FLOW: EndFlowNodeExecutor(),
        NodeType.UNKNOWN: UnknownNodeExecutor(),
    }
