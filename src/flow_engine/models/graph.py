"""
流程图定义模型
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, ClassVar, Tuple
from enum import Enum

from .session import AwaitingInputType


# 句柄标识（边的源端口名称）
HandleId = str

DEFAULT_HANDLE: HandleId = "default"
TRUE_HANDLE: HandleId = "true"
FALSE_HANDLE: HandleId = "false"
OTHERWISE_HANDLE: HandleId = "otherwise"


class NodeType(Enum):
    """节点类型"""
    START = "start"
    MESSAGE = "message"
    INPUT = "input"
    DATE_INPUT = "date-input"
    FILE_UPLOAD = "file-upload"
    RATING_INPUT = "rating-input"
    OPTION = "option"
    CONDITION = "condition"
    TIME_OF_DAY = "time-of-day"
    SWITCH = "switch"
    SET_VARIABLE = "set-variable"
    API_CALL = "api-call"
    WHATSAPP_TEXT = "whatsapp-text"
    WHATSAPP_MEDIA = "whatsapp-media"
    DIALOGY_SEND_MESSAGE = "dialogy-send-message"
    AI_TEXT_GENERATION = "ai-text-generation"
    INTELLIGENT_AGENT = "intelligent-agent"
    DELAY = "delay"
    LOG_CONSOLE = "log-console"
    END_FLOW = "end-flow"
    UNKNOWN = "unknown"


@dataclass
class Node:
    """流程节点基类"""
    id: str
    title: str = ""

    node_type: ClassVar[NodeType] = NodeType.UNKNOWN

    @property
    def type(self) -> NodeType:
        return self.node_type

    def declared_handles(self) -> List[HandleId]:
        """节点声明的输出句柄"""
        return [DEFAULT_HANDLE]


# 触发与映射配置

@dataclass
class VariableMapping:
    """从 webhook 负载映射到流程变量"""
    json_path: str
    flow_variable: str


@dataclass
class StartTrigger:
    """开始节点触发器"""
    id: str
    name: str
    type: str = "webhook"
    enabled: bool = True
    keyword: str = ""
    variable_mappings: List[VariableMapping] = field(default_factory=list)
    session_timeout_seconds: int = 0

    @property
    def keywords(self) -> List[str]:
        """逗号分隔的关键字（小写）"""
        return [k.strip().lower() for k in (self.keyword or "").split(",") if k.strip()]

    @property
    def is_webhook(self) -> bool:
        return self.type == "webhook" and self.enabled


@dataclass
class KeyValue:
    """键值对（请求头、查询参数）"""
    key: str
    value: str = ""


@dataclass
class ResponseMapping:
    """API 响应到流程变量的映射"""
    json_path: str
    flow_variable: str
    extract_as: str = "single"


@dataclass
class OptionItem:
    """选项节点的选项"""
    id: str
    value: str


@dataclass
class SwitchCase:
    """分支节点的分支"""
    id: str
    value: str


# 节点变体

@dataclass
class StartNode(Node):
    """开始节点"""
    triggers: List[StartTrigger] = field(default_factory=list)

    node_type: ClassVar[NodeType] = NodeType.START

    def declared_handles(self) -> List[HandleId]:
        handles = [DEFAULT_HANDLE]
        for trigger in self.triggers:
            if trigger.enabled:
                handles.append(trigger.name)
            handles.extend(trigger.keywords)
        return handles


@dataclass
class MessageNode(Node):
    """文本消息节点"""
    text: str = ""

    node_type: ClassVar[NodeType] = NodeType.MESSAGE


@dataclass
class PromptNode(Node):
    """等待用户回复的节点基类"""
    prompt_text: str = ""
    variable_to_save: str = ""
    # 只接受 isApiCallResponse 回调作为回复
    api_response_as_input: bool = False
    # 从回调负载中取值的路径
    api_response_path_for_value: str = ""

    awaiting_kind: ClassVar[AwaitingInputType] = AwaitingInputType.INPUT


@dataclass
class InputNode(PromptNode):
    """文本输入节点"""
    node_type: ClassVar[NodeType] = NodeType.INPUT
    awaiting_kind: ClassVar[AwaitingInputType] = AwaitingInputType.INPUT


@dataclass
class DateInputNode(PromptNode):
    """日期输入节点"""
    node_type: ClassVar[NodeType] = NodeType.DATE_INPUT
    awaiting_kind: ClassVar[AwaitingInputType] = AwaitingInputType.DATE_INPUT


@dataclass
class FileUploadNode(PromptNode):
    """文件上传节点"""
    node_type: ClassVar[NodeType] = NodeType.FILE_UPLOAD
    awaiting_kind: ClassVar[AwaitingInputType] = AwaitingInputType.FILE_UPLOAD


@dataclass
class RatingInputNode(PromptNode):
    """评分输入节点"""
    max_rating_value: int = 5

    node_type: ClassVar[NodeType] = NodeType.RATING_INPUT
    awaiting_kind: ClassVar[AwaitingInputType] = AwaitingInputType.RATING_INPUT


@dataclass
class OptionNode(Node):
    """选项节点"""
    question_text: str = ""
    options: List[OptionItem] = field(default_factory=list)
    variable_to_save: str = ""
    api_response_as_input: bool = False
    api_response_path_for_value: str = ""

    node_type: ClassVar[NodeType] = NodeType.OPTION

    def declared_handles(self) -> List[HandleId]:
        return [option.id for option in self.options] + [DEFAULT_HANDLE]


@dataclass
class ConditionNode(Node):
    """条件节点"""
    condition_variable: str = ""
    condition_operator: str = ""
    condition_value: str = ""
    condition_data_type: str = "string"

    node_type: ClassVar[NodeType] = NodeType.CONDITION

    def declared_handles(self) -> List[HandleId]:
        return [TRUE_HANDLE, FALSE_HANDLE]


@dataclass
class TimeOfDayNode(Node):
    """时间段节点"""
    start_time: str = ""
    end_time: str = ""
    timezone: Optional[str] = None

    node_type: ClassVar[NodeType] = NodeType.TIME_OF_DAY

    def declared_handles(self) -> List[HandleId]:
        return [TRUE_HANDLE, FALSE_HANDLE]


@dataclass
class SwitchNode(Node):
    """多路分支节点"""
    switch_variable: str = ""
    switch_cases: List[SwitchCase] = field(default_factory=list)

    node_type: ClassVar[NodeType] = NodeType.SWITCH

    def declared_handles(self) -> List[HandleId]:
        return [case.id for case in self.switch_cases] + [OTHERWISE_HANDLE]


@dataclass
class SetVariableNode(Node):
    """设置变量节点"""
    variable_name: str = ""
    variable_value: str = ""

    node_type: ClassVar[NodeType] = NodeType.SET_VARIABLE


@dataclass
class ApiCallNode(Node):
    """HTTP 调用节点"""
    api_url: str = ""
    api_method: str = "GET"
    api_headers: List[KeyValue] = field(default_factory=list)
    api_query_params: List[KeyValue] = field(default_factory=list)
    api_auth_type: str = "none"
    api_auth_bearer_token: str = ""
    api_auth_basic_user: str = ""
    api_auth_basic_password: str = ""
    api_body_type: str = "none"
    api_body_json: str = ""
    api_body_raw: str = ""
    api_output_variable: str = ""
    api_response_path: str = ""
    api_response_mappings: List[ResponseMapping] = field(default_factory=list)

    node_type: ClassVar[NodeType] = NodeType.API_CALL


@dataclass
class WhatsAppTextNode(Node):
    """WhatsApp 文本发送节点"""
    instance_name: str = ""
    phone_number: str = ""
    text_message: str = ""

    node_type: ClassVar[NodeType] = NodeType.WHATSAPP_TEXT


@dataclass
class WhatsAppMediaNode(Node):
    """WhatsApp 媒体发送节点"""
    instance_name: str = ""
    phone_number: str = ""
    media_url: str = ""
    media_type: str = "image"
    caption: str = ""

    node_type: ClassVar[NodeType] = NodeType.WHATSAPP_MEDIA


@dataclass
class DialogySendMessageNode(Node):
    """Dialogy 消息发送节点"""
    dialogy_message_content: str = ""

    node_type: ClassVar[NodeType] = NodeType.DIALOGY_SEND_MESSAGE


@dataclass
class AiTextGenerationNode(Node):
    """AI 文本生成节点"""
    ai_prompt_text: str = ""
    ai_output_variable: str = ""
    ai_model_name: str = ""

    node_type: ClassVar[NodeType] = NodeType.AI_TEXT_GENERATION


@dataclass
class IntelligentAgentNode(Node):
    """智能对话代理节点"""
    user_input_variable: str = ""
    agent_response_variable: str = ""
    agent_system_prompt: str = ""

    node_type: ClassVar[NodeType] = NodeType.INTELLIGENT_AGENT


@dataclass
class DelayNode(Node):
    """延迟节点（毫秒）"""
    delay_duration: int = 1000

    node_type: ClassVar[NodeType] = NodeType.DELAY


@dataclass
class LogConsoleNode(Node):
    """日志输出节点"""
    log_message: str = ""

    node_type: ClassVar[NodeType] = NodeType.LOG_CONSOLE


@dataclass
class EndFlowNode(Node):
    """结束节点"""
    node_type: ClassVar[NodeType] = NodeType.END_FLOW

    def declared_handles(self) -> List[HandleId]:
        return []


@dataclass
class UnknownNode(Node):
    """未识别类型的节点"""
    raw_type: str = ""
    config: Dict[str, Any] = field(default_factory=dict)

    node_type: ClassVar[NodeType] = NodeType.UNKNOWN


NODE_CLASSES: Dict[NodeType, type] = {
    cls.node_type: cls for cls in (
        StartNode, MessageNode, InputNode, DateInputNode, FileUploadNode,
        RatingInputNode, OptionNode, ConditionNode, TimeOfDayNode, SwitchNode,
        SetVariableNode, ApiCallNode, WhatsAppTextNode, WhatsAppMediaNode,
        DialogySendMessageNode, AiTextGenerationNode, IntelligentAgentNode,
        DelayNode, LogConsoleNode, EndFlowNode, UnknownNode,
    )
}


@dataclass
class Edge:
    """流程连接"""
    id: str
    from_node_id: str
    to_node_id: str
    source_handle: HandleId = DEFAULT_HANDLE
    target_handle: Optional[str] = None


@dataclass
class GraphDiagnostic:
    """加载时诊断信息"""
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "edge_id": self.edge_id,
        }


@dataclass
class FlowGraph:
    """流程图"""
    id: str = ""
    name: str = ""
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    def __post_init__(self):
        """构建节点和连接索引（重复时先出现者优先）"""
        self._nodes: Dict[str, Node] = {}
        for node in self.nodes:
            self._nodes.setdefault(node.id, node)
        self._routes: Dict[Tuple[str, str], Edge] = {}
        for edge in self.edges:
            self._routes.setdefault((edge.from_node_id, edge.source_handle), edge)

    def get_node(self, node_id: Optional[str]) -> Optional[Node]:
        """根据ID获取节点"""
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def next_node_id(self, node_id: str, handle: HandleId) -> Optional[str]:
        """根据源节点和句柄查找下一个节点"""
        edge = self._routes.get((node_id, handle))
        return edge.to_node_id if edge else None

    def start_node(self) -> Optional[StartNode]:
        """获取开始节点"""
        for node in self.nodes:
            if isinstance(node, StartNode):
                return node
        return None

    def validate(self) -> List[GraphDiagnostic]:
        """
        加载时校验流程图

        Returns:
            诊断列表，空列表表示没有发现问题
        """
        diagnostics = []

        seen = set()
        for node in self.nodes:
            if node.id in seen:
                diagnostics.append(GraphDiagnostic(
                    "duplicate_node", f"Duplicate node id '{node.id}'", node_id=node.id
                ))
            seen.add(node.id)
            if isinstance(node, UnknownNode):
                diagnostics.append(GraphDiagnostic(
                    "unknown_node_type",
                    f"Node '{node.id}' has unrecognized type '{node.raw_type}'",
                    node_id=node.id
                ))

        if self.start_node() is None:
            diagnostics.append(GraphDiagnostic("missing_start", "Flow has no start node"))

        for edge in self.edges:
            source = self.get_node(edge.from_node_id)
            if source is None:
                diagnostics.append(GraphDiagnostic(
                    "dangling_source",
                    f"Edge '{edge.id}' starts at missing node '{edge.from_node_id}'",
                    edge_id=edge.id
                ))
            elif edge.source_handle not in source.declared_handles():
                diagnostics.append(GraphDiagnostic(
                    "undeclared_handle",
                    f"Edge '{edge.id}' uses handle '{edge.source_handle}' "
                    f"not declared by {source.type.value} node '{source.id}'",
                    node_id=source.id,
                    edge_id=edge.id
                ))
            if self.get_node(edge.to_node_id) is None:
                diagnostics.append(GraphDiagnostic(
                    "dangling_target",
                    f"Edge '{edge.id}' points to missing node '{edge.to_node_id}'",
                    edge_id=edge.id
                ))

        return diagnostics
