"""
流程定义解析器
"""
import re
import yaml
import json
import logging
from dataclasses import fields
from typing import Dict, Any, List, Optional, Union
from pathlib import Path
from jsonschema import Draft7Validator

from ..models.graph import (
    FlowGraph, Node, Edge, NodeType, NODE_CLASSES, UnknownNode, StartTrigger,
    VariableMapping, KeyValue, ResponseMapping, OptionItem, SwitchCase,
    DEFAULT_HANDLE
)
from ..models.workspace import (
    Workspace, WhatsAppCredentials, ChannelInstance, ChannelInstanceKind
)
from ..exceptions import FlowParseError


logger = logging.getLogger(__name__)


# 流程文档的基本结构
FLOW_DOCUMENT_SCHEMA = {
    "type": "object",
    "required": ["nodes"],
    "properties": {
        "id": {"type": ["string", "integer"]},
        "name": {"type": "string"},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "type"],
                "properties": {
                    "id": {"type": ["string", "integer"]},
                    "type": {"type": "string"},
                },
            },
        },
        "connections": {"type": "array", "items": {"type": "object"}},
        "edges": {"type": "array", "items": {"type": "object"}},
    },
}

CHANNEL_INSTANCE_SCHEMA = {
    "type": "object",
    "required": ["id", "kind", "base_url"],
    "properties": {
        "id": {"type": ["string", "integer"]},
        "kind": {"enum": [kind.value for kind in ChannelInstanceKind]},
        "base_url": {"type": "string"},
    },
}

# 各类节点的编辑器字段别名（已转换为 snake_case）
FIELD_ALIASES: Dict[NodeType, Dict[str, str]] = {
    NodeType.INPUT: {"variable_to_save_response": "variable_to_save"},
    NodeType.DATE_INPUT: {
        "date_input_label": "prompt_text",
        "variable_to_save_date": "variable_to_save",
    },
    NodeType.FILE_UPLOAD: {
        "upload_prompt_text": "prompt_text",
        "file_url_variable": "variable_to_save",
    },
    NodeType.RATING_INPUT: {
        "rating_question_text": "prompt_text",
        "rating_output_variable": "variable_to_save",
    },
    NodeType.OPTION: {"variable_to_save_choice": "variable_to_save"},
    NodeType.API_CALL: {
        "api_headers_list": "api_headers",
        "api_query_params_list": "api_query_params",
    },
}

DASH_PATTERN = re.compile(r"[‐-―−_]")
CAMEL_PATTERN = re.compile(r"(?<=[a-z0-9])([A-Z])")


def to_snake_case(key: str) -> str:
    """camelCase 转 snake_case"""
    return CAMEL_PATTERN.sub(r"_\1", key).lower()


def normalize_node_type(raw_type: Any) -> str:
    """规范化节点类型（去空白、小写、统一连字符）"""
    return DASH_PATTERN.sub("-", str(raw_type or "").strip().lower())


def _snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {to_snake_case(str(key)): value for key, value in data.items()}


def _as_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


class FlowParser:
    """流程解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.schema_validator = Draft7Validator(FLOW_DOCUMENT_SCHEMA)

    def load(self, source: Union[str, Path, Dict[str, Any]]) -> Dict[str, Any]:
        """
        读取流程文档为字典

        Args:
            source: 文件路径、YAML/JSON 字符串或字典
        """
        if isinstance(source, dict):
            return source

        if isinstance(source, Path) or (isinstance(source, str) and "\n" not in source):
            path = Path(source)
            try:
                is_file = path.is_file()
            except OSError:
                # 过长的字符串不是合法路径
                is_file = False
            if is_file:
                suffix = path.suffix.lower().lstrip('.')
                if suffix not in self.parsers:
                    raise FlowParseError(f"Unsupported file format: {suffix}")
                with open(path, 'r', encoding='utf-8') as f:
                    data = self.parsers[suffix](f.read())
                if not isinstance(data, dict):
                    raise FlowParseError(f"Flow file '{path}' must contain a mapping")
                return data

        if isinstance(source, (str, Path)):
            return self.parse_string(str(source))

        raise FlowParseError(f"Unsupported source type: {type(source)}")

    def parse_string(self, content: str) -> Dict[str, Any]:
        """解析 YAML 或 JSON 字符串"""
        for parser in (self._parse_json, self._parse_yaml):
            try:
                data = parser(content)
            except FlowParseError:
                continue
            if isinstance(data, dict):
                return data
        raise FlowParseError("Failed to parse flow string as YAML or JSON")

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise FlowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise FlowParseError(f"Failed to parse JSON: {e}")

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> FlowGraph:
        """解析流程图"""
        data = self.load(source)
        if 'workspace' in data:
            data = data['workspace']
        return self._parse_graph(data)

    def parse_workspace(self, source: Union[str, Path, Dict[str, Any]]) -> Workspace:
        """解析工作区（流程图加渠道关联）"""
        data = self.load(source)
        if 'workspace' in data:
            data = data['workspace']
        graph = self._parse_graph(data)
        raw = _snake_keys(data)

        whatsapp_data = _snake_keys(raw.get("whatsapp") or raw.get("evolution") or {})
        whatsapp = WhatsAppCredentials(
            base_url=str(whatsapp_data.get("base_url") or raw.get("evolution_api_url") or ""),
            api_key=str(whatsapp_data.get("api_key") or raw.get("evolution_api_key") or ""),
            instance_name=str(
                whatsapp_data.get("instance_name") or raw.get("evolution_instance_name") or ""
            ),
        )

        workspace_id = str(raw.get("id") or graph.id)
        if not workspace_id:
            raise FlowParseError("Workspace definition requires an id")

        return Workspace(
            id=workspace_id,
            name=str(raw.get("name") or workspace_id),
            graph=graph,
            organization_id=raw.get("organization_id"),
            whatsapp=whatsapp,
            chatwoot_instance_id=raw.get("chatwoot_instance_id"),
            dialogy_instance_id=raw.get("dialogy_instance_id"),
            metadata=raw.get("metadata") or {},
        )

    def parse_channel_instances(self, source: Union[str, Path, Dict[str, Any]]) -> List[ChannelInstance]:
        """解析渠道实例列表"""
        data = self.load(source)
        validator = Draft7Validator(CHANNEL_INSTANCE_SCHEMA)
        instances = []
        for raw in data.get("instances", []):
            raw = _snake_keys(raw)
            errors = [error.message for error in validator.iter_errors(raw)]
            if errors:
                raise FlowParseError(f"Invalid channel instance: {'; '.join(errors)}")
            instances.append(ChannelInstance(
                id=str(raw["id"]),
                kind=ChannelInstanceKind(raw["kind"]),
                base_url=raw["base_url"],
                api_key=str(raw.get("api_key") or raw.get("api_access_token") or ""),
                name=raw.get("name", ""),
            ))
        return instances

    def _parse_graph(self, data: Dict[str, Any]) -> FlowGraph:
        """解析字典格式的流程图"""
        errors = sorted(self.schema_validator.iter_errors(data), key=lambda e: list(e.path))
        if errors:
            messages = [
                f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
                for error in errors
            ]
            raise FlowParseError(f"Invalid flow document: {'; '.join(messages)}")

        nodes = [self._parse_node(raw) for raw in data.get("nodes", [])]
        raw_edges = data.get("connections", data.get("edges")) or []
        edges = [self._parse_edge(raw, index) for index, raw in enumerate(raw_edges)]

        graph = FlowGraph(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            nodes=nodes,
            edges=edges
        )

        for diagnostic in graph.validate():
            logger.warning(f"Flow '{graph.id or graph.name}': {diagnostic.message}")

        return graph

    def _parse_node(self, raw: Dict[str, Any]) -> Node:
        """解析单个节点"""
        raw_type = raw.get("type")
        normalized = normalize_node_type(raw_type)
        try:
            node_type = NodeType(normalized)
        except ValueError:
            node_type = NodeType.UNKNOWN

        node_id = str(raw["id"])
        title = str(raw.get("title") or raw.get("name") or "")

        if node_type == NodeType.UNKNOWN:
            return UnknownNode(id=node_id, title=title, raw_type=str(raw_type), config=dict(raw))

        data = _snake_keys(raw)
        for alias, canonical in FIELD_ALIASES.get(node_type, {}).items():
            if alias in data and not data.get(canonical):
                data[canonical] = data[alias]

        node_class = NODE_CLASSES[node_type]
        names = {f.name for f in fields(node_class)} - {"id", "title"}
        kwargs = {name: data[name] for name in names if data.get(name) is not None}

        converter = getattr(self, f"_convert_{node_type.name.lower()}", None)
        if converter:
            converter(kwargs, data)
        if "api_response_as_input" in kwargs:
            kwargs["api_response_as_input"] = _as_bool(kwargs["api_response_as_input"])

        return node_class(id=node_id, title=title, **kwargs)

    # 变体字段转换

    def _convert_start(self, kwargs: Dict[str, Any], data: Dict[str, Any]):
        triggers = []
        for index, raw in enumerate(data.get("triggers") or []):
            raw = _snake_keys(raw)
            mappings = [
                VariableMapping(json_path=m["json_path"], flow_variable=m["flow_variable"])
                for m in (_snake_keys(item) for item in raw.get("variable_mappings") or [])
                if m.get("json_path") and m.get("flow_variable")
            ]
            triggers.append(StartTrigger(
                id=str(raw.get("id") or f"trigger-{index}"),
                name=str(raw.get("name") or ""),
                type=str(raw.get("type") or "webhook"),
                enabled=bool(raw.get("enabled", True)),
                keyword=str(raw.get("keyword") or ""),
                variable_mappings=mappings,
                session_timeout_seconds=_as_int(raw.get("session_timeout_seconds"), 0),
            ))
        kwargs["triggers"] = triggers

    def _convert_rating_input(self, kwargs: Dict[str, Any], data: Dict[str, Any]):
        kwargs["max_rating_value"] = _as_int(data.get("max_rating_value"), 5)

    def _convert_option(self, kwargs: Dict[str, Any], data: Dict[str, Any]):
        options = []
        raw_options = data.get("options")
        if isinstance(raw_options, list):
            for raw in raw_options:
                if isinstance(raw, dict):
                    value = str(raw.get("value", raw.get("label", "")))
                    options.append(OptionItem(id=str(raw.get("id") or value), value=value))
                else:
                    options.append(OptionItem(id=str(raw), value=str(raw)))
        else:
            for line in str(data.get("options_list") or "").split("\n"):
                line = line.strip()
                if line:
                    options.append(OptionItem(id=line, value=line))
        kwargs["options"] = options

    def _convert_switch(self, kwargs: Dict[str, Any], data: Dict[str, Any]):
        kwargs["switch_cases"] = [
            SwitchCase(id=str(raw.get("id")), value=str(raw.get("value", "")))
            for raw in data.get("switch_cases") or []
            if raw.get("id") is not None
        ]

    def _convert_api_call(self, kwargs: Dict[str, Any], data: Dict[str, Any]):
        for name in ("api_headers", "api_query_params"):
            kwargs[name] = [
                KeyValue(key=str(raw.get("key")), value=str(raw.get("value") or ""))
                for raw in data.get(name) or []
                if raw.get("key")
            ]
        kwargs["api_response_mappings"] = [
            ResponseMapping(
                json_path=m["json_path"],
                flow_variable=m["flow_variable"],
                extract_as=str(m.get("extract_as") or "single")
            )
            for m in (_snake_keys(raw) for raw in data.get("api_response_mappings") or [])
            if m.get("json_path") and m.get("flow_variable")
        ]
        kwargs["api_method"] = str(data.get("api_method") or "GET").upper()

    def _convert_delay(self, kwargs: Dict[str, Any], data: Dict[str, Any]):
        kwargs["delay_duration"] = max(0, _as_int(data.get("delay_duration"), 1000))

    def _parse_edge(self, raw: Dict[str, Any], index: int) -> Edge:
        """解析连接"""
        data = _snake_keys(raw)
        source = data.get("from") or data.get("source") or data.get("from_node_id")
        target = data.get("to") or data.get("target") or data.get("to_node_id")
        if source is None or target is None:
            raise FlowParseError(f"Connection #{index} requires both source and target")
        handle = data.get("source_handle") or DEFAULT_HANDLE
        return Edge(
            id=str(data.get("id") or f"{source}-{handle}-{target}"),
            from_node_id=str(source),
            to_node_id=str(target),
            source_handle=str(handle),
            target_handle=data.get("target_handle"),
        )
