"""
流程变量解析与替换
"""
import re
import json
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone


VARIABLE_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_.]+)\s*\}\}")
BRACES_PATTERN = re.compile(r"\{\{|\}\}")

_MISSING = object()


def _split_path(path: str) -> List[str]:
    return [part for part in str(path).split(".") if part != ""]


def _lookup(obj: Any, path: str) -> Any:
    """按点路径查找，找不到时返回 _MISSING"""
    parts = _split_path(path)
    if not parts:
        return _MISSING
    current = obj
    for part in parts:
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list):
            try:
                index = int(part)
            except ValueError:
                return _MISSING
            if index < 0 or index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def get_path(obj: Any, path: Optional[str], default: Any = None) -> Any:
    """
    按点路径读取值（不会抛出异常）

    Args:
        obj: 字典或列表
        path: 形如 "a.b.0.c" 的路径
        default: 未找到时的返回值
    """
    if obj is None or not path:
        return default
    value = _lookup(obj, path)
    return default if value is _MISSING else value


def has_path(obj: Any, path: Optional[str]) -> bool:
    """路径是否存在"""
    if obj is None or not path:
        return False
    return _lookup(obj, path) is not _MISSING


def set_path(obj: Dict[str, Any], path: str, value: Any) -> Dict[str, Any]:
    """按点路径写入值，自动创建中间字典"""
    parts = _split_path(path)
    if not parts:
        return obj
    current = obj
    for index, part in enumerate(parts):
        last = index == len(parts) - 1
        if isinstance(current, list) and part.isdigit() and int(part) < len(current):
            if last:
                current[int(part)] = value
                return obj
            child = current[int(part)]
            if not isinstance(child, (dict, list)):
                child = {}
                current[int(part)] = child
            current = child
            continue
        if not isinstance(current, dict):
            # 无法在标量上继续写入
            return obj
        if last:
            current[part] = value
            return obj
        child = current.get(part)
        if not isinstance(child, (dict, list)):
            child = {}
            current[part] = child
        current = child
    return obj


def delete_path(obj: Dict[str, Any], path: str) -> bool:
    """按点路径删除值"""
    parts = _split_path(path)
    if not parts:
        return False
    parent = _lookup(obj, ".".join(parts[:-1])) if len(parts) > 1 else obj
    if isinstance(parent, dict) and parts[-1] in parent:
        del parent[parts[-1]]
        return True
    return False


def strip_braces(reference: Optional[str]) -> str:
    """去掉 {{ }} 包裹，得到变量路径"""
    if not reference:
        return ""
    return BRACES_PATTERN.sub("", str(reference)).strip()


def now_iso() -> str:
    """当前 UTC 时间（ISO-8601，毫秒精度）"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def resolve_reference(variables: Dict[str, Any], name: str) -> Any:
    """解析单个变量名，未定义时返回 None"""
    value = _lookup(variables, name)
    if value is _MISSING and "." not in name:
        value = variables.get(name, _MISSING) if isinstance(variables, dict) else _MISSING
    return None if value is _MISSING else value


def stringify(value: Any, name: str = "") -> str:
    """把变量值渲染为文本"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, indent=2, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return f"[Error stringifying {name}]"
    return str(value)


def substitute(template: Optional[str], variables: Optional[Dict[str, Any]]) -> str:
    """
    替换模板中的 {{变量}} 引用

    单次扫描，替换结果不会被再次解析。未定义的变量替换为空字符串。
    """
    if template is None:
        return ""
    text = str(template)
    variables = variables or {}

    def _replace(match: "re.Match") -> str:
        name = match.group(1).strip()
        if name == "now":
            return now_iso()
        return stringify(resolve_reference(variables, name), name)

    return VARIABLE_PATTERN.sub(_replace, text)
