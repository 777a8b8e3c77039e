"""
条件求值器
"""
import re
import logging
from typing import Any, Optional
from datetime import datetime, date, time, timezone


logger = logging.getLogger(__name__)


TIME_ONLY_PATTERN = re.compile(r"^(\d{2}):(\d{2})(?::(\d{2}))?$")
DMY_PATTERN = re.compile(r"^(\d{2})/(\d{2})/(\d{4})(?:[ T](\d{2}):(\d{2})(?::(\d{2}))?)?$")
FLOAT_PREFIX_PATTERN = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")

# 秒级时间戳与毫秒级时间戳的分界
EPOCH_MILLIS_THRESHOLD = 1e11

DATE_OPERATORS = ("isdateafter", "isdatebefore")


def _local_tz():
    return datetime.now().astimezone().tzinfo


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_float(value: Any) -> Optional[float]:
    """宽松解析数字（取字符串开头的数字部分），失败返回 None"""
    if _is_number(value):
        return float(value)
    if value is None or isinstance(value, bool):
        return None
    match = FLOAT_PREFIX_PATTERN.match(str(value))
    if not match:
        return None
    return float(match.group(1))


def _strict_float(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except ValueError:
        return None


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=_local_tz())
    return value


def coerce_to_date(raw: Any) -> Optional[datetime]:
    """
    把任意值转换为带时区的时间

    支持 datetime/date、秒或毫秒时间戳、"HH:mm[:ss]"（今天）、
    "dd/mm/yyyy[ HH:mm[:ss]]" 以及 ISO-8601 字符串。无法解析时返回 None。
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, datetime):
        return _aware(raw)

    if isinstance(raw, date):
        return _aware(datetime.combine(raw, time()))

    if _is_number(raw):
        seconds = raw if raw < EPOCH_MILLIS_THRESHOLD else raw / 1000
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(raw).strip()
    if not text:
        return None

    match = TIME_ONLY_PATTERN.match(text)
    if match:
        hh, mm, ss = match.groups()
        try:
            return datetime.now(_local_tz()).replace(
                hour=int(hh), minute=int(mm), second=int(ss or 0), microsecond=0
            )
        except ValueError:
            return None

    match = DMY_PATTERN.match(text)
    if match:
        dd, mm, yyyy, hh, mi, ss = match.groups()
        try:
            return _aware(datetime(
                int(yyyy), int(mm), int(dd),
                int(hh or 0), int(mi or 0), int(ss or 0)
            ))
        except ValueError:
            return None

    iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return _aware(datetime.fromisoformat(iso))
    except ValueError:
        return None


def _coerce(value: Any, data_type: str, date_operator: bool) -> Any:
    """按数据类型转换操作数，失败时保留原值"""
    if date_operator or data_type == "date":
        parsed = coerce_to_date(value)
        return value if parsed is None else parsed
    if data_type == "number":
        parsed = parse_float(value)
        return value if parsed is None else parsed
    if data_type == "boolean":
        text = str(value).lower()
        if text == "true":
            return True
        if text == "false":
            return False
    return value


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _numeric_pair(a: Any, b: Any):
    """尝试把两侧转换为数字对，无法转换时返回 None"""
    if _is_number(a) and _is_number(b):
        return float(a), float(b)
    if _is_number(a) and isinstance(b, str):
        other = _strict_float(b)
        return (float(a), other) if other is not None else None
    if isinstance(a, str) and _is_number(b):
        other = _strict_float(a)
        return (other, float(b)) if other is not None else None
    return None


def _loose_equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    numbers = _numeric_pair(a, b)
    if numbers is not None:
        return numbers[0] == numbers[1]
    if isinstance(a, datetime) and isinstance(b, datetime):
        return a == b
    return _as_text(a) == _as_text(b)


def _loose_compare(a: Any, b: Any) -> Optional[int]:
    """返回 -1/0/1，无法比较时返回 None"""
    numbers = _numeric_pair(a, b)
    if numbers is not None:
        left, right = numbers
    elif isinstance(a, datetime) and isinstance(b, datetime):
        left, right = a, b
    elif isinstance(a, str) and isinstance(b, str):
        left, right = a, b
    else:
        return None
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def evaluate(left_raw: Any, right_raw: Any, data_type: Optional[str], operator: Optional[str]) -> bool:
    """
    计算条件结果

    Args:
        left_raw: 左操作数（已解析的变量值）
        right_raw: 右操作数（已替换变量的文本）
        data_type: string / number / boolean / date
        operator: 比较运算符，大小写不敏感

    Returns:
        条件是否成立，任何无法比较的情况都返回 False
    """
    op = (operator or "").strip().lower()
    kind = (data_type or "string").strip().lower()
    is_date_op = op in DATE_OPERATORS

    a = _coerce(left_raw, kind, is_date_op)
    b = _coerce(right_raw, kind, is_date_op)

    if op == "==":
        return _loose_equals(a, b)
    if op == "!=":
        return not _loose_equals(a, b)
    if op in (">", "<", ">=", "<="):
        result = _loose_compare(a, b)
        if result is None:
            return False
        return {
            ">": result > 0,
            "<": result < 0,
            ">=": result >= 0,
            "<=": result <= 0,
        }[op]
    if op == "contains":
        return _as_text(b).lower() in _as_text(a).lower()
    if op == "startswith":
        return _as_text(a).lower().startswith(_as_text(b).lower())
    if op == "endswith":
        return _as_text(a).lower().endswith(_as_text(b).lower())
    if op == "isempty":
        return _is_blank(a)
    if op == "isnotempty":
        return not _is_blank(a)
    if op == "istrue":
        return a is True or str(a).lower() == "true"
    if op == "isfalse":
        return a is False or str(a).lower() == "false"
    if is_date_op:
        left, right = coerce_to_date(a), coerce_to_date(b)
        if left is None or right is None:
            return False
        return left > right if op == "isdateafter" else left < right

    logger.warning(f"Unknown condition operator '{operator}' (normalized '{op}')")
    return False
