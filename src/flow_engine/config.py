"""
运行配置（从环境变量读取）
"""
import os
from dataclasses import dataclass
from typing import Optional, Mapping

from .core.context import DEFAULT_INVALID_OPTION_MESSAGE, DEFAULT_OPTION_REPLY_HINT


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """应用配置"""
    database_url: str = "sqlite+aiosqlite:///./flow_engine.db"
    flow_dir: str = "flows"
    channel_instances_file: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    api_workers: int = 1
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    http_timeout_seconds: float = 30.0
    invalid_option_message: str = DEFAULT_INVALID_OPTION_MESSAGE
    option_reply_hint: str = DEFAULT_OPTION_REPLY_HINT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """从环境变量构建配置"""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            database_url=env.get("DATABASE_URL", defaults.database_url),
            flow_dir=env.get("FLOW_DIR", defaults.flow_dir),
            channel_instances_file=env.get("CHANNEL_INSTANCES_FILE") or None,
            api_host=env.get("API_HOST", defaults.api_host),
            api_port=int(env.get("API_PORT", defaults.api_port)),
            api_reload=_as_bool(env.get("API_RELOAD"), defaults.api_reload),
            api_workers=int(env.get("API_WORKERS", defaults.api_workers)),
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            openai_base_url=env.get("OPENAI_BASE_URL") or None,
            openai_model=env.get("OPENAI_MODEL", defaults.openai_model),
            http_timeout_seconds=float(env.get("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds)),
            invalid_option_message=env.get("FLOW_INVALID_OPTION_MESSAGE") or defaults.invalid_option_message,
            option_reply_hint=env.get("FLOW_OPTION_REPLY_HINT") or defaults.option_reply_hint,
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        )
