"""
API 路由器
"""

from . import webhooks, sessions, flows, logs, monitoring

__all__ = ["webhooks", "sessions", "flows", "logs", "monitoring"]
