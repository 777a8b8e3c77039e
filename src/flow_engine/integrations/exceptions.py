"""
外部集成异常定义
"""
from typing import Optional, Dict, Any


class IntegrationError(Exception):
    """外部集成基础异常"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class MessagingError(IntegrationError):
    """消息投递异常"""

    def __init__(self, channel: str, message: str, status_code: Optional[int] = None):
        details = {"channel": channel}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.channel = channel
        self.status_code = status_code


class TextGenerationError(IntegrationError):
    """文本生成异常"""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        details = {}
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__
        super().__init__(message, details)


class HttpCallError(IntegrationError):
    """HTTP 调用异常"""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        details = {"url": url}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.url = url
        self.status_code = status_code
