"""
通用 HTTP 请求能力（供 api-call 节点使用）
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple

import httpx

from .exceptions import HttpCallError


logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """HTTP 响应"""
    status_code: int
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpRequester(ABC):
    """HTTP 请求接口"""

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[List[Tuple[str, str]]] = None,
        params: Optional[List[Tuple[str, str]]] = None,
        content: Optional[str] = None
    ) -> HttpResponse:
        """
        发送请求

        响应体能解析为 JSON 时返回解析结果，否则返回文本。
        网络层失败抛出 HttpCallError，非 2xx 状态不抛出。
        """
        pass


class HttpxRequester(HttpRequester):
    """基于 httpx 的请求实现"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def close(self):
        """关闭 HTTP 客户端"""
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[List[Tuple[str, str]]] = None,
        params: Optional[List[Tuple[str, str]]] = None,
        content: Optional[str] = None
    ) -> HttpResponse:
        try:
            response = await self._client.request(
                method.upper(),
                url,
                headers=headers or None,
                params=params or None,
                content=content.encode("utf-8") if content is not None else None,
            )
        except httpx.InvalidURL as e:
            raise HttpCallError(url, f"Invalid URL: {e}")
        except httpx.HTTPError as e:
            raise HttpCallError(url, f"Request failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return HttpResponse(
            status_code=response.status_code,
            data=data,
            headers=dict(response.headers),
        )
