"""
API 中间件
"""
import time
import uuid
import logging
from typing import Callable, List
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    请求日志中间件

    为每个请求分配 X-Request-ID。webhook 路由在 request.state 上记录工作区和
    会话标识，完成日志和 X-Session-ID 响应头会带上它们，便于按会话追踪。
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        logger.debug(f"Request started: {request.method} {request.url.path} [request_id={request_id}]")

        response = await call_next(request)

        duration = time.perf_counter() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration:.6f}"

        session_key = getattr(request.state, "session_key", None)
        if session_key:
            response.headers["X-Session-ID"] = session_key

        tags = _flow_tags(request)
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"[request_id={request_id}]{''.join(tags)} [duration={duration:.3f}s]"
        )

        return response


def _flow_tags(request: Request) -> List[str]:
    """webhook 请求的工作区和会话标签"""
    tags = []
    workspace_id = getattr(request.state, "workspace_id", None)
    if workspace_id:
        tags.append(f" [workspace={workspace_id}]")
    session_key = getattr(request.state, "session_key", None)
    if session_key:
        tags.append(f" [session={session_key}]")
    return tags
