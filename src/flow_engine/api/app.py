"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pathlib import Path
import logging

import httpx

from .routers import webhooks, sessions, flows, logs, monitoring
from .middleware import RequestLoggingMiddleware
from .dependencies import app_state, get_app_state
from .. import __version__
from ..config import Settings
from ..core import FlowEngine, FlowParser, OutboundDispatcher, SessionManager, EngineMessages
from ..storage.repository import InMemoryWorkspaceRepository
from ..storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemySessionStore, SQLAlchemyChannelInstanceRepository,
    SQLAlchemyFlowLogRepository
)
from ..integrations import HttpMessagingClient, HttpxRequester, OpenAITextGenerator


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting Conversation Flow Engine API...")
    settings = Settings.from_env()
    parser = FlowParser()

    # 初始化数据库
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()

    # 初始化仓库
    session_store = SQLAlchemySessionStore(db_manager)
    channel_instances = SQLAlchemyChannelInstanceRepository(db_manager)
    flow_logs = SQLAlchemyFlowLogRepository(db_manager)

    flow_dir = Path(settings.flow_dir)
    if flow_dir.is_dir():
        workspaces = InMemoryWorkspaceRepository.from_directory(flow_dir, parser)
    else:
        logger.warning(f"Flow directory {flow_dir} not found, no workspaces loaded")
        workspaces = InMemoryWorkspaceRepository()

    if settings.channel_instances_file:
        for instance in parser.parse_channel_instances(settings.channel_instances_file):
            await channel_instances.save(instance)
            logger.info(f"Registered {instance.kind.value} instance '{instance.id}'")

    # 初始化外部集成
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True)
    messaging = HttpMessagingClient(http_client)
    text_generator = None
    if settings.openai_api_key:
        text_generator = OpenAITextGenerator(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            default_model=settings.openai_model
        )
    else:
        logger.warning("OPENAI_API_KEY not set, AI nodes will write error text")

    # 创建流程引擎
    dispatcher = OutboundDispatcher(messaging, channel_instances)
    engine = FlowEngine(
        session_store=session_store,
        dispatcher=dispatcher,
        messaging=messaging,
        text_generator=text_generator,
        http=HttpxRequester(http_client),
        flow_logs=flow_logs,
        messages=EngineMessages(
            invalid_option=settings.invalid_option_message,
            option_reply_hint=settings.option_reply_hint
        )
    )
    manager = SessionManager(engine, session_store, workspaces, flow_logs)

    # 保存到全局状态
    app_state.update({
        "settings": settings,
        "parser": parser,
        "db_manager": db_manager,
        "session_store": session_store,
        "workspaces": workspaces,
        "channel_instances": channel_instances,
        "flow_logs": flow_logs,
        "engine": engine,
        "session_manager": manager
    })

    logger.info("Conversation Flow Engine API started successfully")

    yield

    # 关闭时清理
    logger.info("Shutting down Conversation Flow Engine API...")
    await http_client.aclose()
    await db_manager.close()
    app_state.clear()
    logger.info("Conversation Flow Engine API shut down successfully")


# 创建FastAPI应用
app = FastAPI(
    title="Conversation Flow Engine API",
    description="对话流程执行引擎 RESTful API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 添加中间件
app.add_middleware(RequestLoggingMiddleware)

# 注册路由
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["webhooks"])
app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["sessions"])
app.include_router(flows.router, prefix="/api/v1/flows", tags=["flows"])
app.include_router(logs.router, prefix="/api/v1/logs", tags=["logs"])
app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])


# 全局异常处理
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """全局异常处理器"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request.state.request_id if hasattr(request.state, "request_id") else None
        }
    )


# 根路径
@app.get("/", tags=["root"])
async def root():
    """API根路径"""
    return {
        "name": "Conversation Flow Engine API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
        "health": "/api/v1/monitoring/health"
    }
