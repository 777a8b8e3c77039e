"""
Pytest 配置和公共 fixtures
"""
import pytest
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Any, List, Optional

from flow_engine.core import FlowEngine, FlowParser, OutboundDispatcher, SessionManager
from flow_engine.models.session import FlowSession, ChannelContext
from flow_engine.models.workspace import (
    Workspace, ChannelInstance, ChannelInstanceKind
)
from flow_engine.storage.repository import (
    InMemorySessionStore, InMemoryWorkspaceRepository, InMemoryChannelInstanceRepository,
    InMemoryFlowLogRepository
)
from flow_engine.storage.sqlalchemy_repository import DatabaseManager
from flow_engine.integrations import RecordingMessagingClient, EchoTextGenerator
from flow_engine.integrations.http_client import HttpRequester, HttpResponse
from flow_engine.integrations.exceptions import HttpCallError


JID = "5511988887777@s.whatsapp.net"


def evolution_payload(text: str, jid: str = JID, **extra) -> Dict[str, Any]:
    """构造 Evolution 入站负载"""
    payload = {
        "event": "messages.upsert",
        "instance": "demo",
        "data": {
            "key": {"remoteJid": jid, "fromMe": False},
            "pushName": "Ana",
            "message": {"conversation": text},
        },
    }
    payload.update(extra)
    return payload


def chatwoot_payload(text: str, conversation_id: int = 42, **extra) -> Dict[str, Any]:
    """构造 Chatwoot 入站负载"""
    payload = {
        "event": "message_created",
        "message_type": "incoming",
        "content": text,
        "sender_type": "Contact",
        "conversation": {"id": conversation_id},
        "account": {"id": 7},
        "inbox": {"id": 3},
        "sender": {"id": 99, "name": "Ana", "phone_number": "+5511988887777"},
    }
    payload.update(extra)
    return payload


def dialogy_payload(text: str, conversation_id: str = "c-1", **extra) -> Dict[str, Any]:
    """构造 Dialogy 入站负载"""
    payload = {
        "event": "message.created",
        "conversation": {"id": conversation_id, "status": "open"},
        "message": {"content": text, "from_me": False},
        "contact": {"id": "ct-1", "name": "Ana", "phone_number": "+5511988887777"},
        "account": {"id": "acc-1"},
    }
    payload.update(extra)
    return payload


class FakeHttpRequester(HttpRequester):
    """记录请求并返回预设响应的 HTTP 请求器"""

    def __init__(self, responses: Optional[Dict[str, HttpResponse]] = None, fail: bool = False):
        self.responses = responses or {}
        self.fail = fail
        self.requests: List[Dict[str, Any]] = []

    async def request(self, method, url, headers=None, params=None, content=None):
        self.requests.append({
            "method": method, "url": url, "headers": list(headers or []),
            "params": list(params or []), "content": content,
        })
        if self.fail:
            raise HttpCallError(url, "Connection refused")
        return self.responses.get(url, HttpResponse(status_code=200, data={}))


class FixedClock:
    """可调整的固定时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def parser() -> FlowParser:
    return FlowParser()


@pytest.fixture
def messaging() -> RecordingMessagingClient:
    return RecordingMessagingClient()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def flow_logs() -> InMemoryFlowLogRepository:
    return InMemoryFlowLogRepository()


@pytest.fixture
def http() -> FakeHttpRequester:
    return FakeHttpRequester()


@pytest.fixture
def text_generator() -> EchoTextGenerator:
    return EchoTextGenerator(prefix="AI: ")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def channel_instances() -> InMemoryChannelInstanceRepository:
    return InMemoryChannelInstanceRepository([
        ChannelInstance(
            id="cw-1", kind=ChannelInstanceKind.CHATWOOT,
            base_url="https://chatwoot.test/", api_key="cw-token"
        ),
        ChannelInstance(
            id="dg-1", kind=ChannelInstanceKind.DIALOGY,
            base_url="https://dialogy.test", api_key="dg-token"
        ),
    ])


@pytest.fixture
def engine(session_store, messaging, channel_instances, http, text_generator, flow_logs, clock) -> FlowEngine:
    """创建使用内存存储的流程引擎"""
    return FlowEngine(
        session_store=session_store,
        dispatcher=OutboundDispatcher(messaging, channel_instances),
        messaging=messaging,
        text_generator=text_generator,
        http=http,
        flow_logs=flow_logs,
        clock=clock
    )


@pytest.fixture
def make_workspace(parser):
    """根据节点和连线构造工作区"""
    def _make(
        nodes: List[Dict[str, Any]],
        connections: List[Dict[str, Any]],
        workspace_id: str = "ws-1",
        **extra
    ) -> Workspace:
        document = {
            "id": workspace_id,
            "name": f"Workspace {workspace_id}",
            "whatsapp": {"baseUrl": "http://evolution.test", "apiKey": "key", "instanceName": "demo"},
            "chatwootInstanceId": "cw-1",
            "dialogyInstanceId": "dg-1",
            "nodes": nodes,
            "connections": connections,
        }
        document.update(extra)
        return parser.parse_workspace(document)
    return _make


@pytest.fixture
def make_session():
    """构造从指定节点开始的会话"""
    def _make(
        workspace: Workspace,
        node_id: str,
        variables: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        context: Optional[ChannelContext] = None
    ) -> FlowSession:
        return FlowSession(
            session_id=session_id or f"evolution_jid_{JID}",
            workspace_id=workspace.id,
            current_node_id=node_id,
            variables=dict(variables or {}),
            channel_context=context,
        )
    return _make


@pytest.fixture
def manager_for(engine, session_store, flow_logs):
    """为一组工作区创建会话管理器"""
    def _make(*workspaces: Workspace) -> SessionManager:
        return SessionManager(engine, session_store, InMemoryWorkspaceRepository(list(workspaces)), flow_logs)
    return _make


@pytest.fixture
async def test_database() -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库"""
    # 使用 SQLite 内存数据库进行测试
    db_manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()
