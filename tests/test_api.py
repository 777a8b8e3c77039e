"""
API 端点测试
"""
import logging

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, Mock

from flow_engine.api import app
from flow_engine.api.dependencies import app_state, get_session_manager
from flow_engine.core import FlowParser
from flow_engine.exceptions import FlowEngineError
from flow_engine.models.workspace import FlowLog
from flow_engine.storage.repository import InMemoryWorkspaceRepository

from conftest import JID, evolution_payload


SESSION_ID = f"evolution_jid_{JID}"


@pytest.fixture
def workspace(make_workspace):
    return make_workspace(
        [
            {"id": "start", "type": "start", "triggers": [{"name": "Webhook"}]},
            {"id": "ask", "type": "input", "promptText": "Name?", "variableToSaveResponse": "name"},
            {"id": "greet", "type": "message", "text": "Hi {{name}}"},
        ],
        [
            {"from": "start", "to": "ask", "sourceHandle": "Webhook"},
            {"from": "ask", "to": "greet"},
        ],
        organizationId="org-1"
    )


@pytest.fixture
def client(workspace, manager_for, engine, session_store, flow_logs):
    """创建测试客户端（不执行应用生命周期，直接填充应用状态）"""
    manager = manager_for(workspace)
    app_state.update({
        "parser": FlowParser(),
        "session_store": session_store,
        "workspaces": manager.workspaces,
        "flow_logs": flow_logs,
        "engine": engine,
        "session_manager": manager,
    })
    yield TestClient(app)
    app_state.clear()
    app.dependency_overrides.clear()


class TestRootAndHealth:
    """根路径和健康检查测试"""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_request_id_header(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert "X-Process-Time" in response.headers

    def test_webhook_request_tagged_with_session(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="flow_engine.api.middleware"):
            response = client.post("/api/v1/webhooks/ws-1", json=evolution_payload("hello"))

        assert response.headers["X-Session-ID"] == SESSION_ID
        assert f"[workspace=ws-1] [session={SESSION_ID}]" in caplog.text
        assert "X-Session-ID" not in client.get("/").headers

    def test_health(self, client):
        data = client.get("/api/v1/monitoring/health").json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"] is True
        assert data["checks"]["workspaces"] == 1
        assert data["checks"]["ai"] is True

    def test_health_without_components(self):
        app_state.clear()
        data = TestClient(app).get("/api/v1/monitoring/health").json()
        assert data["status"] == "unhealthy"
        assert data["checks"]["workspaces"] == 0


class TestWebhookAPI:
    """Webhook 端点测试"""

    def test_conversation_over_webhooks(self, client, messaging):
        response = client.post("/api/v1/webhooks/ws-1", json=evolution_payload("hello"))
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "started"
        assert data["run_status"] == "suspended"
        assert data["session_id"] == SESSION_ID

        response = client.post("/api/v1/webhooks/ws-1", json=evolution_payload("Ana"))
        assert response.json()["status"] == "resumed"
        assert messaging.contents == ["Name?", "Hi Ana"]

    def test_list_payload_uses_first_item(self, client):
        response = client.post("/api/v1/webhooks/ws-1", json=[evolution_payload("hello")])
        assert response.json()["session_id"] == SESSION_ID

    def test_invalid_json(self, client):
        response = client.post(
            "/api/v1/webhooks/ws-1", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_payload"

    def test_unknown_workspace(self, client):
        response = client.post("/api/v1/webhooks/missing", json=evolution_payload("hello"))
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    def test_unknown_resume_session(self, client):
        response = client.post("/api/v1/webhooks/ws-1", json={"resume_session_id": "ghost"})
        assert response.status_code == 404

    def test_engine_error_is_500(self, client):
        manager = Mock()
        manager.handle_inbound = AsyncMock(side_effect=FlowEngineError("store offline"))
        app.dependency_overrides[get_session_manager] = lambda: manager

        response = client.post("/api/v1/webhooks/ws-1", json=evolution_payload("hello"))

        assert response.status_code == 500
        assert response.json()["detail"] == {"error": "processing_failed", "message": "store offline"}

    def test_ignored_agent_message(self, client):
        payload = {
            "event": "message_created", "message_type": "incoming", "content": "hi",
            "sender_type": "User", "conversation": {"id": 5}, "account": {"id": 1},
        }
        data = client.post("/api/v1/webhooks/ws-1", json=payload).json()
        assert data["status"] == "ignored"
        assert data["session_id"] == "chatwoot_conv_5"

    def test_webhook_info(self, client):
        assert client.get("/api/v1/webhooks/ws-1").json()["workspace_id"] == "ws-1"
        assert client.get("/api/v1/webhooks/nope").status_code == 404

    def test_service_unavailable(self):
        app_state.clear()
        response = TestClient(app).post("/api/v1/webhooks/ws-1", json=evolution_payload("hello"))
        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "service_unavailable"


class TestSessionAPI:
    """会话端点测试"""

    def test_get_list_and_end_session(self, client):
        client.post("/api/v1/webhooks/ws-1", json=evolution_payload("hello"))

        response = client.get(f"/api/v1/sessions/{SESSION_ID}")
        assert response.status_code == 200
        data = response.json()
        assert data["current_node_id"] == "ask"
        assert data["awaiting_input_type"] == "input"
        assert data["flow_context"] == "whatsapp"

        listed = client.get("/api/v1/sessions/", params={"workspace_id": "ws-1"}).json()
        assert listed["total"] == 1

        assert client.delete(f"/api/v1/sessions/{SESSION_ID}").json()["success"] is True
        assert client.get(f"/api/v1/sessions/{SESSION_ID}").status_code == 404
        assert client.delete(f"/api/v1/sessions/{SESSION_ID}").status_code == 404

    def test_list_requires_workspace(self, client):
        assert client.get("/api/v1/sessions/").status_code == 422


class TestFlowAPI:
    """流程端点测试"""

    def test_list_flows(self, client):
        data = client.get("/api/v1/flows/").json()
        assert data == [{
            "id": "ws-1", "name": "Workspace ws-1", "organization_id": "org-1",
            "node_count": 3, "edge_count": 2,
        }]

    def test_validate_reports_diagnostics(self, client):
        document = {
            "id": "draft",
            "nodes": [{"id": "m", "type": "message"}],
            "connections": [{"from": "m", "to": "ghost"}],
        }
        data = client.post("/api/v1/flows/validate", json=document).json()
        assert data["valid"] is False
        assert data["workspace_id"] == "draft"
        assert {d["code"] for d in data["diagnostics"]} == {"missing_start", "dangling_target"}

    def test_validate_clean_flow(self, client):
        document = {"workspace": {"id": "ok", "nodes": [{"id": "s", "type": "start"}]}}
        data = client.post("/api/v1/flows/validate", json=document).json()
        assert data["valid"] is True
        assert data["node_count"] == 1

    def test_validate_parse_error(self, client):
        response = client.post("/api/v1/flows/validate", json={"name": "no nodes"})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "parse_error"


class TestLogAPI:
    """日志端点测试"""

    def test_logs_filtered_by_type_and_node(self, client, flow_logs):
        client.post("/api/v1/webhooks/ws-1", json=evolution_payload("hello"))
        flow_logs.logs.append(FlowLog("ws-1", "api-call", SESSION_ID, {"nodeId": "api-1"}))
        flow_logs.logs.append(FlowLog("ws-1", "api-call", SESSION_ID, {"nodeId": "api-2"}))

        webhook_logs = client.get("/api/v1/logs/ws-1", params={"log_type": "webhook"}).json()
        assert len(webhook_logs) == 1
        assert webhook_logs[0]["details"]["session_key_identifier"] == SESSION_ID

        node_logs = client.get("/api/v1/logs/ws-1", params={"node_id": "api-2"}).json()
        assert [log["details"]["nodeId"] for log in node_logs] == ["api-2"]
