"""
流程执行引擎测试
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from flow_engine.core.engine import FlowEngine, RunStatus
from flow_engine.core.context import DEFAULT_INVALID_OPTION_MESSAGE, DEFAULT_OPTION_REPLY_HINT
from flow_engine.core.dispatcher import OutboundDispatcher
from flow_engine.core.executors import NodeExecutor, TRIGGER_HANDLE_VARIABLE, INVALID_OPTION_FLAG
from flow_engine.integrations.http_client import HttpResponse
from flow_engine.models.graph import NodeType
from flow_engine.models.session import AwaitingInputType, ChannelContext, FLOW_PAUSED_FLAG


def edge(source, target, handle="default"):
    return {"from": source, "to": target, "sourceHandle": handle}


START = {"id": "start", "type": "start"}
END = {"id": "end", "type": "end-flow"}


class TestScenarios:
    """端到端场景测试"""

    async def test_greeting_then_end(self, engine, make_workspace, make_session, messaging, session_store):
        """开始 -> 消息 -> 结束：发送一条消息并删除会话"""
        workspace = make_workspace(
            [START, {"id": "hi", "type": "message", "text": "Hi {{name}}"}, END],
            [edge("start", "hi"), edge("hi", "end")]
        )
        session = make_session(workspace, "start", {"name": "Ana"})
        await session_store.save(session)

        result = await engine.run(session, workspace)

        assert result.status == RunStatus.COMPLETED
        assert result.visited == ["start", "hi", "end"]
        assert messaging.contents == ["Hi Ana"]
        assert messaging.sent[0].channel == "whatsapp"
        assert messaging.sent[0].recipient == "5511988887777"
        assert await session_store.load(session.session_id) is None

    @pytest.mark.parametrize("age,expected", [("25", "adult"), ("18", "minor"), ("abc", "minor")])
    async def test_number_condition(self, engine, make_workspace, make_session, messaging, age, expected):
        """数字条件分支"""
        workspace = make_workspace(
            [
                START,
                {"id": "check", "type": "condition", "conditionVariable": "{{age}}",
                 "conditionOperator": ">", "conditionValue": "18", "conditionDataType": "number"},
                {"id": "adult", "type": "message", "text": "adult"},
                {"id": "minor", "type": "message", "text": "minor"},
            ],
            [edge("start", "check"), edge("check", "adult", "true"), edge("check", "minor", "false")]
        )
        await engine.run(make_session(workspace, "start", {"age": age}), workspace)
        assert messaging.contents == [expected]

    async def test_unreachable_api_writes_error(
        self, engine, make_workspace, make_session, messaging, http, flow_logs
    ):
        """API 调用失败时写入错误并继续 default"""
        http.fail = True
        workspace = make_workspace(
            [
                START,
                {"id": "api", "type": "api-call", "title": "Lookup", "apiUrl": "http://unreachable.test/{{id}}",
                 "apiOutputVariable": "result"},
                {"id": "report", "type": "message", "text": "failed: {{result.error}}"},
            ],
            [edge("start", "api"), edge("api", "report")]
        )
        session = make_session(workspace, "start", {"id": "7"})

        result = await engine.run(session, workspace)

        assert result.status == RunStatus.PAUSED
        assert session.variables["result"] == {"error": "Connection refused"}
        assert messaging.contents == ["failed: Connection refused"]
        assert http.requests[0]["url"] == "http://unreachable.test/7"

        log = flow_logs.logs[0]
        assert log.log_type == "api-call"
        assert log.details["nodeId"] == "api"
        assert log.details["nodeTitle"] == "Lookup"
        assert log.details["error"] == {"error": "Connection refused"}


class TestSuspension:
    """挂起测试"""

    @pytest.mark.parametrize("node_type,kind", [
        ("input", AwaitingInputType.INPUT),
        ("date-input", AwaitingInputType.DATE_INPUT),
        ("file-upload", AwaitingInputType.FILE_UPLOAD),
        ("rating-input", AwaitingInputType.RATING_INPUT),
    ])
    async def test_prompt_nodes_suspend(
        self, engine, make_workspace, make_session, messaging, session_store, node_type, kind
    ):
        workspace = make_workspace(
            [START, {"id": "ask", "type": node_type, "promptText": "Tell me {{what}}"},
             {"id": "after", "type": "message", "text": "never"}],
            [edge("start", "ask"), edge("ask", "after")]
        )
        session = make_session(workspace, "start", {"what": "more"})

        result = await engine.run(session, workspace)

        assert result.status == RunStatus.SUSPENDED
        assert messaging.contents == ["Tell me more"]
        stored = await session_store.load(session.session_id)
        assert stored.current_node_id == "ask"
        assert stored.awaiting_input.kind == kind
        assert stored.awaiting_input.variable_to_save == "last_user_input"
        assert stored.awaiting_input.original_node_id == "ask"

    async def test_empty_prompt_still_suspends(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "ask", "type": "input", "variableToSaveResponse": "name"}],
            [edge("start", "ask")]
        )
        result = await engine.run(make_session(workspace, "start"), workspace)
        assert result.status == RunStatus.SUSPENDED
        assert messaging.contents == []

    async def test_option_message_and_awaiting(self, engine, make_workspace, make_session, messaging, session_store):
        workspace = make_workspace(
            [START, {"id": "menu", "type": "option", "questionText": "Pick one, {{name}}",
                     "options": [{"id": "r", "value": "Red"}, {"id": "b", "value": "{{fav}}"}],
                     "variableToSaveChoice": "color"}],
            [edge("start", "menu")]
        )
        session = make_session(workspace, "start", {"name": "Ana", "fav": "Blue"})

        result = await engine.run(session, workspace)

        assert result.status == RunStatus.SUSPENDED
        assert messaging.contents == [
            "Pick one, Ana\n\n1. Red\n2. Blue\n" + DEFAULT_OPTION_REPLY_HINT
        ]
        awaiting = (await session_store.load(session.session_id)).awaiting_input
        assert awaiting.kind == AwaitingInputType.OPTION
        assert awaiting.variable_to_save == "color"
        assert [(o.id, o.value) for o in awaiting.options] == [("r", "Red"), ("b", "Blue")]

    async def test_option_on_chatwoot_has_no_hint(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "menu", "type": "option", "questionText": "Pick", "optionsList": "A\nB"}],
            [edge("start", "menu")]
        )
        session = make_session(
            workspace, "start",
            {"chatwoot_account_id": 7, "chatwoot_conversation_id": 42},
            session_id="chatwoot_conv_42", context=ChannelContext.CHATWOOT
        )

        await engine.run(session, workspace)

        assert messaging.contents == ["Pick\n\n1. A\n2. B"]
        assert messaging.sent[0].channel == "chatwoot"

    async def test_misconfigured_option_continues(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "menu", "type": "option", "questionText": ""},
             {"id": "next", "type": "message", "text": "skipped"}],
            [edge("start", "menu"), edge("menu", "next")]
        )
        result = await engine.run(make_session(workspace, "start"), workspace)
        assert result.status == RunStatus.PAUSED
        assert messaging.contents == ["skipped"]

    async def test_invalid_option_repeats_notice(self, engine, make_workspace, make_session, messaging, session_store):
        workspace = make_workspace(
            [START, {"id": "menu", "type": "option", "questionText": "Pick", "optionsList": "A\nB"}],
            [edge("start", "menu")]
        )
        session = make_session(workspace, "menu", {INVALID_OPTION_FLAG: True})

        result = await engine.run(session, workspace)

        assert result.status == RunStatus.SUSPENDED
        assert messaging.contents == [DEFAULT_INVALID_OPTION_MESSAGE]
        stored = await session_store.load(session.session_id)
        assert INVALID_OPTION_FLAG not in stored.variables
        assert [o.value for o in stored.awaiting_input.options] == ["A", "B"]


class TestTermination:
    """结束、死路与完整性测试"""

    async def test_dead_end_pauses_session(self, engine, make_workspace, make_session, session_store):
        workspace = make_workspace([START, {"id": "msg", "type": "message", "text": "bye"}], [edge("start", "msg")])
        session = make_session(workspace, "start")

        result = await engine.run(session, workspace)

        assert result.status == RunStatus.PAUSED
        stored = await session_store.load(session.session_id)
        assert stored.current_node_id is None
        assert stored.awaiting_input is None
        assert stored.variables[FLOW_PAUSED_FLAG] is True
        assert stored.is_paused
        assert stored.steps == ["start", "msg"]

    async def test_missing_target_aborts(self, engine, make_workspace, make_session, session_store):
        workspace = make_workspace([START], [edge("start", "ghost")])
        session = make_session(workspace, "start")
        await session_store.save(session)

        result = await engine.run(session, workspace)

        assert result.status == RunStatus.ABORTED
        assert "ghost" in result.error
        assert await session_store.load(session.session_id) is None

    async def test_missing_current_node_aborts(self, engine, make_workspace, make_session):
        workspace = make_workspace([START], [])
        result = await engine.run(make_session(workspace, "vanished"), workspace)
        assert result.status == RunStatus.ABORTED
        assert result.visited == []

    async def test_executor_failure_follows_default(
        self, session_store, messaging, channel_instances, make_workspace, make_session
    ):
        class Exploding(NodeExecutor):
            async def execute(self, node, ctx):
                raise RuntimeError("boom")

        engine = FlowEngine(
            session_store=session_store,
            dispatcher=OutboundDispatcher(messaging, channel_instances),
            messaging=messaging,
            executors={NodeType.LOG_CONSOLE: Exploding()}
        )
        workspace = make_workspace(
            [START, {"id": "log", "type": "log-console", "logMessage": "x"},
             {"id": "after", "type": "message", "text": "still here"}],
            [edge("start", "log"), edge("log", "after")]
        )
        await engine.run(make_session(workspace, "start"), workspace)
        assert messaging.contents == ["still here"]

    async def test_step_limit_pauses_loops(self, session_store, messaging, channel_instances, make_workspace, make_session):
        engine = FlowEngine(
            session_store=session_store,
            dispatcher=OutboundDispatcher(messaging, channel_instances),
            messaging=messaging,
            max_steps=5
        )
        workspace = make_workspace(
            [START, {"id": "a", "type": "set-variable", "variableName": "x", "variableValue": "1"},
             {"id": "b", "type": "set-variable", "variableName": "y", "variableValue": "2"}],
            [edge("start", "a"), edge("a", "b"), edge("b", "a")]
        )
        result = await engine.run(make_session(workspace, "start"), workspace)
        assert result.status == RunStatus.PAUSED
        assert len(result.visited) == 5


class TestRoutingNodes:
    """路由类节点测试"""

    async def test_start_routes_on_trigger_handle(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [{"id": "start", "type": "start", "triggers": [{"name": "Hook", "keyword": "promo"}]},
             {"id": "promo", "type": "message", "text": "promo"},
             {"id": "main", "type": "message", "text": "main"}],
            [edge("start", "promo", "promo"), edge("start", "main")]
        )
        session = make_session(workspace, "start", {TRIGGER_HANDLE_VARIABLE: "promo"})
        await engine.run(session, workspace)
        assert messaging.contents == ["promo"]
        assert TRIGGER_HANDLE_VARIABLE not in session.variables

    async def test_start_falls_back_to_default(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "main", "type": "message", "text": "main"}],
            [edge("start", "main")]
        )
        await engine.run(make_session(workspace, "start", {TRIGGER_HANDLE_VARIABLE: "Webhook"}), workspace)
        assert messaging.contents == ["main"]

    @pytest.mark.parametrize("value,expected", [("X", "matched"), ("Y", "fallback"), (None, "fallback")])
    async def test_switch(self, engine, make_workspace, make_session, messaging, value, expected):
        workspace = make_workspace(
            [START,
             {"id": "sw", "type": "switch", "switchVariable": "{{choice}}",
              "switchCases": [{"id": "c1", "value": "X"}]},
             {"id": "matched", "type": "message", "text": "matched"},
             {"id": "fallback", "type": "message", "text": "fallback"}],
            [edge("start", "sw"), edge("sw", "matched", "c1"), edge("sw", "fallback", "otherwise")]
        )
        variables = {} if value is None else {"choice": value}
        await engine.run(make_session(workspace, "start", variables), workspace)
        assert messaging.contents == [expected]

    @pytest.mark.parametrize("start_time,end_time,zone,now,expected", [
        ("09:00", "18:00", "UTC", datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc), "open"),
        ("13:00", "14:00", "America/Sao_Paulo", datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc), "closed"),
        ("22:00", "06:00", "UTC", datetime(2024, 5, 6, 23, 30, tzinfo=timezone.utc), "open"),
        ("22:00", "06:00", "UTC", datetime(2024, 5, 6, 5, 59, tzinfo=timezone.utc), "open"),
        ("22:00", "06:00", "UTC", datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc), "closed"),
        ("09:00", "09:00", "UTC", datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc), "closed"),
        ("09:00", "09:00", "UTC", datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc), "open"),
        ("9am", "18:00", "UTC", datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc), "closed"),
        ("09:00", "18:00", "Mars/Olympus", datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc), "closed"),
    ])
    async def test_time_of_day(
        self, engine, make_workspace, make_session, messaging, clock, start_time, end_time, zone, now, expected
    ):
        clock.now = now
        workspace = make_workspace(
            [START,
             {"id": "hours", "type": "time-of-day", "startTime": start_time, "endTime": end_time, "timezone": zone},
             {"id": "open", "type": "message", "text": "open"},
             {"id": "closed", "type": "message", "text": "closed"}],
            [edge("start", "hours"), edge("hours", "open", "true"), edge("hours", "closed", "false")]
        )
        await engine.run(make_session(workspace, "start"), workspace)
        assert messaging.contents == [expected]

    async def test_unknown_node_uses_default(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "x", "type": "hologram"}, {"id": "after", "type": "message", "text": "ok"}],
            [edge("start", "x"), edge("x", "after")]
        )
        await engine.run(make_session(workspace, "start"), workspace)
        assert messaging.contents == ["ok"]


class TestDataNodes:
    """数据处理类节点测试"""

    async def test_set_variable_nested(self, engine, make_workspace, make_session):
        workspace = make_workspace(
            [START, {"id": "set", "type": "set-variable", "variableName": "{{profile.city}}",
                     "variableValue": "{{raw}}-SP"}],
            [edge("start", "set")]
        )
        session = make_session(workspace, "start", {"raw": "Campinas"})
        await engine.run(session, workspace)
        assert session.variables["profile"] == {"city": "Campinas-SP"}

    async def test_api_call_success(self, engine, make_workspace, make_session, http):
        url = "https://api.test/orders"
        http.responses[url] = HttpResponse(status_code=200, data={"data": {"id": 5, "items": "single"}})
        workspace = make_workspace(
            [START, {
                "id": "api", "type": "api-call", "apiUrl": url, "apiMethod": "POST",
                "apiHeadersList": [{"key": "X-Client", "value": "{{client}}"}],
                "apiQueryParamsList": [{"key": "page", "value": "2"}],
                "apiAuthType": "bearer", "apiAuthBearerToken": "{{token}}",
                "apiBodyType": "json", "apiBodyJson": '{"name": "{{client}}"}',
                "apiOutputVariable": "order_id", "apiResponsePath": "$.data.id",
                "apiResponseMappings": [{"jsonPath": "data.items", "flowVariable": "items", "extractAs": "list"}],
            }],
            [edge("start", "api")]
        )
        session = make_session(workspace, "start", {"client": "acme", "token": "t0k"})

        await engine.run(session, workspace)

        request = http.requests[0]
        assert request["method"] == "POST"
        assert ("X-Client", "acme") in request["headers"]
        assert ("Authorization", "Bearer t0k") in request["headers"]
        assert ("Content-Type", "application/json") in request["headers"]
        assert request["params"] == [("page", "2")]
        assert request["content"] == '{"name": "acme"}'
        assert session.variables["order_id"] == 5
        assert session.variables["items"] == ["single"]

    async def test_api_call_basic_auth_and_get_without_body(self, engine, make_workspace, make_session, http):
        workspace = make_workspace(
            [START, {"id": "api", "type": "api-call", "apiUrl": "https://api.test/me",
                     "apiAuthType": "basic", "apiAuthBasicUser": "u", "apiAuthBasicPassword": "p",
                     "apiBodyType": "raw", "apiBodyRaw": "ignored", "apiOutputVariable": "me"}],
            [edge("start", "api")]
        )
        session = make_session(workspace, "start")
        await engine.run(session, workspace)
        request = http.requests[0]
        assert ("Authorization", "Basic dTpw") in request["headers"]
        assert request["content"] is None
        assert session.variables["me"] == {}

    async def test_api_call_error_status(self, engine, make_workspace, make_session, http):
        url = "https://api.test/broken"
        http.responses[url] = HttpResponse(status_code=503, data="down")
        workspace = make_workspace(
            [START, {"id": "api", "type": "api-call", "apiUrl": url, "apiOutputVariable": "out",
                     "apiResponsePath": "missing.path"}],
            [edge("start", "api")]
        )
        session = make_session(workspace, "start")
        await engine.run(session, workspace)
        assert session.variables["out"] == {"error": "API returned status 503"}

    async def test_ai_text_generation(self, engine, make_workspace, make_session, text_generator):
        workspace = make_workspace(
            [START, {"id": "ai", "type": "ai-text-generation", "aiPromptText": "Summarize {{topic}}",
                     "aiOutputVariable": "summary"}],
            [edge("start", "ai")]
        )
        session = make_session(workspace, "start", {"topic": "orders"})
        await engine.run(session, workspace)
        assert session.variables["summary"] == "AI: Summarize orders"
        assert text_generator.prompts == ["Summarize orders"]

    async def test_ai_without_generator_writes_error(
        self, session_store, messaging, channel_instances, make_workspace, make_session
    ):
        engine = FlowEngine(
            session_store=session_store,
            dispatcher=OutboundDispatcher(messaging, channel_instances),
            messaging=messaging
        )
        workspace = make_workspace(
            [START, {"id": "ai", "type": "ai-text-generation", "aiPromptText": "x", "aiOutputVariable": "out"}],
            [edge("start", "ai")]
        )
        session = make_session(workspace, "start")
        await engine.run(session, workspace)
        assert session.variables["out"].startswith("Error generating text: ")

    async def test_intelligent_agent(self, engine, make_workspace, make_session):
        workspace = make_workspace(
            [START, {"id": "agent", "type": "intelligent-agent", "userInputVariable": "{{question}}",
                     "agentResponseVariable": "answer"}],
            [edge("start", "agent")]
        )
        session = make_session(workspace, "start", {"question": "Where is my order?"})
        await engine.run(session, workspace)
        assert session.variables["answer"] == "AI: Where is my order?"

    async def test_intelligent_agent_missing_input(self, engine, make_workspace, make_session):
        workspace = make_workspace(
            [START, {"id": "agent", "type": "intelligent-agent", "userInputVariable": "question",
                     "agentResponseVariable": "answer"}],
            [edge("start", "agent")]
        )
        session = make_session(workspace, "start")
        await engine.run(session, workspace)
        assert session.variables["answer"] == "Error: User input not found."

    async def test_delay_sleeps(self, engine, make_workspace, make_session, monkeypatch):
        sleep = AsyncMock()
        monkeypatch.setattr("flow_engine.core.executors.asyncio.sleep", sleep)
        workspace = make_workspace([START, {"id": "wait", "type": "delay", "delayDuration": 1500}], [edge("start", "wait")])
        await engine.run(make_session(workspace, "start"), workspace)
        sleep.assert_awaited_once_with(1.5)

    async def test_log_console(self, engine, make_workspace, make_session, caplog):
        caplog.set_level("INFO")
        workspace = make_workspace(
            [START, {"id": "log", "type": "log-console", "logMessage": "hello {{name}}"}],
            [edge("start", "log")]
        )
        session = make_session(workspace, "start", {"name": "Ana"})
        await engine.run(session, workspace)
        assert f"[{session.session_id}] FLOW LOG: hello Ana" in caplog.text


class TestChannelNodes:
    """渠道发送节点测试"""

    async def test_whatsapp_text_uses_phone_and_instance(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "wa", "type": "whatsapp-text", "phoneNumber": "{{phone}}",
                     "instanceName": "sales", "textMessage": "Hello {{name}}"}],
            [edge("start", "wa")]
        )
        await engine.run(make_session(workspace, "start", {"phone": "5511000000000", "name": "Ana"}), workspace)
        sent = messaging.sent[0]
        assert (sent.channel, sent.recipient, sent.content) == ("whatsapp", "5511000000000", "Hello Ana")
        assert sent.extra["instance"] == "sales"

    async def test_whatsapp_text_defaults_to_session_sender(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "wa", "type": "whatsapp-text", "textMessage": "Hi"}],
            [edge("start", "wa")]
        )
        await engine.run(make_session(workspace, "start", session_id="evolution_jid_5511777@s.whatsapp.net@@ws-1"), workspace)
        assert messaging.sent[0].recipient == "5511777"
        assert messaging.sent[0].extra["instance"] == "demo"

    async def test_whatsapp_media(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "wa", "type": "whatsapp-media", "mediaUrl": "https://cdn.test/{{file}}",
                     "mediaType": "Document", "caption": "Your invoice"}],
            [edge("start", "wa")]
        )
        await engine.run(make_session(workspace, "start", {"file": "inv.pdf"}), workspace)
        sent = messaging.sent[0]
        assert sent.extra["media_url"] == "https://cdn.test/inv.pdf"
        assert sent.extra["media_type"] == "document"
        assert sent.content == "Your invoice"

    async def test_dialogy_send_message(self, engine, make_workspace, make_session, messaging):
        workspace = make_workspace(
            [START, {"id": "dg", "type": "dialogy-send-message", "dialogyMessageContent": "Ticket {{ticket}}"}],
            [edge("start", "dg")]
        )
        session = make_session(workspace, "start", {"ticket": "T-1"}, session_id="dialogy_conv_c-9")
        await engine.run(session, workspace)
        sent = messaging.sent[0]
        assert (sent.channel, sent.recipient, sent.content) == ("dialogy", "c-9", "Ticket T-1")
