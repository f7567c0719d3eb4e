"""
End-to-end tests for the per-connection dispatcher.

Frames go in through Connection.on_frame and the responses are read back from
the recording transport, so these tests exercise the session state machine,
the guard, the handlers and the gate together.
"""

import asyncio
import json
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from conftest import RecordingTransport, call, initialize, notification_frame, request_frame
from mcpsession.errors import (
    CapabilityNotSupportedError,
    HandlerError,
    RemoteError,
    SessionClosedError,
    SessionNotReadyError,
)
from mcpsession.jsonrpc import LoggingLevel, MCPMethods
from mcpsession.notifications import NotificationKind
from mcpsession.session import SessionState
from mcpsession.tool_registry import Tool, ToolHandler, ToolParameter, ToolParameterType


class EchoTool(ToolHandler):
    async def execute(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return {"message": arguments["text"]}

    def get_tool_definition(self) -> Tool:
        return Tool(
            name="echo",
            description="Echo text back",
            parameters=[
                ToolParameter(
                    name="text", type=ToolParameterType.STRING, description="Text", required=True
                )
            ],
        )


async def wait_for_frame(transport, method: str) -> Dict[str, Any]:
    for _ in range(20):
        if transport.frames and transport.last.get("method") == method:
            return transport.last
        await asyncio.sleep(0)
    raise AssertionError(f"no {method} frame was sent")


class TestInitializeHandshake:
    @pytest.mark.asyncio
    async def test_initialize_success(self, make_server, transport):
        server = make_server({"tools": {"listChanged": True}})
        connection = server.attach(transport)

        response = await initialize(connection, transport, {"roots": {"listChanged": True}})

        assert response["id"] == "init-1"
        result = response["result"]
        assert result["protocolVersion"] == "2025-06-18"
        assert result["capabilities"] == {"tools": {"listChanged": True}}
        assert result["serverInfo"]["name"] == "mcpsession"
        assert connection.session.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_unsupported_version_fails_and_closes(self, make_server, transport):
        server = make_server()
        connection = server.attach(transport)

        response = await initialize(connection, transport, version="2025-06-01")

        assert response["error"]["code"] == -32602
        assert response["error"]["data"]["closest"] == "2025-06-18"
        assert connection.session.state == SessionState.FAILED
        assert transport.closed
        assert connection not in server.connections

    @pytest.mark.asyncio
    async def test_second_initialize_fails_session(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport)

        response = await call(connection, transport, 2, MCPMethods.INITIALIZE, {})

        assert response["error"]["code"] == -32600
        assert connection.session.state == SessionState.FAILED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_request_before_initialize(self, make_server, transport):
        connection = make_server({"tools": {}}).attach(transport)

        response = await call(connection, transport, 1, MCPMethods.TOOLS_LIST)

        assert response["error"]["code"] == -32004
        assert connection.session.state == SessionState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_ping_while_negotiating(self, make_server, transport):
        connection = make_server().attach(transport)

        response = await call(connection, transport, 1, MCPMethods.PING)

        assert response == {"jsonrpc": "2.0", "id": 1, "result": {}}

    @pytest.mark.asyncio
    async def test_initialized_notification_has_no_response(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport)
        sent = len(transport.frames)

        await connection.on_frame(notification_frame(MCPMethods.INITIALIZED))

        assert len(transport.frames) == sent


class TestCapabilityGating:
    @pytest.mark.asyncio
    async def test_undeclared_capability_rejected_session_stays_ready(
        self, make_server, transport
    ):
        connection = make_server({"tools": {}}).attach(transport)
        await initialize(connection, transport)

        response = await call(connection, transport, 2, MCPMethods.RESOURCES_LIST)

        assert response["error"]["code"] == -32003
        assert response["error"]["data"] == {"method": MCPMethods.RESOURCES_LIST}
        assert connection.session.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_unknown_tool_is_domain_error(self, make_server, transport):
        connection = make_server({"tools": {}}).attach(transport)
        await initialize(connection, transport)

        response = await call(
            connection, transport, 2, MCPMethods.TOOLS_CALL, {"name": "missing"}
        )

        assert response["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_registered_handler_still_gated(self, make_server, transport):
        server = make_server()
        connection = server.attach(transport)
        await initialize(connection, transport)

        response = await call(connection, transport, 2, MCPMethods.TOOLS_CALL, {"name": "echo"})

        assert response["error"]["code"] == -32003

    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self, make_server, transport):
        server = make_server({"tools": {}})
        await server.tool_registry.register_tool_handler(EchoTool())
        connection = server.attach(transport)
        await initialize(connection, transport)

        listed = await call(connection, transport, 2, MCPMethods.TOOLS_LIST)
        called = await call(
            connection,
            transport,
            3,
            MCPMethods.TOOLS_CALL,
            {"name": "echo", "arguments": {"text": "hi"}},
        )

        assert [tool["name"] for tool in listed["result"]["tools"]] == ["echo"]
        assert called["result"]["content"] == [{"type": "text", "text": "hi"}]
        assert called["result"]["isError"] is False

    @pytest.mark.asyncio
    async def test_method_not_found(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport)

        response = await call(connection, transport, 2, "vendor/unknown")

        assert response["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_subscribe_requires_sub_option(self, make_server, transport):
        connection = make_server({"resources": {}}).attach(transport)
        await initialize(connection, transport)

        response = await call(
            connection, transport, 2, MCPMethods.RESOURCES_SUBSCRIBE, {"uri": "file:///a"}
        )

        assert response["error"]["code"] == -32003
        assert len(connection.session.subscriptions) == 0

    @pytest.mark.asyncio
    async def test_set_level_without_logging(self, make_server, transport):
        connection = make_server({"tools": {}}).attach(transport)
        await initialize(connection, transport)

        response = await call(
            connection, transport, 2, MCPMethods.LOGGING_SET_LEVEL, {"level": "debug"}
        )

        assert response["error"]["code"] == -32003

    @pytest.mark.asyncio
    async def test_experimental_method(self, make_server, transport):
        server = make_server({"experimental": {"streaming": {"enabled": True}}})
        server.handlers.register("experimental/streaming", AsyncMock(return_value={"ok": True}))
        connection = server.attach(transport)
        await initialize(connection, transport)

        allowed = await call(connection, transport, 2, "experimental/streaming")
        denied = await call(connection, transport, 3, "experimental/batching")

        assert allowed["result"] == {"ok": True}
        assert denied["error"]["code"] == -32003

    @pytest.mark.asyncio
    async def test_client_notification_gated_on_client_capabilities(
        self, make_server, transport
    ):
        server = make_server()
        handler = AsyncMock(return_value=None)
        server.handlers.register(MCPMethods.ROOTS_LIST_CHANGED, handler)
        connection = server.attach(transport)
        await initialize(connection, transport, {"roots": {}})

        await connection.on_frame(notification_frame(MCPMethods.ROOTS_LIST_CHANGED))

        handler.assert_not_awaited()
        assert connection.session.is_ready


class TestHandlerErrors:
    @pytest.mark.asyncio
    async def test_internal_error_does_not_leak_cause(self, make_server, transport):
        server = make_server()
        server.handlers.register(
            "vendor/explode", AsyncMock(side_effect=RuntimeError("database password is hunter2"))
        )
        connection = server.attach(transport)
        await initialize(connection, transport)

        response = await call(connection, transport, 2, "vendor/explode")

        assert response["error"] == {"code": -32603, "message": "Internal error"}
        assert connection.session.is_ready

    @pytest.mark.asyncio
    async def test_handler_error_passes_through(self, make_server, transport):
        server = make_server()
        server.handlers.register(
            "vendor/quota",
            AsyncMock(side_effect=HandlerError("Quota exceeded", code=-32010, data={"limit": 5})),
        )
        connection = server.attach(transport)
        await initialize(connection, transport)

        response = await call(connection, transport, 2, "vendor/quota")

        assert response["error"] == {
            "code": -32010,
            "message": "Quota exceeded",
            "data": {"limit": 5},
        }

    @pytest.mark.asyncio
    async def test_invalid_params(self, make_server, transport):
        connection = make_server({"logging": {}}).attach(transport)
        await initialize(connection, transport)

        response = await call(
            connection, transport, 2, MCPMethods.LOGGING_SET_LEVEL, {"level": "loud"}
        )

        assert response["error"]["code"] == -32602
        assert connection.session.is_ready


class TestMalformedFrames:
    @pytest.mark.asyncio
    async def test_parse_error_fails_session(self, make_server, transport):
        connection = make_server().attach(transport)

        await connection.on_frame(b"{this is not json")

        assert transport.last == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32700, "message": "Parse error"},
        }
        assert connection.session.state == SessionState.FAILED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_invalid_envelope_fails_session(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport)

        await connection.on_frame(json.dumps({"jsonrpc": "2.0", "id": 5}).encode())

        assert transport.last["id"] == 5
        assert transport.last["error"]["code"] == -32600
        assert connection.session.state == SessionState.FAILED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_server, transport):
        connection = make_server().attach(transport)

        await connection.on_frame(b"[]")

        assert transport.last["error"]["code"] == -32600
        assert connection.session.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_batch(self, make_server, transport):
        connection = make_server().attach(transport)
        batch = [
            json.loads(request_frame(1, MCPMethods.PING)),
            json.loads(notification_frame(MCPMethods.INITIALIZED)),
            json.loads(request_frame(2, MCPMethods.PING)),
        ]

        await connection.on_frame(json.dumps(batch))

        assert [item["id"] for item in transport.last] == [1, 2]

    @pytest.mark.asyncio
    async def test_frames_after_close_are_dropped(self, make_server, transport):
        connection = make_server().attach(transport)
        await connection.close()
        sent = len(transport.frames)

        await connection.on_frame(request_frame(1, MCPMethods.PING))

        assert len(transport.frames) == sent


class TestServerNotifications:
    @pytest.mark.asyncio
    async def test_tool_registration_emits_list_changed(self, make_server, transport):
        server = make_server({"tools": {"listChanged": True}})
        connection = server.attach(transport)
        await initialize(connection, transport)

        await server.tool_registry.register_tool_handler(EchoTool())

        assert transport.last == {
            "jsonrpc": "2.0",
            "method": MCPMethods.TOOLS_LIST_CHANGED,
        }

    @pytest.mark.asyncio
    async def test_list_changed_suppressed_without_option(self, make_server, transport):
        server = make_server({"tools": {}})
        connection = server.attach(transport)
        await initialize(connection, transport)
        sent = len(transport.frames)

        await server.tool_registry.register_tool_handler(EchoTool())

        assert len(transport.frames) == sent
        assert server.gate.suppressed["tool-list-changed"] == 1

    @pytest.mark.asyncio
    async def test_resource_updated_reaches_subscribers_only(self, make_server, transport):
        server = make_server({"resources": {"subscribe": True}})
        connection = server.attach(transport)
        await initialize(connection, transport)

        response = await call(
            connection, transport, 2, MCPMethods.RESOURCES_SUBSCRIBE, {"uri": "file:///a"}
        )
        assert response["result"] == {}

        assert await server.notify_resource_updated("file:///b") == 0
        assert await server.notify_resource_updated("file:///a") == 1
        assert transport.last == {
            "jsonrpc": "2.0",
            "method": MCPMethods.RESOURCES_UPDATED,
            "params": {"uri": "file:///a"},
        }

        await call(connection, transport, 3, MCPMethods.RESOURCES_UNSUBSCRIBE, {"uri": "file:///a"})
        assert await server.notify_resource_updated("file:///a") == 0

    @pytest.mark.asyncio
    async def test_logging_message_without_capability(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport)
        sent = len(transport.frames)

        assert not await connection.send_logging_message("error", "disk full")
        assert len(transport.frames) == sent

    @pytest.mark.asyncio
    async def test_logging_respects_set_level(self, make_server, transport):
        connection = make_server({"logging": {}}).attach(transport)
        await initialize(connection, transport)

        await call(connection, transport, 2, MCPMethods.LOGGING_SET_LEVEL, {"level": "error"})

        assert connection.session.log_level == LoggingLevel.ERROR
        assert not await connection.send_logging_message("warning", "slow query")
        assert await connection.send_logging_message("error", {"table": "users"}, "db")
        assert transport.last["params"] == {
            "level": "error",
            "data": {"table": "users"},
            "logger": "db",
        }

    @pytest.mark.asyncio
    async def test_notify_failure_closes_connection(self, make_server, transport):
        server = make_server({"tools": {"listChanged": True}})
        connection = server.attach(transport)
        await initialize(connection, transport)
        transport.send_frame = AsyncMock(side_effect=ConnectionResetError())

        assert not await connection.notify_tools_changed()
        assert connection.closed
        assert connection.session.state == SessionState.CLOSED


    @pytest.mark.asyncio
    async def test_close_drops_subscriptions(self, make_server, transport):
        server = make_server({"resources": {"subscribe": True}})
        connection = server.attach(transport)
        await initialize(connection, transport)
        await call(connection, transport, 2, MCPMethods.RESOURCES_SUBSCRIBE, {"uri": "file:///a"})

        await connection.close()
        sent = len(transport.frames)

        assert len(connection.session.subscriptions) == 0
        assert await server.notify_resource_updated("file:///a") == 0
        assert not server.gate.guard_notify(
            NotificationKind.RESOURCE_UPDATED, connection.session, uri="file:///a"
        )
        assert not await connection.notify_resource_updated("file:///a")
        assert len(transport.frames) == sent

    @pytest.mark.asyncio
    async def test_session_close_silences_resource_updates(self, make_server, transport):
        server = make_server({"resources": {"subscribe": True}})
        connection = server.attach(transport)
        await initialize(connection, transport)
        await call(connection, transport, 2, MCPMethods.RESOURCES_SUBSCRIBE, {"uri": "file:///a"})

        connection.session.close()
        sent = len(transport.frames)

        assert await server.notify_resource_updated("file:///a") == 0
        assert len(transport.frames) == sent


class TestServerRequests:
    @pytest.mark.asyncio
    async def test_request_resolves_with_result(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport, {"roots": {}})

        task = asyncio.create_task(connection.send_request(MCPMethods.ROOTS_LIST))
        request = await wait_for_frame(transport, MCPMethods.ROOTS_LIST)
        await connection.on_frame(
            json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": {"roots": []}})
        )

        assert await task == {"roots": []}

    @pytest.mark.asyncio
    async def test_request_error_response(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport, {"roots": {}})

        task = asyncio.create_task(connection.send_request(MCPMethods.ROOTS_LIST))
        request = await wait_for_frame(transport, MCPMethods.ROOTS_LIST)
        await connection.on_frame(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "id": request["id"],
                    "error": {"code": -32000, "message": "no roots"},
                }
            )
        )

        with pytest.raises(RemoteError) as exc_info:
            await task
        assert exc_info.value.code == -32000

    @pytest.mark.asyncio
    async def test_request_needs_client_capability(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport)

        with pytest.raises(CapabilityNotSupportedError):
            await connection.send_request(MCPMethods.SAMPLING_CREATE_MESSAGE, {})

    @pytest.mark.asyncio
    async def test_request_before_ready(self, make_server, transport):
        connection = make_server().attach(transport)

        with pytest.raises(SessionNotReadyError):
            await connection.send_request(MCPMethods.ROOTS_LIST)

    @pytest.mark.asyncio
    async def test_close_fails_pending_requests(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport, {"roots": {}})

        task = asyncio.create_task(connection.send_request(MCPMethods.ROOTS_LIST))
        await wait_for_frame(transport, MCPMethods.ROOTS_LIST)
        await connection.close()

        with pytest.raises(SessionClosedError):
            await task
        assert connection.session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_timeout_sends_cancellation(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport, {"roots": {}})

        with pytest.raises(asyncio.TimeoutError):
            await connection.send_request(MCPMethods.ROOTS_LIST, timeout=0.01)

        assert transport.last["method"] == MCPMethods.CANCEL
        assert transport.last["params"]["reason"] == "timeout"
        assert connection.session.is_ready


    @pytest.mark.asyncio
    async def test_zero_timeout_is_not_the_default(self, make_server, transport):
        connection = make_server().attach(transport)
        connection.request_timeout = 30
        await initialize(connection, transport, {"roots": {}})

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                connection.send_request(MCPMethods.ROOTS_LIST, timeout=0), timeout=5
            )

        assert transport.last["method"] == MCPMethods.CANCEL

    @pytest.mark.asyncio
    async def test_handler_awaits_client_reply(self, make_server, transport):
        server = make_server()
        connection = server.attach(transport)

        async def list_roots(params, session):
            return await connection.send_request(MCPMethods.ROOTS_LIST)

        server.handlers.register("vendor/roots", list_roots)
        await initialize(connection, transport, {"roots": {}})

        task = connection.receive(request_frame(2, "vendor/roots"))
        request = await wait_for_frame(transport, MCPMethods.ROOTS_LIST)
        reply = {"jsonrpc": "2.0", "id": request["id"], "result": {"roots": []}}

        assert connection.receive(json.dumps(reply)) is None
        await asyncio.wait({task})
        assert transport.last == {"jsonrpc": "2.0", "id": 2, "result": {"roots": []}}


class TestInFlightRequests:
    @pytest.mark.asyncio
    async def test_slow_handler_does_not_block_other_requests(self, make_server, transport):
        server = make_server()
        release = asyncio.Event()

        async def slow(params, session):
            await release.wait()
            return {"done": True}

        server.handlers.register("vendor/slow", slow)
        connection = server.attach(transport)
        await initialize(connection, transport)

        slow_task = connection.receive(request_frame(2, "vendor/slow"))
        response = await call(connection, transport, 3, MCPMethods.PING)

        assert response == {"jsonrpc": "2.0", "id": 3, "result": {}}
        assert not slow_task.done()

        release.set()
        await asyncio.wait({slow_task})
        assert transport.last == {"jsonrpc": "2.0", "id": 2, "result": {"done": True}}

    @pytest.mark.asyncio
    async def test_cancelled_request_gets_no_response(self, make_server, transport):
        server = make_server()
        started = asyncio.Event()

        async def slow(params, session):
            started.set()
            await asyncio.Event().wait()

        server.handlers.register("vendor/slow", slow)
        connection = server.attach(transport)
        await initialize(connection, transport)

        task = connection.receive(request_frame(7, "vendor/slow"))
        await started.wait()
        assert connection.in_flight == [7]

        await connection.on_frame(
            notification_frame(MCPMethods.CANCEL, {"requestId": 7, "reason": "user"})
        )
        await asyncio.wait({task})

        assert task.cancelled()
        assert all(frame.get("id") != 7 for frame in transport.frames)
        assert connection.in_flight == []
        assert connection.session.is_ready

    @pytest.mark.asyncio
    async def test_cancel_for_unknown_request_is_ignored(self, make_server, transport):
        connection = make_server().attach(transport)
        await initialize(connection, transport)
        sent = len(transport.frames)

        await connection.on_frame(notification_frame(MCPMethods.CANCEL, {"requestId": 99}))

        assert len(transport.frames) == sent
        assert connection.session.is_ready

    @pytest.mark.asyncio
    async def test_close_cancels_running_handlers(self, make_server, transport):
        server = make_server()
        started = asyncio.Event()

        async def slow(params, session):
            started.set()
            await asyncio.Event().wait()

        server.handlers.register("vendor/slow", slow)
        connection = server.attach(transport)
        await initialize(connection, transport)

        task = connection.receive(request_frame(2, "vendor/slow"))
        await started.wait()
        await connection.close()

        assert task.done()
        assert connection.in_flight == []
        assert all(frame.get("id") != 2 for frame in transport.frames)
        assert transport.closed


class TestServerFacade:
    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, make_server):
        server = make_server({"tools": {}})
        first, second = RecordingTransport(), RecordingTransport()
        connection_a = server.attach(first)
        connection_b = server.attach(second)

        await initialize(connection_a, first)
        response = await call(connection_b, second, 1, MCPMethods.TOOLS_LIST)

        assert response["error"]["code"] == -32004
        assert connection_a.session.is_ready
        assert not server.capabilities.locked

    @pytest.mark.asyncio
    async def test_health_check(self, make_server, transport):
        server = make_server({"tools": {}})
        connection = server.attach(transport)
        await initialize(connection, transport)

        health = server.health_check()

        assert health["status"] == "healthy"
        assert health["sessions"][0]["state"] == "ready"
        assert MCPMethods.TOOLS_CALL in health["handlers"]

    @pytest.mark.asyncio
    async def test_close_closes_connections(self, make_server, transport):
        server = make_server()
        server.attach(transport)

        await server.close()

        assert transport.closed
        assert not server.connections
