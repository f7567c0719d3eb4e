"""
Tests for the JSON-RPC envelope layer.
"""

import json

import pytest

from mcpsession.jsonrpc import (
    JSONRPCErrorResponse,
    JSONRPCHandler,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    LoggingLevel,
)


class TestJSONRPCProtocol:
    """Test JSON-RPC 2.0 protocol compliance."""

    def test_create_request(self):
        request = JSONRPCHandler.create_request(
            id="test-123", method="test/method", params={"param1": "value1"}
        )

        assert request.jsonrpc == "2.0"
        assert request.id == "test-123"
        assert request.method == "test/method"
        assert request.params == {"param1": "value1"}

    def test_create_error_response(self):
        error_response = JSONRPCHandler.create_error_response(
            id="test-123", code=-32602, message="Invalid params"
        )

        assert error_response.id == "test-123"
        assert error_response.error.code == -32602
        assert error_response.error.message == "Invalid params"

    def test_create_notification(self):
        notification = JSONRPCHandler.create_notification(
            method="test/notification", params={"event": "test"}
        )

        assert notification.method == "test/notification"
        # Notifications don't have IDs
        assert not hasattr(notification, "id")

    def test_parse_message_request(self):
        data = {"jsonrpc": "2.0", "id": "123", "method": "test/method", "params": {"test": True}}

        message = JSONRPCHandler.parse_message(data)
        assert isinstance(message, JSONRPCRequest)
        assert message.id == "123"

    def test_parse_message_notification(self):
        data = {"jsonrpc": "2.0", "method": "test/notification"}

        assert isinstance(JSONRPCHandler.parse_message(data), JSONRPCNotification)

    def test_parse_message_responses(self):
        ok = JSONRPCHandler.parse_message({"jsonrpc": "2.0", "id": 1, "result": {}})
        err = JSONRPCHandler.parse_message(
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -1, "message": "boom"}}
        )

        assert isinstance(ok, JSONRPCResponse)
        assert isinstance(err, JSONRPCErrorResponse)

    @pytest.mark.parametrize(
        "data",
        [
            {"jsonrpc": "2.0", "id": 1},
            {"jsonrpc": "2.0"},
            {"jsonrpc": "1.0", "id": 1, "method": "ping"},
            "not-an-object",
            42,
        ],
    )
    def test_parse_message_rejects_malformed(self, data):
        with pytest.raises(ValueError):
            JSONRPCHandler.parse_message(data)

    def test_batch_detection(self):
        assert not JSONRPCHandler.is_batch({"jsonrpc": "2.0", "id": "1", "method": "test"})
        assert JSONRPCHandler.is_batch([{"jsonrpc": "2.0", "id": "1", "method": "test"}])


class TestWireEncoding:
    """Frames omit absent optional members but keep required nulls."""

    def test_notification_without_params_omits_params(self):
        frame = JSONRPCHandler.encode_frame(JSONRPCHandler.create_notification("ping"))

        assert json.loads(frame) == {"jsonrpc": "2.0", "method": "ping"}

    def test_null_result_is_kept(self):
        payload = JSONRPCHandler.to_wire(JSONRPCHandler.create_response(1, None))

        assert "result" in payload
        assert payload["result"] is None

    def test_error_response_keeps_null_id(self):
        payload = JSONRPCHandler.to_wire(
            JSONRPCHandler.create_error_response(None, -32700, "Parse error")
        )

        assert payload["id"] is None
        assert payload["error"] == {"code": -32700, "message": "Parse error"}

    def test_decode_frame_rejects_bad_json(self):
        with pytest.raises(ValueError):
            JSONRPCHandler.decode_frame(b"{not json")


def test_logging_level_ordering():
    assert LoggingLevel.DEBUG.severity < LoggingLevel.INFO.severity
    assert LoggingLevel.WARNING.severity < LoggingLevel.ERROR.severity
    assert LoggingLevel.EMERGENCY.severity == max(level.severity for level in LoggingLevel)
