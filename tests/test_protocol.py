"""Tests for the message model and payload validation."""

import json
from datetime import timedelta

import pytest

from agentlink.errors import UnknownPayload
from agentlink.protocol.message import (
    BROKER_ID,
    INITIALIZE_METHOD,
    Message,
    MessageMetadata,
    MessageStatus,
    MessageType,
    Priority,
    create_error,
    create_initialize,
    create_notification,
    create_request,
    create_response,
    utc_now,
)
from agentlink.protocol.payloads import (
    ErrorCode,
    NotificationType,
    TaskAssignedData,
    TaskUpdateData,
    parse_error,
    parse_notification,
)


class TestMessage:
    """Tests for the Message wire model."""

    def test_ids_are_unique(self):
        ids = {create_request("a", "b", "ping").id for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("msg-") for i in ids)

    def test_wire_uses_camel_case(self):
        msg = create_request("a", "b", "ping", {"x": 1}, session_id="conv-1")
        wire = json.loads(msg.to_frame())

        assert wire["fromAgent"] == "a"
        assert wire["toAgent"] == "b"
        assert wire["type"] == "request"
        assert wire["metadata"]["sessionId"] == "conv-1"
        assert wire["security"]["accessLevel"] == "internal"
        assert wire["retryCount"] == 0
        assert "correlationId" not in wire["metadata"]

    def test_from_frame_accepts_camel_case(self):
        frame = json.dumps({
            "id": "msg-1",
            "fromAgent": "a",
            "toAgent": "b",
            "type": "notification",
            "payload": {"type": "agent_left", "data": {"agentId": "a"}},
            "metadata": {"timestamp": utc_now().isoformat(), "priority": "high"},
        })

        msg = Message.from_frame(frame)

        assert msg.from_agent == "a"
        assert msg.type == MessageType.NOTIFICATION
        assert msg.metadata.priority == Priority.HIGH
        assert msg.status == MessageStatus.PENDING

    def test_response_carries_correlation(self):
        request = create_request("a", "b", "ping", session_id="conv-1")
        response = create_response(request, {"pong": True})

        assert response.from_agent == "b"
        assert response.to_agent == "a"
        assert response.type == MessageType.RESPONSE
        assert response.correlation_id == request.id
        assert response.session_id == "conv-1"
        assert response.is_reply()

    def test_error_shape(self):
        request = create_request("a", "ghost", "ping")
        error = create_error(request, "AGENT_UNREACHABLE", "not connected", sender_id=BROKER_ID)

        assert error.from_agent == BROKER_ID
        assert error.to_agent == "a"
        assert error.payload == {"code": "AGENT_UNREACHABLE", "message": "not connected"}
        assert error.correlation_id == request.id

    def test_expiry(self):
        msg = create_request("a", "b", "ping", ttl=5)
        assert not msg.is_expired()
        assert msg.is_expired(now=utc_now() + timedelta(seconds=6))

        no_ttl = create_request("a", "b", "ping")
        assert no_ttl.expires_at is None
        assert not no_ttl.is_expired(now=utc_now() + timedelta(days=365))

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            MessageMetadata(ttl=0)

    def test_initialize_frame(self):
        msg = create_initialize("a", "1.0.0")
        assert msg.to_agent == BROKER_ID
        assert msg.method == INITIALIZE_METHOD
        assert msg.payload == {"agentId": "a", "version": "1.0.0"}


class TestNotifications:
    """Tests for notification parsing."""

    def test_parse_known_type(self):
        msg = create_notification("b", "a", "task_update", {})
        msg.payload = {
            "type": "task_completed",
            "data": {"taskId": "task-1", "result": {"text": "hi"}},
        }

        notification = parse_notification(msg)

        assert notification.type == NotificationType.TASK_COMPLETED
        assert isinstance(notification.data, TaskUpdateData)
        assert notification.data.result == {"text": "hi"}
        assert notification.sender == "b"

    def test_unknown_type_rejected(self):
        msg = create_notification("b", "a", "something_else", {})
        with pytest.raises(UnknownPayload):
            parse_notification(msg)

    def test_malformed_data_rejected(self):
        msg = create_notification("b", "a", "task_assigned", {"task": {"name": ""}})
        with pytest.raises(UnknownPayload) as exc_info:
            parse_notification(msg)
        assert exc_info.value.kind == "task_assigned"

    def test_non_object_data_rejected(self):
        msg = create_notification("b", "a", "agent_left")
        msg.payload["data"] = ["not", "an", "object"]
        with pytest.raises(UnknownPayload):
            parse_notification(msg)

    def test_task_assigned_round_trip(self):
        msg = create_notification("a", "b", "task_assigned", {
            "task": {"name": "echo", "assignedTo": "b", "requestedBy": "a"},
        })
        data = parse_notification(msg).data
        assert isinstance(data, TaskAssignedData)
        assert data.task.assigned_to == "b"


class TestErrors:
    def test_parse_error_payload(self):
        request = create_request("a", "b", "nope")
        error = parse_error(create_error(request, ErrorCode.UNKNOWN_METHOD.value, "Unknown method: nope"))
        assert error.code == "UNKNOWN_METHOD"
        assert error.message == "Unknown method: nope"

    def test_parse_error_tolerates_bare_message(self):
        request = create_request("a", "b", "nope")
        reply = create_response(request, {"error": "boom"})
        reply.type = MessageType.ERROR

        error = parse_error(reply)

        assert error.code == ErrorCode.HANDLER_FAILED.value
        assert error.message == "boom"
