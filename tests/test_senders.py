"""
tests/test_senders.py — Provider Sender Tests
==============================================

HTTP senders run against ``httpx.MockTransport``; nothing leaves the process.
"""

from __future__ import annotations

import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest

from rallia.config import SenderConfig
from rallia.database.models import DeliveryChannel, DeliveryStatus
from rallia.engine.dispatch import NotificationInput
from rallia.services.notification_service import dispatch_notification, upsert_contact
from rallia.services.senders import (
    ExpoPushSender,
    LoggingSender,
    ResendEmailSender,
    TwilioSmsSender,
    build_senders,
)

MESSAGE = {
    "notification_id": 7,
    "type": "match_cancelled",
    "title": "Match cancelled",
    "body": "Saturday doubles is off",
    "payload": {"match_id": "m-42"},
    "priority": "high",
    "attempt_number": 1,
}


class Recorder:
    """MockTransport handler that remembers requests and replays a response."""

    def __init__(self, status_code: int = 200, body: dict | None = None) -> None:
        self.status_code = status_code
        self.body = body if body is not None else {"id": "ok"}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


# ===========================================================================
# Email
# ===========================================================================
class TestResend:
    def test_success(self):
        recorder = Recorder(body={"id": "email-1"})
        sender = ResendEmailSender(
            "re_key", from_address="Rallia <n@rallia.app>", transport=recorder.transport
        )

        result = sender.send(DeliveryChannel.EMAIL, "ana@example.com", MESSAGE)

        assert result.success is True
        assert result.provider_response["id"] == "email-1"
        request = recorder.requests[0]
        assert request.url.path == "/emails"
        assert request.headers["Authorization"] == "Bearer re_key"
        sent = json.loads(request.content)
        assert sent["to"] == ["ana@example.com"]
        assert sent["subject"] == "Match cancelled"
        assert sent["text"] == "Saturday doubles is off"

    def test_rejection_is_a_failed_result(self):
        recorder = Recorder(status_code=422, body={"message": "Invalid `to` field"})
        sender = ResendEmailSender("k", from_address="x@y.z", transport=recorder.transport)

        result = sender.send(DeliveryChannel.EMAIL, "bad", MESSAGE)

        assert result.success is False
        assert "422" in result.error_message
        assert "Invalid `to` field" in result.error_message
        assert result.provider_response["status_code"] == 422

    def test_transport_error_does_not_raise(self):
        def boom(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        sender = ResendEmailSender("k", from_address="x@y.z", transport=httpx.MockTransport(boom))
        result = sender.send(DeliveryChannel.EMAIL, "ana@example.com", MESSAGE)

        assert result.success is False
        assert "transport error" in result.error_message


# ===========================================================================
# Push
# ===========================================================================
class TestExpo:
    def test_ok_ticket(self):
        recorder = Recorder(body={"data": {"status": "ok", "id": "ticket-1"}})
        sender = ExpoPushSender("tok", transport=recorder.transport)

        result = sender.send(DeliveryChannel.PUSH, "ExponentPushToken[abc]", MESSAGE)

        assert result.success is True
        sent = json.loads(recorder.requests[0].content)
        assert sent["to"] == "ExponentPushToken[abc]"
        assert sent["priority"] == "high"
        assert sent["data"] == {"match_id": "m-42", "notification_id": 7,
                                "type": "match_cancelled"}
        assert recorder.requests[0].headers["Authorization"] == "Bearer tok"

    def test_error_ticket_is_failure(self):
        recorder = Recorder(body={"data": [{
            "status": "error", "message": "DeviceNotRegistered",
        }]})
        sender = ExpoPushSender(transport=recorder.transport)

        result = sender.send(DeliveryChannel.PUSH, "ExponentPushToken[gone]", MESSAGE)

        assert result.success is False
        assert "DeviceNotRegistered" in result.error_message
        assert "Authorization" not in recorder.requests[0].headers


# ===========================================================================
# SMS
# ===========================================================================
class TestTwilio:
    def test_form_post(self):
        recorder = Recorder(status_code=201, body={"sid": "SM1", "status": "queued"})
        sender = TwilioSmsSender(
            "AC123", "secret", from_number="+15005550006", transport=recorder.transport
        )

        result = sender.send(DeliveryChannel.SMS, "+15145550100", MESSAGE)

        assert result.success is True
        request = recorder.requests[0]
        assert request.url.path.endswith("/Accounts/AC123/Messages.json")
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+15145550100"]
        assert form["From"] == ["+15005550006"]
        assert form["Body"] == ["Match cancelled\nSaturday doubles is off"]
        expected = base64.b64encode(b"AC123:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(503, text="Service Unavailable")

        sender = TwilioSmsSender(
            "AC123", "secret", from_number="+1", transport=httpx.MockTransport(handler)
        )
        result = sender.send(DeliveryChannel.SMS, "+15145550100", MESSAGE)

        assert result.success is False
        assert result.provider_response["text"] == "Service Unavailable"


# ===========================================================================
# Wiring
# ===========================================================================
class TestBuildSenders:
    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in ("RESEND_API_KEY", "EXPO_ACCESS_TOKEN", "TWILIO_ACCOUNT_SID",
                     "TWILIO_AUTH_TOKEN"):
            monkeypatch.delenv(name, raising=False)

    def test_missing_credentials_leave_channel_unset(self):
        senders = build_senders()
        assert DeliveryChannel.EMAIL not in senders
        assert DeliveryChannel.SMS not in senders
        assert isinstance(senders[DeliveryChannel.PUSH], ExpoPushSender)

    def test_logging_fallback_is_opt_in(self):
        senders = build_senders(SenderConfig(log_unconfigured=True))
        assert isinstance(senders[DeliveryChannel.EMAIL], LoggingSender)
        assert isinstance(senders[DeliveryChannel.SMS], LoggingSender)
        assert isinstance(senders[DeliveryChannel.PUSH], ExpoPushSender)

    def test_unconfigured_channel_records_failed_attempt(self, seeded_engine, config_cache):
        upsert_contact(seeded_engine, "player-1", email="p1@example.com", push_enabled=False)

        result = dispatch_notification(
            seeded_engine, config_cache,
            NotificationInput(user_id="player-1", type="match_cancelled", title="Off"),
            build_senders(),
        )

        email = result.channels[DeliveryChannel.EMAIL]
        assert email.status == DeliveryStatus.FAILED
        assert "No sender configured" in email.error_message

    def test_configured_providers(self, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_key")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")

        senders = build_senders(SenderConfig(twilio_from_number="+15005550006"))

        assert isinstance(senders[DeliveryChannel.EMAIL], ResendEmailSender)
        assert isinstance(senders[DeliveryChannel.SMS], TwilioSmsSender)

    def test_twilio_needs_a_from_number(self, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "tok")
        assert DeliveryChannel.SMS not in build_senders()

    def test_logging_sender_always_succeeds(self):
        result = LoggingSender().send(DeliveryChannel.SMS, "+1", MESSAGE)
        assert result.success is True
        assert result.provider_response == {"logged": True}
