"""
test_channels.py — Channel transports against mocked provider HTTP APIs.

Covers:
    • Email via Resend (success id, retryable and permanent failures)
    • SMS / WhatsApp via Twilio (form payload, basic auth, sid)
    • Slack incoming webhooks
    • Dashboard topic fan-out and history
    • Simulation providers and transport binding

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from notifier.app.delivery.channels import (
    build_transports,
    dashboard,
    email_alert,
    provider_http,
    slack_webhook,
    sms_gateway,
    whatsapp,
)
from notifier.app.delivery.channels.dashboard import NotificationTopic
from notifier.app.delivery.models import ChannelType

from conftest import make_settings


def _client(handler, captured=None) -> httpx.AsyncClient:
    def record(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return handler(request)
    return httpx.AsyncClient(transport=httpx.MockTransport(record))


# ═══════════════════════════════════════════════════════════════════════════
# Shared HTTP helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderHttp:

    @pytest.mark.parametrize("status,retryable", [
        (400, False), (401, False), (422, False), (429, True), (500, True), (503, True),
    ])
    def test_retryable_status(self, status, retryable):
        assert provider_http.is_retryable_status(status) is retryable

    def test_success_without_json_gets_local_id(self):
        response = httpx.Response(200, text="ok")
        result = provider_http.result_from_response("slack", response, id_field="id")
        assert result.success
        assert result.provider_message_id.startswith("slack-")

    def test_non_dict_json(self):
        response = httpx.Response(200, json=["x"])
        result = provider_http.result_from_response("email", response)
        assert result.success
        assert result.provider_message_id.startswith("email-")

    def test_simulated_result(self):
        result = provider_http.simulated_result("sms")
        assert result.success
        assert result.provider_message_id.startswith("sim-sms-")


# ═══════════════════════════════════════════════════════════════════════════
# Email
# ═══════════════════════════════════════════════════════════════════════════

class TestEmail:

    @pytest.mark.asyncio
    async def test_resend_success(self):
        captured = []
        client = _client(lambda r: httpx.Response(200, json={"id": "re_123"}), captured)
        async with client:
            result = await email_alert.send(
                "ana@example.com", "Restock B0", "Stock is low.\n\nAct now.",
                provider="resend", api_key="key-1", client=client,
            )
        assert result.success
        assert result.provider_message_id == "re_123"

        request = captured[0]
        assert str(request.url) == email_alert.RESEND_URL
        assert request.headers["Authorization"] == "Bearer key-1"
        payload = json.loads(request.content)
        assert payload["to"] == ["ana@example.com"]
        assert payload["subject"] == "Restock B0"
        assert payload["text"] == "Stock is low.\n\nAct now."
        assert "<p" in payload["html"]

    @pytest.mark.asyncio
    async def test_resend_server_error_is_retryable(self):
        client = _client(lambda r: httpx.Response(500, text="upstream down"))
        async with client:
            result = await email_alert.send("a@b.c", "s", "b", provider="resend",
                                            api_key="k", client=client)
        assert not result.success
        assert result.retryable
        assert result.error.startswith("HTTP 500")

    @pytest.mark.asyncio
    async def test_resend_validation_error_is_permanent(self):
        client = _client(lambda r: httpx.Response(422, json={"message": "invalid to"}))
        async with client:
            result = await email_alert.send("bad", "s", "b", provider="resend",
                                            api_key="k", client=client)
        assert not result.success
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        result = await email_alert.send("a@b.c", "s", "b", provider="resend", api_key=None)
        assert not result.success
        assert "RESEND_API_KEY" in result.error

    @pytest.mark.asyncio
    async def test_connection_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = _client(handler)
        async with client:
            result = await email_alert.send("a@b.c", "s", "b", provider="resend",
                                            api_key="k", client=client)
        assert not result.success
        assert result.retryable
        assert result.error.startswith("timeout")

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        result = await email_alert.send("a@b.c", "s", "b", provider="carrier-pigeon")
        assert not result.success
        assert "carrier-pigeon" in result.error

    def test_html_body_escapes(self):
        html_body = email_alert.build_html_body("A & B", "<script>x</script>")
        assert "A &amp; B" in html_body
        assert "<script>" not in html_body


# ═══════════════════════════════════════════════════════════════════════════
# SMS / WhatsApp
# ═══════════════════════════════════════════════════════════════════════════

class TestTwilio:

    @pytest.mark.asyncio
    async def test_sms_form_payload(self):
        captured = []
        client = _client(lambda r: httpx.Response(201, json={"sid": "SM42"}), captured)
        async with client:
            result = await sms_gateway.send(
                "+15550001111", "ignored subject", "Stock low",
                provider="twilio", account_sid="AC1", auth_token="tok",
                from_number="+15559990000", client=client,
            )
        assert result.success
        assert result.provider_message_id == "SM42"

        request = captured[0]
        assert str(request.url) == sms_gateway.TWILIO_MESSAGES_URL.format(sid="AC1")
        assert request.headers["Authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form == {"To": ["+15550001111"], "From": ["+15559990000"], "Body": ["Stock low"]}

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        result = await sms_gateway.send("+1", "s", "b", provider="twilio")
        assert not result.success
        assert "credentials" in result.error

    @pytest.mark.asyncio
    async def test_rate_limited_by_twilio_is_retryable(self):
        client = _client(lambda r: httpx.Response(429, json={"code": 20429}))
        async with client:
            result = await sms_gateway.send("+1", "s", "b", provider="twilio",
                                            account_sid="AC1", auth_token="t", client=client)
        assert result.retryable

    def test_segment_count(self):
        assert sms_gateway.segment_count("") == 1
        assert sms_gateway.segment_count("x" * 160) == 1
        assert sms_gateway.segment_count("x" * 161) == 2

    @pytest.mark.asyncio
    async def test_whatsapp_prefixes_numbers(self):
        captured = []
        client = _client(lambda r: httpx.Response(201, json={"sid": "SMWA"}), captured)
        async with client:
            result = await whatsapp.send(
                "+15550001111", "Restock", "Stock low",
                provider="twilio", account_sid="AC1", auth_token="tok",
                from_number="+14155238886", client=client,
            )
        assert result.provider_message_id == "SMWA"
        form = parse_qs(captured[0].content.decode())
        assert form["To"] == ["whatsapp:+15550001111"]
        assert form["From"] == ["whatsapp:+14155238886"]
        assert form["Body"] == ["*Restock*\n\nStock low"]

    def test_whatsapp_address_idempotent(self):
        assert whatsapp.whatsapp_address("whatsapp:+1") == "whatsapp:+1"


# ═══════════════════════════════════════════════════════════════════════════
# Slack
# ═══════════════════════════════════════════════════════════════════════════

class TestSlack:

    @pytest.mark.asyncio
    async def test_webhook_post(self):
        captured = []
        client = _client(lambda r: httpx.Response(200, text="ok"), captured)
        url = "https://hooks.slack.com/services/T0/B0/x"
        async with client:
            result = await slack_webhook.send(url, "Restock", "Stock low",
                                              provider="webhook", client=client)
        assert result.success
        assert result.provider_message_id.startswith("slack-")
        payload = json.loads(captured[0].content)
        assert payload["text"] == "Restock\nStock low"
        assert payload["blocks"][0]["text"]["text"] == "Restock"

    @pytest.mark.asyncio
    async def test_rejects_non_https_address(self):
        result = await slack_webhook.send("#general", "s", "b", provider="webhook")
        assert not result.success


# ═══════════════════════════════════════════════════════════════════════════
# Dashboard
# ═══════════════════════════════════════════════════════════════════════════

class TestDashboard:

    @pytest.mark.asyncio
    async def test_publish_to_matching_subscriber(self):
        topic = NotificationTopic()
        mine = topic.subscribe("seller-1")
        other = topic.subscribe("seller-2")
        everyone = topic.subscribe()

        result = await dashboard.send("seller-1", "Restock", "Stock low", topic=topic)
        assert result.success
        assert result.provider_message_id.startswith("dash-")

        event = mine.queue.get_nowait()
        assert event["title"] == "Restock"
        assert event["message"] == "Stock low"
        assert other.queue.empty()
        assert everyone.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_lagging_subscriber_drops_oldest(self):
        topic = NotificationTopic(queue_size=2)
        sub = topic.subscribe("seller-1")
        for title in ("one", "two", "three"):
            await dashboard.send("seller-1", title, "", topic=topic)
        assert [sub.queue.get_nowait()["title"] for _ in range(2)] == ["two", "three"]

    @pytest.mark.asyncio
    async def test_recent_is_newest_first(self):
        topic = NotificationTopic()
        for title in ("one", "two", "three"):
            await dashboard.send("seller-1", title, "", topic=topic)
        await dashboard.send("seller-2", "other", "", topic=topic)
        assert [e["title"] for e in topic.recent("seller-1", 2)] == ["three", "two"]

    def test_unsubscribe(self):
        topic = NotificationTopic()
        sub = topic.subscribe()
        topic.unsubscribe(sub)
        assert topic.subscriber_count == 0
        assert topic.publish({"recipient_id": "x"}) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Transport binding
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildTransports:

    def test_every_channel_bound(self):
        transports = build_transports(make_settings(), NotificationTopic())
        assert set(transports) == set(ChannelType)

    @pytest.mark.asyncio
    async def test_simulation_defaults(self):
        topic = NotificationTopic()
        transports = build_transports(make_settings(), topic)
        for channel, transport in transports.items():
            result = await transport("seller-1", "Subject", "Body")
            assert result.success, channel
        assert topic.recent("seller-1") != []
