"""Tests for InboundRelay — filtering, normalization and webhook delivery."""
import json

import httpx
import pytest

from channels.inbound_relay import InboundRelay
from models.schemas import InboundMessage

WEBHOOK_URL = "https://dashboard.example.com/api/whatsapp/inbound"


class Recorder:
    """httpx.MockTransport handler that replays a list of status codes."""

    def __init__(self, statuses=(200,)):
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status == 200})


def _relay(recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return InboundRelay(WEBHOOK_URL, "s3cret", client=client)


def _message(**kwargs):
    data = {
        "sender_address": "447900000001@c.us",
        "body": "Hi there",
        "message_id": "false_447900000001@c.us_3EB0ABC",
    }
    data.update(kwargs)
    return InboundMessage(**data)


class TestForwarding:
    @pytest.mark.asyncio
    async def test_posts_normalized_payload_with_secret(self):
        recorder = Recorder()
        relay = _relay(recorder)

        assert await relay.handle(_message()) is True

        request = recorder.requests[0]
        assert str(request.url) == WEBHOOK_URL
        assert request.headers["x-webhook-secret"] == "s3cret"
        body = json.loads(request.content)
        assert body["from_phone_e164"] == "+447900000001"
        assert body["body"] == "Hi there"
        assert body["wa_message_id"] == "false_447900000001@c.us_3EB0ABC"
        assert body["timestamp"]
        assert relay.forwarded == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        recorder = Recorder(statuses=[503, 200])
        relay = _relay(recorder)

        assert await relay.handle(_message()) is True
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        recorder = Recorder(statuses=[401])
        relay = _relay(recorder)

        assert await relay.handle(_message()) is False
        assert len(recorder.requests) == 1
        assert relay.forwarded == 0

    @pytest.mark.asyncio
    async def test_transport_error_never_raises(self):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        relay = InboundRelay(WEBHOOK_URL, "s3cret",
                             client=httpx.AsyncClient(transport=httpx.MockTransport(broken)))
        assert await relay.handle(_message()) is False


class TestFiltering:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        _message(sender_address="120363000000@g.us", is_group=True),
        _message(message_type="image"),
        _message(body=""),
    ])
    async def test_dropped(self, message):
        recorder = Recorder()
        relay = _relay(recorder)

        assert await relay.handle(message) is False
        assert recorder.requests == []
        assert relay.dropped == 1
