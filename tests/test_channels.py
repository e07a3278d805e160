"""Tests for channel rendering, delivery resilience and the registry."""
import json

import httpx
import pytest
from tenacity import wait_none

from channels.base import (
    ChannelAdapter, ChannelError, ChannelRegistry, CircuitBreaker, CircuitOpenError,
    OutboundDeduplicator,
)
from channels.messenger_adapter import MessengerAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import ChannelConfig
from models.schemas import OutboundKind, OutboundMessage, Platform


def _message(kind, payload, platform=Platform.FACEBOOK, recipient="psid-42", key="conv-1:f:n:0"):
    return OutboundMessage(conversation_id="conv-1", platform=platform, kind=kind,
                           payload=payload, recipient_id=recipient, idempotency_key=key)


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    monkeypatch.setattr(ChannelAdapter._post.retry, "wait", wait_none())


# ══════════════════════════════════════════════════════════════
#  Messenger / Instagram rendering
# ══════════════════════════════════════════════════════════════

class TestMessengerRendering:
    @pytest.fixture
    def adapter(self):
        return MessengerAdapter()

    def test_text_with_image(self, adapter):
        requests = adapter.render(_message(OutboundKind.TEXT, {"text": "Hi", "imageUrl": "https://x/a.png"}))
        assert [r["message"] for r in requests] == [
            {"text": "Hi"},
            {"attachment": {"type": "image", "payload": {"url": "https://x/a.png", "is_reusable": True}}},
        ]
        assert requests[0]["recipient"] == {"id": "psid-42"}

    def test_quick_replies(self, adapter):
        requests = adapter.render(_message(OutboundKind.QUICK_REPLIES, {
            "text": "Pick", "quickReplies": [{"title": "Sales", "payload": "SALES"}],
        }))
        assert requests[0]["message"] == {
            "text": "Pick",
            "quick_replies": [{"content_type": "text", "title": "Sales", "payload": "SALES"}],
        }

    def test_buttons_become_template(self, adapter):
        requests = adapter.render(_message(OutboundKind.BUTTONS, {"text": "Go", "buttons": [
            {"type": "postback", "title": "Start", "payload": "START"},
            {"type": "web_url", "title": "Docs", "url": "https://example.com"},
        ]}))
        template = requests[0]["message"]["attachment"]["payload"]
        assert template["template_type"] == "button"
        assert template["buttons"] == [
            {"type": "postback", "title": "Start", "payload": "START"},
            {"type": "web_url", "url": "https://example.com", "title": "Docs"},
        ]

    def test_instagram_buttons_become_quick_replies(self, adapter):
        requests = adapter.render(_message(OutboundKind.BUTTONS, {"text": "Go", "buttons": [
            {"type": "postback", "title": "Start", "payload": "START"},
            {"type": "web_url", "title": "Docs", "url": "https://example.com"},
        ]}, platform=Platform.INSTAGRAM))
        assert requests[0]["message"]["quick_replies"] == [
            {"content_type": "text", "title": "Start", "payload": "START"},
        ]

    def test_carousel(self, adapter):
        requests = adapter.render(_message(OutboundKind.CAROUSEL, {"text": "Our range", "cards": [
            {"title": "Red", "subtitle": "Warm", "imageUrl": "https://x/red.png",
             "buttons": [{"type": "postback", "title": "Buy", "payload": "RED"}]},
        ]}))
        assert requests[0]["message"] == {"text": "Our range"}
        element = requests[1]["message"]["attachment"]["payload"]["elements"][0]
        assert element == {
            "title": "Red", "subtitle": "Warm", "image_url": "https://x/red.png",
            "buttons": [{"type": "postback", "title": "Buy", "payload": "RED"}],
        }

    def test_location_as_text(self, adapter):
        requests = adapter.render(_message(OutboundKind.LOCATION, {
            "latitude": 1.5, "longitude": 2.5, "name": "Office", "address": "",
            "url": "https://www.google.com/maps?q=1.5,2.5",
        }))
        assert requests[0]["message"] == {"text": "Office\nhttps://www.google.com/maps?q=1.5,2.5"}


# ══════════════════════════════════════════════════════════════
#  WhatsApp rendering
# ══════════════════════════════════════════════════════════════

class TestWhatsAppRendering:
    @pytest.fixture
    def adapter(self):
        return WhatsAppAdapter()

    def _wa(self, kind, payload):
        return _message(kind, payload, platform=Platform.WHATSAPP, recipient="+66 80-000-0000")

    def test_text(self, adapter):
        request, = adapter.render(self._wa(OutboundKind.TEXT, {"text": "Hi"}))
        assert request["to"] == "66800000000"
        assert request["type"] == "text"
        assert request["text"] == {"body": "Hi", "preview_url": True}

    def test_image_with_caption(self, adapter):
        request, = adapter.render(self._wa(OutboundKind.TEXT, {"text": "Look", "imageUrl": "https://x/a.png"}))
        assert request["image"] == {"link": "https://x/a.png", "caption": "Look"}

    def test_few_options_are_reply_buttons(self, adapter):
        request, = adapter.render(self._wa(OutboundKind.QUICK_REPLIES, {"text": "Pick", "quickReplies": [
            {"title": "Sales", "payload": "SALES"}, {"title": "Support", "payload": "SUPPORT"},
        ]}))
        interactive = request["interactive"]
        assert interactive["type"] == "button"
        assert [b["reply"]["id"] for b in interactive["action"]["buttons"]] == ["SALES", "SUPPORT"]

    def test_many_options_are_a_list(self, adapter):
        replies = [{"title": f"Option {i}", "payload": f"OPT{i}"} for i in range(5)]
        request, = adapter.render(self._wa(OutboundKind.QUICK_REPLIES, {"text": "Pick", "quickReplies": replies}))
        interactive = request["interactive"]
        assert interactive["type"] == "list"
        assert len(interactive["action"]["sections"][0]["rows"]) == 5

    def test_link_buttons_go_into_body(self, adapter):
        request, = adapter.render(self._wa(OutboundKind.BUTTONS, {"text": "Go", "buttons": [
            {"type": "postback", "title": "Start", "payload": "START"},
            {"type": "web_url", "title": "Docs", "url": "https://example.com"},
        ]}))
        assert request["interactive"]["body"]["text"] == "Go\nDocs: https://example.com"

    def test_carousel_is_split_into_messages(self, adapter):
        requests = adapter.render(self._wa(OutboundKind.CAROUSEL, {"text": "Choose", "cards": [
            {"title": "Red", "subtitle": "Warm", "imageUrl": "https://x/red.png",
             "buttons": [{"type": "postback", "title": "Red", "payload": "RED"}]},
            {"title": "Blue", "buttons": [{"type": "postback", "title": "Blue", "payload": "BLUE"}]},
        ]}))
        assert [r["type"] for r in requests] == ["image", "text", "interactive"]
        assert requests[0]["image"]["caption"] == "Red\nWarm"
        assert requests[2]["interactive"]["body"]["text"] == "Choose"

    def test_native_location(self, adapter):
        request, = adapter.render(self._wa(OutboundKind.LOCATION, {
            "latitude": 13.75, "longitude": 100.5, "name": "Office", "address": "1 Main Rd", "url": "",
        }))
        assert request["location"] == {"latitude": 13.75, "longitude": 100.5,
                                       "name": "Office", "address": "1 Main Rd"}


# ══════════════════════════════════════════════════════════════
#  Delivery
# ══════════════════════════════════════════════════════════════

class TestMockMode:
    @pytest.mark.asyncio
    async def test_without_token_nothing_is_posted(self):
        adapter = MessengerAdapter()
        await adapter.initialize({})
        assert adapter.mock_mode
        result = await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}))
        assert result.status == "mock_sent"
        assert result.ok
        assert len(result.channel_message_ids) == 1

    @pytest.mark.asyncio
    async def test_duplicate_key_suppressed(self):
        adapter = MessengerAdapter()
        await adapter.initialize({})
        await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}))
        again = await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}))
        assert again.status == "duplicate"
        health = await adapter.health_check()
        assert health["metrics"]["sent"] == 1
        assert health["metrics"]["duplicates_suppressed"] == 1
        assert health["mode"] == "mock"

    @pytest.mark.asyncio
    async def test_missing_recipient_is_permanent(self):
        adapter = MessengerAdapter()
        await adapter.initialize({})
        with pytest.raises(ChannelError) as exc_info:
            await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}, recipient=None))
        assert exc_info.value.retryable is False


class TestLiveDelivery:
    @pytest.mark.asyncio
    async def test_posts_to_graph_api(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"messaging_product": "whatsapp", "messages": [{"id": "wamid.1"}]})

        adapter = WhatsAppAdapter(transport=httpx.MockTransport(handler))
        await adapter.initialize({"access_token": "tok", "phone_number_id": "12345"})
        result = await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}, platform=Platform.WHATSAPP))

        assert result.status == "sent"
        assert result.channel_message_ids == ["wamid.1"]
        assert str(seen[0].url) == "https://graph.facebook.com/v18.0/12345/messages"
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert json.loads(seen[0].content)["text"]["body"] == "Hi"
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        adapter = MessengerAdapter(transport=httpx.MockTransport(
            lambda request: httpx.Response(400, json={"error": {"message": "bad recipient"}})
        ))
        await adapter.initialize({"access_token": "tok"})
        with pytest.raises(ChannelError) as exc_info:
            await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}))
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_server_error_is_retried_then_retryable(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        adapter = MessengerAdapter(transport=httpx.MockTransport(handler))
        await adapter.initialize({"access_token": "tok"})
        with pytest.raises(ChannelError) as exc_info:
            await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}))
        assert exc_info.value.retryable is True
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_failed_send_can_be_retried_with_same_key(self):
        responses = [httpx.Response(400), httpx.Response(200, json={"message_id": "mid.1"})]
        adapter = MessengerAdapter(transport=httpx.MockTransport(lambda request: responses.pop(0)))
        await adapter.initialize({"access_token": "tok"})
        message = _message(OutboundKind.TEXT, {"text": "Hi"})

        with pytest.raises(ChannelError):
            await adapter.send(message)
        result = await adapter.send(message)
        assert result.status == "sent"
        assert result.channel_message_ids == ["mid.1"]


class TestResilienceHelpers:
    def test_circuit_breaker_opens(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        breaker.record_failure()
        assert not breaker.is_open
        breaker.record_failure()
        assert breaker.is_open
        breaker.record_success()
        assert breaker.state == "closed"

    def test_circuit_breaker_half_opens(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == "half_open"

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_send(self):
        adapter = MessengerAdapter()
        await adapter.initialize({})
        adapter._breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        adapter._breaker.record_failure()
        with pytest.raises(CircuitOpenError):
            await adapter.send(_message(OutboundKind.TEXT, {"text": "Hi"}))

    def test_deduplicator_is_bounded(self):
        dedup = OutboundDeduplicator(max_size=2)
        for key in ("a", "b", "c"):
            dedup.remember(key)
        assert not dedup.is_duplicate("a")
        assert dedup.is_duplicate("c")
        assert not dedup.is_duplicate("")


# ══════════════════════════════════════════════════════════════
#  Registry
# ══════════════════════════════════════════════════════════════

class TestChannelRegistry:
    @pytest.fixture
    def registry(self):
        registry = ChannelRegistry()
        registry.register(MessengerAdapter())
        registry.register(WhatsAppAdapter())
        return registry

    def test_platform_lookup(self, registry):
        assert registry.get(Platform.FACEBOOK) is registry.get(Platform.INSTAGRAM)
        assert isinstance(registry.get(Platform.WHATSAPP), WhatsAppAdapter)
        assert set(registry.get_available()) == set(Platform)

    @pytest.mark.asyncio
    async def test_routes_by_platform(self, registry):
        await registry.initialize_all({
            "messenger": ChannelConfig(enabled=True, credentials={}),
            "whatsapp": {"phone_number_id": "1"},
        })
        result = await registry.send(_message(OutboundKind.TEXT, {"text": "Hi"}, platform=Platform.INSTAGRAM))
        assert result.status == "mock_sent"

        health = await registry.health_check_all()
        assert set(health) == {"messenger", "whatsapp"}
        assert health["messenger"]["metrics"]["sent"] == 1
        await registry.shutdown_all()

    @pytest.mark.asyncio
    async def test_unknown_platform(self):
        with pytest.raises(ChannelError) as exc_info:
            await ChannelRegistry().send(_message(OutboundKind.TEXT, {"text": "Hi"}))
        assert exc_info.value.retryable is False
