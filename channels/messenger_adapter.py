"""
Messenger Channel Adapter — Facebook Messenger and Instagram Send API.

Rendering rules:
- text:          {"message": {"text"}}; an image goes out as a second
                 message with an image attachment
- quick_replies: {"message": {"text", "quick_replies": [...]}} (max 13)
- buttons:       button template (max 3). Instagram has no button template,
                 so postback buttons become quick replies there.
- carousel:      generic template (max 10 elements, 3 buttons each); the
                 node text, if any, is sent first
- location:      Messenger cannot send a location pin; a text with the name,
                 address and a maps link is sent instead
"""
from __future__ import annotations

import structlog
from typing import Any

from channels.base import GRAPH_API_BASE, ChannelAdapter
from models.schemas import OutboundKind, OutboundMessage, Platform

logger = structlog.get_logger()

MAX_QUICK_REPLIES = 13
MAX_TEMPLATE_BUTTONS = 3
MAX_GENERIC_ELEMENTS = 10
TITLE_LIMIT = 20
ELEMENT_TITLE_LIMIT = 80


class MessengerAdapter(ChannelAdapter):
    """Send API adapter shared by Facebook Messenger and Instagram."""

    name = "messenger"
    platforms = (Platform.FACEBOOK, Platform.INSTAGRAM)

    def _endpoint(self, message: OutboundMessage) -> str:
        return f"{GRAPH_API_BASE}/me/messages"

    # ── Rendering ─────────────────────────────────────────────

    def _envelope(self, message: OutboundMessage, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "recipient": {"id": message.recipient_id},
            "messaging_type": "RESPONSE",
            "message": body,
        }

    @staticmethod
    def _quick_reply(title: str, payload: str) -> dict[str, Any]:
        return {"content_type": "text", "title": title[:TITLE_LIMIT], "payload": payload or title}

    @staticmethod
    def _button(button: dict[str, Any]) -> dict[str, Any]:
        if button.get("type") == "web_url":
            return {"type": "web_url", "url": button.get("url", ""), "title": button["title"][:TITLE_LIMIT]}
        return {"type": "postback", "title": button["title"][:TITLE_LIMIT],
                "payload": button.get("payload") or button["title"]}

    def _render(self, message: OutboundMessage) -> list[dict[str, Any]]:
        p = message.payload
        kind = message.kind

        if kind == OutboundKind.TEXT:
            bodies = []
            if p.get("text"):
                bodies.append({"text": p["text"]})
            if p.get("imageUrl"):
                bodies.append({"attachment": {
                    "type": "image", "payload": {"url": p["imageUrl"], "is_reusable": True},
                }})
            return [self._envelope(message, b) for b in bodies]

        if kind == OutboundKind.QUICK_REPLIES:
            replies = [self._quick_reply(r["title"], r.get("payload", ""))
                       for r in p.get("quickReplies", [])[:MAX_QUICK_REPLIES]]
            return [self._envelope(message, {"text": p.get("text") or " ", "quick_replies": replies})]

        if kind == OutboundKind.BUTTONS:
            buttons = p.get("buttons", [])
            if message.platform == Platform.INSTAGRAM:
                replies = [self._quick_reply(b["title"], b.get("payload", ""))
                           for b in buttons if b.get("type") != "web_url"]
                return [self._envelope(message, {"text": p.get("text") or " ",
                                                 "quick_replies": replies[:MAX_QUICK_REPLIES]})]
            return [self._envelope(message, {"attachment": {
                "type": "template",
                "payload": {
                    "template_type": "button",
                    "text": p.get("text") or " ",
                    "buttons": [self._button(b) for b in buttons[:MAX_TEMPLATE_BUTTONS]],
                },
            }})]

        if kind == OutboundKind.CAROUSEL:
            elements = []
            for card in p.get("cards", [])[:MAX_GENERIC_ELEMENTS]:
                element: dict[str, Any] = {"title": card["title"][:ELEMENT_TITLE_LIMIT]}
                if card.get("subtitle"):
                    element["subtitle"] = card["subtitle"][:ELEMENT_TITLE_LIMIT]
                if card.get("imageUrl"):
                    element["image_url"] = card["imageUrl"]
                if card.get("buttons"):
                    element["buttons"] = [self._button(b) for b in card["buttons"][:MAX_TEMPLATE_BUTTONS]]
                elements.append(element)
            bodies = []
            if p.get("text"):
                bodies.append({"text": p["text"]})
            bodies.append({"attachment": {
                "type": "template",
                "payload": {"template_type": "generic", "elements": elements},
            }})
            return [self._envelope(message, b) for b in bodies]

        if kind == OutboundKind.LOCATION:
            lines = [p.get("name", ""), p.get("address", ""), p.get("url", "")]
            return [self._envelope(message, {"text": "\n".join(l for l in lines if l)})]

        logger.warning("messenger_unsupported_kind", kind=kind.value)
        return []
