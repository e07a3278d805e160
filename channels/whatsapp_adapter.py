"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API.

Rendering rules:
- text:          text message; with an image, one image message with the
                 text as caption
- quick_replies: interactive reply buttons (up to 3), otherwise an
                 interactive list (up to 10 rows)
- buttons:       postback buttons as reply buttons; web_url buttons are
                 appended to the body as links
- carousel:      WhatsApp has no free-form carousel: each card is sent as an
                 image/text message, then one choice message for all buttons
- location:      native location message
"""
from __future__ import annotations

import re
import structlog
from typing import Any

from channels.base import GRAPH_API_BASE, ChannelAdapter
from models.schemas import OutboundKind, OutboundMessage, Platform

logger = structlog.get_logger()

MAX_REPLY_BUTTONS = 3
MAX_LIST_ROWS = 10
BUTTON_TITLE_LIMIT = 20
ROW_TITLE_LIMIT = 24
ID_LIMIT = 256
DEFAULT_PROMPT = "Please choose an option"


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter."""

    name = "whatsapp"
    platforms = (Platform.WHATSAPP,)

    def __init__(self, transport=None):
        super().__init__(transport)
        self._phone_number_id: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._phone_number_id = self._config.get("phone_number_id", "")

    def _endpoint(self, message: OutboundMessage) -> str:
        return f"{GRAPH_API_BASE}/{self._phone_number_id}/messages"

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone or "")

    # ── Rendering ─────────────────────────────────────────────

    def _envelope(self, message: OutboundMessage, msg_type: str, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self._normalize_phone(message.recipient_id),
            "type": msg_type,
            msg_type: body,
        }

    def _choices(self, message: OutboundMessage, text: str,
                 options: list[tuple[str, str]]) -> dict[str, Any]:
        """Reply buttons for up to 3 options, a list beyond that."""
        body = {"text": text or DEFAULT_PROMPT}
        if len(options) <= MAX_REPLY_BUTTONS:
            interactive = {
                "type": "button",
                "body": body,
                "action": {"buttons": [
                    {"type": "reply", "reply": {"id": payload[:ID_LIMIT], "title": title[:BUTTON_TITLE_LIMIT]}}
                    for title, payload in options
                ]},
            }
        else:
            interactive = {
                "type": "list",
                "body": body,
                "action": {
                    "button": "Options",
                    "sections": [{
                        "title": "Options",
                        "rows": [
                            {"id": payload[:ID_LIMIT], "title": title[:ROW_TITLE_LIMIT]}
                            for title, payload in options[:MAX_LIST_ROWS]
                        ],
                    }],
                },
            }
        return self._envelope(message, "interactive", interactive)

    def _text_or_image(self, message: OutboundMessage, text: str, image_url: str = None) -> dict[str, Any]:
        if image_url:
            image: dict[str, Any] = {"link": image_url}
            if text:
                image["caption"] = text
            return self._envelope(message, "image", image)
        return self._envelope(message, "text", {"body": text, "preview_url": True})

    def _render(self, message: OutboundMessage) -> list[dict[str, Any]]:
        p = message.payload
        kind = message.kind

        if kind == OutboundKind.TEXT:
            return [self._text_or_image(message, p.get("text", ""), p.get("imageUrl"))]

        if kind == OutboundKind.QUICK_REPLIES:
            options = [(r["title"], r.get("payload") or r["title"]) for r in p.get("quickReplies", [])]
            return [self._choices(message, p.get("text", ""), options)]

        if kind == OutboundKind.BUTTONS:
            buttons = p.get("buttons", [])
            options = [(b["title"], b.get("payload") or b["title"])
                       for b in buttons if b.get("type") != "web_url"]
            links = [f"{b['title']}: {b.get('url', '')}" for b in buttons if b.get("type") == "web_url"]
            text = "\n".join([p.get("text", "")] + links).strip()
            if not options:
                return [self._text_or_image(message, text)]
            return [self._choices(message, text, options)]

        if kind == OutboundKind.CAROUSEL:
            requests = []
            options: list[tuple[str, str]] = []
            for card in p.get("cards", []):
                caption = "\n".join(s for s in (card.get("title", ""), card.get("subtitle", "")) if s)
                requests.append(self._text_or_image(message, caption, card.get("imageUrl")))
                options.extend(
                    (b["title"], b.get("payload") or b["title"])
                    for b in card.get("buttons", []) if b.get("type") != "web_url"
                )
            if options:
                requests.append(self._choices(message, p.get("text", ""), options))
            return requests

        if kind == OutboundKind.LOCATION:
            return [self._envelope(message, "location", {
                "latitude": p["latitude"],
                "longitude": p["longitude"],
                "name": p.get("name", ""),
                "address": p.get("address", ""),
            })]

        logger.warning("whatsapp_unsupported_kind", kind=kind.value)
        return []
