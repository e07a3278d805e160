"""Flow document and inbound event builders shared by the tests."""
from __future__ import annotations

from typing import Any, Optional

from models.schemas import InboundEvent, Platform


def message(node_id: str, text: str, next_id: Optional[str] = None, **extra) -> dict[str, Any]:
    return {"id": node_id, "type": "message", "data": {"text": text, **extra}, "nextNodeId": next_id}


def quick_replies(node_id: str, text: str, titles: list[str], next_id: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": node_id, "type": "quick_replies",
        "data": {"text": text, "quickReplies": [{"title": t, "payload": t.upper()} for t in titles]},
        "nextNodeId": next_id,
    }


def condition(node_id: str, variable: str, operator: str, value: str,
              true_id: Optional[str], false_id: Optional[str]) -> dict[str, Any]:
    return {
        "id": node_id, "type": "condition",
        "data": {"variable": variable, "operator": operator, "value": value},
        "conditionTrueNodeId": true_id, "conditionFalseNodeId": false_id,
    }


def delay(node_id: str, delay_ms: int, next_id: Optional[str] = None) -> dict[str, Any]:
    return {"id": node_id, "type": "delay", "data": {"delayMs": delay_ms}, "nextNodeId": next_id}


def action(node_id: str, kind: str, value: Optional[str] = None, next_id: Optional[str] = None) -> dict[str, Any]:
    data = {"action": kind}
    if value is not None:
        data["actionValue"] = value
    return {"id": node_id, "type": "action", "data": data, "nextNodeId": next_id}


def collect_input(node_id: str, prompt: str, save_as: str, next_id: Optional[str] = None) -> dict[str, Any]:
    return {"id": node_id, "type": "collect_input", "data": {"prompt": prompt, "saveAs": save_as},
            "nextNodeId": next_id}


def flow_document(flow_id: str, nodes: list[dict[str, Any]], keywords: list[str] = None,
                  tenant_id: str = "tenant-1", **extra) -> dict[str, Any]:
    return {
        "id": flow_id,
        "tenantId": tenant_id,
        "name": flow_id.replace("-", " ").title(),
        "triggerKeywords": keywords or [],
        "nodes": nodes,
        **extra,
    }


def inbound(text: Optional[str] = None, postback: Optional[str] = None,
            conversation_id: str = "conv-1", tenant_id: str = "tenant-1",
            platform: Platform = Platform.FACEBOOK, sender_id: str = "psid-42") -> InboundEvent:
    return InboundEvent(
        conversation_id=conversation_id,
        tenant_id=tenant_id,
        platform=platform,
        text=text,
        postback_payload=postback,
        sender_id=sender_id,
    )


