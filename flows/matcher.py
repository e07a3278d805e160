"""
Trigger Matcher — picks the flow to start for an inbound message.

Matching is lexical: a flow matches when any of its trigger keywords is a
case-insensitive substring of the message text and its platform list is empty
or contains the event's platform. Flows without keywords only start
explicitly.

Tie-break among matches:
  1. highest priority
  2. most recently updated
  3. flow id ascending
"""
from __future__ import annotations

from typing import Optional

import structlog

from flows.repository import BaseFlowRepository
from models.schemas import FlowDefinition, InboundEvent, Platform

logger = structlog.get_logger()


def keyword_hit(flow: FlowDefinition, text: str) -> Optional[str]:
    """Return the first keyword of flow found in text, if any."""
    folded = text.casefold()
    for keyword in flow.trigger_keywords:
        if keyword.casefold() in folded:
            return keyword
    return None


def platform_allowed(flow: FlowDefinition, platform: Platform) -> bool:
    return not flow.platforms or platform in flow.platforms


def _rank(flow: FlowDefinition) -> tuple:
    return (-flow.priority, -flow.updated_at.timestamp(), flow.id)


class TriggerMatcher:

    def __init__(self, flows: BaseFlowRepository):
        self.flows = flows

    async def candidates(self, event: InboundEvent) -> list[FlowDefinition]:
        """All matching active flows, best first."""
        text = (event.text or "").strip()
        if not text:
            return []
        matches = [
            flow for flow in await self.flows.get_active_flows(event.tenant_id)
            if flow.trigger_keywords
            and platform_allowed(flow, event.platform)
            and keyword_hit(flow, text)
        ]
        matches.sort(key=_rank)
        return matches

    async def match(self, event: InboundEvent) -> Optional[FlowDefinition]:
        matches = await self.candidates(event)
        if not matches:
            return None

        winner = matches[0]
        tied = [f.id for f in matches if f.priority == winner.priority]
        if len(tied) > 1:
            logger.warning("trigger_match_ambiguous",
                           conversation_id=event.conversation_id,
                           tenant_id=event.tenant_id,
                           flow_ids=tied, chosen=winner.id)
        logger.debug("trigger_matched", conversation_id=event.conversation_id,
                     flow_id=winner.id, keyword=keyword_hit(winner, event.text or ""))
        return winner
