"""Tests for trigger matching and the tie-break order."""
from datetime import datetime, timezone

import pytest

from flows.matcher import TriggerMatcher, keyword_hit, platform_allowed
from flows.repository import InMemoryFlowRepository
from models.schemas import FlowDefinition, Platform

from builders import flow_document, inbound, message


def _doc(flow_id, keywords, **extra):
    return flow_document(flow_id, [message("m1", flow_id)], keywords=keywords, **extra)


@pytest.fixture
def repo():
    return InMemoryFlowRepository()


class TestHelpers:
    def test_keyword_hit_is_substring_and_case_insensitive(self):
        flow = FlowDefinition.model_validate(_doc("f", ["Price", "cost"]))
        assert keyword_hit(flow, "what's the PRICE today") == "Price"
        assert keyword_hit(flow, "hello") is None

    def test_platform_filter(self):
        anywhere = FlowDefinition.model_validate(_doc("a", ["x"]))
        wa_only = FlowDefinition.model_validate(_doc("b", ["x"], platforms=["whatsapp"]))
        assert platform_allowed(anywhere, Platform.INSTAGRAM)
        assert platform_allowed(wa_only, Platform.WHATSAPP)
        assert not platform_allowed(wa_only, Platform.FACEBOOK)


class TestTriggerMatcher:
    @pytest.mark.asyncio
    async def test_match(self, repo):
        await repo.save_flow(_doc("greet", ["hello"]))
        flow = await TriggerMatcher(repo).match(inbound("Hello there"))
        assert flow.id == "greet"

    @pytest.mark.asyncio
    async def test_no_text_no_match(self, repo):
        await repo.save_flow(_doc("greet", ["hello"]))
        assert await TriggerMatcher(repo).match(inbound(None, postback="HELLO")) is None

    @pytest.mark.asyncio
    async def test_flows_without_keywords_never_trigger(self, repo):
        await repo.save_flow(_doc("manual", []))
        assert await TriggerMatcher(repo).match(inbound("anything")) is None

    @pytest.mark.asyncio
    async def test_inactive_flow_ignored(self, repo):
        await repo.save_flow(_doc("greet", ["hello"], isActive=False))
        assert await TriggerMatcher(repo).match(inbound("hello")) is None

    @pytest.mark.asyncio
    async def test_other_tenant_ignored(self, repo):
        await repo.save_flow(_doc("greet", ["hello"], tenant_id="tenant-2"))
        assert await TriggerMatcher(repo).match(inbound("hello")) is None

    @pytest.mark.asyncio
    async def test_platform_restriction(self, repo):
        await repo.save_flow(_doc("wa", ["hello"], platforms=["whatsapp"]))
        matcher = TriggerMatcher(repo)
        assert await matcher.match(inbound("hello", platform=Platform.FACEBOOK)) is None
        assert (await matcher.match(inbound("hello", platform=Platform.WHATSAPP))).id == "wa"

    @pytest.mark.asyncio
    async def test_priority_wins(self, repo):
        await repo.save_flow(_doc("low", ["hello"], priority=1))
        await repo.save_flow(_doc("high", ["hello"], priority=5))
        assert (await TriggerMatcher(repo).match(inbound("hello"))).id == "high"

    @pytest.mark.asyncio
    async def test_tie_broken_by_recency_then_id(self):
        older = datetime(2026, 1, 1, tzinfo=timezone.utc)
        newer = datetime(2026, 2, 1, tzinfo=timezone.utc)

        class FixedRepo(InMemoryFlowRepository):
            async def get_active_flows(self, tenant_id):
                return [
                    FlowDefinition.model_validate(_doc("b-old", ["hi"], updatedAt=older)),
                    FlowDefinition.model_validate(_doc("c-new", ["hi"], updatedAt=newer)),
                    FlowDefinition.model_validate(_doc("a-new", ["hi"], updatedAt=newer)),
                ]

        candidates = await TriggerMatcher(FixedRepo()).candidates(inbound("hi"))
        assert [f.id for f in candidates] == ["a-new", "c-new", "b-old"]
