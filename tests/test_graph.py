"""Tests for flow compilation and graph validation."""
import pytest

from flows.graph import FlowGraph, compile_flow
from models.errors import AuthoringError
from models.schemas import FlowDefinition

from builders import action, collect_input, condition, delay, flow_document, message, quick_replies


class TestCompileFlow:
    def test_valid_flow(self, welcome_flow):
        graph = compile_flow(welcome_flow)
        assert isinstance(graph, FlowGraph)
        assert graph.flow_id == "welcome"
        assert graph.version == 1
        assert graph.entry_id == "m1"
        assert graph.entry.text == "Hi"
        assert graph.successors("m1") == ["q1"]
        assert graph.get("missing") is None
        assert graph.get(None) is None

    def test_accepts_parsed_definition(self, signup_flow):
        flow = FlowDefinition.model_validate(signup_flow)
        graph = compile_flow(flow)
        assert graph.flow is flow
        assert graph.reachable_ids() == {"ask", "check", "ok", "bad"}

    def test_payload_errors_become_authoring_errors(self):
        doc = flow_document("bad", [
            {"id": "c1", "type": "condition", "data": {"value": "x"}, "nextNodeId": "m1"},
            message("m1", "x"),
        ])
        with pytest.raises(AuthoringError) as exc_info:
            compile_flow(doc)
        assert exc_info.value.flow_id == "bad"
        assert exc_info.value.errors

    def test_authoring_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            compile_flow(flow_document("empty", []))


class TestGraphValidation:
    def _errors(self, nodes) -> list[str]:
        with pytest.raises(AuthoringError) as exc_info:
            compile_flow(flow_document("f", nodes))
        return exc_info.value.errors

    def test_empty_flow(self):
        assert self._errors([]) == ["flow has no nodes"]

    def test_missing_reference(self):
        errors = self._errors([message("m1", "Hi", "ghost")])
        assert errors == ["node 'm1' references missing node 'ghost'"]

    def test_missing_condition_branch(self):
        errors = self._errors([condition("c1", "message", "equals", "x", "m1", "nope"), message("m1", "x")])
        assert "references missing node 'nope'" in errors[0]

    def test_duplicate_ids(self):
        errors = self._errors([message("m1", "a"), message("m1", "b")])
        assert "duplicate node id 'm1'" in errors

    def test_message_without_content(self):
        errors = self._errors([{"id": "m1", "type": "message", "data": {}}])
        assert "neither text nor imageUrl" in errors[0]

    def test_image_only_message_is_valid(self):
        compile_flow(flow_document("f", [{"id": "m1", "type": "message", "data": {"imageUrl": "a.png"}}]))

    def test_option_node_without_options(self):
        errors = self._errors([{"id": "q1", "type": "quick_replies", "data": {"text": "Pick"}}])
        assert "no selectable options" in errors[0]

    def test_buttons_with_only_links(self):
        errors = self._errors([{"id": "b1", "type": "buttons", "data": {"text": "Read", "buttons": [
            {"type": "web_url", "title": "Docs", "url": "https://example.com"},
        ]}}])
        assert "no selectable options" in errors[0]

    def test_add_tag_without_value(self):
        errors = self._errors([action("a1", "add_tag")])
        assert "has no actionValue" in errors[0]

    def test_reserved_save_as(self):
        errors = self._errors([collect_input("c1", "Say something", "message")])
        assert "reserved variable 'message'" in errors[0]

    def test_empty_save_as(self):
        errors = self._errors([collect_input("c1", "Say something", "  ")])
        assert "empty saveAs" in errors[0]

    def test_cycle_without_suspension(self):
        errors = self._errors([message("m1", "a", "m2"), message("m2", "b", "m1")])
        assert errors == ["cycle without a suspending node: m1 -> m2 -> m1"]

    def test_cycle_through_condition(self):
        errors = self._errors([
            condition("c1", "message", "contains", "x", "m1", "m1"),
            message("m1", "loop", "c1"),
        ])
        assert errors[0].startswith("cycle without a suspending node")

    def test_cycle_through_input_is_valid(self):
        graph = compile_flow(flow_document("menu", [
            message("m1", "Menu", "q1"),
            quick_replies("q1", "Again?", ["Yes"], "m1"),
        ]))
        assert graph.reachable_ids() == {"m1", "q1"}

    def test_cycle_through_delay_is_valid(self):
        compile_flow(flow_document("ping", [delay("d1", 60000, "m1"), message("m1", "ping", "d1")]))

    def test_close_ignores_next_node(self):
        graph = compile_flow(flow_document("f", [action("a1", "close", next_id="gone")]))
        assert graph.successors("a1") == []


class TestReachability:
    def test_unreachable_nodes_are_reported_not_rejected(self):
        graph = compile_flow(flow_document("f", [message("m1", "Hi"), message("orphan", "never")]))
        assert graph.unreachable_ids() == ["orphan"]
        assert graph.reachable_ids() == {"m1"}
