"""
Unit tests for flow definition parsing, validation and edge lookup.
"""
import pytest

from flow_engine.core import FlowGraph, FlowValidationError, NoMatchingEdge
from flow_engine.models import FlowDefinition, NodeType
from flow_engine.models.flow import ApiConfig, ConditionConfig, DelayConfig, WebhookConfig

START = {"id": "start", "type": "start"}
END = {"id": "end", "type": "end"}


def message(node_id, text="Hello"):
    return {"id": node_id, "type": "message", "config": {"message": text}}


def condition(node_id="check"):
    return {
        "id": node_id,
        "type": "condition",
        "config": {"logic": "AND", "rules": [{"variable": "{{age}}", "operator": "greater_than", "value": "18"}]},
    }


def problems_of(flow: FlowDefinition):
    with pytest.raises(FlowValidationError) as exc_info:
        FlowGraph(flow)
    return exc_info.value.problems


class TestNodeParsing:
    """Config is parsed into the model for the node's type."""

    def test_config_variant_per_type(self, make_flow):
        flow = make_flow([
            START,
            condition(),
            {"id": "wait", "type": "delay", "config": {"duration": 5, "unit": "minutes"}},
            {"id": "call", "type": "api", "config": {"url": "https://x.test", "method": "post"}},
            END,
        ], edges=[])
        assert isinstance(flow.get_node("check").config, ConditionConfig)
        assert isinstance(flow.get_node("wait").config, DelayConfig)
        assert flow.get_node("wait").config.total_seconds == 300
        assert isinstance(flow.get_node("call").config, ApiConfig)
        assert flow.get_node("call").config.method == "POST"

    def test_builder_data_key_accepted(self):
        flow = FlowDefinition.model_validate({
            "nodes": [{"id": "m", "type": "message", "data": {"label": "Greeting", "message": "Hi"}}],
        })
        node = flow.get_node("m")
        assert node.config.message == "Hi"
        assert node.label == "Greeting"

    def test_header_rows_become_dict(self):
        flow = FlowDefinition.model_validate({"nodes": [{
            "id": "hook",
            "type": "webhook",
            "config": {"webhookUrl": "https://x.test", "headers": [{"key": "X-Token", "value": "abc"}, {"key": ""}]},
        }]})
        config = flow.get_node("hook").config
        assert isinstance(config, WebhookConfig)
        assert config.url == "https://x.test"
        assert config.method == "POST"
        assert config.headers == {"X-Token": "abc"}

    def test_api_timeout_bounds(self):
        with pytest.raises(ValueError):
            FlowDefinition.model_validate({"nodes": [
                {"id": "call", "type": "api", "config": {"url": "https://x.test", "timeout": 500}},
            ]})

    def test_unknown_node_type_rejected(self):
        with pytest.raises(ValueError):
            FlowDefinition.model_validate({"nodes": [{"id": "x", "type": "carousel"}]})

    def test_label_defaults_to_type(self, make_flow):
        flow = make_flow([START, END])
        assert flow.get_node("start").label == "start"


class TestValidation:
    """Malformed flows are rejected before any run starts."""

    def test_valid_linear_flow(self, make_flow):
        graph = FlowGraph(make_flow([START, message("m"), END]))
        assert graph.start_node_id == "start"
        assert graph.start_node.type == NodeType.START

    def test_missing_start(self, make_flow):
        problems = problems_of(make_flow([message("m"), END]))
        assert any("no start node" in p for p in problems)

    def test_two_starts(self, make_flow):
        problems = problems_of(make_flow([START, {"id": "start2", "type": "start"}, END]))
        assert any("2 start nodes" in p for p in problems)

    def test_dangling_edge(self, make_flow):
        flow = make_flow([START, END], edges=[{"id": "e1", "source": "start", "target": "ghost"}])
        problems = problems_of(flow)
        assert any("ghost" in p for p in problems)

    def test_duplicate_node_id(self, make_flow):
        problems = problems_of(make_flow([START, message("m"), message("m"), END], edges=[]))
        assert any("Duplicate node id 'm'" in p for p in problems)

    def test_condition_needs_both_branches(self, make_flow):
        flow = make_flow([START, condition(), END], edges=[
            {"id": "e1", "source": "start", "target": "check"},
            {"id": "e2", "source": "check", "target": "end", "sourceHandle": "true"},
        ])
        problems = problems_of(flow)
        assert problems == ["Condition 'check' has no 'false' edge"]

    def test_rule_value_required(self, make_flow):
        node = condition()
        node["config"]["rules"].append({"variable": "city", "operator": "equals"})
        node["config"]["rules"].append({"variable": "city", "operator": "is_empty"})
        flow = make_flow([START, node, END], edges=[
            {"id": "e1", "source": "start", "target": "check"},
            {"id": "e2", "source": "check", "target": "end", "sourceHandle": "true"},
            {"id": "e3", "source": "check", "target": "end", "sourceHandle": "false"},
        ])
        problems = problems_of(flow)
        assert problems == ["Condition 'check' rule 2 (equals) requires a value"]

    def test_non_branching_node_single_edge(self, make_flow):
        flow = make_flow([START, message("a"), message("b")], edges=[
            {"id": "e1", "source": "start", "target": "a"},
            {"id": "e2", "source": "start", "target": "b"},
        ])
        problems = problems_of(flow)
        assert any("'start'" in p and "2 outgoing edges" in p for p in problems)

    def test_button_needs_edge_per_option(self, make_flow):
        button = {"id": "menu", "type": "button", "config": {"message": "Pick", "buttons": ["Sales", "Support"]}}
        flow = make_flow([START, button, END], edges=[
            {"id": "e1", "source": "start", "target": "menu"},
            {"id": "e2", "source": "menu", "target": "end", "sourceHandle": "0"},
        ])
        problems = problems_of(flow)
        assert problems == ["Button node 'menu' has no edge for button 1 ('Support')"]

    def test_button_edges_by_text(self, make_flow):
        button = {"id": "menu", "type": "button", "config": {"message": "Pick", "buttons": ["Sales", "Support"]}}
        flow = make_flow([START, button, END], edges=[
            {"id": "e1", "source": "start", "target": "menu"},
            {"id": "e2", "source": "menu", "target": "end", "sourceHandle": "Sales"},
            {"id": "e3", "source": "menu", "target": "end", "sourceHandle": "Support"},
        ])
        FlowGraph(flow)

    def test_jump_target_must_exist(self, make_flow):
        jump = {"id": "loop", "type": "jump", "config": {"targetNodeId": "nowhere"}}
        problems = problems_of(make_flow([START, jump]))
        assert problems == ["Jump 'loop' targets missing node 'nowhere'"]

    def test_api_error_edge_allowed(self, make_flow):
        api = {"id": "call", "type": "api", "config": {"url": "https://x.test"}}
        flow = make_flow([START, api, message("ok"), message("failed"), END], edges=[
            {"id": "e1", "source": "start", "target": "call"},
            {"id": "e2", "source": "call", "target": "ok", "sourceHandle": "success"},
            {"id": "e3", "source": "call", "target": "failed", "sourceHandle": "error"},
            {"id": "e4", "source": "ok", "target": "end"},
            {"id": "e5", "source": "failed", "target": "end"},
        ])
        FlowGraph(flow)


class TestEdgeLookup:
    """Adjacency keyed by (node id, edge label)."""

    @pytest.fixture
    def graph(self, make_flow) -> FlowGraph:
        api = {"id": "call", "type": "api", "config": {"url": "https://x.test"}}
        return FlowGraph(make_flow([START, condition(), api, message("yes"), message("no"), END], edges=[
            {"id": "e1", "source": "start", "target": "check"},
            {"id": "e2", "source": "check", "target": "call", "sourceHandle": "true"},
            {"id": "e3", "source": "check", "target": "no", "sourceHandle": "false"},
            {"id": "e4", "source": "call", "target": "yes"},
            {"id": "e5", "source": "call", "target": "no", "sourceHandle": "error"},
            {"id": "e6", "source": "yes", "target": "end", "sourceHandle": "out"},
        ]))

    def test_labelled(self, graph):
        assert graph.next_node_id("check", "true") == "call"
        assert graph.next_node_id("check", "false") == "no"

    def test_unlabeled(self, graph):
        assert graph.next_node_id("start") == "check"

    def test_missing_label_raises(self, graph):
        with pytest.raises(NoMatchingEdge):
            graph.next_node_id("check", "maybe")

    def test_fallback_to_unlabeled(self, graph):
        assert graph.next_node_id("call", "success", fallback_unlabeled=True) == "yes"
        with pytest.raises(NoMatchingEdge):
            graph.next_node_id("call", "success")

    def test_single_tagged_output_is_default(self, graph):
        assert graph.next_node_id("yes") == "end"

    def test_no_outgoing_edge(self, graph):
        with pytest.raises(NoMatchingEdge):
            graph.next_node_id("end")

    def test_has_edge(self, graph):
        assert graph.has_edge("call", "error")
        assert not graph.has_edge("start", "error")


class TestExportImport:
    """The builder JSON shape round-trips unchanged."""

    def test_round_trip(self, make_flow):
        flow = make_flow(
            [
                {**START, "position": {"x": 0, "y": 0}},
                {"id": "greet", "type": "message", "config": {"label": "Greeting", "message": "Hi {{contact.name}}"}},
                condition(),
                {"id": "menu", "type": "button", "config": {"message": "Pick", "buttons": ["A"], "variableName": "pick"}},
                {"id": "hook", "type": "webhook", "config": {"url": "https://x.test", "headers": {"X": "1"}, "timeout": 5000}},
                END,
            ],
            edges=[
                {"id": "e1", "source": "start", "target": "greet"},
                {"id": "e2", "source": "greet", "target": "check", "animated": True},
                {"id": "e3", "source": "check", "target": "menu", "sourceHandle": "true"},
                {"id": "e4", "source": "check", "target": "end", "sourceHandle": "false"},
                {"id": "e5", "source": "menu", "target": "hook", "sourceHandle": "0"},
                {"id": "e6", "source": "hook", "target": "end"},
            ],
            trigger={"type": "keyword", "keywords": ["hi"]},
        )
        exported = flow.export()
        reimported = FlowDefinition.model_validate(exported)

        assert reimported.export() == exported
        assert exported["nodes"][0]["position"] == {"x": 0, "y": 0}
        assert exported["nodes"][3]["config"]["variableName"] == "pick"
        assert exported["edges"][2]["sourceHandle"] == "true"
        assert exported["edges"][1]["animated"] is True
        FlowGraph(reimported)
