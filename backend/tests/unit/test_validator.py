# backend/tests/unit/test_validator.py
import pytest

from whatsflow.models.flow import ConditionNode, EndNode, MessageNode, StartNode
from whatsflow.workflows.validator import (
    FlowValidationError,
    ValidationErrorKind,
    ensure_valid,
    reachable_from,
    validate_flow,
)


def test_linear_flow_is_valid(make_graph):
    graph = make_graph(
        [StartNode(id="start"), MessageNode(id="m1", message="Hi"), EndNode(id="end")],
        [("start", "m1"), ("m1", "end")],
    )
    result = validate_flow(graph)
    assert result["is_valid"] is True
    assert result["error_code"] is None


def test_branching_flow_with_two_ends_is_valid(make_graph):
    graph = make_graph(
        [StartNode(id="start"), ConditionNode(id="cond", condition="x == 1"), EndNode(id="end1"), EndNode(id="end2")],
        [("start", "cond"), ("cond", "end1", "true"), ("cond", "end2", "false")],
    )
    assert validate_flow(graph)["is_valid"] is True


def test_missing_start_node(make_graph):
    graph = make_graph([MessageNode(id="m1"), EndNode(id="end")], [("m1", "end")])
    result = validate_flow(graph)
    assert result["is_valid"] is False
    assert result["error_code"] == ValidationErrorKind.MISSING_START_NODE


def test_multiple_start_nodes(make_graph):
    graph = make_graph(
        [StartNode(id="s1"), StartNode(id="s2"), EndNode(id="end")],
        [("s1", "end"), ("s2", "end")],
    )
    result = validate_flow(graph)
    assert result["error_code"] == ValidationErrorKind.MULTIPLE_START_NODES
    assert result["node_id"] == "s2"


def test_missing_end_node(make_graph):
    graph = make_graph([StartNode(id="start"), MessageNode(id="m1")], [("start", "m1")])
    assert validate_flow(graph)["error_code"] == ValidationErrorKind.MISSING_END_NODE


def test_dangling_connection(make_graph):
    graph = make_graph(
        [StartNode(id="start"), EndNode(id="end")],
        [("start", "end"), ("start", "ghost")],
    )
    result = validate_flow(graph)
    assert result["error_code"] == ValidationErrorKind.DANGLING_CONNECTION
    assert result["connection_id"] == "c2"
    assert result["node_id"] == "ghost"


def test_dangling_source_is_also_rejected(make_graph):
    graph = make_graph(
        [StartNode(id="start"), EndNode(id="end")],
        [("start", "end"), ("ghost", "end")],
    )
    assert validate_flow(graph)["error_code"] == ValidationErrorKind.DANGLING_CONNECTION


def test_unreachable_end_node(make_graph):
    graph = make_graph(
        [StartNode(id="start"), MessageNode(id="m1"), EndNode(id="end")],
        [("start", "m1")],
    )
    result = validate_flow(graph)
    assert result["error_code"] == ValidationErrorKind.UNREACHABLE_END_NODE
    assert result["node_id"] == "end"


def test_reachability_policy_all_versus_any(make_graph):
    graph = make_graph(
        [StartNode(id="start"), EndNode(id="end1"), EndNode(id="orphan")],
        [("start", "end1")],
    )
    assert validate_flow(graph, "all")["error_code"] == ValidationErrorKind.UNREACHABLE_END_NODE
    assert validate_flow(graph, "all")["node_id"] == "orphan"
    assert validate_flow(graph, "any")["is_valid"] is True


def test_any_policy_still_needs_one_reachable_end(make_graph):
    graph = make_graph(
        [StartNode(id="start"), MessageNode(id="m1"), EndNode(id="end")],
        [("start", "m1")],
    )
    assert validate_flow(graph, "any")["error_code"] == ValidationErrorKind.UNREACHABLE_END_NODE


def test_checks_run_in_order(make_graph):
    # No start and a dangling connection: the start check wins
    graph = make_graph([EndNode(id="end")], [("end", "ghost")])
    assert validate_flow(graph)["error_code"] == ValidationErrorKind.MISSING_START_NODE


def test_reachable_from_follows_cycles_once(make_graph):
    graph = make_graph(
        [StartNode(id="start"), MessageNode(id="a"), MessageNode(id="b"), EndNode(id="end")],
        [("start", "a"), ("a", "b"), ("b", "a"), ("b", "end")],
    )
    assert reachable_from(graph, "start") == {"start", "a", "b", "end"}


def test_validation_does_not_mutate_graph(make_graph):
    graph = make_graph(
        [StartNode(id="start"), EndNode(id="end")],
        [("start", "end")],
    )
    before = graph.model_dump()
    validate_flow(graph)
    assert graph.model_dump() == before


def test_ensure_valid_raises_with_specific_code(make_graph):
    graph = make_graph([StartNode(id="start")], [])
    with pytest.raises(FlowValidationError) as exc_info:
        ensure_valid(graph)
    assert exc_info.value.error_code == ValidationErrorKind.MISSING_END_NODE
    assert exc_info.value.result["is_valid"] is False
