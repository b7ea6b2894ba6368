# /whatsflow/workflows/validator.py

"""
Pure structural validation for flow graphs.

Checks, in order, each with its own error code:
1. exactly one start node
2. at least one end node
3. every connection references nodes of the same flow
4. end nodes are reachable from the start node

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No message sending
"""

from enum import Enum
from typing import Optional, Set, TypedDict

from whatsflow.models.flow import FlowGraph, NodeType


class ValidationErrorKind(str, Enum):
    MISSING_START_NODE = "MissingStartNode"
    MULTIPLE_START_NODES = "MultipleStartNodes"
    MISSING_END_NODE = "MissingEndNode"
    DANGLING_CONNECTION = "DanglingConnection"
    UNREACHABLE_END_NODE = "UnreachableEndNode"


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[ValidationErrorKind]
    message: Optional[str]
    node_id: Optional[str]
    connection_id: Optional[str]


class FlowValidationError(Exception):
    """Raised when a flow that must be valid (e.g. on publish) is not."""

    def __init__(self, result: ValidationResult):
        super().__init__(result["message"])
        self.result = result
        self.error_code = result["error_code"]


def _ok() -> ValidationResult:
    return {
        "is_valid": True,
        "error_code": None,
        "message": None,
        "node_id": None,
        "connection_id": None
    }


def _fail(
    error_code: ValidationErrorKind,
    message: str,
    node_id: Optional[str] = None,
    connection_id: Optional[str] = None
) -> ValidationResult:
    return {
        "is_valid": False,
        "error_code": error_code,
        "message": message,
        "node_id": node_id,
        "connection_id": connection_id
    }


def reachable_from(graph: FlowGraph, start_id: str) -> Set[str]:
    """Ids of every node reachable from `start_id` by following outgoing connections."""
    visited: Set[str] = set()
    stack = [start_id]
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        for conn in graph.outgoing(current):
            if conn.target_node_id not in visited:
                stack.append(conn.target_node_id)
    return visited


def validate_flow(graph: FlowGraph, reachability: str = "all") -> ValidationResult:
    """
    Validate the structure of a flow graph.

    Args:
        graph: The fully loaded flow
        reachability: "all" requires every end node to be reachable from the
            start node; "any" requires at least one

    Returns:
        ValidationResult with is_valid=True if the flow can be published
    """
    starts = graph.nodes_of_type(NodeType.START)
    if not starts:
        return _fail(ValidationErrorKind.MISSING_START_NODE, "Flow must have a start node")
    if len(starts) > 1:
        return _fail(
            ValidationErrorKind.MULTIPLE_START_NODES,
            f"Flow must have exactly one start node, found {len(starts)}",
            node_id=starts[1].id
        )

    ends = graph.nodes_of_type(NodeType.END)
    if not ends:
        return _fail(ValidationErrorKind.MISSING_END_NODE, "Flow must have an end node")

    node_ids = {node.id for node in graph.nodes}
    for conn in graph.connections:
        for endpoint in (conn.source_node_id, conn.target_node_id):
            if endpoint not in node_ids:
                return _fail(
                    ValidationErrorKind.DANGLING_CONNECTION,
                    f"Connection '{conn.id}' references missing node '{endpoint}'",
                    node_id=endpoint,
                    connection_id=conn.id
                )

    visited = reachable_from(graph, starts[0].id)
    unreachable = [end.id for end in ends if end.id not in visited]
    if reachability == "any":
        if len(unreachable) == len(ends):
            return _fail(
                ValidationErrorKind.UNREACHABLE_END_NODE,
                "No end node is reachable from the start node",
                node_id=unreachable[0]
            )
    elif unreachable:
        return _fail(
            ValidationErrorKind.UNREACHABLE_END_NODE,
            f"End node '{unreachable[0]}' is not reachable from the start node",
            node_id=unreachable[0]
        )

    return _ok()


def ensure_valid(graph: FlowGraph, reachability: str = "all") -> None:
    result = validate_flow(graph, reachability)
    if not result["is_valid"]:
        raise FlowValidationError(result)
