# /whatsflow/workflows/engine.py

"""
Pure transition rules for the flow executor.

This module decides where a run goes next, how long it waits on the way,
and when it is looping. It never sends messages, touches storage or sleeps;
the executor in `whatsflow.services.flow_executor` owns those effects.
"""

import logging
from typing import Any, Dict, Tuple

from whatsflow.models.execution import ErrorKind, FlowRunError
from whatsflow.models.flow import Connection, FlowGraph, MessageNode

logger = logging.getLogger(__name__)

StateKey = Tuple[str, Tuple[Tuple[str, str], ...]]


def next_connection(graph: FlowGraph, node_id: str) -> Connection:
    """
    The connection a non-branching node follows.

    The first outgoing connection in creation order wins; a node with no
    outgoing connection ends the run.
    """
    outgoing = graph.outgoing(node_id)
    if not outgoing:
        raise FlowRunError(
            ErrorKind.NO_OUTGOING_CONNECTION,
            f"Node '{node_id}' has no outgoing connection"
        )
    if len(outgoing) > 1:
        logger.warning(f"Node {node_id} has {len(outgoing)} outgoing connections; following {outgoing[0].id}")
    return outgoing[0]


def select_branch(graph: FlowGraph, node_id: str, result: bool) -> Connection:
    """The outgoing connection of a condition node labelled with `result`."""
    for conn in graph.outgoing(node_id):
        if conn.matches_branch(result):
            return conn
    label = "true" if result else "false"
    raise FlowRunError(
        ErrorKind.NO_MATCHING_BRANCH,
        f"Condition node '{node_id}' has no '{label}' branch"
    )


def transition_delay(node: Any, conn: Connection) -> float:
    """
    Seconds to wait before the connection's target runs.

    A delay set on the connection overrides a message node's own delay.
    """
    if conn.delay is not None:
        return conn.delay
    if isinstance(node, MessageNode):
        return node.delay
    return 0


def state_key(node_id: str, variables: Dict[str, Any]) -> StateKey:
    """Identity of a run state; seeing the same key twice means the run loops."""
    return node_id, tuple(sorted((name, repr(value)) for name, value in variables.items()))


def check_progress(
    seen: set,
    node_id: str,
    variables: Dict[str, Any],
    steps: int,
    max_steps: int
) -> StateKey:
    """
    Registers the state about to execute.

    Raises CycleDetected when the state was already seen or the step budget
    is exhausted; returns the recorded key otherwise.
    """
    if steps >= max_steps:
        raise FlowRunError(
            ErrorKind.CYCLE_DETECTED,
            f"Run exceeded {max_steps} steps"
        )
    key = state_key(node_id, variables)
    if key in seen:
        raise FlowRunError(
            ErrorKind.CYCLE_DETECTED,
            f"Node '{node_id}' revisited with unchanged variables"
        )
    seen.add(key)
    return key
