# backend/tests/conftest.py
from pathlib import Path

import pytest
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any whatsflow imports, so the
# module-level settings and service instances pick it up.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from whatsflow.models.flow import Connection, Flow, FlowGraph  # noqa: E402
from whatsflow.services.flow_executor import FlowExecutor  # noqa: E402
from whatsflow.services.flow_store import InMemoryFlowStore  # noqa: E402


@pytest.fixture
def store():
    """A fresh in-memory graph store per test."""
    return InMemoryFlowStore()


@pytest.fixture
def mock_channel():
    """Messaging channel whose sends all succeed with id 'msg-1'."""
    channel = AsyncMock()
    channel.send_text.return_value = "msg-1"
    channel.send_media.return_value = "msg-1"
    return channel


@pytest.fixture
def mock_media():
    """Media resolver that hands every reference back unchanged."""
    media = AsyncMock()
    media.resolve.side_effect = lambda ref: ref
    return media


@pytest.fixture
def make_graph():
    """
    Builds a FlowGraph from node models and edge tuples.

    Edges are `(source, target)`, `(source, target, condition)` or
    `(source, target, condition, delay)`; connection ids are c1, c2, ...
    in the order given.
    """
    def _make(nodes, edges=(), flow_id="flow-1", **flow_fields):
        for node in nodes:
            node.flow_id = flow_id
        connections = []
        for index, edge in enumerate(edges, start=1):
            source, target, *rest = edge
            connections.append(Connection(
                id=f"c{index}",
                flow_id=flow_id,
                source_node_id=source,
                target_node_id=target,
                condition=rest[0] if rest else None,
                delay=rest[1] if len(rest) > 1 else None,
            ))
        flow_fields.setdefault("name", "Test flow")
        return FlowGraph(flow=Flow(id=flow_id, **flow_fields), nodes=nodes, connections=connections)
    return _make


@pytest.fixture
def save_graph(store):
    """Persists a FlowGraph into the `store` fixture and returns its flow id."""
    async def _save(graph: FlowGraph) -> str:
        await store.create_flow(graph.flow)
        for node in graph.nodes:
            await store.add_node(node)
        for conn in graph.connections:
            await store.add_connection(conn)
        return graph.flow.id
    return _save


@pytest.fixture
def executor(store, mock_channel, mock_media):
    return FlowExecutor(
        store,
        mock_channel,
        mock_media,
        max_steps=50,
        send_timeout=1.0,
        validate_before_execute=True,
        reachability_policy="all",
    )
