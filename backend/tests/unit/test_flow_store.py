# backend/tests/unit/test_flow_store.py
import pytest
from unittest.mock import AsyncMock, MagicMock

from whatsflow.models.flow import (
    Connection,
    EndNode,
    Flow,
    MediaKind,
    MessageNode,
    StartNode,
    TriggerType,
)
from whatsflow.services.flow_store import FlowNotFoundError, MongoFlowStore, NodeNotFoundError


@pytest.fixture
def linear_graph(make_graph):
    return make_graph(
        [StartNode(id="start"), MessageNode(id="m1", message="Hi"), EndNode(id="end")],
        [("start", "m1"), ("m1", "end")],
    )


# --- In-memory store ---

@pytest.mark.asyncio
async def test_load_flow_materialises_graph(store, save_graph, linear_graph):
    flow_id = await save_graph(linear_graph)

    graph = await store.load_flow(flow_id)

    assert [n.id for n in graph.nodes] == ["start", "m1", "end"]
    assert [c.id for c in graph.connections] == ["c1", "c2"]
    assert isinstance(graph.get_node("m1"), MessageNode)


@pytest.mark.asyncio
async def test_load_missing_flow_raises(store):
    with pytest.raises(FlowNotFoundError):
        await store.load_flow("nope")


@pytest.mark.asyncio
async def test_loaded_graph_is_a_copy(store, save_graph, linear_graph):
    flow_id = await save_graph(linear_graph)
    graph = await store.load_flow(flow_id)
    graph.get_node("m1").message = "changed"

    assert (await store.load_flow(flow_id)).get_node("m1").message == "Hi"


@pytest.mark.asyncio
async def test_delete_node_cascades_to_connections(store, save_graph, linear_graph):
    flow_id = await save_graph(linear_graph)

    await store.delete_node("m1")

    graph = await store.load_flow(flow_id)
    assert [n.id for n in graph.nodes] == ["start", "end"]
    assert graph.connections == []
    assert await store.get_node_connections("m1") == []


@pytest.mark.asyncio
async def test_delete_flow_cascades(store, save_graph, linear_graph):
    flow_id = await save_graph(linear_graph)

    await store.delete_flow(flow_id)

    assert await store.get_flow(flow_id) is None
    assert store.nodes == {}
    assert store.connections == {}


@pytest.mark.asyncio
async def test_get_node_connections_both_directions(store, save_graph, linear_graph):
    await save_graph(linear_graph)
    assert [c.id for c in await store.get_node_connections("m1")] == ["c1", "c2"]


@pytest.mark.asyncio
async def test_update_and_list_published_flows(store):
    await store.create_flow(Flow(id="f1", name="Welcome", user_id="u1"))
    await store.create_flow(Flow(id="f2", name="Promo", user_id="u1"))

    updated = await store.update_flow("f2", is_draft=False)

    assert updated.is_draft is False
    assert [f.id for f in await store.list_flows(published_only=True)] == ["f2"]
    assert {f.id for f in await store.list_flows(user_id="u1")} == {"f1", "f2"}
    assert await store.list_flows(user_id="someone-else") == []


@pytest.mark.asyncio
async def test_nodes_need_an_existing_flow(store):
    with pytest.raises(FlowNotFoundError):
        await store.add_node(MessageNode(id="m1", flow_id="nope"))
    with pytest.raises(NodeNotFoundError):
        await store.update_node(MessageNode(id="m1", flow_id="nope"))


# --- MongoDB store ---

@pytest.fixture
def mongo_store(mocker):
    mocker.patch("whatsflow.services.flow_store.AsyncIOMotorClient")
    store = MongoFlowStore("mongodb://localhost:27017", "whatsflow_test")
    store.db = MagicMock()
    return store


def _cursor(docs):
    cursor = MagicMock()
    cursor.sort.return_value.to_list = AsyncMock(return_value=docs)
    return cursor


@pytest.mark.asyncio
async def test_mongo_load_flow_parses_documents(mongo_store):
    mongo_store.db.flows.find_one = AsyncMock(return_value={"_id": "f1", "name": "Welcome", "is_draft": False})
    mongo_store.db.flow_nodes.find.return_value = _cursor([
        {"_id": "start", "flow_id": "f1", "type": "start", "data": {}},
        {"_id": "m1", "flow_id": "f1", "type": "message", "data": {"message": "Hi", "mediaUrl": None, "delay": 2}},
        {"_id": "end", "flow_id": "f1", "type": "end", "data": {}},
    ])
    mongo_store.db.flow_connections.find.return_value = _cursor([
        {"_id": "c1", "flow_id": "f1", "source_node_id": "start", "target_node_id": "m1"},
        {"_id": "c2", "flow_id": "f1", "source_node_id": "m1", "target_node_id": "end", "delay": 5},
    ])

    graph = await mongo_store.load_flow("f1")

    assert graph.flow.name == "Welcome"
    assert isinstance(graph.get_node("m1"), MessageNode)
    assert graph.get_node("m1").delay == 2
    assert graph.connections[1].delay == 5
    mongo_store.db.flow_nodes.find.assert_called_once_with({"flow_id": "f1"})


@pytest.mark.asyncio
async def test_mongo_load_flow_treats_null_payload_keys_as_unset(mongo_store):
    mongo_store.db.flows.find_one = AsyncMock(return_value={"_id": "f1", "name": "Welcome"})
    mongo_store.db.flow_nodes.find.return_value = _cursor([
        {"_id": "start", "flow_id": "f1", "type": "start", "data": None},
        {"_id": "m1", "flow_id": "f1", "type": "message", "data": {"message": "hi", "mediaUrl": None, "mediaType": None}},
        {"_id": "m2", "flow_id": "f1", "type": "message", "data": {"message": None, "delay": None}},
        {"_id": "a1", "flow_id": "f1", "type": "action", "data": {"action": "set_variable", "params": None}},
        {"_id": "end", "flow_id": "f1", "type": "end", "data": {}},
    ])
    mongo_store.db.flow_connections.find.return_value = _cursor([])

    graph = await mongo_store.load_flow("f1")

    m1, m2, a1 = graph.get_node("m1"), graph.get_node("m2"), graph.get_node("a1")
    assert m1.message == "hi"
    assert m1.media_url is None
    assert m1.media_type == MediaKind.IMAGE
    assert m2.message == ""
    assert m2.delay == 0
    assert a1.params == {}


@pytest.mark.asyncio
async def test_mongo_load_missing_flow(mongo_store):
    mongo_store.db.flows.find_one = AsyncMock(return_value=None)
    with pytest.raises(FlowNotFoundError):
        await mongo_store.load_flow("nope")


@pytest.mark.asyncio
async def test_mongo_create_flow_stores_plain_values(mongo_store):
    mongo_store.db.flows.insert_one = AsyncMock()

    await mongo_store.create_flow(Flow(
        id="f1", name="Promo", trigger_type=TriggerType.KEYWORD, trigger_value="promo"
    ))

    doc = mongo_store.db.flows.insert_one.call_args.args[0]
    assert doc["_id"] == "f1"
    assert "id" not in doc
    assert doc["trigger_type"] == "keyword"


@pytest.mark.asyncio
async def test_mongo_add_node_keeps_payload_in_data(mongo_store):
    mongo_store.db.flows.find_one = AsyncMock(return_value={"_id": "f1"})
    mongo_store.db.flow_nodes.insert_one = AsyncMock()

    await mongo_store.add_node(MessageNode(id="m1", flow_id="f1", message="Hi", media_url="a.png"))

    doc = mongo_store.db.flow_nodes.insert_one.call_args.args[0]
    assert doc["_id"] == "m1"
    assert doc["type"] == "message"
    assert doc["data"]["message"] == "Hi"
    assert doc["data"]["mediaUrl"] == "a.png"


@pytest.mark.asyncio
async def test_mongo_delete_flow_cascades(mongo_store):
    mongo_store.db.flows.find_one = AsyncMock(return_value={"_id": "f1"})
    mongo_store.db.flows.delete_one = AsyncMock()
    mongo_store.db.flow_nodes.delete_many = AsyncMock()
    mongo_store.db.flow_connections.delete_many = AsyncMock()

    await mongo_store.delete_flow("f1")

    mongo_store.db.flow_connections.delete_many.assert_awaited_once_with({"flow_id": "f1"})
    mongo_store.db.flow_nodes.delete_many.assert_awaited_once_with({"flow_id": "f1"})
    mongo_store.db.flows.delete_one.assert_awaited_once_with({"_id": "f1"})


@pytest.mark.asyncio
async def test_mongo_delete_node_cascades(mongo_store):
    mongo_store.db.flow_connections.delete_many = AsyncMock()
    mongo_store.db.flow_nodes.delete_one = AsyncMock()

    await mongo_store.delete_node("m1")

    mongo_store.db.flow_connections.delete_many.assert_awaited_once_with(
        {"$or": [{"source_node_id": "m1"}, {"target_node_id": "m1"}]}
    )
    mongo_store.db.flow_nodes.delete_one.assert_awaited_once_with({"_id": "m1"})


@pytest.mark.asyncio
async def test_mongo_update_missing_flow(mongo_store):
    mongo_store.db.flows.update_one = AsyncMock(return_value=MagicMock(matched_count=0))
    with pytest.raises(FlowNotFoundError):
        await mongo_store.update_flow("nope", is_draft=False)


@pytest.mark.asyncio
async def test_mongo_get_node_connections(mongo_store):
    mongo_store.db.flow_connections.find.return_value = _cursor([
        {"_id": "c1", "flow_id": "f1", "source_node_id": "start", "target_node_id": "m1"},
    ])

    connections = await mongo_store.get_node_connections("m1")

    assert connections == [Connection(
        id="c1", flow_id="f1", source_node_id="start", target_node_id="m1",
        created_at=connections[0].created_at
    )]
    mongo_store.db.flow_connections.find.return_value.sort.assert_called_once_with("created_at", 1)
