# /whatsflow/services/flow_store.py

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from whatsflow.config.settings import settings
from whatsflow.models.flow import (
    Connection,
    Flow,
    FlowGraph,
    FlowNode,
    node_to_record,
    parse_node,
)

logger = logging.getLogger(__name__)


class FlowNotFoundError(LookupError):
    """The requested flow does not exist."""


class NodeNotFoundError(LookupError):
    """The requested node does not exist."""


class FlowStore(ABC):
    """
    Persistence for flows, their nodes and their connections.

    A flow owns its nodes and connections: deleting the flow deletes them,
    and deleting a node deletes every connection touching it.
    """

    @abstractmethod
    async def create_flow(self, flow: Flow) -> Flow: ...

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]: ...

    @abstractmethod
    async def list_flows(self, user_id: Optional[str] = None, published_only: bool = False) -> List[Flow]: ...

    @abstractmethod
    async def update_flow(self, flow_id: str, **changes: Any) -> Flow: ...

    @abstractmethod
    async def delete_flow(self, flow_id: str) -> None: ...

    @abstractmethod
    async def add_node(self, node: FlowNode) -> FlowNode: ...

    @abstractmethod
    async def update_node(self, node: FlowNode) -> FlowNode: ...

    @abstractmethod
    async def delete_node(self, node_id: str) -> None: ...

    @abstractmethod
    async def add_connection(self, connection: Connection) -> Connection: ...

    @abstractmethod
    async def delete_connection(self, connection_id: str) -> None: ...

    @abstractmethod
    async def get_node_connections(self, node_id: str) -> List[Connection]:
        """Connections where the node is the source or the target, oldest first."""

    @abstractmethod
    async def load_flow(self, flow_id: str) -> FlowGraph:
        """The flow with every node and connection, or FlowNotFoundError."""


class InMemoryFlowStore(FlowStore):
    """Process-local store used in development and tests."""

    def __init__(self):
        self.flows: Dict[str, Flow] = {}
        self.nodes: Dict[str, FlowNode] = {}
        self.connections: Dict[str, Connection] = {}

    def _require_flow(self, flow_id: str) -> Flow:
        flow = self.flows.get(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow '{flow_id}' not found")
        return flow

    async def create_flow(self, flow: Flow) -> Flow:
        self.flows[flow.id] = flow.model_copy(deep=True)
        return flow

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        flow = self.flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(self, user_id: Optional[str] = None, published_only: bool = False) -> List[Flow]:
        flows = [
            flow for flow in self.flows.values()
            if (user_id is None or flow.user_id == user_id) and (not published_only or not flow.is_draft)
        ]
        flows.sort(key=lambda f: f.created_at, reverse=True)
        return [flow.model_copy(deep=True) for flow in flows]

    async def update_flow(self, flow_id: str, **changes: Any) -> Flow:
        flow = self._require_flow(flow_id)
        changes.setdefault("updated_at", datetime.utcnow())
        updated = flow.model_copy(update=changes)
        self.flows[flow_id] = updated
        return updated.model_copy(deep=True)

    async def delete_flow(self, flow_id: str) -> None:
        self._require_flow(flow_id)
        self.connections = {cid: c for cid, c in self.connections.items() if c.flow_id != flow_id}
        self.nodes = {nid: n for nid, n in self.nodes.items() if n.flow_id != flow_id}
        del self.flows[flow_id]

    async def add_node(self, node: FlowNode) -> FlowNode:
        self._require_flow(node.flow_id)
        self.nodes[node.id] = node.model_copy(deep=True)
        return node

    async def update_node(self, node: FlowNode) -> FlowNode:
        if node.id not in self.nodes:
            raise NodeNotFoundError(f"Node '{node.id}' not found")
        self.nodes[node.id] = node.model_copy(deep=True)
        return node

    async def delete_node(self, node_id: str) -> None:
        self.nodes.pop(node_id, None)
        self.connections = {
            cid: c for cid, c in self.connections.items()
            if c.source_node_id != node_id and c.target_node_id != node_id
        }

    async def add_connection(self, connection: Connection) -> Connection:
        self._require_flow(connection.flow_id)
        self.connections[connection.id] = connection.model_copy(deep=True)
        return connection

    async def delete_connection(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)

    async def get_node_connections(self, node_id: str) -> List[Connection]:
        found = [
            c for c in self.connections.values()
            if c.source_node_id == node_id or c.target_node_id == node_id
        ]
        return [c.model_copy(deep=True) for c in found]

    async def load_flow(self, flow_id: str) -> FlowGraph:
        flow = self._require_flow(flow_id)
        return FlowGraph(
            flow=flow.model_copy(deep=True),
            nodes=[n.model_copy(deep=True) for n in self.nodes.values() if n.flow_id == flow_id],
            connections=[c.model_copy(deep=True) for c in self.connections.values() if c.flow_id == flow_id],
        )


class MongoFlowStore(FlowStore):
    """
    MongoDB-backed store. Collections: `flows`, `flow_nodes`, `flow_connections`;
    documents use the model id as `_id` and nodes keep their payload in `data`.
    """

    def __init__(self, mongo_uri: str, database: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client[database]
            logger.info("MongoDB flow store initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    @staticmethod
    def _to_doc(record: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: getattr(v, "value", v) for k, v in record.items()}
        doc["_id"] = doc.pop("id")
        return doc

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(doc)
        record["id"] = record.pop("_id")
        return record

    def _node_doc(self, node: FlowNode) -> Dict[str, Any]:
        record = node_to_record(node)
        record["created_at"] = node.created_at
        return self._to_doc(record)

    async def create_indexes(self):
        await self.db.flows.create_index("user_id")
        await self.db.flow_nodes.create_index([("flow_id", 1), ("created_at", 1)])
        await self.db.flow_connections.create_index([("flow_id", 1), ("created_at", 1)])
        await self.db.flow_connections.create_index("source_node_id")
        await self.db.flow_connections.create_index("target_node_id")
        logger.info("Flow store indexes ensured.")

    # ==================== Flows ====================

    async def create_flow(self, flow: Flow) -> Flow:
        await self.db.flows.insert_one(self._to_doc(flow.model_dump()))
        return flow

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        doc = await self.db.flows.find_one({"_id": flow_id})
        return Flow(**self._from_doc(doc)) if doc else None

    async def list_flows(self, user_id: Optional[str] = None, published_only: bool = False) -> List[Flow]:
        query: Dict[str, Any] = {}
        if user_id:
            query["user_id"] = user_id
        if published_only:
            query["is_draft"] = False
        docs = await self.db.flows.find(query).sort("created_at", -1).to_list(length=None)
        return [Flow(**self._from_doc(doc)) for doc in docs]

    async def update_flow(self, flow_id: str, **changes: Any) -> Flow:
        changes.setdefault("updated_at", datetime.utcnow())
        changes = {k: getattr(v, "value", v) for k, v in changes.items()}
        result = await self.db.flows.update_one({"_id": flow_id}, {"$set": changes})
        if result.matched_count == 0:
            raise FlowNotFoundError(f"Flow '{flow_id}' not found")
        return await self.get_flow(flow_id)

    async def delete_flow(self, flow_id: str) -> None:
        if not await self.db.flows.find_one({"_id": flow_id}, {"_id": 1}):
            raise FlowNotFoundError(f"Flow '{flow_id}' not found")
        await self.db.flow_connections.delete_many({"flow_id": flow_id})
        await self.db.flow_nodes.delete_many({"flow_id": flow_id})
        await self.db.flows.delete_one({"_id": flow_id})

    # ==================== Nodes ====================

    async def add_node(self, node: FlowNode) -> FlowNode:
        if not await self.db.flows.find_one({"_id": node.flow_id}, {"_id": 1}):
            raise FlowNotFoundError(f"Flow '{node.flow_id}' not found")
        await self.db.flow_nodes.insert_one(self._node_doc(node))
        return node

    async def update_node(self, node: FlowNode) -> FlowNode:
        result = await self.db.flow_nodes.replace_one({"_id": node.id}, self._node_doc(node))
        if result.matched_count == 0:
            raise NodeNotFoundError(f"Node '{node.id}' not found")
        return node

    async def delete_node(self, node_id: str) -> None:
        await self.db.flow_connections.delete_many(
            {"$or": [{"source_node_id": node_id}, {"target_node_id": node_id}]}
        )
        await self.db.flow_nodes.delete_one({"_id": node_id})

    # ==================== Connections ====================

    async def add_connection(self, connection: Connection) -> Connection:
        if not await self.db.flows.find_one({"_id": connection.flow_id}, {"_id": 1}):
            raise FlowNotFoundError(f"Flow '{connection.flow_id}' not found")
        await self.db.flow_connections.insert_one(self._to_doc(connection.model_dump()))
        return connection

    async def delete_connection(self, connection_id: str) -> None:
        await self.db.flow_connections.delete_one({"_id": connection_id})

    async def get_node_connections(self, node_id: str) -> List[Connection]:
        docs = await self.db.flow_connections.find(
            {"$or": [{"source_node_id": node_id}, {"target_node_id": node_id}]}
        ).sort("created_at", 1).to_list(length=None)
        return [Connection(**self._from_doc(doc)) for doc in docs]

    async def load_flow(self, flow_id: str) -> FlowGraph:
        flow = await self.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow '{flow_id}' not found")
        node_docs = await self.db.flow_nodes.find({"flow_id": flow_id}).sort("created_at", 1).to_list(length=None)
        conn_docs = await self.db.flow_connections.find({"flow_id": flow_id}).sort("created_at", 1).to_list(length=None)
        return FlowGraph(
            flow=flow,
            nodes=[parse_node(self._from_doc(doc)) for doc in node_docs],
            connections=[Connection(**self._from_doc(doc)) for doc in conn_docs],
        )


def create_flow_store() -> FlowStore:
    if settings.mongo_uri:
        return MongoFlowStore(settings.mongo_uri, settings.mongo_database)
    logger.warning("MONGO_URI not set; using the in-memory flow store.")
    return InMemoryFlowStore()

# Globally accessible instance
flow_store = create_flow_store()
