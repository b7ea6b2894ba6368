# /whatsflow/models/flow.py

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from pydantic import BaseModel, Field, TypeAdapter, field_validator

# This file defines the flow graph: a Flow owns typed Nodes joined by directed
# Connections. Node payloads are a closed set of variants keyed on `type`.


class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    CONDITION = "condition"
    ACTION = "action"
    END = "end"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    REGEX = "regex"


class Flow(BaseModel):
    """Metadata for one user-authored automation."""
    id: str
    user_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    is_draft: bool = True
    version: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_value: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class BaseNode(BaseModel):
    id: str
    flow_id: Optional[str] = None
    name: str = ""
    # Editor canvas position only; never read by the executor.
    position_x: float = 0
    position_y: float = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class StartNode(BaseNode):
    type: Literal["start"] = "start"


class MessageNode(BaseNode):
    type: Literal["message"] = "message"
    message: str = ""
    media_url: Optional[str] = None
    media_type: MediaKind = MediaKind.IMAGE
    delay: float = Field(default=0, ge=0, description="Seconds to wait after sending")


class ConditionNode(BaseNode):
    type: Literal["condition"] = "condition"
    condition: str = ""


class ActionNode(BaseNode):
    type: Literal["action"] = "action"
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


class EndNode(BaseNode):
    type: Literal["end"] = "end"


FlowNode = Annotated[
    Union[StartNode, MessageNode, ConditionNode, ActionNode, EndNode],
    Field(discriminator="type"),
]

_node_adapter = TypeAdapter(FlowNode)

# Storage keeps the type payload in a `data` map using the editor's field names.
_DATA_FIELDS = {
    "message": "message",
    "mediaUrl": "media_url",
    "mediaType": "media_type",
    "delay": "delay",
    "condition": "condition",
    "action": "action",
    "params": "params",
}


class Connection(BaseModel):
    """A directed edge between two nodes of the same flow."""
    id: str
    flow_id: Optional[str] = None
    source_node_id: str
    target_node_id: str
    condition: Optional[str] = Field(default=None, description="'true'/'false' on edges leaving a condition node")
    delay: Optional[float] = Field(default=None, ge=0, description="Overrides the wait before the target runs")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("condition", mode="before")
    @classmethod
    def normalize_condition(cls, v):
        if v is None:
            return None
        if isinstance(v, bool):
            return "true" if v else "false"
        v = str(v).strip().lower()
        return v or None

    def matches_branch(self, result: bool) -> bool:
        return self.condition == ("true" if result else "false")


class FlowGraph(BaseModel):
    """A fully materialised flow: metadata plus every node and connection."""
    flow: Flow
    nodes: List[FlowNode] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def nodes_of_type(self, node_type: NodeType) -> List[FlowNode]:
        return [node for node in self.nodes if node.type == node_type]

    def start_node(self) -> Optional[FlowNode]:
        starts = self.nodes_of_type(NodeType.START)
        return starts[0] if starts else None

    def get_node_connections(self, node_id: str) -> List[Connection]:
        """All connections where the node is the source or the target."""
        return [
            conn for conn in self.connections
            if conn.source_node_id == node_id or conn.target_node_id == node_id
        ]

    def outgoing(self, node_id: str) -> List[Connection]:
        return [conn for conn in self.connections if conn.source_node_id == node_id]


def parse_node(record: Dict[str, Any]) -> FlowNode:
    """
    Builds a typed node from a stored record.

    Records carry the common columns at the top level and the type payload
    in `data`; payload keys may use either the editor's camelCase names or
    the model's own field names.
    """
    fields = {k: v for k, v in record.items() if k != "data"}
    # The editor writes unset payload keys as null; those take the model default.
    for key, value in (record.get("data") or {}).items():
        if value is not None:
            fields[_DATA_FIELDS.get(key, key)] = value
    return _node_adapter.validate_python(fields)


def node_to_record(node: FlowNode) -> Dict[str, Any]:
    """Inverse of parse_node: splits a node into columns and a `data` payload."""
    dumped = node.model_dump(mode="json")
    reverse = {field: key for key, field in _DATA_FIELDS.items()}
    record: Dict[str, Any] = {"data": {}}
    for field, value in dumped.items():
        if field in reverse:
            record["data"][reverse[field]] = value
        else:
            record[field] = value
    return record
