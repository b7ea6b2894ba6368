# /whatsflow/models/execution.py

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, TypedDict
from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    COMPLETED = "completed"
    NO_MATCHING_BRANCH = "no_matching_branch"
    CANCELLED = "cancelled"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Reasons a run stops before reaching an end node."""
    # Graph shape found at run time
    NO_OUTGOING_CONNECTION = "NoOutgoingConnection"
    NO_MATCHING_BRANCH = "NoMatchingBranch"
    CYCLE_DETECTED = "CycleDetected"
    UNKNOWN_ACTION_KIND = "UnknownActionKind"
    MISSING_ACTION_PARAMETERS = "MissingActionParameters"
    NODE_NOT_FOUND = "NodeNotFound"
    # External dependencies
    DELIVERY_FAILED = "DeliveryFailed"
    MEDIA_RESOLUTION_FAILED = "MediaResolutionFailed"
    ACTION_FAILED = "ActionFailed"
    # Before the first node
    FLOW_NOT_FOUND = "FlowNotFound"
    FLOW_LOAD_FAILED = "FlowLoadFailed"
    INVALID_FLOW = "InvalidFlow"


class FlowRunError(Exception):
    """Raised by node handlers to end the current run."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class SentMessage(BaseModel):
    node_id: str
    text: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    message_id: Optional[str] = None
    sent_at: datetime = Field(default_factory=datetime.utcnow)


class ExecutionContext(BaseModel):
    """
    Mutable state of a single run.

    Owned by exactly one execution; never shared between runs, even for the
    same flow and the same phone number.
    """
    run_id: str
    flow_id: str
    instance_id: str = Field(..., description="Messaging channel instance the run sends through")
    phone_number: str = Field(..., description="Recipient the run is executed against")
    variables: Dict[str, Any] = Field(default_factory=dict)
    current_node_id: Optional[str] = None
    visited: List[str] = Field(default_factory=list)
    messages_sent: List[SentMessage] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)


class RunOutcome(TypedDict):
    """Result of one flow run."""
    run_id: str
    flow_id: str
    instance_id: str
    phone_number: str
    status: RunStatus
    error_kind: Optional[ErrorKind]
    validation_error: Optional[str]
    message: Optional[str]
    node_id: Optional[str]
    visited: List[str]
    variables: Dict[str, Any]
    messages_sent: List[SentMessage]
    warnings: List[str]
    duration_seconds: float
