# /whatsflow/services/run_registry.py

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from whatsflow.models.execution import RunOutcome, RunStatus
from whatsflow.services.flow_executor import FlowExecutor, flow_executor

# Keeps track of flow runs started in the background so they can be listed,
# awaited and cancelled (e.g. when a flow is deleted or a channel instance
# disconnects while a run is waiting on a delay).

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    NO_MATCHING_BRANCH = "no_matching_branch"
    CANCELLED = "cancelled"
    FAILED = "failed"


_FINAL_STATES = {
    RunStatus.COMPLETED: RunState.COMPLETED,
    RunStatus.NO_MATCHING_BRANCH: RunState.NO_MATCHING_BRANCH,
    RunStatus.CANCELLED: RunState.CANCELLED,
    RunStatus.ERROR: RunState.FAILED,
}


class RunHandle(BaseModel):
    """Book-keeping for one background run."""
    run_id: str
    flow_id: str
    instance_id: str
    phone_number: str
    state: RunState = RunState.PENDING
    outcome: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)
    cancel_event: asyncio.Event = Field(default_factory=asyncio.Event, exclude=True)
    task: Optional[asyncio.Task] = Field(default=None, exclude=True)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def is_active(self) -> bool:
        return self.state in (RunState.PENDING, RunState.RUNNING)


class FlowRunRegistry:
    def __init__(self, executor: FlowExecutor):
        self.executor = executor
        self.runs: Dict[str, RunHandle] = {}

    def start(
        self,
        flow_id: str,
        instance_id: str,
        phone_number: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Schedules a run on the running event loop and returns its id."""
        run_id = uuid.uuid4().hex
        handle = RunHandle(run_id=run_id, flow_id=flow_id, instance_id=instance_id, phone_number=phone_number)
        self.runs[run_id] = handle
        handle.task = asyncio.create_task(self._run(handle, variables or {}))
        logger.info(f"Queued flow run {run_id}: flow={flow_id} phone={phone_number}")
        return run_id

    async def _run(self, handle: RunHandle, variables: Dict[str, Any]) -> RunOutcome:
        self._set_state(handle, RunState.RUNNING)
        try:
            outcome = await self.executor.execute(
                handle.flow_id,
                handle.instance_id,
                handle.phone_number,
                variables,
                cancel_event=handle.cancel_event,
                run_id=handle.run_id,
            )
        except asyncio.CancelledError:
            self._set_state(handle, RunState.CANCELLED)
            raise
        except Exception:
            logger.error(f"Flow run {handle.run_id} crashed", exc_info=True)
            self._set_state(handle, RunState.FAILED)
            raise
        handle.outcome = dict(outcome)
        self._set_state(handle, _FINAL_STATES[outcome["status"]])
        return outcome

    @staticmethod
    def _set_state(handle: RunHandle, state: RunState):
        handle.state = state
        handle.last_updated = datetime.utcnow()

    def get(self, run_id: str) -> Optional[RunHandle]:
        return self.runs.get(run_id)

    async def wait(self, run_id: str) -> RunOutcome:
        """Waits for a run to finish and returns its outcome."""
        handle = self.runs.get(run_id)
        if handle is None or handle.task is None:
            raise KeyError(f"Unknown run '{run_id}'")
        return await handle.task

    def active_runs(self) -> List[RunHandle]:
        active = [handle for handle in self.runs.values() if handle.is_active]
        return sorted(active, key=lambda h: h.created_at)

    def cancel(self, run_id: str) -> bool:
        """Asks a run to stop before its next node or during its current delay."""
        handle = self.runs.get(run_id)
        if handle is None or not handle.is_active:
            return False
        handle.cancel_event.set()
        logger.info(f"Cancellation requested for flow run {run_id}")
        return True

    def cancel_flow(self, flow_id: str) -> int:
        return sum(self.cancel(h.run_id) for h in list(self.runs.values()) if h.flow_id == flow_id)

    def cancel_instance(self, instance_id: str) -> int:
        return sum(self.cancel(h.run_id) for h in list(self.runs.values()) if h.instance_id == instance_id)

    def cleanup_finished(self, max_age: timedelta = timedelta(hours=1)) -> int:
        """Forgets finished runs last updated more than `max_age` ago."""
        cutoff = datetime.utcnow() - max_age
        expired = [
            run_id for run_id, handle in self.runs.items()
            if not handle.is_active and handle.last_updated < cutoff
        ]
        for run_id in expired:
            del self.runs[run_id]
        return len(expired)

    async def shutdown(self, timeout: float = 10.0):
        """Cancels every active run and waits for them to wind down."""
        active = self.active_runs()
        for handle in active:
            handle.cancel_event.set()
        tasks = [handle.task for handle in active if handle.task is not None]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Run registry shut down: {len(done)} runs stopped, {len(pending)} force-cancelled.")

# Globally accessible instance
run_registry = FlowRunRegistry(flow_executor)
