# /whatsflow/services/flow_service.py

import logging

from whatsflow.config.settings import settings
from whatsflow.models.flow import Flow
from whatsflow.services.flow_store import FlowStore, flow_store
from whatsflow.services.run_registry import FlowRunRegistry, run_registry
from whatsflow.workflows.validator import ValidationResult, ensure_valid, validate_flow

logger = logging.getLogger(__name__)


class FlowService:
    """Lifecycle operations on whole flows: validate, publish, unpublish, delete."""

    def __init__(self, store: FlowStore, registry: FlowRunRegistry, reachability_policy: str = "all"):
        self.store = store
        self.registry = registry
        self.reachability_policy = reachability_policy

    async def validate_flow(self, flow_id: str) -> ValidationResult:
        graph = await self.store.load_flow(flow_id)
        return validate_flow(graph, self.reachability_policy)

    async def publish_flow(self, flow_id: str) -> Flow:
        """
        Marks a flow as published.

        Raises:
            FlowNotFoundError: If the flow does not exist
            FlowValidationError: If the flow is structurally unsound
        """
        graph = await self.store.load_flow(flow_id)
        try:
            ensure_valid(graph, self.reachability_policy)
        except Exception as e:
            logger.warning(f"Refusing to publish flow {flow_id}: {e}")
            raise
        flow = await self.store.update_flow(flow_id, is_draft=False)
        logger.info(f"Flow {flow_id} published")
        return flow

    async def unpublish_flow(self, flow_id: str) -> Flow:
        flow = await self.store.update_flow(flow_id, is_draft=True)
        logger.info(f"Flow {flow_id} moved back to draft")
        return flow

    async def delete_flow(self, flow_id: str) -> int:
        """Cancels the flow's in-flight runs, then deletes it. Returns the number of runs cancelled."""
        cancelled = self.registry.cancel_flow(flow_id)
        await self.store.delete_flow(flow_id)
        logger.info(f"Flow {flow_id} deleted, {cancelled} in-flight runs cancelled")
        return cancelled

# Globally accessible instance
flow_service = FlowService(flow_store, run_registry, settings.reachability_policy)
