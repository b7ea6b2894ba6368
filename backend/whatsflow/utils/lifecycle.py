# /whatsflow/utils/lifecycle.py

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from whatsflow.utils.logging import setup_logging
from whatsflow.utils.alerting import alerting_service
from whatsflow.services.action_service import webhook_action
from whatsflow.services.flow_store import MongoFlowStore, flow_store
from whatsflow.services.run_registry import run_registry
from whatsflow.services.whatsapp_service import whatsapp_service
from whatsflow.config.settings import settings

# This file manages the engine's lifespan: startup wires logging and storage,
# shutdown stops in-flight runs and closes every outbound HTTP client.

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 300


async def _cleanup_finished_runs(interval: float = CLEANUP_INTERVAL_SECONDS):
    while True:
        await asyncio.sleep(interval)
        removed = run_registry.cleanup_finished(max_age=timedelta(hours=1))
        if removed:
            logger.info(f"Forgot {removed} finished flow runs")


@asynccontextmanager
async def lifespan():
    """Engine lifespan manager for startup and shutdown."""
    setup_logging()

    logger.info(f"Flow engine starting up ({settings.environment})...")

    if isinstance(flow_store, MongoFlowStore):
        await flow_store.create_indexes()

    cleanup_task = asyncio.create_task(_cleanup_finished_runs())

    logger.info("Flow engine startup complete.")

    try:
        yield  # Engine is now running
    finally:
        logger.info("Flow engine shutting down...")

        cleanup_task.cancel()
        await asyncio.gather(cleanup_task, return_exceptions=True)
        await run_registry.shutdown()
        await whatsapp_service.close()
        await webhook_action.close()
        await alerting_service.cleanup()
        if isinstance(flow_store, MongoFlowStore):
            flow_store.client.close()
