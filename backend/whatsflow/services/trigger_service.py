# /whatsflow/services/trigger_service.py

import re
import logging
from typing import List, Optional

from whatsflow.models.flow import Flow, TriggerType
from whatsflow.services.flow_store import FlowStore, flow_store
from whatsflow.services.run_registry import FlowRunRegistry, run_registry

logger = logging.getLogger(__name__)


def matches_trigger(flow: Flow, text: str) -> Optional[str]:
    """
    Returns the matched keyword (or regex match) if `text` triggers `flow`.

    Keywords match case-insensitively as whole words; regex triggers use
    `re.search` with IGNORECASE. Flows without a trigger never match.
    """
    if not flow.trigger_type or not flow.trigger_value or not text:
        return None

    if flow.trigger_type == TriggerType.KEYWORD:
        keywords = [kw.strip() for kw in flow.trigger_value.split(",") if kw.strip()]
        for keyword in keywords:
            if re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", text, re.IGNORECASE):
                return keyword
        return None

    try:
        match = re.search(flow.trigger_value, text, re.IGNORECASE)
    except re.error as e:
        logger.error(f"Invalid trigger regex on flow {flow.id}: {e}")
        return None
    return match.group(0) if match else None


class FlowTriggerService:
    """Starts published flows whose trigger matches an inbound message."""

    def __init__(self, store: FlowStore, registry: FlowRunRegistry):
        self.store = store
        self.registry = registry

    async def handle_inbound_message(
        self,
        instance_id: str,
        phone_number: str,
        text: str,
        contact_name: Optional[str] = None,
    ) -> List[str]:
        """
        Starts one run per matching published flow and returns the run ids.

        Each run gets `trigger_keyword`, `message_text` and `contact_name`
        in its variable bag.
        """
        run_ids: List[str] = []
        for flow in await self.store.list_flows(published_only=True):
            keyword = matches_trigger(flow, text)
            if keyword is None:
                continue
            variables = {
                "trigger_keyword": keyword,
                "message_text": text,
                "contact_name": contact_name or "",
            }
            run_ids.append(self.registry.start(flow.id, instance_id, phone_number, variables))
            logger.info(f"Inbound message from {phone_number} triggered flow {flow.id} ({keyword!r})")
        return run_ids

# Globally accessible instance
trigger_service = FlowTriggerService(flow_store, run_registry)
