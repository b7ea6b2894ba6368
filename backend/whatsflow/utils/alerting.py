# /whatsflow/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any
from datetime import datetime

from whatsflow.config.settings import settings
from whatsflow.models.execution import ErrorKind, RunOutcome

# Operator alerts for failures the engine cannot recover from on its own:
# a channel instance rejecting our API key, or runs dying on an external
# dependency. Alerts go to a webhook; without one they are only logged.

logger = logging.getLogger(__name__)

# Run failures worth waking someone up for. Graph-shape errors are the flow
# author's problem and show up in run outcomes instead.
ALERTABLE_KINDS = {
    ErrorKind.DELIVERY_FAILED,
    ErrorKind.MEDIA_RESOLUTION_FAILED,
    ErrorKind.FLOW_LOAD_FAILED,
}


class AlertingService:
    def __init__(self, webhook_url: Optional[str], environment: str = "development"):
        self.webhook_url = webhook_url
        self.environment = environment
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    def build_alert(self, severity: str, error: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "severity": severity,
            "service": "whatsflow-engine",
            "error": error,
            "context": context,
            "timestamp": datetime.utcnow().isoformat(),
            "environment": self.environment,
        }

    async def _post(self, alert: Dict[str, Any]) -> bool:
        if not self.client:
            logger.warning(f"Alert not sent (no ALERTING_WEBHOOK_URL): {alert['error']}")
            return False
        try:
            await self.client.post(self.webhook_url, json=alert)
            return True
        except Exception as e:
            logger.error(f"Failed to send {alert['severity']} alert: {e}")
            return False

    async def channel_auth_failed(self, instance_id: str, status_code: int) -> bool:
        """The messaging provider refused our API key for `instance_id`."""
        alert = self.build_alert(
            "critical",
            "Evolution API authentication failed",
            {"instance_id": instance_id, "status_code": status_code},
        )
        return await self._post(alert)

    async def run_failed(self, outcome: RunOutcome) -> bool:
        """Alerts on a run that ended on an external dependency; ignores every other outcome."""
        if outcome["error_kind"] not in ALERTABLE_KINDS:
            return False
        alert = self.build_alert(
            "error",
            f"Flow run failed: {outcome['error_kind'].value}",
            {
                "run_id": outcome["run_id"],
                "flow_id": outcome["flow_id"],
                "instance_id": outcome["instance_id"],
                "phone_number": outcome["phone_number"],
                "node_id": outcome["node_id"],
                "message": outcome["message"],
                "messages_sent": len(outcome["messages_sent"]),
            },
        )
        return await self._post(alert)

    async def cleanup(self):
        if self.client:
            await self.client.aclose()

# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url, settings.environment)
