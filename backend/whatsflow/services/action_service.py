# /whatsflow/services/action_service.py

import httpx
import logging
from typing import Any, Awaitable, Callable, Dict

from whatsflow.config.settings import settings
from whatsflow.models.execution import ErrorKind, ExecutionContext, FlowRunError
from whatsflow.utils.metrics import webhook_action_counter

# Handlers for action nodes. Each receives the run context and the node's
# parameters with placeholders already substituted.

logger = logging.getLogger(__name__)

ActionHandler = Callable[[ExecutionContext, Dict[str, Any]], Awaitable[None]]

MAX_SAVED_RESPONSE_LENGTH = 4096


def _missing(params: Dict[str, Any], *names: str) -> list:
    return [name for name in names if params.get(name) is None or params.get(name) == ""]


async def set_variable(context: ExecutionContext, params: Dict[str, Any]) -> None:
    """Writes `params['value']` into the variable bag under `params['name']`."""
    missing = _missing(params, "name")
    if params.get("value") is None:
        missing.append("value")
    if missing:
        raise FlowRunError(
            ErrorKind.MISSING_ACTION_PARAMETERS,
            f"set_variable requires {', '.join(missing)}"
        )
    context.variables[str(params["name"])] = params["value"]


class WebhookAction:
    """
    Calls an external URL with the run's state.

    Params: `url` (required), `method` (default POST), `save_as` (optional
    variable name receiving the response body). Any other params are sent
    along in the JSON body.
    """

    RESERVED_PARAMS = {"url", "method", "save_as"}

    def __init__(self, timeout: float):
        self.http_client = httpx.AsyncClient(timeout=timeout)

    async def __call__(self, context: ExecutionContext, params: Dict[str, Any]) -> None:
        missing = _missing(params, "url")
        if missing:
            raise FlowRunError(ErrorKind.MISSING_ACTION_PARAMETERS, "webhook requires url")

        method = str(params.get("method") or "POST").upper()
        body = {
            "flow_id": context.flow_id,
            "run_id": context.run_id,
            "phone_number": context.phone_number,
            "variables": context.variables,
            "params": {k: v for k, v in params.items() if k not in self.RESERVED_PARAMS},
        }
        try:
            if method == "GET":
                response = await self.http_client.get(str(params["url"]), params=body["params"])
            else:
                response = await self.http_client.request(method, str(params["url"]), json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            webhook_action_counter.labels(status="failed").inc()
            logger.error(f"webhook_action_failed for run {context.run_id}: {e}")
            raise FlowRunError(ErrorKind.ACTION_FAILED, f"Webhook call to {params['url']} failed: {e}") from e

        webhook_action_counter.labels(status="success").inc()
        logger.info(f"Webhook action for run {context.run_id} returned {response.status_code}")
        if params.get("save_as"):
            context.variables[str(params["save_as"])] = response.text.strip()[:MAX_SAVED_RESPONSE_LENGTH]

    async def close(self):
        await self.http_client.aclose()

# Globally accessible instances
webhook_action = WebhookAction(settings.webhook_timeout_seconds)

ACTION_HANDLERS: Dict[str, ActionHandler] = {
    "set_variable": set_variable,
    "webhook": webhook_action,
}
