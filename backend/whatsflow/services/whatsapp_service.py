# /whatsflow/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Optional, Dict, Any

from whatsflow.config.settings import settings
from whatsflow.utils.circuit_breaker import CircuitBreaker
from whatsflow.utils.alerting import alerting_service
from whatsflow.utils.metrics import message_counter

logger = logging.getLogger(__name__)

# Captions longer than this are cut by WhatsApp anyway.
MAX_CAPTION_LENGTH = 1024
MAX_TEXT_LENGTH = 4096


class WhatsAppService:
    """
    Outbound messaging channel backed by an Evolution API server.

    Each connected WhatsApp number is an Evolution "instance"; every send names
    the instance it goes out through. Send methods return the provider message
    id, or None when the message could not be delivered.
    """

    def __init__(self, base_url: str, api_key: Optional[str], attempt_timeout: float = 4.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        # Per attempt; the executor bounds the whole send, retries included.
        self.http_client = httpx.AsyncClient(timeout=attempt_timeout)
        self.circuit_breaker = CircuitBreaker("evolution_api")

    # Only failures where the request never reached the server are retried;
    # a POST that timed out mid-flight may already have been delivered.
    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=2),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    @staticmethod
    def format_phone(phone: str) -> str:
        """Evolution expects the bare international number, digits only."""
        return re.sub(r"\D", "", phone or "")

    async def send_evolution_request(self, endpoint: str, instance_id: str, payload: Dict[str, Any], kind: str) -> Optional[str]:
        """Posts a message payload to `{base_url}/message/{endpoint}/{instance_id}`."""
        to_phone = payload.get("number")
        try:
            if not to_phone:
                logger.error(f"evolution_send_invalid_phone for instance {instance_id}")
                message_counter.labels(kind=kind, status="invalid_phone").inc()
                return None

            url = f"{self.base_url}/message/{endpoint}/{instance_id}"
            headers = {"apikey": self.api_key or "", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code in (200, 201):
                response_data = response.json() if response.content else {}
                message_id = (response_data.get("key") or {}).get("id") or "sent"
                logger.info(f"Flow {kind} message sent to {to_phone} via {instance_id}, id: {message_id}")
                message_counter.labels(kind=kind, status="success").inc()
                return message_id

            error_message = response.text[:500]
            logger.error(f"evolution_send_failed to {to_phone}: {response.status_code} - {error_message}")
            message_counter.labels(kind=kind, status="failed").inc()
            if response.status_code == 401:
                await alerting_service.channel_auth_failed(instance_id, response.status_code)
            return None
        except Exception as e:
            logger.error(f"evolution_send_error to {to_phone}: {e}", exc_info=True)
            message_counter.labels(kind=kind, status="error").inc()
            return None

    async def send_text(self, instance_id: str, to_phone: str, text: str) -> Optional[str]:
        payload = {
            "number": self.format_phone(to_phone),
            "text": text[:MAX_TEXT_LENGTH],
        }
        return await self.send_evolution_request("sendText", instance_id, payload, kind="text")

    async def send_media(
        self,
        instance_id: str,
        to_phone: str,
        media_url: str,
        caption: str = "",
        media_type: str = "image"
    ) -> Optional[str]:
        """Sends an image, video, audio or document by URL with an optional caption."""
        media_type = getattr(media_type, "value", media_type)
        payload = {
            "number": self.format_phone(to_phone),
            "mediatype": media_type,
            "media": media_url,
            "caption": (caption or "")[:MAX_CAPTION_LENGTH],
        }
        return await self.send_evolution_request("sendMedia", instance_id, payload, kind=media_type)

    async def close(self):
        await self.http_client.aclose()

# Globally accessible instance
whatsapp_service = WhatsAppService(
    settings.evolution_api_url,
    settings.evolution_api_key,
    attempt_timeout=settings.messaging_attempt_timeout_seconds
)
