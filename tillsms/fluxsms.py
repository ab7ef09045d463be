"""FluxSMS gateway client.

Every endpoint is a JSON POST with the API key in the body. A call fails
(SmsGatewayError) on transport errors, timeouts, a non-2xx status, or a JSON
body with a truthy "error" field.
"""

import logging
from typing import Any, Optional

import httpx

from tillsms.config import settings
from tillsms.errors import SmsGatewayError
from tillsms.metrics import record_gateway_call

logger = logging.getLogger(__name__)


class FluxSmsClient:
    """FluxSMS bulk SMS API client."""

    def __init__(
        self,
        api_key: str,
        sender_id: str = "fluxsms",
        base_url: str = "https://api.fluxsms.co.ke",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize FluxSMS client.

        Args:
            api_key: FluxSMS API key; may be empty, in which case every call fails
            sender_id: Default sender id for outgoing messages
            base_url: API base URL
            timeout: Per-call timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.api_key = (api_key or "").strip()
        self.sender_id = (sender_id or "").strip() or "fluxsms"
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _get_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise SmsGatewayError("Missing FLUXSMS_API_KEY")

        endpoint = path.strip("/")
        try:
            async with self._get_client() as client:
                response = await client.post(path, json={**payload, "api_key": self.api_key})
        except httpx.TimeoutException as e:
            record_gateway_call(endpoint, ok=False)
            raise SmsGatewayError(f"FluxSMS request timed out ({endpoint})") from e
        except httpx.HTTPError as e:
            record_gateway_call(endpoint, ok=False)
            raise SmsGatewayError(f"FluxSMS request failed ({endpoint}): {e}") from e

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = None

        if not response.is_success:
            record_gateway_call(endpoint, ok=False)
            message = data.get("error") if isinstance(data, dict) else None
            logger.error(f"FluxSMS {endpoint} returned HTTP {response.status_code}")
            raise SmsGatewayError(message or f"FluxSMS request failed ({response.status_code})")

        if isinstance(data, dict) and data.get("error"):
            record_gateway_call(endpoint, ok=False)
            logger.error(f"FluxSMS {endpoint} returned error: {data['error']}")
            raise SmsGatewayError(str(data["error"]))

        record_gateway_call(endpoint, ok=True)
        return data if isinstance(data, dict) else {}

    async def send_single(self, phone: str, message: str, sender_id: Optional[str] = None) -> dict[str, Any]:
        """Send one SMS. Response carries response-code, response-description, mobile, messageid."""
        return await self._post_json(
            "/sendsms",
            {"phone": phone, "message": message, "sender_id": sender_id or self.sender_id},
        )

    async def send_bulk(self, phones: list[str], message: str, sender_id: Optional[str] = None) -> dict[str, Any]:
        """Send one text to many phones. Response carries one entry per phone under "responses"."""
        logger.info(f"FluxSMS bulk send to {len(phones)} phones")
        return await self._post_json(
            "/bulksms",
            {"phones": phones, "message": message, "sender_id": sender_id or self.sender_id},
        )

    async def message_status(self, message_id: str) -> dict[str, Any]:
        """Delivery status of one message: delivery-status (int) and delivery-description."""
        return await self._post_json("/smsstatus", {"message_id": message_id})

    async def balance(self) -> dict[str, Any]:
        return await self._post_json("/check_sms_balance", {})


def get_sms_client() -> FluxSmsClient:
    """FastAPI dependency building the gateway client from settings."""
    return FluxSmsClient(
        api_key=settings.FLUXSMS_API_KEY,
        sender_id=settings.FLUXSMS_SENDER_ID,
        base_url=settings.FLUXSMS_BASE_URL,
        timeout=settings.SMS_GATEWAY_TIMEOUT_SECONDS,
    )
