"""
Delivery channel - send(connection_id, contact, payload) against the
messaging-session gateway.

Failures are raised, never swallowed:
- DeliveryFailure: this one message did not go out (bad number, gateway
  hiccup, timeout). Recorded per target; the caller moves on.
- ChannelUnavailable: the connection itself cannot send (session gone,
  credentials rejected). Every following send would fail the same way, so
  the caller aborts.

With no gateway URL configured the simulated channel is used: it renders,
logs and acknowledges without anything leaving the process.
"""
import logging
import uuid
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

GATEWAY_CLIENT_TIMEOUT = 15.0

# Gateway status classification
UNAVAILABLE_STATUS_CODES = {401, 403, 404, 410}  # session gone or credentials rejected


class DeliveryFailure(Exception):
    """A single send failed; record it against the target and continue."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class ChannelUnavailable(DeliveryFailure):
    """The connection cannot deliver anything; abort the run."""


class DeliveryChannel:
    """Interface for outbound delivery. Returns the provider message id."""

    async def send(self, connection_id: str, contact: str, payload: str) -> Optional[str]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class SimulatedDeliveryChannel(DeliveryChannel):
    """Acknowledges every send. Used when no gateway is configured and for warmup dry-runs."""

    async def send(self, connection_id: str, contact: str, payload: str) -> Optional[str]:
        message_id = f"sim-{uuid.uuid4().hex[:12]}"
        logger.info(
            "Simulated send via %s to %s***: %s",
            connection_id, contact[:6], payload[:50],
            extra={"connection_id": connection_id},
        )
        return message_id


class HttpDeliveryChannel(DeliveryChannel):
    """Messaging-session gateway over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = GATEWAY_CLIENT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def send(self, connection_id: str, contact: str, payload: str) -> Optional[str]:
        try:
            response = await self._client.post(
                f"/sessions/{connection_id}/messages",
                json={"to": contact, "content": payload},
            )
        except httpx.TimeoutException as e:
            raise DeliveryFailure(f"gateway timeout: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryFailure(f"gateway error: {e}") from e

        if response.status_code in UNAVAILABLE_STATUS_CODES:
            raise ChannelUnavailable(
                f"connection {connection_id} unavailable ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise DeliveryFailure(
                f"gateway rejected message ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            return None
        return data.get("message_id") or data.get("id")

    async def aclose(self) -> None:
        await self._client.aclose()


def build_delivery_channel(settings=None) -> DeliveryChannel:
    """HTTP channel when a gateway is configured, simulated otherwise."""
    if settings is None:
        from switchboard.config import get_settings
        settings = get_settings()
    if settings.delivery_gateway_url:
        logger.info("Delivery gateway: %s", settings.delivery_gateway_url)
        return HttpDeliveryChannel(
            settings.delivery_gateway_url,
            api_key=settings.delivery_gateway_api_key,
            timeout=settings.delivery_timeout_seconds,
        )
    logger.warning("DELIVERY_GATEWAY_URL not set - campaign sends are simulated")
    return SimulatedDeliveryChannel()
