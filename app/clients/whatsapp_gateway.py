"""
WhatsApp messaging gateway client.

The queue treats the outbound message as opaque: it asks the gateway to
contact a lead and only cares whether that succeeded. Template selection and
the WhatsApp Cloud API payload live behind the gateway.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from app.core.config import settings
from app.core.exceptions import DispatchFailure, DispatchTimeout
from app.models.queue_lead import QueueLead

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    reason: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def ok(cls, message_id: Optional[str] = None) -> "SendResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failure(cls, reason: str) -> "SendResult":
        return cls(success=False, reason=reason)


class MessagingGateway(Protocol):
    async def send(self, lead: QueueLead) -> SendResult:
        ...


class WhatsAppGatewayClient:
    """HTTP client for the messaging gateway's send endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.GATEWAY_URL
        self.token = token if token is not None else settings.GATEWAY_TOKEN
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, lead: QueueLead) -> SendResult:
        if not lead.phone:
            return SendResult.failure("missing_phone")

        payload = {
            "channel": "whatsapp",
            "lead_id": lead.lead_id,
            "project_id": lead.project_id,
            "to": lead.phone.lstrip("+"),  # WhatsApp expects without +
            "attempt": lead.attempts,
        }

        client = await self._get_client()
        try:
            response = await client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise DispatchTimeout() from e
        except httpx.HTTPError as e:
            raise DispatchFailure(f"transport_error: {e}") from e

        if response.is_success:
            body = response.json() if response.content else {}
            return SendResult.ok(message_id=body.get("message_id"))

        logger.warning(
            "Gateway rejected lead %s: HTTP %s %s",
            lead.lead_id, response.status_code, response.text[:200],
        )
        return SendResult.failure(f"http_{response.status_code}")
