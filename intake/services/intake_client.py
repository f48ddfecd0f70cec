"""HTTP client for the intake API, used as the message queue's delivery callable."""

import logging
from typing import Optional

import httpx

from intake.config.settings import settings
from intake.models.messages import MessageResponse
from intake.models.queue import DeliveryReceipt, PendingMessage
from intake.services.message_queue import MessageQueueManager, SendFn
from intake.services.queue_storage import FileQueueStorage

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """A message could not be delivered to the intake API."""


class IntakeApiClient:
    """
    Posts patient messages to ``/api/v1/intake/sessions/{id}/messages``.

    Errors are raised as DeliveryError so the queue can record them and retry.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.intake_api_base_url).rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send_message(self, session_id: str, message: PendingMessage) -> DeliveryReceipt:
        url = f"{self.base_url}/api/v1/intake/sessions/{session_id}/messages"
        payload = {"content": message.content, "images": message.images, "temp_id": message.temp_id}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning(f"Intake API timeout delivering {message.temp_id}")
            raise DeliveryError("Request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.warning(f"Intake API rejected {message.temp_id}: {e.response.status_code}")
            raise DeliveryError(f"Server returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Intake API request failed for {message.temp_id}: {e}")
            raise DeliveryError(str(e) or "Network error") from e

        body = MessageResponse.model_validate(response.json())
        return DeliveryReceipt(user_message=body.user_message, ai_message=body.ai_message)

    def sender(self, session_id: str) -> SendFn:
        """Delivery callable bound to one session, for MessageReliabilityQueue."""

        async def send(message: PendingMessage) -> DeliveryReceipt:
            return await self.send_message(session_id, message)

        return send


def create_queue_manager(
    access_token: Optional[str] = None,
    storage_dir: Optional[str] = None,
    base_url: Optional[str] = None,
) -> MessageQueueManager:
    """Queue manager that delivers through the intake API and persists to disk."""
    client = IntakeApiClient(base_url=base_url, access_token=access_token)
    storage = FileQueueStorage(storage_dir or settings.message_queue_storage_dir)
    return MessageQueueManager(client.sender, storage=storage)
