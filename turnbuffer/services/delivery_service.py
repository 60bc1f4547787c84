from abc import ABC, abstractmethod
from typing import Optional

import httpx

from turnbuffer.logging_config import get_logger
from turnbuffer.services.alert_service import alert_critical
from turnbuffer.services.result import Result

logger = get_logger("delivery_service")


class DeliveryChannel(ABC):
    """Outbound chat delivery: send(conversation_id, text) -> ok | error."""

    @abstractmethod
    def send(self, conversation_id: str, text: str) -> Result[Optional[str]]:
        pass


class ChatwootDelivery(DeliveryChannel):
    """Post an outgoing message into a Chatwoot conversation."""

    def __init__(self, base_url: Optional[str], api_token: Optional[str], account_id: Optional[str]):
        self.base_url = (base_url or "").rstrip("/")
        self.api_token = api_token
        self.account_id = account_id

    def send(self, conversation_id: str, text: str) -> Result[Optional[str]]:
        if not self.base_url or not self.api_token or not self.account_id:
            logger.error("Chatwoot delivery is not configured (CHATWOOT_BASE_URL/API_TOKEN/ACCOUNT_ID)")
            alert_critical("Chatwoot send failed", {"conversation_id": conversation_id, "error": "not_configured"})
            return Result.failure("Chatwoot API configuration missing", "not_configured")

        if not text or not text.strip():
            return Result.failure("empty message", "empty_message")

        url = f"{self.base_url}/api/v1/accounts/{self.account_id}/conversations/{conversation_id}/messages"
        try:
            with httpx.Client(timeout=30.0) as client:
                response = client.post(
                    url,
                    headers={"api_access_token": self.api_token, "Content-Type": "application/json"},
                    json={"content": text, "message_type": "outgoing"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Error sending Chatwoot message: {e}")
            return Result.from_exception(e, "network_error")

        logger.info(
            "Chatwoot response",
            extra={"context": {"conversation_id": conversation_id, "status": response.status_code}},
        )
        if response.status_code >= 300:
            return Result.failure(f"Chatwoot API error: {response.status_code} {response.text[:200]}", "api_error")

        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        return Result.success(str(message_id) if message_id is not None else None)
