"""
Messaging transports for customer notifications.

A transport delivers one rendered message to one channel (a chat id for
Telegram). Transports raise PermanentDeliveryError when retrying cannot
help (blocked bot, unknown chat, malformed request) and
TransientDeliveryError for everything worth another attempt.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from orderflow.core.exceptions import OrderflowError, TransientInfraError
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TELEGRAM_API_BASE = "https://api.telegram.org"

# Telegram answers these for chats that will never accept the message
_PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404})


@dataclass
class DeliveryResult:
    """Outcome of delivering one notification to one channel."""

    success: bool
    channel_id: str
    attempts: int = 0
    error: Optional[str] = None
    permanent: bool = False
    cancelled: bool = False
    message_id: Optional[str] = None


class PermanentDeliveryError(OrderflowError):
    """Raised when a channel rejects a message for good."""

    default_code = "delivery_rejected"


class TransientDeliveryError(TransientInfraError):
    """Raised when a send failed but may succeed on retry."""

    default_code = "delivery_unavailable"

    def __init__(self, message: str, retry_after: Optional[float] = None, **context: Any):
        super().__init__(message, **context)
        self.retry_after = retry_after


class MessagingTransport(Protocol):
    """Sends a rendered message to a channel."""

    async def send(
        self,
        channel_id: str,
        message: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> DeliveryResult:
        ...


class TelegramTransport:
    """
    Telegram Bot API transport over httpx.

    Messages are sent with Markdown parse mode. When the options carry an
    order_id, an inline "Order details" button is attached.
    """

    def __init__(
        self,
        token: str,
        api_base: str = DEFAULT_TELEGRAM_API_BASE,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not token:
            raise ValueError("Telegram bot token is required")
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )

    @property
    def _endpoint(self) -> str:
        return f"/bot{self._token}/sendMessage"

    def build_payload(
        self,
        channel_id: str,
        message: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        options = options or {}
        payload: Dict[str, Any] = {
            "chat_id": channel_id,
            "text": message,
            "parse_mode": options.get("parse_mode", "Markdown"),
        }
        order_id = options.get("order_id")
        if order_id:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [
                        {
                            "text": "Order details",
                            "callback_data": f"order_view_{order_id}",
                        }
                    ]
                ]
            }
        return payload

    async def send(
        self,
        channel_id: str,
        message: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> DeliveryResult:
        """
        Send a message to a Telegram chat.

        Raises:
            PermanentDeliveryError: If Telegram refuses the chat or request
            TransientDeliveryError: On rate limiting, server errors or network failure
        """
        payload = self.build_payload(channel_id, message, options)
        try:
            response = await self._client.post(self._endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(
                "Telegram request timed out", channel_id=channel_id
            ) from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(
                f"Telegram request failed: {e}", channel_id=channel_id
            ) from e

        if response.status_code == 200:
            message_id = self._message_id(response)
            logger.debug("Telegram message sent", channel_id=channel_id, message_id=message_id)
            return DeliveryResult(
                success=True,
                channel_id=channel_id,
                attempts=1,
                message_id=message_id,
            )

        return self._raise_for_response(response, channel_id)

    def _raise_for_response(self, response: httpx.Response, channel_id: str) -> DeliveryResult:
        description = self._description(response)
        status_code = response.status_code

        if status_code == 429:
            retry_after = None
            try:
                retry_after = float(response.json().get("parameters", {}).get("retry_after"))
            except (ValueError, TypeError, AttributeError):
                retry_after = None
            raise TransientDeliveryError(
                "Telegram rate limit exceeded",
                retry_after=retry_after,
                channel_id=channel_id,
                status_code=status_code,
            )

        if status_code in _PERMANENT_STATUS_CODES:
            raise PermanentDeliveryError(
                f"Telegram rejected message: {description}",
                channel_id=channel_id,
                status_code=status_code,
            )

        raise TransientDeliveryError(
            f"Telegram error: {description}",
            channel_id=channel_id,
            status_code=status_code,
        )

    @staticmethod
    def _message_id(response: httpx.Response) -> Optional[str]:
        try:
            result = response.json().get("result") or {}
        except ValueError:
            return None
        message_id = result.get("message_id")
        return str(message_id) if message_id is not None else None

    @staticmethod
    def _description(response: httpx.Response) -> str:
        try:
            return response.json().get("description") or f"HTTP {response.status_code}"
        except ValueError:
            return f"HTTP {response.status_code}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DisabledTransport:
    """Used when no bot token is configured; every send is refused."""

    async def send(
        self,
        channel_id: str,
        message: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> DeliveryResult:
        raise PermanentDeliveryError(
            "Messaging transport is not configured", channel_id=channel_id
        )

    async def aclose(self) -> None:
        return None
