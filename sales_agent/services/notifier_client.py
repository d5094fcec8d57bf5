"""HTTP client for the notifier service that owns the WhatsApp session.

The backend never talks to WhatsApp directly: outbound text, product images,
read receipts and staff-group notifications are all posted to the notifier.
Failures are logged and raised to the caller; retries are the notifier's job.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from sales_agent.config import settings
from sales_agent.logging_config import get_logger

logger = get_logger("notifier_client")


@dataclass(frozen=True)
class ImageRequest:
    user_id: str
    segment: str
    category: str
    credit_line: float
    is_simulation: bool = False


@dataclass
class ImageSendResult:
    success: bool
    products: list[dict[str, Any]] = field(default_factory=list)


class ChannelTransport(Protocol):
    async def send(self, user_id: str, text: str) -> None: ...

    async def send_images(self, request: ImageRequest) -> ImageSendResult: ...


class Notifier(Protocol):
    async def notify(self, channel: str, message: str) -> None: ...


class NotifierError(Exception):
    def __init__(self, method: str, detail: str):
        self.method = method
        self.detail = detail
        super().__init__(f"Notifier {method} failed: {detail}")


class NotifierClient:
    """Channel transport and staff notifier backed by the notifier HTTP API."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None, client=None):
        self.base_url = (base_url or settings.notifier_url).rstrip("/")
        self.timeout = settings.notifier_timeout_seconds if timeout is None else timeout
        self._client = client

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Notifier request error on {path}: {e}")
            raise NotifierError(path, str(e)) from e

        if response.status_code >= 400:
            logger.error(f"Notifier {path} returned {response.status_code}: {response.text[:200]}")
            raise NotifierError(path, f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError:
            return {}

    async def send(self, user_id: str, text: str) -> None:
        await self._post("/send", {"phoneNumber": user_id, "content": text})

    async def send_images(self, request: ImageRequest) -> ImageSendResult:
        data = await self._post(
            "/send-images",
            {
                "phoneNumber": request.user_id,
                "segment": request.segment,
                "category": request.category,
                "creditLine": request.credit_line,
                "isSimulation": request.is_simulation,
            },
        )
        return ImageSendResult(success=bool(data.get("success")), products=list(data.get("products") or []))

    async def mark_as_read_and_show_typing(self, message_id: str) -> None:
        await self._post("/typing", {"messageId": message_id})

    async def notify(self, channel: str, message: str) -> None:
        await self._post("/notify", {"channel": channel, "message": message})
