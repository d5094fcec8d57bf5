from typing import Awaitable, Callable

from sales_agent.logging_config import get_logger
from sales_agent.services.state_machine import EnrichmentRequest, EnrichmentResult

logger = get_logger("enrichment_service")

EnrichmentHandler = Callable[[EnrichmentRequest, str], Awaitable[EnrichmentResult]]


class UnknownEnrichmentError(Exception):
    def __init__(self, enrichment_type: str):
        self.enrichment_type = enrichment_type
        super().__init__(f"No enrichment handler registered for: {enrichment_type}")


class EnrichmentRegistry:
    """Routes enrichment requests to the handler registered for their type."""

    def __init__(self):
        self._handlers: dict[str, EnrichmentHandler] = {}

    def register(self, enrichment_type: str, handler: EnrichmentHandler) -> None:
        if enrichment_type in self._handlers:
            logger.warning(f"Replacing enrichment handler for {enrichment_type}")
        self._handlers[enrichment_type] = handler

    def registered_types(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, request: EnrichmentRequest, user_id: str) -> EnrichmentResult:
        handler = self._handlers.get(request.type)
        if handler is None:
            raise UnknownEnrichmentError(request.type)
        return await handler(request, user_id)
