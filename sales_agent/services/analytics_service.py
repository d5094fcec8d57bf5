from typing import Any, Optional, Protocol

from sales_agent.logging_config import get_logger

logger = get_logger("analytics")


class Analytics(Protocol):
    def track(self, user_id: str, event: str, metadata: Optional[dict[str, Any]] = None) -> None: ...


class LoggingAnalytics:
    """Emits analytics events as structured log records."""

    def track(self, user_id: str, event: str, metadata: Optional[dict[str, Any]] = None) -> None:
        logger.info(f"event={event}", extra={"context": {"user_id": user_id, "event": event, **(metadata or {})}})
