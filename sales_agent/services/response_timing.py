import time
from typing import Optional

from sales_agent.config import BACKLOG_THRESHOLD_MS, settings


def now_ms() -> float:
    return time.time() * 1000


def is_backlogged(message_timestamp: float, now: Optional[float] = None) -> bool:
    """A message is backlogged when it is older than the backlog threshold."""
    if now is None:
        now = now_ms()
    return now - message_timestamp > BACKLOG_THRESHOLD_MS


def calculate_response_delay(
    message_timestamp: float,
    processing_start_time: float,
    target_ms: Optional[int] = None,
) -> float:
    """Milliseconds to wait before replying so turnaround looks human.

    Backlogged messages are answered immediately. Otherwise only the part of
    the target latency not already spent on processing is returned.
    """
    if target_ms is None:
        target_ms = settings.bot_response_delay_ms

    if is_backlogged(message_timestamp, now=processing_start_time):
        return 0

    if target_ms <= 0:
        return 0

    elapsed = processing_start_time - message_timestamp
    return max(0, target_ms - elapsed)
