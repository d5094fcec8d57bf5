"""Debounce bursty user messages into a single turn.

Every message for a user restarts that user's flush timer. When the timer
fires the buffered texts are joined and handed to the flush callback once.
Buffers live only in this instance: created on the first message after a
flush, destroyed on flush or ``clear``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from sales_agent.config import BACKLOG_THRESHOLD_MS, settings
from sales_agent.logging_config import get_logger
from sales_agent.services.response_timing import now_ms

logger = get_logger("debounce_service")


@dataclass(frozen=True)
class FlushInfo:
    is_backlog: bool
    oldest_message_age: float
    oldest_timestamp: float
    message_count: int
    message_id: Optional[str] = None  # latest in the burst


FlushCallback = Callable[[str, str, FlushInfo], Awaitable[None]]


@dataclass
class _BufferedMessage:
    text: str
    timestamp: float


@dataclass
class _PendingBurst:
    messages: list[_BufferedMessage] = field(default_factory=list)
    message_id: Optional[str] = None
    timer_task: Optional[asyncio.Task] = None


class DebounceBuffer:
    def __init__(
        self,
        on_flush: FlushCallback,
        delay_ms: Optional[int] = None,
        clock: Callable[[], float] = now_ms,
        sleep_func=asyncio.sleep,
    ):
        self._on_flush = on_flush
        self._delay_ms = settings.debounce_delay_ms if delay_ms is None else delay_ms
        self._clock = clock
        self._sleep = sleep_func
        self._buffers: dict[str, _PendingBurst] = {}
        self._flushing: set[asyncio.Task] = set()

    def on_message(self, user_id: str, text: str, timestamp: float, message_id: Optional[str] = None) -> None:
        """Buffer a message and restart the user's flush timer."""
        burst = self._buffers.get(user_id)
        if burst is None:
            burst = _PendingBurst()
            self._buffers[user_id] = burst
        elif burst.timer_task is not None:
            burst.timer_task.cancel()

        burst.messages.append(_BufferedMessage(text=text, timestamp=timestamp))
        if message_id:
            burst.message_id = message_id
        burst.timer_task = asyncio.get_running_loop().create_task(self._flush_later(user_id, burst))

        logger.debug(f"Buffered message for {user_id} ({len(burst.messages)} pending)")

    def clear(self, user_id: str) -> bool:
        """Drop the user's burst without flushing. Returns True if one existed."""
        burst = self._buffers.pop(user_id, None)
        if burst is None:
            return False
        if burst.timer_task is not None:
            burst.timer_task.cancel()
        logger.info(f"Cleared debounce buffer for {user_id}")
        return True

    def has_pending(self, user_id: str) -> bool:
        return user_id in self._buffers

    def pending_count(self, user_id: str) -> int:
        burst = self._buffers.get(user_id)
        return len(burst.messages) if burst else 0

    async def shutdown(self) -> None:
        """Cancel every pending timer and wait for in-flight flushes."""
        for user_id in list(self._buffers):
            self.clear(user_id)
        if self._flushing:
            await asyncio.gather(*self._flushing, return_exceptions=True)

    async def _flush_later(self, user_id: str, burst: _PendingBurst) -> None:
        try:
            await self._sleep(self._delay_ms / 1000)
        except asyncio.CancelledError:
            return

        # A newer burst or a clear() may have replaced this one while we slept.
        if self._buffers.get(user_id) is not burst:
            return
        del self._buffers[user_id]

        texts = [m.text for m in burst.messages]
        aggregated = " ".join(texts)
        oldest_timestamp = min(m.timestamp for m in burst.messages)
        oldest_message_age = self._clock() - oldest_timestamp
        info = FlushInfo(
            is_backlog=oldest_message_age > BACKLOG_THRESHOLD_MS,
            oldest_message_age=oldest_message_age,
            oldest_timestamp=oldest_timestamp,
            message_count=len(texts),
            message_id=burst.message_id,
        )

        if info.is_backlog:
            logger.warning(
                f"Backlogged turn for {user_id}",
                extra={"context": {"oldest_message_age_ms": oldest_message_age, "messages": len(texts)}},
            )

        # Detach the callback from this timer task so a late cancel cannot interrupt it.
        task = asyncio.get_running_loop().create_task(self._run_callback(user_id, aggregated, info))
        self._flushing.add(task)
        task.add_done_callback(self._flushing.discard)

    async def _run_callback(self, user_id: str, aggregated: str, info: FlushInfo) -> None:
        try:
            await self._on_flush(user_id, aggregated, info)
        except Exception:
            logger.exception(f"Flush callback failed for {user_id}", extra={"context": {"user_id": user_id}})
