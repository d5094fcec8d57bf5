"""End-to-end handling of inbound chat messages.

Message lifecycle:
1. ``on_message`` buffers the message; bursts collapse into one turn
2. The flushed turn is processed under the user's serial lock
3. Conversation is loaded, and reset if the session timed out
4. Read receipt + typing indicator (best effort)
5. Enrichment loop produces a terminal transition result
6. Response is paced so turnaround looks human
7. Commands are executed in order
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from sales_agent.logging_config import user_logger
from sales_agent.services.alert_service import alert_error
from sales_agent.services.command_executor import CommandExecutor, ExecutionReport
from sales_agent.services.conversation_store import ConversationStore
from sales_agent.services.debounce_service import DebounceBuffer, FlushInfo
from sales_agent.services.enrichment_loop import EnrichmentLoop
from sales_agent.services.lock_service import KeyedSerialLock
from sales_agent.services.notifier_client import ChannelTransport
from sales_agent.services.response_timing import calculate_response_delay, now_ms
from sales_agent.services.state_machine import Conversation

MSG_HANDOFF = "Disculpa, tuvimos un inconveniente. Un asesor te escribirá en breve."


@dataclass(frozen=True)
class IncomingMessage:
    user_id: str
    content: str
    timestamp: float  # epoch ms
    message_id: Optional[str] = None


class Orchestrator:
    def __init__(
        self,
        store: ConversationStore,
        enrichment_loop: EnrichmentLoop,
        executor: CommandExecutor,
        channel: ChannelTransport,
        lock: Optional[KeyedSerialLock] = None,
        debounce_delay_ms: Optional[int] = None,
        response_delay_ms: Optional[int] = None,
        clock: Callable[[], float] = now_ms,
        sleep_func=asyncio.sleep,
    ):
        self._store = store
        self._loop = enrichment_loop
        self._executor = executor
        self._channel = channel
        self._lock = lock or KeyedSerialLock()
        self._response_delay_ms = response_delay_ms
        self._clock = clock
        self._sleep = sleep_func
        self._debounce = DebounceBuffer(self._on_flush, delay_ms=debounce_delay_ms, clock=clock)

    def on_message(self, user_id: str, text: str, timestamp: float, message_id: Optional[str] = None) -> None:
        """Schedule a debounced, locked processing cycle for this message."""
        self._debounce.on_message(user_id, text, timestamp, message_id)

    def pending_count(self, user_id: str) -> int:
        return self._debounce.pending_count(user_id)

    async def _on_flush(self, user_id: str, text: str, info: FlushInfo) -> None:
        await self.handle_incoming(
            IncomingMessage(
                user_id=user_id,
                content=text,
                timestamp=info.oldest_timestamp,
                message_id=info.message_id,
            )
        )

    async def handle_incoming(self, message: IncomingMessage) -> Optional[ExecutionReport]:
        return await self._lock.with_lock(message.user_id, lambda: self._process(message))

    async def clear_session(self, user_id: str) -> None:
        """Drop any buffered burst and start the conversation over."""
        self._debounce.clear(user_id)
        async with self._lock.hold(user_id):
            self._store.reset_session(user_id)

    async def shutdown(self) -> None:
        await self._debounce.shutdown()

    async def _process(self, message: IncomingMessage) -> Optional[ExecutionReport]:
        user_id = message.user_id
        log = user_logger("orchestrator", user_id)
        log.info(f"Processing message from {user_id}")

        is_simulation = False
        try:
            conversation = self._load_conversation(user_id, log)
            is_simulation = conversation.is_simulation

            if message.message_id and not is_simulation:
                await self._show_typing(message.message_id, log)

            result = await self._loop.run(conversation.phase, message.content, conversation.metadata, user_id)

            delay_ms = calculate_response_delay(message.timestamp, self._clock(), self._response_delay_ms)
            if delay_ms > 0:
                await self._sleep(delay_ms / 1000)

            report = await self._executor.execute(result, user_id, conversation.metadata, is_simulation)
        except Exception as e:
            log.exception(f"Message processing failed for {user_id}")
            await alert_error("Message processing failed", {"user_id": user_id, "error": str(e)})
            await self._send_handoff(user_id, is_simulation, log)
            return None

        if report.failed:
            log.warning(
                f"{len(report.failed)} command(s) failed for {user_id}",
                context={"failed": [(t.value, err) for t, err in report.failed]},
            )
        return report

    def _load_conversation(self, user_id: str, log) -> Conversation:
        conversation = self._store.get_or_create(user_id)
        if self._store.is_session_timed_out(conversation.metadata):
            log.info(f"Session timed out, resetting for {user_id}")
            self._store.reset_session(user_id, conversation.metadata.last_category)
            conversation = self._store.get_or_create(user_id)
            conversation.metadata.is_returning_user = True
        return conversation

    async def _show_typing(self, message_id: str, log) -> None:
        mark = getattr(self._channel, "mark_as_read_and_show_typing", None)
        if mark is None:
            return
        try:
            await mark(message_id)
        except Exception as e:
            log.warning(f"Typing indicator failed: {e}")

    async def _send_handoff(self, user_id: str, is_simulation: bool, log) -> None:
        if is_simulation:
            log.info(f"[simulation] outbound to {user_id}: {MSG_HANDOFF}")
            return
        try:
            await self._channel.send(user_id, MSG_HANDOFF)
        except Exception as e:
            log.error(f"Failed to send handoff message: {e}")
