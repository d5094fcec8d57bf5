"""Carry out the commands returned by the state machine.

Commands run one at a time, in order. A failing command is logged and the
rest of the list still runs; nothing is retried here.
"""

import asyncio
from dataclasses import dataclass, field

from sales_agent.config import MESSAGE_GAP_MS
from sales_agent.logging_config import get_logger
from sales_agent.services.analytics_service import Analytics
from sales_agent.services.conversation_store import ConversationStore
from sales_agent.services.notifier_client import ChannelTransport, ImageRequest, Notifier
from sales_agent.services.state_machine import (
    OFFERING_PHASES,
    Command,
    CommandType,
    ConversationMetadata,
    ConversationPhase,
    Escalate,
    NeedEnrichment,
    NotifyTeam,
    SendImages,
    SendMessage,
    TrackEvent,
    TransitionResult,
)

logger = get_logger("command_executor")

DEFAULT_SEGMENT = "fnb"


@dataclass
class ExecutionReport:
    executed: list[CommandType] = field(default_factory=list)
    failed: list[tuple[CommandType, str]] = field(default_factory=list)
    contract_violation: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.contract_violation


class CommandExecutor:
    def __init__(
        self,
        store: ConversationStore,
        channel: ChannelTransport,
        analytics: Analytics,
        notifier: Notifier,
        message_gap_ms: int = MESSAGE_GAP_MS,
        sleep_func=asyncio.sleep,
    ):
        self._store = store
        self._channel = channel
        self._analytics = analytics
        self._notifier = notifier
        self._message_gap_ms = message_gap_ms
        self._sleep = sleep_func
        self._handlers = {
            CommandType.SEND_MESSAGE: self._send_message,
            CommandType.SEND_IMAGES: self._send_images,
            CommandType.TRACK_EVENT: self._track_event,
            CommandType.NOTIFY_TEAM: self._notify_team,
            CommandType.ESCALATE: self._escalate,
        }

    async def execute(
        self,
        result: TransitionResult,
        user_id: str,
        metadata: ConversationMetadata,
        is_simulation: bool = False,
    ) -> ExecutionReport:
        if isinstance(result, NeedEnrichment):
            # Only the enrichment loop may resolve these.
            logger.error(
                "Unexpected need_enrichment reached command executor",
                extra={"context": {"user_id": user_id, "enrichment": result.request.type}},
            )
            try:
                await self._notifier.notify("dev", f"CRITICAL: need_enrichment leaked to command executor for {user_id}")
            except Exception as e:
                logger.error(f"Failed to notify dev channel: {e}")
            return ExecutionReport(contract_violation=True)

        current = self._store.get_or_create(user_id)
        if current.phase != result.next_phase:
            self._store.update(user_id, result.next_phase, metadata)

        report = ExecutionReport()
        previous: Command | None = None

        for command in result.commands:
            if (
                command.type == CommandType.SEND_MESSAGE
                and previous is not None
                and previous.type == CommandType.SEND_MESSAGE
            ):
                await self._sleep(self._message_gap_ms / 1000)

            try:
                await self._handlers[command.type](command, user_id, result.next_phase, metadata, is_simulation)
                report.executed.append(command.type)
            except Exception as e:
                logger.error(
                    f"Command {command.type.value} failed for {user_id}: {e}",
                    extra={"context": {"user_id": user_id, "command": command.type.value}},
                )
                report.failed.append((command.type, str(e)))

            previous = command

        return report

    async def _send_message(
        self,
        command: SendMessage,
        user_id: str,
        phase: ConversationPhase,
        metadata: ConversationMetadata,
        is_simulation: bool,
    ) -> None:
        if is_simulation:
            logger.info(
                f"[simulation] outbound to {user_id}: {command.text}",
                extra={"context": {"user_id": user_id, "direction": "outbound", "status": "sent"}},
            )
            return
        await self._channel.send(user_id, command.text)

    async def _send_images(
        self,
        command: SendImages,
        user_id: str,
        phase: ConversationPhase,
        metadata: ConversationMetadata,
        is_simulation: bool,
    ) -> None:
        if phase.phase not in OFFERING_PHASES:
            logger.warning(f"Images requested outside offering phase ({phase.phase}) for {user_id}")
            return

        result = await self._channel.send_images(
            ImageRequest(
                user_id=user_id,
                segment=phase.get("segment", DEFAULT_SEGMENT),
                category=command.category,
                credit_line=phase.get("credit", 0),
                is_simulation=is_simulation,
            )
        )

        # Later turns validate the customer's pick against what was shown.
        if result.success and result.products:
            conversation = self._store.get_or_create(user_id)
            self._store.update(user_id, phase.with_fields(sentProducts=result.products), conversation.metadata)

    async def _track_event(
        self,
        command: TrackEvent,
        user_id: str,
        phase: ConversationPhase,
        metadata: ConversationMetadata,
        is_simulation: bool,
    ) -> None:
        self._analytics.track(user_id, command.event, {"segment": metadata.segment, **command.metadata})

    async def _notify_team(
        self,
        command: NotifyTeam,
        user_id: str,
        phase: ConversationPhase,
        metadata: ConversationMetadata,
        is_simulation: bool,
    ) -> None:
        await self._notifier.notify(command.channel, command.message)

    async def _escalate(
        self,
        command: Escalate,
        user_id: str,
        phase: ConversationPhase,
        metadata: ConversationMetadata,
        is_simulation: bool,
    ) -> None:
        # The escalated phase was already persisted above.
        logger.info(f"Escalation for {user_id}: {command.reason}")
