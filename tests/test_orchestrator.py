import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from sales_agent.services.command_executor import CommandExecutor
from sales_agent.services.conversation_store import InMemoryConversationStore
from sales_agent.services.enrichment_loop import EnrichmentLoop
from sales_agent.services.orchestrator import MSG_HANDOFF, IncomingMessage, Orchestrator
from sales_agent.services.state_machine import (
    ConversationMetadata,
    ConversationPhase,
    EnrichmentRequest,
    EnrichmentResult,
    NeedEnrichment,
    PhaseName,
    SendMessage,
    Update,
)

USER = "51987654321"
T = 1_700_000_000_000


class FakeClock:
    def __init__(self, now=T):
        self.now = now

    def __call__(self):
        return self.now


class RecordingTransition:
    """Echo transition: moves to collecting_dni and replies with the text it saw."""

    def __init__(self):
        self.inputs = []

    def __call__(self, input):
        self.inputs.append(input)
        return Update(ConversationPhase(PhaseName.COLLECTING_DNI), [SendMessage(f"echo: {input.message}")])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clocked_store(clock):
    return InMemoryConversationStore(timeout_minutes=360, clock=clock)


def _orchestrator(transition, store, channel, analytics, clock, sleep_func, fetch=None, **kwargs):
    fetch = fetch or AsyncMock()
    return Orchestrator(
        store=store,
        enrichment_loop=EnrichmentLoop(transition, fetch, store),
        executor=CommandExecutor(store, channel, analytics, channel, sleep_func=sleep_func),
        channel=channel,
        response_delay_ms=kwargs.pop("response_delay_ms", 2300),
        clock=clock,
        sleep_func=sleep_func,
        **kwargs,
    )


class TestHandleIncoming:
    def test_processes_turn_and_paces_response(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        transition = RecordingTransition()
        orchestrator = _orchestrator(transition, clocked_store, channel, analytics, clock, recorded_sleeps)

        report = asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T)))

        assert report.ok is True
        assert transition.inputs[0].phase == ConversationPhase.greeting()
        assert recorded_sleeps.calls == [2.3]
        channel.send.assert_awaited_once_with(USER, "echo: hola")
        assert clocked_store.get_or_create(USER).phase == ConversationPhase(PhaseName.COLLECTING_DNI)

    def test_backlogged_message_is_answered_immediately(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        orchestrator = _orchestrator(RecordingTransition(), clocked_store, channel, analytics, clock, recorded_sleeps)

        asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T - 11 * 60 * 1000)))

        assert recorded_sleeps.calls == []
        channel.send.assert_awaited_once()

    def test_elapsed_time_shortens_pacing(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        orchestrator = _orchestrator(RecordingTransition(), clocked_store, channel, analytics, clock, recorded_sleeps)

        asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T - 2000)))

        assert recorded_sleeps.calls == [pytest.approx(0.3)]

    def test_shows_typing_for_real_messages(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        orchestrator = _orchestrator(RecordingTransition(), clocked_store, channel, analytics, clock, recorded_sleeps)

        asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T, message_id="wamid.1")))

        channel.mark_as_read_and_show_typing.assert_awaited_once_with("wamid.1")

    def test_simulation_skips_typing_and_outbound(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        clocked_store.set_simulation(USER)
        orchestrator = _orchestrator(RecordingTransition(), clocked_store, channel, analytics, clock, recorded_sleeps)

        asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T, message_id="wamid.1")))

        channel.mark_as_read_and_show_typing.assert_not_awaited()
        channel.send.assert_not_awaited()

    def test_typing_failure_does_not_block_turn(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        channel.mark_as_read_and_show_typing.side_effect = ConnectionError("notifier down")
        orchestrator = _orchestrator(RecordingTransition(), clocked_store, channel, analytics, clock, recorded_sleeps)

        asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T, message_id="wamid.1")))

        channel.send.assert_awaited_once_with(USER, "echo: hola")

    def test_timed_out_session_restarts_as_returning_user(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        clocked_store.update(
            USER,
            ConversationPhase(PhaseName.OFFERING_PRODUCTS, {"credit": 3000}),
            ConversationMetadata(segment="fnb", last_category="celulares"),
        )
        clock.now = T + 7 * 60 * 60 * 1000
        transition = RecordingTransition()
        orchestrator = _orchestrator(transition, clocked_store, channel, analytics, clock, recorded_sleeps)

        asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola otra vez", clock.now)))

        seen = transition.inputs[0]
        assert seen.phase == ConversationPhase.greeting()
        assert seen.metadata.is_returning_user is True
        assert seen.metadata.last_category == "celulares"
        assert seen.metadata.segment is None

    @patch("sales_agent.services.orchestrator.alert_error", new_callable=AsyncMock)
    def test_transition_failure_hands_off(self, mock_alert, clocked_store, channel, analytics, clock, recorded_sleeps):
        def broken(input):
            raise ValueError("unexpected phase")

        orchestrator = _orchestrator(broken, clocked_store, channel, analytics, clock, recorded_sleeps)

        report = asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T)))

        assert report is None
        channel.send.assert_awaited_once_with(USER, MSG_HANDOFF)
        mock_alert.assert_awaited_once()
        assert clocked_store.get_or_create(USER).phase == ConversationPhase.greeting()

    def test_enrichment_result_reaches_transition(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        checking = ConversationPhase(PhaseName.CHECKING_ELIGIBILITY, {"dni": "12345678"})

        def transition(input):
            if input.enrichment is None:
                return NeedEnrichment(EnrichmentRequest("eligibility", {"dni": "12345678"}), pending_phase=checking)
            credit = input.enrichment.data["credit"]
            return Update(
                ConversationPhase(PhaseName.OFFERING_PRODUCTS, {"credit": credit}),
                [SendMessage(f"Tienes S/ {credit} disponibles")],
            )

        fetch = AsyncMock(return_value=EnrichmentResult("eligibility_result", {"status": "eligible", "credit": 3500}))
        orchestrator = _orchestrator(transition, clocked_store, channel, analytics, clock, recorded_sleeps, fetch=fetch)

        asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "12345678", T)))

        fetch.assert_awaited_once()
        channel.send.assert_awaited_once_with(USER, "Tienes S/ 3500 disponibles")
        assert clocked_store.get_or_create(USER).phase.get("credit") == 3500


class FailingUpdateStore(InMemoryConversationStore):
    def update(self, user_id, phase, metadata):
        raise ConnectionError("db down")


class FailingLoadStore(InMemoryConversationStore):
    def get_or_create(self, user_id):
        raise ConnectionError("db down")


class TestStoreFailure:
    @patch("sales_agent.services.orchestrator.alert_error", new_callable=AsyncMock)
    def test_failed_phase_write_hands_off(self, mock_alert, channel, analytics, clock, recorded_sleeps):
        store = FailingUpdateStore(clock=clock)
        orchestrator = _orchestrator(RecordingTransition(), store, channel, analytics, clock, recorded_sleeps)

        report = asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T)))

        assert report is None
        channel.send.assert_awaited_once_with(USER, MSG_HANDOFF)
        mock_alert.assert_awaited_once()

    @patch("sales_agent.services.orchestrator.alert_error", new_callable=AsyncMock)
    def test_failed_load_hands_off(self, mock_alert, channel, analytics, clock, recorded_sleeps):
        transition = RecordingTransition()
        orchestrator = _orchestrator(transition, FailingLoadStore(clock=clock), channel, analytics, clock, recorded_sleeps)

        report = asyncio.run(orchestrator.handle_incoming(IncomingMessage(USER, "hola", T, message_id="wamid.1")))

        assert report is None
        assert transition.inputs == []
        channel.send.assert_awaited_once_with(USER, MSG_HANDOFF)
        mock_alert.assert_awaited_once()

    @patch("sales_agent.services.orchestrator.alert_error", new_callable=AsyncMock)
    def test_next_turn_runs_after_store_failure(self, mock_alert, channel, analytics, clock, recorded_sleeps):
        store = FailingUpdateStore(clock=clock)
        orchestrator = _orchestrator(RecordingTransition(), store, channel, analytics, clock, recorded_sleeps)

        async def main():
            return await asyncio.gather(
                orchestrator.handle_incoming(IncomingMessage(USER, "uno", T)),
                orchestrator.handle_incoming(IncomingMessage(USER, "dos", T)),
            )

        assert asyncio.run(main()) == [None, None]
        assert channel.send.await_count == 2
        assert mock_alert.await_count == 2


class TestSerialization:
    def test_same_user_turns_do_not_interleave(self, clocked_store, channel, analytics, clock):
        events = []

        async def slow_sleep(seconds):
            events.append("pace")
            await asyncio.sleep(0.01)

        async def send(user_id, text):
            events.append(text)

        channel.send.side_effect = send
        orchestrator = _orchestrator(RecordingTransition(), clocked_store, channel, analytics, clock, slow_sleep)

        async def main():
            await asyncio.gather(
                orchestrator.handle_incoming(IncomingMessage(USER, "uno", T)),
                orchestrator.handle_incoming(IncomingMessage(USER, "dos", T)),
            )

        asyncio.run(main())

        assert events == ["pace", "echo: uno", "pace", "echo: dos"]

    def test_failure_does_not_block_next_turn(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        calls = []

        def transition(input):
            calls.append(input.message)
            if input.message == "uno":
                raise RuntimeError("boom")
            return Update(input.phase, [SendMessage("ok")])

        orchestrator = _orchestrator(transition, clocked_store, channel, analytics, clock, recorded_sleeps)

        async def main():
            with patch("sales_agent.services.orchestrator.alert_error", new_callable=AsyncMock):
                return await asyncio.gather(
                    orchestrator.handle_incoming(IncomingMessage(USER, "uno", T)),
                    orchestrator.handle_incoming(IncomingMessage(USER, "dos", T)),
                )

        first, second = asyncio.run(main())

        assert calls == ["uno", "dos"]
        assert first is None
        assert second.ok is True


class TestDebouncedEntry:
    def test_burst_is_processed_as_one_turn(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        transition = RecordingTransition()
        orchestrator = _orchestrator(
            transition, clocked_store, channel, analytics, clock, recorded_sleeps, debounce_delay_ms=20
        )

        async def main():
            orchestrator.on_message(USER, "hola", T - 1000, "wamid.1")
            orchestrator.on_message(USER, "quiero un celular", T, "wamid.2")
            assert orchestrator.pending_count(USER) == 2
            await asyncio.sleep(0.1)
            await orchestrator.shutdown()

        asyncio.run(main())

        assert [i.message for i in transition.inputs] == ["hola quiero un celular"]
        channel.mark_as_read_and_show_typing.assert_awaited_once_with("wamid.2")
        # paced from the oldest message in the burst
        assert recorded_sleeps.calls == [pytest.approx(1.3)]

    def test_clear_session_drops_pending_burst(self, clocked_store, channel, analytics, clock, recorded_sleeps):
        clocked_store.update(USER, ConversationPhase(PhaseName.COLLECTING_DNI), ConversationMetadata())
        transition = RecordingTransition()
        orchestrator = _orchestrator(
            transition, clocked_store, channel, analytics, clock, recorded_sleeps, debounce_delay_ms=20
        )

        async def main():
            orchestrator.on_message(USER, "hola", T)
            await orchestrator.clear_session(USER)
            await asyncio.sleep(0.06)
            await orchestrator.shutdown()

        asyncio.run(main())

        assert transition.inputs == []
        assert orchestrator.pending_count(USER) == 0
        assert clocked_store.get_or_create(USER).phase == ConversationPhase.greeting()
