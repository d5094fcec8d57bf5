from typing import Awaitable, Callable, Optional

from sales_agent.config import MAX_ENRICHMENT_LOOPS
from sales_agent.logging_config import get_logger
from sales_agent.services.alert_service import alert_error
from sales_agent.services.conversation_store import ConversationStore
from sales_agent.services.state_machine import (
    ConversationMetadata,
    ConversationPhase,
    EnrichmentRequest,
    EnrichmentResult,
    Escalate,
    NeedEnrichment,
    NotifyTeam,
    TransitionFn,
    TransitionInput,
    TransitionResult,
    Update,
)

logger = get_logger("enrichment_loop")

LOOP_EXCEEDED_REASON = "enrichment_loop_exceeded"

EnrichmentFetch = Callable[[EnrichmentRequest, str], Awaitable[EnrichmentResult]]


class EnrichmentLoop:
    """Feed external data back into the pure transition until it decides.

    ``transition`` cannot do I/O, so when it needs something (eligibility,
    an LLM answer ...) it returns ``NeedEnrichment``. The loop fetches the
    data and calls ``transition`` again with it. A pending phase attached to
    the request is persisted before the fetch, so a crash during the external
    call resumes from the checkpoint instead of the phase before it.
    """

    def __init__(
        self,
        transition: TransitionFn,
        fetch: EnrichmentFetch,
        store: ConversationStore,
        max_loops: int = MAX_ENRICHMENT_LOOPS,
    ):
        self._transition = transition
        self._fetch = fetch
        self._store = store
        self._max_loops = max_loops

    async def run(
        self,
        phase: ConversationPhase,
        message: str,
        metadata: ConversationMetadata,
        user_id: str,
    ) -> TransitionResult:
        current_phase = phase
        enrichment: Optional[EnrichmentResult] = None
        iterations = 0

        while iterations < self._max_loops:
            iterations += 1

            result = self._transition(
                TransitionInput(phase=current_phase, message=message, metadata=metadata, enrichment=enrichment)
            )

            if not isinstance(result, NeedEnrichment):
                return result

            logger.info(
                f"Enrichment needed: {result.request.type} (iteration {iterations})",
                extra={"context": {"user_id": user_id, "phase": current_phase.phase}},
            )

            if result.pending_phase is not None:
                current_phase = result.pending_phase
                self._store.update(user_id, current_phase, metadata)

            enrichment = await self._fetch(result.request, user_id)

        logger.error(
            f"Max enrichment loops exceeded for {user_id}",
            extra={"context": {"user_id": user_id, "iterations": iterations, "phase": current_phase.phase}},
        )
        await alert_error("Enrichment loop exceeded", {"user_id": user_id, "phase": current_phase.phase})

        return Update(
            next_phase=ConversationPhase.escalated(LOOP_EXCEEDED_REASON),
            commands=[
                NotifyTeam(channel="dev", message=f"Max enrichment loops for {user_id}"),
                Escalate(reason=LOOP_EXCEEDED_REASON),
            ],
        )
