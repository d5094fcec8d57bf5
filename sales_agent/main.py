from typing import Optional

from fastapi import FastAPI

from sales_agent.config import settings
from sales_agent.database import Base, SessionLocal, engine
from sales_agent.logging_config import get_logger, setup_logging
from sales_agent.routers import webhook
from sales_agent.services.analytics_service import Analytics, LoggingAnalytics
from sales_agent.services.command_executor import CommandExecutor
from sales_agent.services.conversation_store import ConversationStore, SqlConversationStore
from sales_agent.services.eligibility_service import CheckEligibilityHandler, EligibilityProvider
from sales_agent.services.enrichment_loop import EnrichmentLoop
from sales_agent.services.enrichment_service import EnrichmentRegistry
from sales_agent.services.notifier_client import NotifierClient
from sales_agent.services.orchestrator import Orchestrator
from sales_agent.services.state_machine import TransitionFn

setup_logging(settings.log_level)

logger = get_logger("main")


def build_orchestrator(
    transition: TransitionFn,
    eligibility_provider: EligibilityProvider,
    store: Optional[ConversationStore] = None,
    channel: Optional[NotifierClient] = None,
    analytics: Optional[Analytics] = None,
) -> Orchestrator:
    """Wire the orchestrator with its collaborators."""
    if store is None:
        Base.metadata.create_all(bind=engine)
        store = SqlConversationStore(SessionLocal)
    channel = channel or NotifierClient()
    analytics = analytics or LoggingAnalytics()

    registry = EnrichmentRegistry()
    eligibility = CheckEligibilityHandler(eligibility_provider, analytics)
    registry.register(eligibility.enrichment_type, eligibility)

    return Orchestrator(
        store=store,
        enrichment_loop=EnrichmentLoop(transition, registry.execute, store),
        executor=CommandExecutor(store, channel, analytics, channel),
        channel=channel,
        debounce_delay_ms=settings.debounce_delay_ms,
        response_delay_ms=settings.bot_response_delay_ms,
    )


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    app = FastAPI(
        title="Sales Agent Orchestrator",
        description="Message orchestration core for the sales chat agent",
        version="0.1.0",
    )
    app.state.orchestrator = orchestrator
    app.include_router(webhook.router)

    @app.on_event("shutdown")
    async def stop_orchestrator() -> None:
        if app.state.orchestrator is not None:
            await app.state.orchestrator.shutdown()
            logger.info("Orchestrator stopped")

    @app.get("/health")
    async def health():
        return {"status": "ok", "orchestrator": app.state.orchestrator is not None}

    return app


app = create_app()
