import time

from fastapi import APIRouter, Depends, HTTPException, Request, status

from sales_agent.logging_config import get_logger
from sales_agent.schemas.webhook import IncomingWebhook, WebhookResponse
from sales_agent.services.orchestrator import Orchestrator

logger = get_logger("webhook")

router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Orchestrator not configured")
    return orchestrator


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(payload: IncomingWebhook, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Accept an inbound chat message and schedule its debounced processing."""
    content = (payload.content or "").strip()
    if not content:
        logger.debug(f"Ignoring empty message from {payload.user_id}")
        return WebhookResponse(success=False, message="Empty message ignored")

    timestamp_seconds = payload.timestamp if payload.timestamp is not None else int(time.time())
    orchestrator.on_message(payload.user_id, content, timestamp_seconds * 1000, payload.message_id)

    return WebhookResponse(
        success=True,
        message="Queued",
        pending=orchestrator.pending_count(payload.user_id),
    )


@router.post("/sessions/{user_id}/reset", response_model=WebhookResponse)
async def reset_session(user_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.clear_session(user_id)
    logger.info(f"Session reset for {user_id}")
    return WebhookResponse(success=True, message="Session reset")
