from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from sales_agent.config import settings
from sales_agent.logging_config import get_logger
from sales_agent.models import ConversationRecord
from sales_agent.services.response_timing import now_ms
from sales_agent.services.state_machine import Conversation, ConversationMetadata, ConversationPhase

logger = get_logger("conversation_store")


class ConversationStore(Protocol):
    def get_or_create(self, user_id: str) -> Conversation: ...

    def update(self, user_id: str, phase: ConversationPhase, metadata: ConversationMetadata) -> None: ...

    def is_session_timed_out(self, metadata: ConversationMetadata) -> bool: ...

    def reset_session(self, user_id: str, last_category: Optional[str] = None) -> None: ...


def _session_timed_out(metadata: ConversationMetadata, timeout_minutes: int, now: float) -> bool:
    if timeout_minutes <= 0 or metadata.last_activity_at is None:
        return False
    return now - metadata.last_activity_at > timeout_minutes * 60 * 1000


def _fresh_metadata(now: float, last_category: Optional[str] = None) -> ConversationMetadata:
    return ConversationMetadata(created_at=now, last_activity_at=now, last_category=last_category)


class InMemoryConversationStore:
    """Process-local store. Used for simulations and tests."""

    def __init__(self, timeout_minutes: Optional[int] = None, clock: Callable[[], float] = now_ms):
        self._conversations: dict[str, Conversation] = {}
        self._timeout_minutes = settings.session_timeout_minutes if timeout_minutes is None else timeout_minutes
        self._clock = clock

    def get_or_create(self, user_id: str) -> Conversation:
        conversation = self._conversations.get(user_id)
        if conversation is None:
            conversation = Conversation(
                user_id=user_id,
                phase=ConversationPhase.greeting(),
                metadata=_fresh_metadata(self._clock()),
            )
            self._conversations[user_id] = conversation
        return conversation

    def update(self, user_id: str, phase: ConversationPhase, metadata: ConversationMetadata) -> None:
        conversation = self.get_or_create(user_id)
        metadata.last_activity_at = self._clock()
        conversation.phase = phase
        conversation.metadata = metadata

    def is_session_timed_out(self, metadata: ConversationMetadata) -> bool:
        return _session_timed_out(metadata, self._timeout_minutes, self._clock())

    def reset_session(self, user_id: str, last_category: Optional[str] = None) -> None:
        conversation = self.get_or_create(user_id)
        conversation.phase = ConversationPhase.greeting()
        conversation.metadata = _fresh_metadata(self._clock(), last_category)

    def set_simulation(self, user_id: str, is_simulation: bool = True) -> None:
        self.get_or_create(user_id).is_simulation = is_simulation


class SqlConversationStore:
    """Conversation records in the ``conversations`` table, one row per user."""

    def __init__(
        self,
        session_factory: sessionmaker,
        timeout_minutes: Optional[int] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self._session_factory = session_factory
        self._timeout_minutes = settings.session_timeout_minutes if timeout_minutes is None else timeout_minutes
        self._clock = clock

    def _get_or_create_record(self, db: Session, user_id: str) -> ConversationRecord:
        record = db.query(ConversationRecord).filter(ConversationRecord.user_id == user_id).first()
        if not record:
            now = self._clock()
            record = ConversationRecord(
                user_id=user_id,
                phase=ConversationPhase.greeting().to_dict(),
                metadata_json=_fresh_metadata(now).to_dict(),
                is_simulation=False,
                last_activity_at=now,
            )
            db.add(record)
            db.flush()
        return record

    def get_or_create(self, user_id: str) -> Conversation:
        db = self._session_factory()
        try:
            record = self._get_or_create_record(db, user_id)
            db.commit()
            return Conversation(
                user_id=record.user_id,
                phase=ConversationPhase.from_dict(record.phase),
                metadata=ConversationMetadata.from_dict(record.metadata_json),
                is_simulation=bool(record.is_simulation),
            )
        finally:
            db.close()

    def update(self, user_id: str, phase: ConversationPhase, metadata: ConversationMetadata) -> None:
        db = self._session_factory()
        try:
            record = self._get_or_create_record(db, user_id)
            metadata.last_activity_at = self._clock()
            record.phase = phase.to_dict()
            record.metadata_json = metadata.to_dict()
            record.last_activity_at = metadata.last_activity_at
            db.commit()
        except Exception:
            db.rollback()
            logger.error(f"Failed to persist conversation for {user_id}")
            raise
        finally:
            db.close()

    def is_session_timed_out(self, metadata: ConversationMetadata) -> bool:
        return _session_timed_out(metadata, self._timeout_minutes, self._clock())

    def reset_session(self, user_id: str, last_category: Optional[str] = None) -> None:
        self.update(user_id, ConversationPhase.greeting(), _fresh_metadata(self._clock(), last_category))
