"""Conversation state machine contract.

The decision function itself lives outside this service. It is a pure
``transition(TransitionInput) -> TransitionResult`` with no I/O; everything
here is the data it consumes and produces. Side effects are described as
``Command`` values and carried out by the command executor.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional, Union


class PhaseName(str, Enum):
    GREETING = "greeting"
    CONFIRMING_CLIENT = "confirming_client"
    COLLECTING_DNI = "collecting_dni"
    CHECKING_ELIGIBILITY = "checking_eligibility"
    OFFERING_PRODUCTS = "offering_products"
    HANDLING_OBJECTION = "handling_objection"
    SELECTING_INSTALLMENTS = "selecting_installments"
    CLOSING = "closing"
    ESCALATED = "escalated"
    WAITING_FOR_RECOVERY = "waiting_for_recovery"


# Phases in which product images may be shown.
OFFERING_PHASES = frozenset({PhaseName.OFFERING_PRODUCTS.value, PhaseName.HANDLING_OBJECTION.value})


@dataclass(frozen=True)
class ConversationPhase:
    """One stage of the funnel plus the fields that stage carries."""

    phase: str
    fields: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.phase, PhaseName):
            object.__setattr__(self, "phase", self.phase.value)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def with_fields(self, **updates: Any) -> "ConversationPhase":
        return replace(self, fields={**self.fields, **updates})

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, **self.fields}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationPhase":
        data = dict(data)
        phase = data.pop("phase")
        return cls(phase=phase, fields=data)

    @classmethod
    def greeting(cls) -> "ConversationPhase":
        return cls(PhaseName.GREETING)

    @classmethod
    def escalated(cls, reason: str) -> "ConversationPhase":
        return cls(PhaseName.ESCALATED, {"reason": reason})


@dataclass
class ConversationMetadata:
    segment: Optional[str] = None
    created_at: Optional[float] = None
    last_activity_at: Optional[float] = None
    is_returning_user: bool = False
    last_category: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "segment": self.segment,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "is_returning_user": self.is_returning_user,
            "last_category": self.last_category,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ConversationMetadata":
        data = data or {}
        return cls(
            segment=data.get("segment"),
            created_at=data.get("created_at"),
            last_activity_at=data.get("last_activity_at"),
            is_returning_user=bool(data.get("is_returning_user", False)),
            last_category=data.get("last_category"),
        )


@dataclass
class Conversation:
    user_id: str
    phase: ConversationPhase
    metadata: ConversationMetadata
    is_simulation: bool = False


class CommandType(str, Enum):
    SEND_MESSAGE = "send_message"
    SEND_IMAGES = "send_images"
    TRACK_EVENT = "track_event"
    NOTIFY_TEAM = "notify_team"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class SendMessage:
    text: str
    type: CommandType = field(default=CommandType.SEND_MESSAGE, init=False)


@dataclass(frozen=True)
class SendImages:
    category: str
    type: CommandType = field(default=CommandType.SEND_IMAGES, init=False)


@dataclass(frozen=True)
class TrackEvent:
    event: str
    metadata: dict[str, Any] = field(default_factory=dict)
    type: CommandType = field(default=CommandType.TRACK_EVENT, init=False)


@dataclass(frozen=True)
class NotifyTeam:
    channel: str
    message: str
    type: CommandType = field(default=CommandType.NOTIFY_TEAM, init=False)


@dataclass(frozen=True)
class Escalate:
    reason: str
    type: CommandType = field(default=CommandType.ESCALATE, init=False)


Command = Union[SendMessage, SendImages, TrackEvent, NotifyTeam, Escalate]


@dataclass(frozen=True)
class EnrichmentRequest:
    """External data the decision function needs before it can decide."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EnrichmentResult:
    type: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Update:
    next_phase: ConversationPhase
    commands: list[Command] = field(default_factory=list)


@dataclass
class NeedEnrichment:
    request: EnrichmentRequest
    pending_phase: Optional[ConversationPhase] = None


TransitionResult = Union[Update, NeedEnrichment]


@dataclass
class TransitionInput:
    phase: ConversationPhase
    message: str
    metadata: ConversationMetadata
    enrichment: Optional[EnrichmentResult] = None


TransitionFn = Callable[[TransitionInput], TransitionResult]


def is_terminal(result: TransitionResult) -> bool:
    """True when the result can be executed without further enrichment."""
    return not isinstance(result, NeedEnrichment)
