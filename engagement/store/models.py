from dataclasses import dataclass, field, fields as dc_fields
from typing import Any, Dict, Optional

# Engagement states
ACTIVE = "active"
GOODBYE_SENT = "goodbye_sent"
HELP_FLOW = "help_flow"
REMIND_LATER = "remind_later"
DORMANT = "dormant"

STATES = (ACTIVE, GOODBYE_SENT, HELP_FLOW, REMIND_LATER, DORMANT)

# Triggers
USER_MESSAGE = "user_message"
INACTIVITY_14D = "inactivity_14d"
GOODBYE_RESPONSE_1 = "goodbye_response_1"
GOODBYE_RESPONSE_2 = "goodbye_response_2"
GOODBYE_RESPONSE_3 = "goodbye_response_3"
GOODBYE_TIMEOUT = "goodbye_timeout"
REMINDER_DUE = "reminder_due"

TRIGGERS = (
    USER_MESSAGE,
    INACTIVITY_14D,
    GOODBYE_RESPONSE_1,
    GOODBYE_RESPONSE_2,
    GOODBYE_RESPONSE_3,
    GOODBYE_TIMEOUT,
    REMINDER_DUE,
)

# Proactive message types
MSG_GOODBYE = "goodbye"
MSG_WEEKLY_REVIEW = "weekly_review"
MSG_HELP_RESTART = "help_restart"

# Queued message status
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

DEST_INDIVIDUAL = "individual"
DEST_GROUP = "group"


def from_dict(cls, data: dict):
    """Build a dataclass from stored JSON, dropping fields it does not declare."""
    allowed = {f.name for f in dc_fields(cls)}
    return cls(**{k: v for k, v in (data or {}).items() if k in allowed})


@dataclass
class UserEngagementState:
    userId: str
    state: str = ACTIVE
    # All timestamps are epoch milliseconds (UTC).
    lastActivityAt: int = 0
    goodbyeSentAt: Optional[int] = None
    goodbyeExpiresAt: Optional[int] = None
    remindAt: Optional[int] = None
    createdAt: int = 0
    updatedAt: int = 0
    # Optimistic concurrency token; bumped on every committed write.
    version: int = 0


@dataclass
class StateTransition:
    userId: str
    fromState: str
    toState: str
    trigger: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    createdAt: int = 0


@dataclass
class PendingConversationContext:
    userId: str
    flowKind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    createdAt: int = 0
    ttlSec: int = 300

    def expires_at(self) -> int:
        return int(self.createdAt) + int(self.ttlSec) * 1000

    def is_expired(self, now: int) -> bool:
        return int(now) >= self.expires_at()


@dataclass
class MessageDraft:
    userId: str
    messageType: str
    messageKey: str
    idempotencyKey: str
    messageParams: Dict[str, Any] = field(default_factory=dict)
    destination: str = DEST_INDIVIDUAL
    destinationJid: Optional[str] = None
    scheduledFor: Optional[int] = None


@dataclass
class QueuedMessage:
    id: str
    userId: str
    messageType: str
    messageKey: str
    idempotencyKey: str
    messageParams: Dict[str, Any] = field(default_factory=dict)
    destination: str = DEST_INDIVIDUAL
    destinationJid: Optional[str] = None
    scheduledFor: int = 0
    sentAt: Optional[int] = None
    status: str = STATUS_PENDING
    retryCount: int = 0
    errorMessage: Optional[str] = None
    createdAt: int = 0


@dataclass
class UserProfile:
    userId: str
    jid: Optional[str] = None
    groupJid: Optional[str] = None
    preferredDestination: str = DEST_INDIVIDUAL
    locale: Optional[str] = None
    reengagementOptOut: bool = False
