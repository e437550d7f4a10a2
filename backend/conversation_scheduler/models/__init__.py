from ..core.database import Base
from .conversation import (
    Conversation,
    ConversationStatus,
    StuckReason,
    ACTIVE_STATUSES,
    REPEATED_FAILURE_THRESHOLD,
    clear_stuck_markers,
    clear_lease,
    requeue,
)
from .message import Message, MessageType, IN_SCOPE_MESSAGE_TYPES
from .organization import Organization
from .user import User

__all__ = [
    "Base",
    "Conversation",
    "ConversationStatus",
    "StuckReason",
    "ACTIVE_STATUSES",
    "REPEATED_FAILURE_THRESHOLD",
    "clear_stuck_markers",
    "clear_lease",
    "requeue",
    "Message",
    "MessageType",
    "IN_SCOPE_MESSAGE_TYPES",
    "Organization",
    "User",
]
