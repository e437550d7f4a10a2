"""
Conversation model with the processing-control fields the scheduler owns.
"""

from enum import Enum
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.dates import utcnow


class ConversationStatus(str, Enum):
    OPEN = "open"
    PROCESSING = "processing"
    PENDING_HUMAN = "pending-human"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Statuses the scheduler is allowed to claim, classify and remediate
ACTIVE_STATUSES = (ConversationStatus.OPEN.value, ConversationStatus.PROCESSING.value)

# Consecutive processing failures at which a conversation counts as repeatedly failing
REPEATED_FAILURE_THRESHOLD = 3

BASE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 60000


class StuckReason(str, Enum):
    REPEATED_FAILURES = "repeated_failures"
    LOCK_EXPIRED = "lock_expired"
    COOLDOWN_STUCK = "cooldown_stuck"
    ABANDONED_PROCESSING = "abandoned_processing"
    NO_RESPONSE_TIMEOUT = "no_response_timeout"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    assigned_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    title = Column(String, nullable=True)
    channel = Column(String(50), nullable=True, default="webchat")
    conv_metadata = Column(JSON, default=dict)

    status = Column(String(20), nullable=False, default=ConversationStatus.OPEN.value)

    # Processing queue state
    needs_processing = Column(Boolean, nullable=False, default=False)
    processing_locked_until = Column(DateTime, nullable=True)
    processing_locked_by = Column(String(255), nullable=True)
    cooldown_until = Column(DateTime, nullable=True)
    last_processed_at = Column(DateTime, nullable=True)

    # Processing attempt tracking
    processing_attempts = Column(Integer, nullable=False, default=0)
    processing_error_count = Column(Integer, nullable=False, default=0)
    last_processing_error = Column(Text, nullable=True)
    last_processing_error_at = Column(DateTime, nullable=True)

    # Cached stale classification
    is_stuck = Column(Boolean, nullable=False, default=False)
    stuck_detected_at = Column(DateTime, nullable=True)
    stuck_reason = Column(String(50), nullable=True)

    # Recovery tracking
    recovery_attempts = Column(Integer, nullable=False, default=0)
    last_recovery_attempt_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=True)

    organization = relationship("Organization", back_populates="conversations")
    assigned_user = relationship("User")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")

    __table_args__ = (
        Index(
            "idx_conversations_stale_detection",
            "status", "needs_processing", "processing_locked_until", "is_stuck",
        ),
    )

    def __repr__(self):
        return f"<Conversation(id={self.id}, organization_id={self.organization_id}, status='{self.status}')>"


def compute_backoff_ms(error_count: int) -> int:
    """Exponential backoff: 1s, 2s, 4s, 8s ... capped at 60s."""
    return min(BASE_BACKOFF_MS * 2 ** max(error_count, 0), MAX_BACKOFF_MS)


def clear_stuck_markers() -> Dict[str, Any]:
    """Field values that invalidate the cached stale classification.

    Every update that resolves a stuck condition must include these so the
    next detector pass does not reclassify the row with the old reason.
    """
    return {
        "is_stuck": False,
        "stuck_detected_at": None,
        "stuck_reason": None,
    }


def clear_lease() -> Dict[str, Any]:
    return {
        "processing_locked_until": None,
        "processing_locked_by": None,
    }


def requeue() -> Dict[str, Any]:
    return {
        "status": ConversationStatus.OPEN.value,
        "needs_processing": True,
    }
