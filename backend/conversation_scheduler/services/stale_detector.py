"""
Stale Message Detector
Finds conversations whose processing looks abandoned and assigns each the
single most severe stuck reason.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.config import settings
from ..models.conversation import (
    REPEATED_FAILURE_THRESHOLD,
    ConversationStatus,
    StuckReason,
)
from ..utils.dates import as_naive_utc, milliseconds_between, utcnow
from .conversation_store import ConversationStore, conversation_store

logger = logging.getLogger(__name__)


@dataclass
class StaleConversation:
    conversation_id: int
    organization_id: int
    status: str
    stuck_reason: StuckReason
    stale_duration_ms: float  # since the last customer message
    processing_attempts: int
    processing_error_count: int
    last_processing_error: Optional[str]
    # Value seen at detection; recovery compares against it before writing
    recovery_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stuck_reason"] = self.stuck_reason.value
        return data


def _deadline_passed(deadline: Optional[datetime], now: datetime) -> bool:
    return deadline is not None and as_naive_utc(deadline) < now


def _has_repeated_failures(conversation, now: datetime) -> bool:
    return (conversation.processing_error_count or 0) >= REPEATED_FAILURE_THRESHOLD


def _lock_expired(conversation, now: datetime) -> bool:
    return (
        conversation.status == ConversationStatus.PROCESSING.value
        and _deadline_passed(conversation.processing_locked_until, now)
    )


def _cooldown_stuck(conversation, now: datetime) -> bool:
    return (
        _deadline_passed(conversation.cooldown_until, now)
        and not conversation.needs_processing
    )


def _abandoned_processing(conversation, now: datetime) -> bool:
    lease = conversation.processing_locked_until
    return bool(conversation.needs_processing) and (
        lease is None or _deadline_passed(lease, now)
    )


# Evaluated top-down, first match wins; NO_RESPONSE_TIMEOUT when nothing matches
STUCK_REASON_RULES: Sequence[Tuple[Callable[[Any, datetime], bool], StuckReason]] = (
    (_has_repeated_failures, StuckReason.REPEATED_FAILURES),
    (_lock_expired, StuckReason.LOCK_EXPIRED),
    (_cooldown_stuck, StuckReason.COOLDOWN_STUCK),
    (_abandoned_processing, StuckReason.ABANDONED_PROCESSING),
)


def classify(conversation, now: datetime) -> StuckReason:
    """Return the most severe stuck reason for a candidate conversation."""
    now = as_naive_utc(now)
    for predicate, reason in STUCK_REASON_RULES:
        if predicate(conversation, now):
            return reason
    return StuckReason.NO_RESPONSE_TIMEOUT


def group_by_reason(conversations: List[StaleConversation]) -> Dict[str, int]:
    return dict(Counter(conv.stuck_reason.value for conv in conversations))


class StaleMessageDetectorService:
    """Read-only scan of the conversation store; never writes classifications."""

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        threshold_ms: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store or conversation_store
        self.threshold_ms = (
            threshold_ms if threshold_ms is not None else settings.STALE_MESSAGE_THRESHOLD_MS
        )
        self._clock = clock

    async def detect_stale_conversations(self) -> List[StaleConversation]:
        """
        Detect conversations that are stuck/stale.

        Store failures are logged and produce an empty result so a failed scan
        never takes the scheduler down.
        """
        now = self._clock()
        try:
            candidates = await self.store.find_candidates_for_staleness(self.threshold_ms, now)
        except Exception as e:
            logger.error(f"Error detecting stale conversations: {e}", exc_info=True)
            return []

        stale_conversations = []
        for candidate in candidates:
            conversation = candidate.conversation
            stale_conversations.append(
                StaleConversation(
                    conversation_id=conversation.id,
                    organization_id=conversation.organization_id,
                    status=conversation.status,
                    stuck_reason=classify(conversation, now),
                    stale_duration_ms=milliseconds_between(candidate.last_customer_message_at, now),
                    processing_attempts=conversation.processing_attempts or 0,
                    processing_error_count=conversation.processing_error_count or 0,
                    last_processing_error=conversation.last_processing_error,
                    recovery_attempts=conversation.recovery_attempts or 0,
                )
            )

        if stale_conversations:
            logger.info(
                f"Found {len(stale_conversations)} stale conversations: "
                f"{group_by_reason(stale_conversations)}"
            )

        return stale_conversations

    async def is_conversation_stuck(self, conversation_id: int) -> bool:
        stale_conversations = await self.detect_stale_conversations()
        return any(conv.conversation_id == conversation_id for conv in stale_conversations)


# Global instance
stale_message_detector = StaleMessageDetectorService()
