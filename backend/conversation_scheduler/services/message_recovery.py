"""
Message Recovery Service
Remediates stale conversations reported by the detector and hands them to a
human once automated recovery is exhausted.

Every automated write is a single conditional update that compares
``recovery_attempts`` with the value the detector observed, so two
passes racing on the same conversation cannot both apply a remediation.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.sql.elements import ColumnElement

from ..core.config import settings
from ..models.conversation import (
    ACTIVE_STATUSES,
    Conversation,
    ConversationStatus,
    StuckReason,
    clear_lease,
    clear_stuck_markers,
    compute_backoff_ms,
    requeue,
)
from ..models.message import MessageType
from ..utils.dates import as_naive_utc, utcnow
from .conversation_events import ConversationEventsService, conversation_events_service
from .conversation_store import ConversationStore, conversation_store
from .stale_detector import StaleConversation

logger = logging.getLogger(__name__)

ESCALATION_CUSTOMER_MESSAGE = (
    "We're having technical difficulties processing your request. "
    "A human agent will assist you shortly."
)


class RecoveryAction:
    CONVERSATION_NOT_FOUND = "conversation_not_found"
    DRY_RUN = "dry_run"
    CLEARED_LOCK_AND_REQUEUED = "cleared_lock_and_requeued"
    REQUEUED_FOR_PROCESSING = "requeued_for_processing"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    BACKOFF_PENDING = "backoff_pending"
    REQUEUED_AFTER_BACKOFF = "requeued_after_backoff"
    BACKOFF_RETRY_SKIPPED = "backoff_retry_skipped"
    RESET_AND_REQUEUED = "reset_and_requeued"
    CLEARED_COOLDOWN_AND_REQUEUED = "cleared_cooldown_and_requeued"
    ESCALATED_TO_HUMAN = "escalated_to_human"
    UNKNOWN_STUCK_REASON = "unknown_stuck_reason"
    RECOVERY_CONFLICT = "recovery_conflict"
    RECOVERY_ERROR = "recovery_error"
    MANUAL_RECOVERY_COMPLETE = "manual_recovery_complete"


@dataclass
class RecoveryResult:
    success: bool
    action: str
    error: Optional[str] = None
    backoff_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


# Reason-specific field updates; each also clears the cached classification
REMEDIATIONS: Dict[StuckReason, tuple] = {
    StuckReason.LOCK_EXPIRED: (
        lambda: {**clear_lease(), **requeue(), **clear_stuck_markers()},
        RecoveryAction.CLEARED_LOCK_AND_REQUEUED,
    ),
    StuckReason.NO_RESPONSE_TIMEOUT: (
        lambda: {**requeue(), **clear_stuck_markers()},
        RecoveryAction.REQUEUED_FOR_PROCESSING,
    ),
    StuckReason.ABANDONED_PROCESSING: (
        lambda: {**clear_lease(), **requeue(), **clear_stuck_markers()},
        RecoveryAction.RESET_AND_REQUEUED,
    ),
    StuckReason.COOLDOWN_STUCK: (
        lambda: {"cooldown_until": None, "needs_processing": True, **clear_stuck_markers()},
        RecoveryAction.CLEARED_COOLDOWN_AND_REQUEUED,
    ),
}


class MessageRecoveryService:
    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        events: Optional[ConversationEventsService] = None,
        max_recovery_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store or conversation_store
        self.events = events or conversation_events_service
        self.max_recovery_attempts = (
            max_recovery_attempts
            if max_recovery_attempts is not None
            else settings.MAX_RECOVERY_ATTEMPTS
        )
        self._clock = clock

    async def recover(
        self,
        stale: StaleConversation,
        dry_run: bool = False
    ) -> RecoveryResult:
        """
        Main entry point for recovering a stale conversation.

        Never raises: every failure is reported as a RecoveryResult.
        """
        context = {
            "conversation_id": stale.conversation_id,
            "organization_id": stale.organization_id,
            "stuck_reason": getattr(stale.stuck_reason, "value", stale.stuck_reason),
        }
        try:
            conversation = await self.store.get_by_id(stale.conversation_id)
            if not conversation:
                return RecoveryResult(False, RecoveryAction.CONVERSATION_NOT_FOUND)

            logger.info(
                f"Attempting recovery for conversation {stale.conversation_id} "
                f"(stale {stale.stale_duration_ms:.0f}ms, attempts={stale.processing_attempts}, "
                f"errors={stale.processing_error_count})",
                extra=context,
            )

            if dry_run:
                return RecoveryResult(True, RecoveryAction.DRY_RUN)

            # Another pass already acted on this observation
            if (conversation.recovery_attempts or 0) != stale.recovery_attempts:
                return self._conflict(conversation)

            if stale.recovery_attempts >= self.max_recovery_attempts:
                return await self._escalate_to_human(conversation, stale.stuck_reason)

            if stale.stuck_reason == StuckReason.REPEATED_FAILURES:
                return await self._recover_from_repeated_failures(conversation)

            remediation = REMEDIATIONS.get(stale.stuck_reason)
            if remediation is None:
                logger.error(
                    f"Unknown stuck reason {stale.stuck_reason!r} for conversation {conversation.id}",
                    extra=context,
                )
                return RecoveryResult(False, RecoveryAction.UNKNOWN_STUCK_REASON)

            build_fields, action = remediation
            if not await self._apply_attempt(conversation, build_fields()):
                return self._conflict(conversation)

            logger.info(
                f"Recovered conversation {conversation.id}: {action}",
                extra={**context, "action": action},
            )
            return RecoveryResult(True, action)

        except Exception as e:
            logger.error(
                f"Recovery failed for conversation {stale.conversation_id}: {e}",
                extra=context,
                exc_info=True,
            )
            return RecoveryResult(False, RecoveryAction.RECOVERY_ERROR, error=str(e))

    def _attempt_guards(self, conversation: Conversation) -> List[ColumnElement]:
        # ``conversation.recovery_attempts`` has already been matched against
        # the detector's observation in recover()
        return [
            Conversation.recovery_attempts == (conversation.recovery_attempts or 0),
            Conversation.assigned_user_id.is_(None),
            Conversation.status.in_(ACTIVE_STATUSES),
        ]

    async def _apply_attempt(self, conversation: Conversation, fields: Dict[str, Any]) -> bool:
        """Count one recovery attempt and apply ``fields`` in the same statement."""
        fields = {
            **fields,
            "recovery_attempts": (conversation.recovery_attempts or 0) + 1,
            "last_recovery_attempt_at": self._clock(),
        }
        return await self.store.update_fields(
            conversation.id, fields, *self._attempt_guards(conversation)
        )

    def _conflict(self, conversation: Conversation) -> RecoveryResult:
        logger.warning(
            f"Conversation {conversation.id} changed during recovery; leaving it for the next pass",
            extra={"conversation_id": conversation.id, "action": RecoveryAction.RECOVERY_CONFLICT},
        )
        return RecoveryResult(False, RecoveryAction.RECOVERY_CONFLICT)

    async def _recover_from_repeated_failures(self, conversation: Conversation) -> RecoveryResult:
        """
        Park the conversation for an exponential backoff window.

        The returned ``backoff_ms`` tells the scheduler when to call
        :meth:`complete_backoff_retry`; until then the conversation is neither
        claimable nor counted again by later detector passes.
        """
        error_count = conversation.processing_error_count or 0

        if error_count >= self.max_recovery_attempts:
            return await self._escalate_to_human(conversation, StuckReason.REPEATED_FAILURES)

        now = self._clock()
        backoff_until = as_naive_utc(conversation.cooldown_until)
        parked = (
            conversation.is_stuck
            and conversation.stuck_reason == StuckReason.REPEATED_FAILURES.value
        )
        if parked and backoff_until is not None and backoff_until > now:
            remaining = int((backoff_until - now).total_seconds() * 1000)
            return RecoveryResult(True, RecoveryAction.BACKOFF_PENDING, backoff_ms=remaining)

        if parked:
            # The window passed without its deferred retry running
            return await self._requeue_expired_backoff(conversation)

        backoff_ms = compute_backoff_ms(error_count)
        applied = await self._apply_attempt(conversation, {
            **clear_lease(),
            "status": ConversationStatus.OPEN.value,
            "needs_processing": False,
            "cooldown_until": now + timedelta(milliseconds=backoff_ms),
            "is_stuck": True,
            "stuck_reason": StuckReason.REPEATED_FAILURES.value,
            "stuck_detected_at": now,
        })
        if not applied:
            return self._conflict(conversation)

        logger.info(
            f"Applying {backoff_ms}ms backoff for conversation {conversation.id}",
            extra={
                "conversation_id": conversation.id,
                "action": RecoveryAction.RETRY_WITH_BACKOFF,
                "backoff_ms": backoff_ms,
            },
        )
        return RecoveryResult(True, RecoveryAction.RETRY_WITH_BACKOFF, backoff_ms=backoff_ms)

    async def _requeue_expired_backoff(self, conversation: Conversation) -> RecoveryResult:
        applied = await self._apply_attempt(conversation, {
            **clear_lease(),
            **requeue(),
            **clear_stuck_markers(),
            "cooldown_until": None,
        })
        if not applied:
            return self._conflict(conversation)

        logger.info(
            f"Requeued conversation {conversation.id} after a missed backoff retry",
            extra={"conversation_id": conversation.id, "action": RecoveryAction.REQUEUED_AFTER_BACKOFF},
        )
        return RecoveryResult(True, RecoveryAction.REQUEUED_AFTER_BACKOFF)

    async def complete_backoff_retry(self, conversation_id: int) -> RecoveryResult:
        """
        Requeue a conversation whose backoff window was scheduled by a
        REPEATED_FAILURES recovery. Safe to call more than once.
        """
        try:
            applied = await self.store.update_fields(
                conversation_id,
                {
                    **clear_lease(),
                    **requeue(),
                    **clear_stuck_markers(),
                    "cooldown_until": None,
                },
                Conversation.is_stuck.is_(True),
                Conversation.stuck_reason == StuckReason.REPEATED_FAILURES.value,
                Conversation.assigned_user_id.is_(None),
                Conversation.status.in_(ACTIVE_STATUSES),
            )
        except Exception as e:
            logger.error(
                f"Backoff retry failed for conversation {conversation_id}: {e}",
                extra={"conversation_id": conversation_id},
                exc_info=True,
            )
            return RecoveryResult(False, RecoveryAction.RECOVERY_ERROR, error=str(e))

        if not applied:
            logger.debug(
                f"Backoff retry for conversation {conversation_id} no longer applies",
                extra={"conversation_id": conversation_id},
            )
            return RecoveryResult(False, RecoveryAction.BACKOFF_RETRY_SKIPPED)

        logger.info(
            f"Requeued conversation {conversation_id} after backoff",
            extra={"conversation_id": conversation_id, "action": RecoveryAction.REQUEUED_AFTER_BACKOFF},
        )
        return RecoveryResult(True, RecoveryAction.REQUEUED_AFTER_BACKOFF)

    async def _escalate_to_human(self, conversation: Conversation, reason) -> RecoveryResult:
        reason_value = getattr(reason, "value", reason)

        applied = await self.store.update_fields(
            conversation.id,
            {
                "status": ConversationStatus.PENDING_HUMAN.value,
                "needs_processing": False,
                **clear_stuck_markers(),
            },
            *self._attempt_guards(conversation),
        )
        if not applied:
            return self._conflict(conversation)

        conversation.status = ConversationStatus.PENDING_HUMAN.value
        timestamp = self._clock().isoformat()

        # The state change is committed; everything below is best effort
        try:
            await self.store.append_message(
                conversation.id,
                ESCALATION_CUSTOMER_MESSAGE,
                MessageType.BOT_AGENT,
                metadata={
                    "is_escalation": True,
                    "escalation_reason": reason_value,
                    "timestamp": timestamp,
                },
                sender="system",
            )
        except Exception as e:
            logger.error(
                f"Failed to add escalation notice to conversation {conversation.id}: {e}",
                extra={"conversation_id": conversation.id},
            )

        try:
            await self.store.append_message(
                conversation.id,
                (
                    f"Conversation escalated to human due to: {reason_value}. "
                    f"Processing errors: {conversation.processing_error_count or 0}. "
                    f"Last error: {conversation.last_processing_error or 'N/A'}. "
                    f"Recovery attempts: {conversation.recovery_attempts or 0}."
                ),
                MessageType.SYSTEM,
                metadata={
                    "is_escalation": True,
                    "escalation_reason": reason_value,
                    "processing_errors": conversation.processing_error_count or 0,
                    "last_error": conversation.last_processing_error,
                    "recovery_attempts": conversation.recovery_attempts or 0,
                    "timestamp": timestamp,
                },
                sender="system",
            )
        except Exception as e:
            logger.error(
                f"Failed to add escalation diagnostics to conversation {conversation.id}: {e}",
                extra={"conversation_id": conversation.id},
            )

        try:
            await self.events.publish_status_changed(conversation, ["status"])
        except Exception as e:
            logger.error(
                f"Failed to publish stuck conversation alert for {conversation.id}: {e}",
                extra={"conversation_id": conversation.id},
            )

        logger.warning(
            f"Escalated conversation {conversation.id} to human",
            extra={
                "conversation_id": conversation.id,
                "organization_id": conversation.organization_id,
                "stuck_reason": reason_value,
                "action": RecoveryAction.ESCALATED_TO_HUMAN,
            },
        )
        return RecoveryResult(True, RecoveryAction.ESCALATED_TO_HUMAN)

    async def manual_recovery(
        self,
        conversation_id: int,
        organization_id: int
    ) -> Optional[RecoveryResult]:
        """
        Operator-triggered reset of every processing, stuck, cooldown and error
        field. The only path that sets ``recovery_attempts`` back to zero.

        Returns None when the conversation does not exist in the organization
        or disappears before the reset is written.
        """
        try:
            conversation = await self.store.get_by_id_and_organization(conversation_id, organization_id)
            if not conversation:
                return None

            applied = await self.store.update_fields(
                conversation.id,
                {
                    **clear_lease(),
                    **requeue(),
                    **clear_stuck_markers(),
                    "cooldown_until": None,
                    "processing_error_count": 0,
                    "last_processing_error": None,
                    "last_processing_error_at": None,
                    "recovery_attempts": 0,
                },
                Conversation.organization_id == organization_id,
            )
            if not applied:
                return None
        except Exception as e:
            logger.error(
                f"Manual recovery failed for conversation {conversation_id}: {e}",
                extra={"conversation_id": conversation_id, "organization_id": organization_id},
                exc_info=True,
            )
            return RecoveryResult(False, RecoveryAction.RECOVERY_ERROR, error=str(e))

        logger.info(
            f"Manual recovery completed for conversation {conversation_id}",
            extra={
                "conversation_id": conversation_id,
                "organization_id": organization_id,
                "action": RecoveryAction.MANUAL_RECOVERY_COMPLETE,
            },
        )
        return RecoveryResult(True, RecoveryAction.MANUAL_RECOVERY_COMPLETE)


# Global instance
message_recovery_service = MessageRecoveryService()
