"""
Conversation store: the relational coordination substrate for the scheduler.

All mutations are targeted field updates issued as single ``UPDATE`` statements
guarded by predicates, so concurrent workers and concurrent recovery passes
coordinate through the row itself rather than through in-process locks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from ..core import database
from ..models.conversation import (
    ACTIVE_STATUSES,
    REPEATED_FAILURE_THRESHOLD,
    Conversation,
    ConversationStatus,
    clear_lease,
    clear_stuck_markers,
    compute_backoff_ms,
)
from ..models.message import IN_SCOPE_MESSAGE_TYPES, Message, MessageType
from ..utils.dates import utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

_CONVERSATION_COLUMNS = frozenset(Conversation.__table__.columns.keys())


@dataclass
class StalenessCandidate:
    """A conversation row plus the message-derived fields the detector needs."""

    conversation: Conversation
    last_customer_message_at: datetime
    last_message_type: str


def _lease_not_live(now: datetime) -> ColumnElement:
    return or_(
        Conversation.processing_locked_until.is_(None),
        Conversation.processing_locked_until < now,
    )


def _automation_allowed() -> List[ColumnElement]:
    """Guards shared by every automated write: unassigned and non-terminal."""
    return [
        Conversation.assigned_user_id.is_(None),
        Conversation.status.in_(ACTIVE_STATUSES),
    ]


class ConversationStore:
    """Read and conditionally update conversations and their message log."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None
    ) -> None:
        self._session_factory = session_factory

    def _session(self) -> AsyncSession:
        if self._session_factory is not None:
            return self._session_factory()
        # Resolved per call so a replaced session factory is picked up
        return database.get_db_session()

    # Reads

    async def get_by_id(self, conversation_id: int) -> Optional[Conversation]:
        async with self._session() as session:
            return await session.get(Conversation, conversation_id)

    async def get_by_id_and_organization(
        self,
        conversation_id: int,
        organization_id: int
    ) -> Optional[Conversation]:
        async with self._session() as session:
            result = await session.execute(
                select(Conversation).where(
                    Conversation.id == conversation_id,
                    Conversation.organization_id == organization_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_messages(self, conversation_id: int) -> List[Message]:
        async with self._session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
            )
            return list(result.scalars().all())

    async def find_candidates_for_staleness(
        self,
        threshold_ms: int,
        now: Optional[datetime] = None
    ) -> List[StalenessCandidate]:
        """
        Find conversations whose customer is still waiting past the threshold
        and whose processing state matches at least one stuck condition.

        Results are ordered oldest customer message first.
        """
        now = now or utcnow()
        threshold_date = now - timedelta(milliseconds=threshold_ms)

        last_message_type = (
            select(Message.type)
            .where(
                Message.conversation_id == Conversation.id,
                Message.type.in_(IN_SCOPE_MESSAGE_TYPES),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
            .correlate(Conversation)
            .scalar_subquery()
        )
        last_customer_message_at = (
            select(Message.created_at)
            .where(
                Message.conversation_id == Conversation.id,
                Message.type == MessageType.CUSTOMER.value,
            )
            .order_by(Message.created_at.desc())
            .limit(1)
            .correlate(Conversation)
            .scalar_subquery()
        )

        stmt = (
            select(
                Conversation,
                last_customer_message_at.label("last_customer_message_at"),
                last_message_type.label("last_message_type"),
            )
            .where(
                Conversation.status.in_(ACTIVE_STATUSES),
                Conversation.assigned_user_id.is_(None),
                last_message_type == MessageType.CUSTOMER.value,
                last_customer_message_at < threshold_date,
                or_(
                    Conversation.is_stuck.is_(True),
                    and_(
                        Conversation.status == ConversationStatus.PROCESSING.value,
                        Conversation.processing_locked_until < now,
                    ),
                    and_(
                        Conversation.needs_processing.is_(True),
                        _lease_not_live(now),
                    ),
                    and_(
                        Conversation.cooldown_until.isnot(None),
                        Conversation.cooldown_until < now,
                        Conversation.needs_processing.is_(False),
                    ),
                    Conversation.processing_error_count >= REPEATED_FAILURE_THRESHOLD,
                ),
            )
            .order_by(last_customer_message_at.asc(), Conversation.id.asc())
        )

        async with self._session() as session:
            result = await session.execute(stmt)
            return [
                StalenessCandidate(
                    conversation=row[0],
                    last_customer_message_at=row[1],
                    last_message_type=row[2],
                )
                for row in result.all()
            ]

    async def find_ready_for_processing(
        self,
        now: Optional[datetime] = None,
        limit: int = 50
    ) -> List[Conversation]:
        """Conversations with unprocessed input whose debounce window has passed."""
        now = now or utcnow()
        async with self._session() as session:
            result = await session.execute(
                select(Conversation)
                .where(
                    Conversation.needs_processing.is_(True),
                    *_automation_allowed(),
                    or_(
                        Conversation.cooldown_until.is_(None),
                        Conversation.cooldown_until <= now,
                    ),
                    _lease_not_live(now),
                )
                .order_by(Conversation.updated_at.asc(), Conversation.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # Writes

    async def update_fields(
        self,
        conversation_id: int,
        fields: Dict[str, Any],
        *conditions: ColumnElement
    ) -> bool:
        """
        Apply a partial update to one conversation.

        Args:
            conversation_id: Conversation ID
            fields: Column values to set; only these columns are written
            conditions: Extra predicates the row must satisfy for the update
                to apply (compare-and-swap guards)

        Returns:
            True if a row matched and was updated, False otherwise
        """
        unknown = set(fields) - _CONVERSATION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {', '.join(sorted(unknown))}")

        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id, *conditions)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            return result.rowcount > 0

    async def append_message(
        self,
        conversation_id: int,
        content: str,
        message_type: MessageType,
        metadata: Optional[Dict[str, Any]] = None,
        sender: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            content=content,
            type=MessageType(message_type).value,
            sender=sender,
            msg_metadata=metadata or {},
            created_at=created_at or utcnow(),
        )
        async with self._session() as session:
            try:
                session.add(message)
                await session.commit()
                await session.refresh(message)
            except Exception:
                await session.rollback()
                raise
        return message

    async def record_customer_message(
        self,
        conversation_id: int,
        content: str,
        cooldown_ms: int,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Message:
        """
        Append a customer message and queue the conversation for processing
        once the debounce window ``cooldown_ms`` has passed.

        Conversations owned by a human or in a terminal state only receive the
        message; their processing fields are left untouched.
        """
        now = now or utcnow()
        message = Message(
            conversation_id=conversation_id,
            content=content,
            type=MessageType.CUSTOMER.value,
            sender="customer",
            msg_metadata=metadata or {},
            created_at=now,
        )
        async with self._session() as session:
            try:
                session.add(message)
                await session.execute(
                    update(Conversation)
                    .where(Conversation.id == conversation_id, *_automation_allowed())
                    .values(
                        needs_processing=True,
                        cooldown_until=now + timedelta(milliseconds=cooldown_ms),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                await session.refresh(message)
            except Exception:
                await session.rollback()
                raise
        return message

    async def acquire_lock(
        self,
        conversation_id: int,
        worker_id: str,
        ttl_seconds: int,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Claim the processing lease in a single conditional update.

        The claim only succeeds when no live lease is held, the conversation is
        unassigned and not terminal; a second concurrent claim matches no row.
        """
        now = now or utcnow()
        claimed = await self.update_fields(
            conversation_id,
            {
                "status": ConversationStatus.PROCESSING.value,
                "processing_locked_until": now + timedelta(seconds=ttl_seconds),
                "processing_locked_by": worker_id,
                "processing_attempts": Conversation.processing_attempts + 1,
            },
            *_automation_allowed(),
            _lease_not_live(now),
        )
        if not claimed:
            logger.debug(
                f"Lease for conversation {conversation_id} not acquired",
                extra={"conversation_id": conversation_id, "worker_id": worker_id},
            )
        return claimed

    async def release_lock(self, conversation_id: int, worker_id: str) -> bool:
        """Drop the lease if (and only if) ``worker_id`` still holds it."""
        return await self.update_fields(
            conversation_id,
            clear_lease(),
            Conversation.processing_locked_by == worker_id,
        )

    async def record_processing_success(
        self,
        conversation_id: int,
        worker_id: str,
        next_status: ConversationStatus = ConversationStatus.OPEN,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Release the lease and mark the pending input as handled.

        Only applies while the row is still ``processing`` under this worker's
        lease; if a human or a recovery pass changed the row meanwhile, the
        lease is released and nothing else is written.
        """
        now = now or utcnow()
        applied = await self.update_fields(
            conversation_id,
            {
                **clear_lease(),
                **clear_stuck_markers(),
                "status": ConversationStatus(next_status).value,
                "needs_processing": False,
                "cooldown_until": None,
                "processing_error_count": 0,
                "last_processed_at": now,
            },
            Conversation.processing_locked_by == worker_id,
            Conversation.status == ConversationStatus.PROCESSING.value,
        )
        if not applied:
            await self.release_lock(conversation_id, worker_id)
        return applied

    async def record_processing_failure(
        self,
        conversation_id: int,
        worker_id: str,
        error: str,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Count a failed processing attempt and hand the conversation back to the
        queue behind an exponential backoff, so a failing handler is not
        retried on every tick.
        """
        now = now or utcnow()
        conversation = await self.get_by_id(conversation_id)
        if conversation is None:
            return False

        previous_errors = conversation.processing_error_count or 0
        error_count = previous_errors + 1
        applied = await self.update_fields(
            conversation_id,
            {
                **clear_lease(),
                "status": ConversationStatus.OPEN.value,
                "processing_error_count": error_count,
                "last_processing_error": (error or "")[:MAX_ERROR_LENGTH],
                "last_processing_error_at": now,
                "cooldown_until": now + timedelta(milliseconds=compute_backoff_ms(error_count)),
            },
            Conversation.processing_locked_by == worker_id,
            Conversation.status == ConversationStatus.PROCESSING.value,
            Conversation.processing_error_count == previous_errors,
        )
        if not applied:
            await self.release_lock(conversation_id, worker_id)
        return applied


# Global instance
conversation_store = ConversationStore()
