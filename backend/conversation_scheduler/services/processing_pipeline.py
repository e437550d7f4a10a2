"""Processing pipeline: claims a conversation's lease and runs the platform handler."""

from __future__ import annotations

import importlib
import logging
import os
import socket
import uuid
from typing import Awaitable, Callable, Optional, Protocol, Union

from ..core.config import settings
from ..models.conversation import Conversation, ConversationStatus
from .conversation_store import ConversationStore, conversation_store

logger = logging.getLogger(__name__)

# Returns the status the conversation should move to once handled
# (``None`` leaves it open for the next customer message)
ConversationHandler = Callable[
    [Conversation], Awaitable[Optional[Union[ConversationStatus, str]]]
]


class ProcessingPipeline(Protocol):
    """Anything the scheduler can hand a ready conversation to."""

    async def process(self, conversation: Conversation) -> bool:
        ...


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def load_handler(path: str) -> ConversationHandler:
    """Resolve a ``package.module:callable`` reference to the conversation handler."""
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Invalid handler reference '{path}', expected 'package.module:callable'")

    module = importlib.import_module(module_name)
    handler = getattr(module, attribute, None)
    if handler is None or not callable(handler):
        raise ValueError(f"Handler '{attribute}' not found in module '{module_name}'")
    return handler


class ClaimingPipeline:
    """
    Run a handler under the conversation's processing lease.

    A conversation is only handled after its lease has been claimed; a
    conversation claimed by another worker is skipped. Handler failures are
    recorded on the conversation and re-raised for the caller to log.
    """

    def __init__(
        self,
        handler: ConversationHandler,
        store: Optional[ConversationStore] = None,
        worker_id: Optional[str] = None,
        lock_ttl_seconds: Optional[int] = None
    ) -> None:
        self.handler = handler
        self.store = store or conversation_store
        self.worker_id = worker_id or default_worker_id()
        self.lock_ttl_seconds = lock_ttl_seconds or settings.PROCESSING_LOCK_TTL_SECONDS

    async def process(self, conversation: Conversation) -> bool:
        """Returns True when the handler ran to completion, False when the lease was taken."""
        context = {"conversation_id": conversation.id, "worker_id": self.worker_id}

        claimed = await self.store.acquire_lock(
            conversation.id, self.worker_id, self.lock_ttl_seconds
        )
        if not claimed:
            return False

        try:
            next_status = await self.handler(conversation)
        except Exception as e:
            # Logged by the caller
            await self.store.record_processing_failure(conversation.id, self.worker_id, str(e))
            raise

        applied = await self.store.record_processing_success(
            conversation.id,
            self.worker_id,
            next_status or ConversationStatus.OPEN,
        )
        if not applied:
            logger.info(
                f"Conversation {conversation.id} changed while processing; result not recorded",
                extra=context,
            )
        return True
