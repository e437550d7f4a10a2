"""Shared FastAPI dependencies for the operator API."""

from typing import Optional

from fastapi import Header

from ..core.exceptions import ForbiddenException
from ..services.message_recovery import MessageRecoveryService, message_recovery_service
from ..services.stale_detector import StaleMessageDetectorService, stale_message_detector


async def get_organization_id(
    x_organization_id: Optional[int] = Header(default=None, alias="X-Organization-Id")
) -> int:
    """Organization the caller acts for; set by the authenticating gateway."""
    if x_organization_id is None:
        raise ForbiddenException("Organization context required")
    return x_organization_id


def get_recovery_service() -> MessageRecoveryService:
    return message_recovery_service


def get_stale_detector() -> StaleMessageDetectorService:
    return stale_message_detector
