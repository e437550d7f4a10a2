"""Operator endpoints for stuck conversations"""

from fastapi import APIRouter, Depends

from ...core.exceptions import ServiceUnavailableException, raise_not_found
from ...core.responses import success_response
from ...services.message_recovery import MessageRecoveryService, RecoveryAction
from ...services.stale_detector import StaleMessageDetectorService, group_by_reason
from ..deps import get_organization_id, get_recovery_service, get_stale_detector

router = APIRouter()


@router.get("/stale")
async def list_stale_conversations(
    organization_id: int = Depends(get_organization_id),
    detector: StaleMessageDetectorService = Depends(get_stale_detector)
):
    """Current detector output for the caller's organization"""

    stale_conversations = [
        conv for conv in await detector.detect_stale_conversations()
        if conv.organization_id == organization_id
    ]

    return success_response(
        data=[conv.to_dict() for conv in stale_conversations],
        meta={
            "total": len(stale_conversations),
            "by_reason": group_by_reason(stale_conversations),
        },
    )


@router.post("/{conversation_id}/recover")
async def recover_conversation(
    conversation_id: int,
    organization_id: int = Depends(get_organization_id),
    recovery: MessageRecoveryService = Depends(get_recovery_service)
):
    """Reset a conversation's processing state and queue it for processing again"""

    result = await recovery.manual_recovery(conversation_id, organization_id)
    if result is None:
        raise_not_found("Conversation not found", "conversation", conversation_id)

    if result.action == RecoveryAction.RECOVERY_ERROR:
        raise ServiceUnavailableException(
            f"Manual recovery failed: {result.error}",
            operation="manual_recovery",
        )

    return success_response(
        data={"conversation_id": conversation_id, **result.to_dict()},
        message="Conversation queued for processing",
    )
