import pytest

from conversation_scheduler.api.deps import get_recovery_service, get_stale_detector
from conversation_scheduler.models.conversation import ConversationStatus, StuckReason
from conversation_scheduler.services.message_recovery import RecoveryAction, RecoveryResult
from conversation_scheduler.services.stale_detector import StaleConversation


class RecoveryServiceStub:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def manual_recovery(self, conversation_id, organization_id):
        self.calls.append((conversation_id, organization_id))
        return self.result


class DetectorStub:
    def __init__(self, stale):
        self.stale = stale

    async def detect_stale_conversations(self):
        return list(self.stale)


def make_stale(conversation_id, organization_id, reason):
    return StaleConversation(
        conversation_id=conversation_id,
        organization_id=organization_id,
        status=ConversationStatus.OPEN.value,
        stuck_reason=reason,
        stale_duration_ms=90_000,
        processing_attempts=2,
        processing_error_count=1,
        last_processing_error="timeout",
    )


def override(client, dependency, stub):
    client.app.dependency_overrides[dependency] = lambda: stub
    return stub


@pytest.mark.api
def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.api
def test_manual_recovery(client):
    stub = override(
        client,
        get_recovery_service,
        RecoveryServiceStub(RecoveryResult(True, RecoveryAction.MANUAL_RECOVERY_COMPLETE)),
    )

    response = client.post("/api/v1/conversations/12/recover", headers={"X-Organization-Id": "3"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["data"] == {
        "conversation_id": 12,
        "success": True,
        "action": "manual_recovery_complete",
    }
    assert stub.calls == [(12, 3)]


@pytest.mark.api
def test_manual_recovery_unknown_conversation(client):
    override(client, get_recovery_service, RecoveryServiceStub(None))

    response = client.post("/api/v1/conversations/12/recover", headers={"X-Organization-Id": "3"})

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.api
def test_manual_recovery_store_failure(client):
    override(
        client,
        get_recovery_service,
        RecoveryServiceStub(RecoveryResult(False, RecoveryAction.RECOVERY_ERROR, error="db down")),
    )

    response = client.post("/api/v1/conversations/12/recover", headers={"X-Organization-Id": "3"})

    assert response.status_code == 503
    assert response.json()["details"] == {"operation": "manual_recovery"}


@pytest.mark.api
def test_organization_header_is_required(client):
    override(
        client,
        get_recovery_service,
        RecoveryServiceStub(RecoveryResult(True, RecoveryAction.MANUAL_RECOVERY_COMPLETE)),
    )

    response = client.post("/api/v1/conversations/12/recover")

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


@pytest.mark.api
def test_stale_listing_is_scoped_to_organization(client):
    override(client, get_stale_detector, DetectorStub([
        make_stale(1, 3, StuckReason.LOCK_EXPIRED),
        make_stale(2, 4, StuckReason.LOCK_EXPIRED),
        make_stale(3, 3, StuckReason.COOLDOWN_STUCK),
    ]))

    response = client.get("/api/v1/conversations/stale", headers={"X-Organization-Id": "3"})

    assert response.status_code == 200
    body = response.json()
    assert [conv["conversation_id"] for conv in body["data"]] == [1, 3]
    assert body["data"][0]["stuck_reason"] == "lock_expired"
    assert body["meta"] == {
        "total": 2,
        "by_reason": {"lock_expired": 1, "cooldown_stuck": 1},
    }
