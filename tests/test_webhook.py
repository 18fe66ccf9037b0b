from fastapi.testclient import TestClient
import pytest

from round_settlement.errors import InvalidCredential, TransientReadError
from round_settlement.jobs.settlement_job import settlement_key
from round_settlement.models.db import NotificationLog
from round_settlement.services.notification_ingress import parse_round_snapshot, verify_secret

# Fixtures client, ledger, clock, memory_queue, webhook_headers come from conftest

WEBHOOK_URL = "/api/v1/webhook"


def _raffle_payload(round_id, end_time, completed=False, op="INSERT"):
    return {
        "op": op,
        "entity": "raffle",
        "data": {
            "new": {"id": str(round_id), "endTime": str(end_time), "completed": completed},
            "old": None,
        },
    }


def test_missing_secret_rejected(client: TestClient, db_session):
    r = client.post(WEBHOOK_URL, json=_raffle_payload(1, 0))
    assert r.status_code == 401
    assert r.json()["success"] is False
    row = db_session.query(NotificationLog).one()
    assert row.operation == "UNAUTHENTICATED"
    assert row.success is False


def test_wrong_secret_rejected(client: TestClient, ledger, memory_queue):
    r = client.post(WEBHOOK_URL, json=_raffle_payload(1, 0), headers={"goldsky-webhook-secret": "nope"})
    assert r.status_code == 401
    assert memory_queue.depth() == 0
    assert ledger.submissions == []


def test_insert_schedules_settlement(client: TestClient, webhook_headers, ledger, clock, memory_queue, db_session):
    ledger.add_round(7, end_time=clock.seconds + 10)
    r = client.post(WEBHOOK_URL, json=_raffle_payload(7, clock.seconds + 10), headers=webhook_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body == {"success": True, "message": "Webhook processed successfully"}

    pending = memory_queue.list_pending(settlement_key(7))
    assert len(pending) == 1
    assert pending[0].ready_at == clock.now + 10_000

    row = db_session.query(NotificationLog).one()
    assert row.operation == "INSERT"
    assert row.round_id == 7
    assert row.evaluation_state == "NEEDS_SCHEDULING"
    assert row.request_id == r.headers["X-Request-ID"]


def test_entity_name_match_ignores_case(client: TestClient, webhook_headers, ledger, clock, memory_queue):
    ledger.add_round(8, end_time=clock.seconds + 30)
    payload = _raffle_payload(8, clock.seconds + 30)
    payload["entity"] = "Raffle"
    r = client.post(WEBHOOK_URL, json=payload, headers=webhook_headers)
    assert r.status_code == 200, r.text
    assert r.json()["success"] is True
    assert len(memory_queue.list_pending(settlement_key(8))) == 1


def test_redelivered_notification_does_not_duplicate(client: TestClient, webhook_headers, ledger, clock, memory_queue):
    ledger.add_round(3, end_time=clock.seconds + 60)
    payload = _raffle_payload(3, clock.seconds + 60, op="UPDATE")
    for _ in range(3):
        assert client.post(WEBHOOK_URL, json=payload, headers=webhook_headers).json()["success"] is True
    assert len(memory_queue.list_pending(settlement_key(3))) == 1


def test_flat_state_form_and_aliases(client: TestClient, webhook_headers, ledger, clock, memory_queue):
    ledger.add_round(4, end_time=clock.seconds + 30)
    payload = {
        "operation": "update",
        "entityType": "raffle",
        "newState": {"raffleId": 4, "end_time": clock.seconds + 30, "completed": "false"},
    }
    r = client.post(WEBHOOK_URL, json=payload, headers=webhook_headers)
    assert r.json()["success"] is True
    assert len(memory_queue.list_pending(settlement_key(4))) == 1


def test_overdue_insert_settles_immediately(client: TestClient, webhook_headers, ledger, clock, memory_queue):
    ledger.add_round(5, end_time=clock.seconds - 1)
    r = client.post(WEBHOOK_URL, json=_raffle_payload(5, clock.seconds - 1), headers=webhook_headers)
    assert r.json()["success"] is True
    assert ledger.submissions == [5]
    assert memory_queue.depth() == 0


def test_completed_round_schedules_next(client: TestClient, webhook_headers, ledger, clock, memory_queue):
    ledger.add_round(6, end_time=clock.seconds - 60, completed=True)
    ledger.add_round(7, end_time=clock.seconds + 600)
    r = client.post(
        WEBHOOK_URL, json=_raffle_payload(6, clock.seconds - 60, completed=True, op="UPDATE"), headers=webhook_headers
    )
    assert r.json()["success"] is True
    assert len(memory_queue.list_pending(settlement_key(7))) == 1


@pytest.mark.parametrize(
    "payload",
    [
        {"op": "DELETE", "entity": "raffle", "data": {"new": None, "old": {"id": "1", "endTime": "1"}}},
        {"op": "INSERT", "entity": "ticket", "data": {"new": {"id": "1", "endTime": "1"}}},
        {"op": "TRUNCATE", "entity": "raffle", "data": {"new": {"id": "1", "endTime": "1"}}},
    ],
    ids=["delete", "other-entity", "unknown-op"],
)
def test_ignored_notifications_acknowledged(client: TestClient, webhook_headers, ledger, memory_queue, payload):
    r = client.post(WEBHOOK_URL, json=payload, headers=webhook_headers)
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert memory_queue.depth() == 0
    assert ledger.submissions == []


def test_malformed_body_acknowledged_with_failure(client: TestClient, webhook_headers):
    r = client.post(
        WEBHOOK_URL, content=b"{not json", headers={**webhook_headers, "Content-Type": "application/json"}
    )
    assert r.status_code == 200
    assert r.json() == {"success": False, "message": "Error processing webhook", "error": "Malformed payload"}

    r = client.post(WEBHOOK_URL, json={"data": {}}, headers=webhook_headers)
    assert r.status_code == 200
    assert r.json()["success"] is False


def test_engine_failure_acknowledged_and_audited(client: TestClient, webhook_headers, ledger, clock, db_session):
    ledger.add_round(8, end_time=clock.seconds - 60, completed=True)
    ledger.read_error = TransientReadError("rpc unreachable")
    r = client.post(
        WEBHOOK_URL, json=_raffle_payload(8, clock.seconds - 60, completed=True, op="UPDATE"), headers=webhook_headers
    )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is False
    assert body["message"] == "Error processing webhook"
    assert "rpc unreachable" in body["error"]

    row = db_session.query(NotificationLog).one()
    assert row.success is False
    assert row.round_id == 8


def test_missing_round_state_reported(client: TestClient, webhook_headers):
    payload = {"op": "INSERT", "entity": "raffle", "data": {"new": None, "old": None}}
    body = client.post(WEBHOOK_URL, json=payload, headers=webhook_headers).json()
    assert body["success"] is False


def test_verify_secret_refuses_when_unconfigured():
    with pytest.raises(InvalidCredential):
        verify_secret("anything", None)
    with pytest.raises(InvalidCredential):
        verify_secret(None, "expected")
    verify_secret("expected", "expected")


def test_parse_round_snapshot_accepts_big_numeric_strings():
    snap = parse_round_snapshot({"id": "123456789012345678901234567890", "endTime": "1700000000", "completed": True})
    assert snap.round_id == 123456789012345678901234567890
    assert snap.end_time_ms == 1_700_000_000_000
    assert snap.completed is True


@pytest.mark.parametrize(
    "state",
    [
        {"endTime": "1"},
        {"id": "1"},
        {"id": "abc", "endTime": "1"},
        {"id": "1", "endTime": "1", "completed": "maybe"},
    ],
)
def test_parse_round_snapshot_rejects_bad_rows(state):
    with pytest.raises(ValueError):
        parse_round_snapshot(state)
