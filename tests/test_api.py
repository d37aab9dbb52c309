from datetime import datetime, timezone

import anyio
import pytest
from fastapi.testclient import TestClient

from src.config import TicketStatus, settings
from src.escalation.application import StaticPolicyProvider
from src.main import app, configure_services

from tests.conftest import ADMIN, DOMAIN_ID, MONDAY_9AM, SENIOR_ADMIN, STUDENT

UTC = timezone.utc
WEDNESDAY_9AM = datetime(2024, 1, 17, 9, 0, tzinfo=UTC)
THURSDAY_9AM = datetime(2024, 1, 18, 9, 0, tzinfo=UTC)

AS_ADMIN = {"X-User-Id": ADMIN}
AS_STUDENT = {"X-User-Id": STUDENT}


@pytest.fixture
def client(session_maker, event_sink, clock):
    configure_services(app, session_maker, StaticPolicyProvider(), event_sink, clock=clock)
    return TestClient(app)


@pytest.fixture
def ticket_id(seed):
    async def _seed():
        category_id = await seed.basics()
        return await seed.ticket(
            category_id=category_id,
            status=TicketStatus.IN_PROGRESS,
            acknowledged_at=MONDAY_9AM,
            acknowledgement_due_at=datetime(2024, 1, 15, 14, 0, tzinfo=UTC),
            resolution_due_at=WEDNESDAY_9AM,
        )

    return anyio.run(_seed)


def test_root_lists_endpoints(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "Campus Ticket Escalation Service"


def test_missing_user_header_is_unauthorized(client, ticket_id):
    response = client.post(f"/tickets/{ticket_id}/tat/extend", json={"hours": 4, "reason": "Late"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_correlation_id_is_echoed(client):
    response = client.get("/", headers={"X-Correlation-ID": "abc-123"})
    assert response.headers["X-Correlation-ID"] == "abc-123"


class TestTicketEndpoints:
    def test_extend_tat_warns_and_escalates_on_third(self, client, ticket_id):
        body = {"hours": 2, "reason": "Contractor delayed"}

        first = client.post(f"/tickets/{ticket_id}/tat/extend", json=body, headers=AS_ADMIN)
        assert first.status_code == 200
        assert first.json()["tat_extensions"] == 1
        assert first.json()["warning"] is None

        client.post(f"/tickets/{ticket_id}/tat/extend", json=body, headers=AS_ADMIN)
        third = client.post(f"/tickets/{ticket_id}/tat/extend", json=body, headers=AS_ADMIN)

        data = third.json()
        assert data["tat_extensions"] == 3
        assert data["escalation_level"] == 1
        assert data["warning"] == "This is TAT extension #3. Auto-escalations occur at 3, 5, 7 extensions."

    def test_student_cannot_extend(self, client, ticket_id):
        response = client.post(
            f"/tickets/{ticket_id}/tat/extend", json={"hours": 2, "reason": "Hurry"}, headers=AS_STUDENT
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_extension_out_of_range(self, client, ticket_id):
        response = client.post(
            f"/tickets/{ticket_id}/tat/extend", json={"hours": 500, "reason": "Long"}, headers=AS_ADMIN
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"hours": 500}

    def test_unknown_ticket(self, client, ticket_id):
        response = client.post("/tickets/9999/escalate", headers=AS_ADMIN)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_unknown_acting_user(self, client, ticket_id):
        response = client.post(f"/tickets/{ticket_id}/escalate", headers={"X-User-Id": "ghost"})
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User with id 'ghost' not found"

    def test_manual_escalation_reassigns_by_rule(self, client, seed, ticket_id):
        anyio.run(seed.rule, 1, DOMAIN_ID)

        response = client.post(
            f"/tickets/{ticket_id}/escalate", json={"reason": "VIP complaint"}, headers=AS_ADMIN
        )

        assert response.status_code == 200
        assert response.json()["escalation_level"] == 1
        assert response.json()["assigned_to"] == SENIOR_ADMIN

    def test_set_tat(self, client, ticket_id):
        response = client.post(f"/tickets/{ticket_id}/tat", json={"tat": "1 day"}, headers=AS_ADMIN)

        assert response.status_code == 200
        assert response.json()["resolution_due_at"].startswith("2024-01-16T09:00:00")

    def test_pause_then_resume_via_status(self, client, ticket_id, clock):
        paused = client.patch(
            f"/tickets/{ticket_id}/status",
            json={"status": "awaiting_student_response"},
            headers=AS_ADMIN,
        )
        assert paused.json()["is_paused"] is True
        assert paused.json()["paused_remaining_hours"] == 48

        clock.now = THURSDAY_9AM
        resumed = client.patch(f"/tickets/{ticket_id}/status", json={"status": "in_progress"}, headers=AS_ADMIN)

        assert resumed.json()["is_paused"] is False
        assert resumed.json()["resolution_due_at"].startswith("2024-01-22T09:00:00")

    def test_invalid_transition(self, client, ticket_id):
        response = client.patch(f"/tickets/{ticket_id}/status", json={"status": "open"}, headers=AS_ADMIN)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_STATUS_TRANSITION"
        assert error["details"] == {"from": "in_progress", "to": "open"}

    def test_unknown_status_fails_request_validation(self, client, ticket_id):
        response = client.patch(f"/tickets/{ticket_id}/status", json={"status": "archived"}, headers=AS_ADMIN)
        assert response.status_code == 422

    def test_resolve_reopen_and_rate(self, client, ticket_id):
        resolved = client.patch(f"/tickets/{ticket_id}/status", json={"status": "resolved"}, headers=AS_ADMIN)
        assert resolved.json()["status"] == "resolved"

        reopened = client.post(f"/tickets/{ticket_id}/reopen", json={"reason": "Leak is back"}, headers=AS_STUDENT)
        assert reopened.status_code == 200
        assert reopened.json()["reopen_count"] == 1
        assert reopened.json()["warning"] is None

        client.patch(f"/tickets/{ticket_id}/status", json={"status": "resolved"}, headers=AS_ADMIN)
        feedback = client.post(
            f"/tickets/{ticket_id}/feedback", json={"rating": 1, "feedback": "Still leaking"}, headers=AS_STUDENT
        )
        assert feedback.status_code == 201
        assert feedback.json()["rating"] == 1

        duplicate = client.post(f"/tickets/{ticket_id}/feedback", json={"rating": 5}, headers=AS_STUDENT)
        assert duplicate.status_code == 400

    def test_feedback_rating_is_validated(self, client, ticket_id):
        response = client.post(f"/tickets/{ticket_id}/feedback", json={"rating": 0}, headers=AS_STUDENT)
        assert response.status_code == 422


class TestCronEndpoint:
    def test_open_without_secret_outside_production(self, client, ticket_id, clock, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", None)
        clock.now = THURSDAY_9AM

        response = client.post("/cron/escalate-tickets")

        assert response.status_code == 200
        assert response.json() == {
            "success": True, "checked": 1, "escalated": 1, "skipped": 0, "failed": 0, "errors": []
        }

    def test_closed_without_secret_in_production(self, client, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", None)
        monkeypatch.setattr(settings, "environment", "production")

        assert client.post("/cron/escalate-tickets").status_code == 401

    def test_secret_is_required_when_configured(self, client, ticket_id, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", "s3cret")

        assert client.post("/cron/escalate-tickets").status_code == 401
        assert client.post(
            "/cron/escalate-tickets", headers={"Authorization": "Bearer wrong"}
        ).status_code == 401
        assert client.post(
            "/cron/escalate-tickets", headers={"Authorization": "Bearer s3cret"}
        ).status_code == 200
        assert client.post(
            "/cron/escalate-tickets", headers={"X-Cron-Secret": "s3cret"}
        ).status_code == 200


class TestRuleEndpoints:
    def test_rule_lifecycle(self, client, ticket_id):
        created = client.post(
            "/escalation-rules",
            json={"level": 1, "domain_id": DOMAIN_ID, "escalate_to_user_id": SENIOR_ADMIN, "notify_channel": "#hostel"},
            headers=AS_ADMIN,
        )
        assert created.status_code == 201
        rule_id = created.json()["id"]
        assert created.json()["is_active"] is True

        duplicate = client.post("/escalation-rules", json={"level": 1, "domain_id": DOMAIN_ID}, headers=AS_ADMIN)
        assert duplicate.status_code == 400

        # Same level, global scope, is a different rule
        other = client.post("/escalation-rules", json={"level": 1}, headers=AS_ADMIN)
        assert other.status_code == 201

        updated = client.patch(f"/escalation-rules/{rule_id}", json={"tat_hours": 24}, headers=AS_ADMIN)
        assert updated.status_code == 200
        assert updated.json()["tat_hours"] == 24
        assert updated.json()["notify_channel"] == "#hostel"

        deleted = client.delete(f"/escalation-rules/{rule_id}", headers=AS_ADMIN)
        assert deleted.json()["is_active"] is False

        active = client.get("/escalation-rules", headers=AS_ADMIN).json()
        assert [rule["id"] for rule in active] == [other.json()["id"]]
        everything = client.get("/escalation-rules", params={"include_inactive": True}, headers=AS_ADMIN).json()
        assert len(everything) == 2

    def test_unknown_target_user(self, client, ticket_id):
        response = client.post(
            "/escalation-rules", json={"level": 2, "escalate_to_user_id": "nobody"}, headers=AS_ADMIN
        )
        assert response.status_code == 400

    def test_null_level_is_rejected(self, client, ticket_id):
        created = client.post("/escalation-rules", json={"level": 1}, headers=AS_ADMIN)
        response = client.patch(f"/escalation-rules/{created.json()['id']}", json={"level": None}, headers=AS_ADMIN)
        assert response.status_code == 422

    def test_students_cannot_manage_rules(self, client, ticket_id):
        assert client.get("/escalation-rules", headers=AS_STUDENT).status_code == 403
        assert client.post("/escalation-rules", json={"level": 1}, headers=AS_STUDENT).status_code == 403

    def test_unknown_rule(self, client, ticket_id):
        response = client.patch("/escalation-rules/999", json={"tat_hours": 5}, headers=AS_ADMIN)
        assert response.status_code == 404
