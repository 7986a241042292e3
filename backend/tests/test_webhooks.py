"""Tests for the signed intake webhook and workflow runner callbacks."""
import threading

from orchestrator.agent import events
from orchestrator.agent.models import AgentTask

from conftest import TEST_SETTINGS, signed_post

INTAKE_SECRET = TEST_SETTINGS.intake_webhook_secret
AUTOMATION_SECRET = TEST_SETTINGS.automation_webhook_secret
AUTOMATION_URL = "/v1/webhooks/automation"


def create_task(client, headers):
    response = client.post(
        "/v1/agent/process",
        json={"source": "API", "type": "inquiry", "content": "Book the quarterly review"},
        headers=headers,
    )
    return response.json()["taskId"]


def callback(task_id=None, status="success", org_id=None, **extra):
    body = {
        "executionId": "exec-1",
        "workflowId": "wf-1",
        "workflowName": "Book meeting",
        "status": status,
        "data": {"taskId": task_id} if task_id else None,
        "context": {"orgId": org_id, "correlationId": "corr-wf"},
    }
    body.update(extra)
    return body


def task_row(db, task_id):
    db.expire_all()
    return db.query(AgentTask).filter(AgentTask.id == task_id).one()


class TestIntakeWebhook:
    """Test the generic signed intake endpoint."""

    def test_accepted(self, client, org, db):
        response = signed_post(
            client,
            f"/v1/webhooks/intake/{org['org_id']}",
            {"type": "form", "content": "New lead: Jane wants a demo", "sourceId": "sub-1"},
            INTAKE_SECRET,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"

        task = db.query(AgentTask).filter(AgentTask.id == data["taskId"]).one()
        assert task.source == "WEBHOOK"
        assert task.principal == f"webhook:{org['org_id']}"
        assert task.user_id == org["admin"]["user_id"]

    def test_duplicate_source_id(self, client, org, db):
        url = f"/v1/webhooks/intake/{org['org_id']}"
        payload = {"type": "form", "content": "New lead: Jane wants a demo", "sourceId": "sub-1"}
        first = signed_post(client, url, payload, INTAKE_SECRET).json()
        second = signed_post(client, url, payload, INTAKE_SECRET).json()
        assert second["status"] == "duplicate"
        assert second["taskId"] == first["taskId"]
        assert db.query(AgentTask).count() == 1

    def test_unknown_org(self, client):
        response = signed_post(client, "/v1/webhooks/intake/nope", {"type": "form", "content": "x"}, INTAKE_SECRET)
        assert response.status_code == 404

    def test_invalid_body(self, client, org):
        response = signed_post(client, f"/v1/webhooks/intake/{org['org_id']}", {"type": "form"}, INTAKE_SECRET)
        assert response.status_code == 400

    def test_wrong_secret(self, client, org):
        response = signed_post(
            client, f"/v1/webhooks/intake/{org['org_id']}", {"type": "form", "content": "x"}, AUTOMATION_SECRET,
        )
        assert response.status_code == 401


class TestAutomationCallback:
    """Test workflow runner status reports."""

    def test_success_completes_task(self, client, org, admin_headers, db, bus):
        task_id = create_task(client, admin_headers)
        response = signed_post(client, AUTOMATION_URL, callback(task_id, org_id=org["org_id"]), AUTOMATION_SECRET)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "applied"
        assert data["event"] == events.AUTOMATION_COMPLETED
        assert data["executionStatus"] == "COMPLETED"
        assert data["correlationId"] == "corr-wf"

        task = task_row(db, task_id)
        assert task.status == "COMPLETED"
        assert task.completed_at is not None
        assert '"executionId": "exec-1"' in task.resolution_json
        assert bus.history(events.AUTOMATION_COMPLETED)[0].payload["taskId"] == task_id

    def test_scheduled_result(self, client, admin_headers, db):
        task_id = create_task(client, admin_headers)
        payload = callback(data={"taskId": task_id, "scheduled": True})
        signed_post(client, AUTOMATION_URL, payload, AUTOMATION_SECRET)
        assert task_row(db, task_id).status == "SCHEDULED"

    def test_error_fails_task(self, client, admin_headers, db):
        task_id = create_task(client, admin_headers)
        payload = callback(task_id, status="error", error={"message": "Calendar API down", "code": "503"})
        data = signed_post(client, AUTOMATION_URL, payload, AUTOMATION_SECRET).json()
        assert data["event"] == events.AUTOMATION_FAILED

        task = task_row(db, task_id)
        assert task.status == "FAILED"
        assert task.error_message == "Calendar API down"

    def test_running_then_waiting(self, client, admin_headers, db):
        task_id = create_task(client, admin_headers)
        signed_post(client, AUTOMATION_URL, callback(task_id, status="running"), AUTOMATION_SECRET)
        assert task_row(db, task_id).status == "PROCESSING"
        signed_post(client, AUTOMATION_URL, callback(task_id, status="waiting"), AUTOMATION_SECRET)
        assert task_row(db, task_id).status == "AWAITING_INPUT"

    def test_closed_task_ignored(self, client, admin_headers, db):
        task_id = create_task(client, admin_headers)
        client.post(f"/v1/agent/tasks/{task_id}/cancel", headers=admin_headers)
        data = signed_post(client, AUTOMATION_URL, callback(task_id), AUTOMATION_SECRET).json()
        assert data["status"] == "ignored"
        assert task_row(db, task_id).status == "CANCELLED"

    def test_unknown_task_still_publishes(self, client, bus):
        data = signed_post(client, AUTOMATION_URL, callback("missing-task"), AUTOMATION_SECRET).json()
        assert data["status"] == "ignored"
        assert data["taskId"] == "missing-task"
        assert len(bus.history(events.AUTOMATION_COMPLETED)) == 1

    def test_other_org_forbidden(self, client, admin_headers, other_org, db):
        task_id = create_task(client, admin_headers)
        payload = callback(task_id, org_id=other_org["org_id"])
        assert signed_post(client, AUTOMATION_URL, payload, AUTOMATION_SECRET).status_code == 403
        assert task_row(db, task_id).status == "PENDING"

    def test_follow_up_published(self, client, admin_headers, bus):
        task_id = create_task(client, admin_headers)
        received = threading.Event()
        bus.on(events.CALENDAR_EVENT_CREATED, lambda event: received.set())

        payload = callback(data={"taskId": task_id, "followUps": [{"type": "schedule_event", "title": "Review"}]})
        signed_post(client, AUTOMATION_URL, payload, AUTOMATION_SECRET)
        assert received.wait(timeout=5)

    def test_invalid_status(self, client):
        response = signed_post(client, AUTOMATION_URL, callback(status="exploded"), AUTOMATION_SECRET)
        assert response.status_code == 400

    def test_bad_signature(self, client):
        assert signed_post(client, AUTOMATION_URL, callback(), INTAKE_SECRET).status_code == 401
