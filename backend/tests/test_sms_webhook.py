"""Tests for the inbound SMS webhook."""
from dataclasses import replace

import pytest

from orchestrator.agent.models import AgentTask, DispatchJob
from orchestrator.agent.sms import compute_twilio_signature

from conftest import TEST_SETTINGS

SMS_URL = "http://testserver/v1/agent/sms"
ADMIN_PHONE = "+15551234567"


def sms_params(body, sid="SM0001", sender=ADMIN_PHONE):
    return {
        "MessageSid": sid,
        "AccountSid": "AC0001",
        "From": sender,
        "To": "+15550000000",
        "Body": body,
    }


def send_sms(client, params, token=TEST_SETTINGS.twilio_auth_token):
    signature = compute_twilio_signature(SMS_URL, params, token)
    return client.post("/v1/agent/sms", data=params, headers={"X-Twilio-Signature": signature})


class TestSmsSignature:
    """Test provider signature enforcement."""

    def test_bad_signature(self, client, org, db):
        response = send_sms(client, sms_params("Hello"), token="wrong-token")
        assert response.status_code == 403
        assert "Invalid signature" in response.text
        assert db.query(AgentTask).count() == 0

    def test_missing_signature(self, client, org):
        response = client.post("/v1/agent/sms", data=sms_params("Hello"))
        assert response.status_code == 403

    def test_tampered_body(self, client, org):
        params = sms_params("Hello")
        signature = compute_twilio_signature(SMS_URL, params, TEST_SETTINGS.twilio_auth_token)
        response = client.post(
            "/v1/agent/sms",
            data={**params, "Body": "Cancel everything"},
            headers={"X-Twilio-Signature": signature},
        )
        assert response.status_code == 403


class TestSmsUnsignedDevelopment:
    """Test the explicit opt-out when no token is configured."""

    @pytest.fixture
    def settings(self):
        return replace(TEST_SETTINGS, twilio_auth_token=None, skip_twilio_signature_validation=True)

    def test_opt_out_accepts_unsigned(self, client, org, db):
        response = client.post("/v1/agent/sms", data=sms_params("Can we meet Thursday at 3?"))
        assert response.status_code == 200
        assert db.query(AgentTask).count() == 1


class TestSmsIntake:
    """Test new messages and acknowledgments."""

    def test_new_message_creates_task(self, client, org, db):
        response = send_sms(client, sms_params("Can we meet Thursday at 3?"))
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Response>" in response.text
        assert "Got it! Processing your request..." in response.text

        task = db.query(AgentTask).one()
        assert task.source == "SMS"
        assert task.source_id == "SM0001"
        assert task.principal == f"sms:{ADMIN_PHONE}"
        assert task.user_id == org["admin"]["user_id"]

    def test_formatted_number_matches_user(self, client, org, db):
        send_sms(client, sms_params("Can we meet Thursday at 3?", sender="(555) 123-4567"))
        assert db.query(AgentTask).count() == 1

    def test_duplicate_message_sid(self, client, org, db):
        params = sms_params("Can we meet Thursday at 3?")
        send_sms(client, params)
        response = send_sms(client, params)
        assert response.status_code == 200
        assert db.query(AgentTask).count() == 1

    def test_unknown_sender(self, client, org, db):
        response = send_sms(client, sms_params("Hello there", sender="+15550001111"))
        assert response.status_code == 200
        assert "identify your account" in response.text
        assert db.query(AgentTask).count() == 0

    def test_help(self, client, org, db):
        response = send_sms(client, sms_params("HELP"))
        assert "Reply YES to confirm" in response.text
        assert db.query(AgentTask).count() == 0

    def test_invalid_payload_still_acknowledged(self, client, org):
        params = {"Body": "hi", "From": ADMIN_PHONE}
        response = send_sms(client, params)
        assert response.status_code == 200
        assert "encountered an error" in response.text


class TestQuickReplies:
    """Test continuation of an open task by a short reply."""

    def open_task(self, client, db, status="AWAITING_INPUT"):
        send_sms(client, sms_params("Can we meet Thursday or Friday?", sid="SM0001"))
        task = db.query(AgentTask).one()
        task.status = status
        db.commit()
        return task.id

    def test_yes_confirms_open_task(self, client, org, db):
        task_id = self.open_task(client, db)

        response = send_sms(client, sms_params("YES", sid="SM0002"))
        assert "Got it! Confirming your request now." in response.text

        db.expire_all()
        tasks = db.query(AgentTask).all()
        assert len(tasks) == 1
        assert tasks[0].id == task_id
        assert tasks[0].status == "PROCESSING"
        assert tasks[0].task_type == "SCHEDULE_MEETING"
        job = db.query(DispatchJob).filter(DispatchJob.job_id == f"resume-task:{task_id}:SM0002").one()
        assert job.name == "resume_task"

    def test_option_selection(self, client, org, db):
        self.open_task(client, db)
        response = send_sms(client, sms_params("2", sid="SM0002"))
        assert "Processing option 2" in response.text

    def test_pending_task_also_resumes(self, client, org, db):
        task_id = self.open_task(client, db, status="PENDING")
        send_sms(client, sms_params("no", sid="SM0002"))
        db.expire_all()
        task = db.query(AgentTask).filter(AgentTask.id == task_id).one()
        assert task.status == "PROCESSING"
        assert task.task_type == "CANCEL_MEETING"

    def test_redelivered_reply_not_applied_twice(self, client, org, db):
        self.open_task(client, db)
        reply = sms_params("YES", sid="SM0002")
        send_sms(client, reply)
        response = send_sms(client, reply)
        assert "Confirming your request" in response.text
        assert db.query(DispatchJob).filter(DispatchJob.name == "resume_task").count() == 1

    def test_quick_reply_without_open_task_creates_task(self, client, org, db):
        send_sms(client, sms_params("YES"))
        assert db.query(AgentTask).count() == 1

    def test_other_principal_not_resumed(self, client, org, member, db):
        task_id = self.open_task(client, db)
        send_sms(client, sms_params("YES", sid="SM0002", sender="+15559876543"))
        db.expire_all()
        assert db.query(AgentTask).filter(AgentTask.id == task_id).one().status == "AWAITING_INPUT"
        assert db.query(AgentTask).count() == 2


class TestRepliesToHeldDecisions:
    """A reply never clears a decision that waits for an operator."""

    def held_task(self, client, fake_llm, db, confidence):
        fake_llm.respond(
            intent="CREATE_EVENT",
            confidence=confidence,
            actions=[{"type": "CREATE_EVENT", "priority": 3, "requiresConfirmation": False, "params": {}}],
        )
        send_sms(client, sms_params("Book me with the design team next week", sid="SM0001"))
        return db.query(AgentTask).one()

    def test_yes_on_task_awaiting_approval(self, client, org, fake_llm, db):
        task = self.held_task(client, fake_llm, db, confidence=0.7)

        response = send_sms(client, sms_params("YES", sid="SM0002"))
        assert "waiting for review" in response.text
        assert db.query(DispatchJob).count() == 0

        db.expire_all()
        task = db.query(AgentTask).filter(AgentTask.id == task.id).one()
        assert task.status == "PENDING"
        assert '"messageId": "SM0002"' in task.ai_metadata_json

    def test_ok_on_rejected_decision(self, client, org, fake_llm, db):
        task = self.held_task(client, fake_llm, db, confidence=0.2)
        send_sms(client, sms_params("ok", sid="SM0002"))
        assert db.query(DispatchJob).count() == 0
        db.expire_all()
        assert db.query(AgentTask).filter(AgentTask.id == task.id).one().status == "PENDING"

    def test_operator_can_still_approve_after_reply(self, client, org, admin_headers, fake_llm, db):
        task = self.held_task(client, fake_llm, db, confidence=0.7)
        send_sms(client, sms_params("YES", sid="SM0002"))

        response = client.post(f"/v1/agent/tasks/{task.id}/approve", headers=admin_headers)
        assert response.status_code == 200
        assert [job.job_id for job in db.query(DispatchJob).all()] == [f"execute-actions:{task.id}"]

    def test_reply_after_approval_resumes(self, client, org, admin_headers, fake_llm, db):
        task = self.held_task(client, fake_llm, db, confidence=0.7)
        client.post(f"/v1/agent/tasks/{task.id}/approve", headers=admin_headers)

        response = send_sms(client, sms_params("YES", sid="SM0002"))
        assert "Confirming your request" in response.text
        assert db.query(DispatchJob).filter(DispatchJob.job_id == f"resume-task:{task.id}:SM0002").count() == 1


class TestSmsAccountSid:
    """Test the account check when an account SID is configured."""

    @pytest.fixture
    def settings(self):
        return replace(TEST_SETTINGS, twilio_account_sid="AC0001")

    def test_matching_account_accepted(self, client, org, db):
        response = send_sms(client, sms_params("Can we meet Thursday at 3?"))
        assert response.status_code == 200
        assert db.query(AgentTask).count() == 1

    def test_other_account_forbidden(self, client, org, db):
        response = send_sms(client, {**sms_params("Can we meet Thursday at 3?"), "AccountSid": "AC9999"})
        assert response.status_code == 403
        assert "Forbidden" in response.text
        assert db.query(AgentTask).count() == 0


class TestSmsWithoutToken:
    """Test the reply when no token is configured and the opt-out is off."""

    @pytest.fixture
    def settings(self):
        return replace(TEST_SETTINGS, twilio_auth_token=None, skip_twilio_signature_validation=False)

    def test_acknowledged_with_configuration_error(self, client, org, db):
        response = client.post("/v1/agent/sms", data=sms_params("Can we meet Thursday at 3?"))
        assert response.status_code == 200
        assert "System configuration error" in response.text
        assert db.query(AgentTask).count() == 0
