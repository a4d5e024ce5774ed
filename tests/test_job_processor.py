import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

import pytest

from app.models import Message
from app.services.job_processor import (
    JobHandlerError,
    PermanentJobError,
    classify_score,
    handle_response_generation,
    handle_send_whatsapp,
    handle_update_score,
    process_job,
    process_jobs,
    run_maintenance,
)
from app.services.job_queue_service import PRIORITY_BACKGROUND, PRIORITY_DELIVERY, JobType
from app.services.lock_service import LockResult
from app.services.response_service import GeneratedResponse
from app.services.result import Result


def make_job(job_type="response_generation", payload=None, attempts=1, cached_result=None):
    return {
        "id": uuid.uuid4(),
        "tenant_id": uuid.uuid4(),
        "job_type": job_type,
        "payload": payload or {},
        "attempts": attempts,
        "max_attempts": 3,
        "cached_result": cached_result,
    }


def query_results(db_session, *records):
    db_session.query.return_value.filter.return_value.first.side_effect = list(records)


def active_tenant():
    return SimpleNamespace(id=uuid.uuid4(), name="Clínica Sonrisa", status="active", business_context={})


def open_conversation(channel="whatsapp"):
    return SimpleNamespace(
        id=uuid.uuid4(),
        lead_id=uuid.uuid4(),
        channel=channel,
        status="active",
        ai_handling=True,
        last_message_at=None,
        escalation_reason=None,
        escalated_at=None,
    )


class TestClassifyScore:
    @pytest.mark.parametrize("score,expected", [(0, "cold"), (39, "cold"), (40, "warm"), (79, "warm"), (80, "hot")])
    def test_thresholds(self, score, expected):
        assert classify_score(score) == expected


class TestProcessJob:
    @patch("app.services.job_processor.complete_job")
    def test_success_completes(self, mock_complete, db_session):
        job = make_job("update_score")
        with patch.dict("app.services.job_processor.HANDLERS", {"update_score": Mock(return_value={"score": 60})}):
            status = process_job(db_session, job)

        assert status == "completed"
        mock_complete.assert_called_once_with(db_session, job["id"], {"score": 60})

    @patch("app.services.job_processor.alert_error")
    @patch("app.services.job_processor.fail_job", return_value="pending")
    def test_failure_schedules_retry(self, mock_fail, mock_alert, db_session):
        job = make_job("update_score")
        handler = Mock(side_effect=JobHandlerError("Lead x not found"))
        with patch.dict("app.services.job_processor.HANDLERS", {"update_score": handler}):
            status = process_job(db_session, job)

        assert status == "pending"
        db_session.rollback.assert_called_once()
        mock_fail.assert_called_once_with(db_session, job["id"], "Lead x not found", permanent=False)
        mock_alert.assert_not_called()

    @patch("app.services.job_processor.alert_error")
    @patch("app.services.job_processor.fail_job", return_value="failed")
    def test_exhausted_job_alerts(self, mock_fail, mock_alert, db_session):
        job = make_job("update_score", attempts=3)
        with patch.dict(
            "app.services.job_processor.HANDLERS", {"update_score": Mock(side_effect=RuntimeError("db gone"))}
        ):
            status = process_job(db_session, job)

        assert status == "failed"
        mock_alert.assert_called_once()

    @patch("app.services.job_processor.alert_error")
    @patch("app.services.job_processor.fail_job", return_value="failed")
    def test_permanent_error_fails_on_first_attempt(self, mock_fail, mock_alert, db_session):
        job = make_job("send_whatsapp", attempts=1)
        handler = Mock(side_effect=PermanentJobError("whatsapp send failed (auth_error): bad token"))
        with patch.dict("app.services.job_processor.HANDLERS", {"send_whatsapp": handler}):
            status = process_job(db_session, job)

        assert status == "failed"
        assert mock_fail.call_args.kwargs["permanent"] is True
        mock_alert.assert_called_once()
        assert mock_alert.call_args.args[0] == "Job falló sin reintentos"

    @patch("app.services.job_processor.alert_error")
    @patch("app.services.job_processor.send_whatsapp_message")
    def test_revoked_token_is_not_rescheduled(self, mock_send, mock_alert, db_session):
        message = SimpleNamespace(id=uuid.uuid4(), status="pending", content="Hola", lead_id=uuid.uuid4(), error_message=None)
        lead = SimpleNamespace(phone="+528112345678", instagram_psid=None)
        stored = SimpleNamespace(
            id=uuid.uuid4(),
            attempts=1,
            max_attempts=3,
            status="processing",
            scheduled_for=None,
            completed_at=None,
            error_message=None,
            updated_at=None,
        )
        query_results(db_session, message, SimpleNamespace(status="connected"), lead, stored)
        mock_send.return_value = Result.failure("bad token", "auth_error", retryable=False)

        status = process_job(db_session, make_job("send_whatsapp", payload={"message_id": "m1"}, attempts=1))

        assert status == "failed"
        assert stored.status == "failed"
        assert stored.scheduled_for is None
        mock_alert.assert_called_once()

    @patch("app.services.job_processor.alert_error")
    @patch("app.services.job_processor.fail_job", return_value="pending")
    def test_unknown_job_type_fails(self, mock_fail, mock_alert, db_session):
        process_job(db_session, make_job("send_fax"))
        assert "No handler" in mock_fail.call_args.args[2]


class TestProcessJobs:
    @patch("app.services.job_processor.process_job")
    @patch("app.services.job_processor.claim_next_job")
    def test_drains_until_queue_empty(self, mock_claim, mock_process, db_session):
        jobs = [make_job(), make_job(), make_job()]
        mock_claim.side_effect = jobs + [None]
        mock_process.side_effect = ["completed", "pending", "failed"]

        summary = process_jobs(db_session, max_jobs=10)

        assert (summary["processed"], summary["completed"], summary["retried"], summary["failed"]) == (3, 1, 1, 1)
        assert [error["status"] for error in summary["errors"]] == ["pending", "failed"]

    @patch("app.services.job_processor.process_job", return_value="completed")
    @patch("app.services.job_processor.claim_next_job")
    def test_batch_is_capped(self, mock_claim, mock_process, db_session):
        mock_claim.side_effect = lambda db, job_types=None: make_job()

        summary = process_jobs(db_session, max_jobs=500)

        assert summary["processed"] == 50

    @patch("app.services.job_processor.process_job", return_value="completed")
    @patch("app.services.job_processor.claim_next_job", return_value=None)
    def test_job_type_filter(self, mock_claim, mock_process, db_session):
        process_jobs(db_session, job_type="send_whatsapp")
        assert mock_claim.call_args.kwargs["job_types"] == ["send_whatsapp"]


class TestResponseGeneration:
    @patch("app.services.job_processor.enqueue_job")
    @patch("app.services.job_processor.cache_job_result")
    @patch("app.services.job_processor.generate_response")
    def test_generates_stores_and_queues_delivery(self, mock_generate, mock_cache, mock_enqueue, db_session):
        tenant, conversation = active_tenant(), open_conversation()
        query_results(db_session, tenant, conversation)
        mock_generate.return_value = Result.success(
            GeneratedResponse(content="Con gusto te ayudo.", model="gpt-5-mini", used_fallback=False)
        )
        mock_enqueue.return_value = SimpleNamespace(id=uuid.uuid4())
        job = make_job(payload={"conversation_id": str(conversation.id), "message": "hola", "score_change": 10})

        result = handle_response_generation(db_session, job)

        stored = db_session.add.call_args.args[0]
        assert isinstance(stored, Message)
        assert stored.role == "assistant"
        assert stored.content == "Con gusto te ayudo."
        assert result["message_id"] == str(stored.id)
        assert mock_cache.call_args_list[-1].args[2]["message_id"] == str(stored.id)

        job_types = [call.kwargs["job_type"] for call in mock_enqueue.call_args_list]
        assert job_types == [JobType.UPDATE_SCORE, JobType.SEND_WHATSAPP]
        assert mock_enqueue.call_args_list[0].kwargs["priority"] == PRIORITY_BACKGROUND
        assert mock_enqueue.call_args_list[1].kwargs["priority"] == PRIORITY_DELIVERY

    @patch("app.services.job_processor.enqueue_job")
    @patch("app.services.job_processor.cache_job_result")
    @patch("app.services.job_processor.generate_response")
    def test_retry_reuses_cached_response(self, mock_generate, mock_cache, mock_enqueue, db_session):
        query_results(db_session, active_tenant(), open_conversation())
        mock_enqueue.return_value = SimpleNamespace(id=uuid.uuid4())
        job = make_job(
            payload={"conversation_id": "c1"},
            cached_result={"content": "Hola", "model": "gpt-5-mini", "message_id": "m-1"},
        )

        result = handle_response_generation(db_session, job)

        mock_generate.assert_not_called()
        mock_cache.assert_not_called()
        db_session.add.assert_not_called()
        assert result["message_id"] == "m-1"

    @patch("app.services.job_processor.enqueue_job")
    @patch("app.services.job_processor.cache_job_result")
    @patch("app.services.job_processor.generate_response")
    def test_retry_does_not_repeat_score_update(self, mock_generate, mock_cache, mock_enqueue, db_session):
        query_results(db_session, active_tenant(), open_conversation())
        mock_enqueue.return_value = SimpleNamespace(id=uuid.uuid4())
        job = make_job(
            payload={"conversation_id": "c1", "score_change": 10},
            cached_result={"content": "Hola", "model": "gpt-5-mini", "message_id": "m-1", "score_job_id": "s-1"},
        )

        handle_response_generation(db_session, job)

        job_types = [call.kwargs["job_type"] for call in mock_enqueue.call_args_list]
        assert job_types == [JobType.SEND_WHATSAPP]

    @patch("app.services.job_processor.enqueue_job")
    @patch("app.services.job_processor.cache_job_result")
    @patch("app.services.job_processor.generate_response")
    def test_score_job_is_recorded_with_its_enqueue(self, mock_generate, mock_cache, mock_enqueue, db_session):
        query_results(db_session, active_tenant(), open_conversation())
        score_job_id = uuid.uuid4()
        mock_enqueue.side_effect = [SimpleNamespace(id=score_job_id), SimpleNamespace(id=uuid.uuid4())]
        job = make_job(
            payload={"conversation_id": "c1", "score_change": 10},
            cached_result={"content": "Hola", "model": "gpt-5-mini", "message_id": "m-1"},
        )

        handle_response_generation(db_session, job)

        score_call = mock_enqueue.call_args_list[0]
        assert score_call.kwargs["job_type"] == JobType.UPDATE_SCORE
        assert score_call.kwargs["commit"] is False
        mock_cache.assert_called_once_with(
            db_session, job["id"], {**job["cached_result"], "score_job_id": str(score_job_id)}
        )

    def test_escalated_conversation_is_skipped(self, db_session):
        conversation = open_conversation()
        conversation.status = "escalated"
        query_results(db_session, active_tenant(), conversation)

        result = handle_response_generation(db_session, make_job(payload={"conversation_id": "c1"}))

        assert result == {"skipped": True, "reason": "human_handling", "escalated": True}

    def test_inactive_tenant_is_skipped(self, db_session):
        tenant = active_tenant()
        tenant.status = "suspended"
        query_results(db_session, tenant)

        assert handle_response_generation(db_session, make_job())["skipped"] is True

    def test_missing_tenant_raises(self, db_session):
        query_results(db_session, None)
        with pytest.raises(JobHandlerError):
            handle_response_generation(db_session, make_job())

    @patch("app.services.job_processor.generate_response")
    def test_generation_failure_raises(self, mock_generate, db_session):
        query_results(db_session, active_tenant(), open_conversation())
        mock_generate.return_value = Result.failure("both models down", "generation_failed")

        with pytest.raises(JobHandlerError, match="both models down"):
            handle_response_generation(db_session, make_job(payload={"conversation_id": "c1"}))

    @patch("app.services.job_processor.alert_warning")
    @patch("app.services.job_processor.enqueue_job")
    @patch("app.services.job_processor.cache_job_result")
    def test_channel_without_delivery_escalates(self, mock_cache, mock_enqueue, mock_alert, db_session):
        conversation = open_conversation(channel="webchat")
        query_results(db_session, active_tenant(), conversation)
        job = make_job(payload={"conversation_id": "c1"}, cached_result={"content": "Hola", "message_id": "m-1"})

        result = handle_response_generation(db_session, job)

        assert result["escalated"] is True
        assert conversation.status == "escalated"
        assert conversation.ai_handling is False
        mock_enqueue.assert_not_called()
        mock_alert.assert_called_once()


class TestDelivery:
    def records(self, message_status="pending", connection_status="connected"):
        message = SimpleNamespace(
            id=uuid.uuid4(),
            status=message_status,
            content="Hola",
            lead_id=uuid.uuid4(),
            external_id=None,
            sent_at=None,
            error_message=None,
        )
        connection = SimpleNamespace(status=connection_status)
        lead = SimpleNamespace(phone="+528112345678", instagram_psid=None)
        return message, connection, lead

    @patch("app.services.job_processor.send_whatsapp_message")
    def test_successful_send_marks_message_sent(self, mock_send, db_session):
        message, connection, lead = self.records()
        query_results(db_session, message, connection, lead)
        mock_send.return_value = Result.success("wamid.123")

        result = handle_send_whatsapp(db_session, make_job("send_whatsapp", payload={"message_id": "m1"}))

        mock_send.assert_called_once_with(connection, "+528112345678", "Hola")
        assert message.status == "sent"
        assert message.external_id == "wamid.123"
        assert message.sent_at is not None
        assert result["external_id"] == "wamid.123"

    @patch("app.services.job_processor.send_whatsapp_message")
    def test_already_sent_is_not_resent(self, mock_send, db_session):
        query_results(db_session, *self.records(message_status="delivered"))

        result = handle_send_whatsapp(db_session, make_job("send_whatsapp", payload={"message_id": "m1"}))

        assert result["already_sent"] is True
        mock_send.assert_not_called()

    @patch("app.services.job_processor.send_whatsapp_message")
    def test_send_failure_marks_message_failed(self, mock_send, db_session):
        message, connection, lead = self.records()
        query_results(db_session, message, connection, lead)
        mock_send.return_value = Result.failure("token expired", "auth_error", retryable=False)

        with pytest.raises(PermanentJobError, match="auth_error"):
            handle_send_whatsapp(db_session, make_job("send_whatsapp", payload={"message_id": "m1"}))

        assert message.status == "failed"
        assert message.error_message == "token expired"

    @patch("app.services.job_processor.send_whatsapp_message")
    def test_transient_send_failure_stays_retryable(self, mock_send, db_session):
        query_results(db_session, *self.records())
        mock_send.return_value = Result.failure("Service temporarily unavailable", "api_error")

        with pytest.raises(JobHandlerError) as excinfo:
            handle_send_whatsapp(db_session, make_job("send_whatsapp", payload={"message_id": "m1"}))

        assert not isinstance(excinfo.value, PermanentJobError)

    def test_disconnected_channel_raises(self, db_session):
        message, connection, lead = self.records(connection_status="disconnected")
        query_results(db_session, message, connection, lead)

        with pytest.raises(JobHandlerError, match="disconnected"):
            handle_send_whatsapp(db_session, make_job("send_whatsapp", payload={"message_id": "m1"}))


class TestUpdateScore:
    def test_score_is_clamped_and_classified(self, db_session):
        lead = SimpleNamespace(id=uuid.uuid4(), score=90, classification="hot", score_updated_at=None)
        query_results(db_session, lead)

        result = handle_update_score(db_session, make_job("update_score", payload={"lead_id": "l1", "score_change": 25}))

        assert lead.score == 100
        assert result == {"lead_id": str(lead.id), "previous_score": 90, "score": 100, "classification": "hot"}

    def test_negative_change_floors_at_zero(self, db_session):
        lead = SimpleNamespace(id=uuid.uuid4(), score=10, classification="cold", score_updated_at=None)
        query_results(db_session, lead)

        handle_update_score(db_session, make_job("update_score", payload={"lead_id": "l1", "score_change": -30}))

        assert (lead.score, lead.classification) == (0, "cold")


class TestMaintenance:
    def lock(self, acquired, locked_by=None):
        context = MagicMock()
        context.return_value.__enter__.return_value = LockResult(
            acquired=acquired, lock_name="maintenance:jobs", holder_id="host:1", already_locked_by=locked_by
        )
        return context

    @patch("app.services.job_processor.alert_warning")
    @patch("app.services.job_processor.recover_unsent_messages")
    @patch("app.services.job_processor.cleanup_expired_locks", return_value=2)
    @patch("app.services.job_processor.cleanup_old_jobs", return_value=5)
    def test_runs_under_lock(self, mock_jobs, mock_locks, mock_recover, mock_alert, db_session):
        mock_recover.return_value = {"scanned": 4, "recovered": 1, "skipped": 3, "errors": []}
        with patch("app.services.job_processor.lock_context", self.lock(True)):
            summary = run_maintenance(db_session, "host:1")

        assert summary["skipped"] is False
        assert (summary["jobs_deleted"], summary["locks_deleted"]) == (5, 2)
        assert summary["recovery"]["recovered"] == 1
        mock_alert.assert_called_once()

    @patch("app.services.job_processor.recover_unsent_messages")
    @patch("app.services.job_processor.cleanup_old_jobs")
    def test_skips_when_lock_held(self, mock_jobs, mock_recover, db_session):
        with patch("app.services.job_processor.lock_context", self.lock(False, "host:2")):
            summary = run_maintenance(db_session, "host:1")

        assert summary == {"skipped": True, "locked_by": "host:2"}
        mock_jobs.assert_not_called()
        mock_recover.assert_not_called()
