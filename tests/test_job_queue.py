import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from app.models import Job
from app.services.job_queue_service import (
    CLAIM_SQL,
    PRIORITY_BACKGROUND,
    PRIORITY_DEFAULT,
    PRIORITY_DELIVERY,
    PRIORITY_RECOVERY,
    JobType,
    claim_next_job,
    cleanup_old_jobs,
    enqueue_job,
    fail_job,
    get_queue_stats,
)


def stored_job(attempts, max_attempts=3):
    return SimpleNamespace(
        id=uuid.uuid4(),
        attempts=attempts,
        max_attempts=max_attempts,
        status="processing",
        scheduled_for=None,
        completed_at=None,
        error_message=None,
        updated_at=None,
    )


def with_job(db_session, job):
    db_session.query.return_value.filter.return_value.first.return_value = job


class TestPriorities:
    def test_recovery_runs_before_delivery_before_default(self):
        assert PRIORITY_RECOVERY < PRIORITY_DELIVERY < PRIORITY_DEFAULT < PRIORITY_BACKGROUND

    def test_claim_orders_by_priority_then_schedule(self):
        sql = CLAIM_SQL.text
        assert "ORDER BY priority ASC, scheduled_for ASC" in sql
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "attempts = attempts + 1" in sql


class TestEnqueue:
    def test_defaults(self, db_session):
        job = enqueue_job(db_session, tenant_id="t1", job_type="send_whatsapp", payload={"message_id": "m1"})

        assert isinstance(job, Job)
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.priority == PRIORITY_DEFAULT
        assert job.scheduled_for is not None
        db_session.add.assert_called_once_with(job)
        db_session.commit.assert_called_once()

    def test_unknown_type_rejected(self, db_session):
        with pytest.raises(ValueError):
            enqueue_job(db_session, tenant_id="t1", job_type="send_fax", payload={})
        db_session.add.assert_not_called()

    def test_explicit_options(self, db_session):
        when = datetime(2030, 1, 1, tzinfo=timezone.utc)
        job = enqueue_job(
            db_session,
            tenant_id="t1",
            job_type=JobType.UPDATE_SCORE,
            payload={},
            priority=PRIORITY_BACKGROUND,
            max_attempts=1,
            scheduled_for=when,
        )
        assert (job.job_type, job.priority, job.max_attempts, job.scheduled_for) == (
            "update_score",
            PRIORITY_BACKGROUND,
            1,
            when,
        )


class TestClaim:
    def test_returns_claimed_row(self, db_session):
        row = {"id": "j1", "job_type": "send_whatsapp", "attempts": 1, "payload": {}}
        db_session.execute.return_value.mappings.return_value.first.return_value = row

        job = claim_next_job(db_session, job_types=["send_whatsapp"], tenant_id="t1")

        assert job == row
        params = db_session.execute.call_args.args[1]
        assert params == {"job_types": ["send_whatsapp"], "tenant_id": "t1"}
        db_session.commit.assert_called_once()

    def test_lock_and_status_change_are_one_statement(self, db_session):
        sql = " ".join(CLAIM_SQL.text.split())
        db_session.execute.return_value.mappings.return_value.first.return_value = None

        claim_next_job(db_session)

        assert sql.startswith("UPDATE jobs SET status = 'processing'")
        assert ";" not in sql
        locked_subquery = sql.split("WHERE id = (", 1)[1]
        assert "WHERE status = 'pending' AND scheduled_for <= NOW()" in locked_subquery
        assert locked_subquery.index("FOR UPDATE SKIP LOCKED") < locked_subquery.index(") RETURNING")
        db_session.execute.assert_called_once()
        db_session.commit.assert_called_once()

    def test_empty_queue(self, db_session):
        db_session.execute.return_value.mappings.return_value.first.return_value = None

        assert claim_next_job(db_session) is None
        assert db_session.execute.call_args.args[1] == {"job_types": None, "tenant_id": None}


class TestFailJob:
    def test_retry_with_exponential_backoff(self, db_session):
        job = stored_job(attempts=2)
        with_job(db_session, job)
        before = datetime.now(timezone.utc)

        status = fail_job(db_session, job.id, "timeout")

        assert status == "pending"
        assert job.status == "pending"
        assert job.error_message == "timeout"
        delay = job.scheduled_for - before
        assert timedelta(seconds=4) <= delay < timedelta(seconds=5)
        db_session.commit.assert_called_once()

    def test_first_failure_waits_two_seconds(self, db_session):
        job = stored_job(attempts=1)
        with_job(db_session, job)
        before = datetime.now(timezone.utc)

        fail_job(db_session, job.id, "timeout")

        assert timedelta(seconds=2) <= job.scheduled_for - before < timedelta(seconds=3)

    def test_attempts_exhausted(self, db_session):
        job = stored_job(attempts=3)
        with_job(db_session, job)

        status = fail_job(db_session, job.id, "still failing")

        assert status == "failed"
        assert job.completed_at is not None
        assert job.scheduled_for is None

    def test_permanent_failure_skips_remaining_attempts(self, db_session):
        job = stored_job(attempts=1)
        with_job(db_session, job)

        status = fail_job(db_session, job.id, "token revoked", permanent=True)

        assert status == "failed"
        assert job.status == "failed"
        assert job.completed_at is not None
        assert job.scheduled_for is None

    def test_unknown_job(self, db_session):
        with_job(db_session, None)
        assert fail_job(db_session, "missing", "x") is None
        db_session.commit.assert_not_called()


class TestHousekeeping:
    def test_cleanup_returns_deleted_count(self, db_session):
        db_session.execute.return_value = Mock(rowcount=7)
        assert cleanup_old_jobs(db_session, days_old=3) == 7
        db_session.commit.assert_called_once()

    def test_queue_stats(self, db_session):
        db_session.execute.return_value.all.return_value = [
            ("send_whatsapp", "pending", 2),
            ("send_whatsapp", "failed", 1),
            ("response_generation", "pending", 3),
        ]

        stats = get_queue_stats(db_session)

        assert stats["total"] == 6
        assert stats["by_status"] == {"pending": 5, "processing": 0, "completed": 0, "failed": 1}
        assert stats["by_type"]["send_whatsapp"] == {"pending": 2, "failed": 1}
