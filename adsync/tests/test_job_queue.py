"""Tests for the durable sync job queue.

WHAT:
    Enqueue validation and dedupe, priority ordering, per-connection
    admission, retry/backoff, cancellation, lease recovery and archival.

WHY:
    The queue is the only coordination point between worker processes; a
    wrong transition either loses work or runs two jobs for one account.

REFERENCES:
    - adsync/services/job_queue.py (module under test)
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from adsync.exceptions import ValidationError
from adsync.models import JobPriorityEnum, JobStatusEnum, SyncJob, SyncJobArchive
from adsync.services.job_queue import JobQueue, RemoveResult, backoff_seconds, build_dedupe_key
from adsync.schemas import parse_job_spec
from adsync.tests.factories import d, make_connection, metrics_spec

NOW = datetime(2024, 7, 1, 12, 0, 0)


@pytest.fixture
def queue(test_db_session, settings):
    return JobQueue(test_db_session, settings)


def _job(db, job_id) -> SyncJob:
    db.expire_all()
    return db.query(SyncJob).filter(SyncJob.id == job_id).one()


# ============================================================================
# Enqueue
# ============================================================================

class TestEnqueue:
    def test_enqueue_creates_waiting_job(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(
            metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW,
        )

        job = _job(test_db_session, job_id)
        assert job.status == JobStatusEnum.waiting
        assert job.range_since == d("2024-06-01")
        assert job.range_until == d("2024-06-30")
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.payload["kind"] == "historical_metrics"
        assert "priority" not in job.payload

    def test_unknown_kind_is_rejected(self, queue, test_brand):
        with pytest.raises(ValidationError):
            queue.enqueue({"kind": "full_resync", "brand_id": test_brand.id})

    def test_inverted_range_is_rejected(self, queue, test_brand, test_connection):
        with pytest.raises(ValidationError) as exc:
            queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-30", "2024-06-01"))
        assert "time_range" in str(exc.value)

    def test_unknown_breakdown_is_rejected(self, queue, test_brand, test_connection):
        with pytest.raises(ValidationError):
            queue.enqueue({
                "kind": "historical_demographics",
                "brand_id": test_brand.id,
                "connection_id": test_connection.id,
                "time_range": {"since": "2024-06-01", "until": "2024-06-30"},
                "breakdown": "zodiac_sign",
            })

    def test_extra_fields_are_rejected(self, queue, test_brand, test_connection):
        with pytest.raises(ValidationError):
            queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-02", fields=["spend"]))

    def test_equal_open_job_is_enqueued_once(self, queue, test_db_session, test_brand, test_connection):
        spec = metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30")

        first = queue.enqueue(spec, now=NOW)
        second = queue.enqueue(spec, now=NOW)

        assert first == second
        assert test_db_session.query(SyncJob).count() == 1

    def test_completed_job_does_not_block_new_enqueue(self, queue, test_brand, test_connection):
        spec = metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30")
        first = queue.enqueue(spec, now=NOW)
        queue.dequeue(1, "w1", now=NOW)
        assert queue.ack(first, "w1", now=NOW)

        assert queue.enqueue(spec, now=NOW) != first

    def test_delayed_job_waits_for_run_at(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(
            metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-02", delay_seconds=60), now=NOW,
        )
        assert _job(test_db_session, job_id).status == JobStatusEnum.delayed

        assert queue.dequeue(1, "w1", now=NOW + timedelta(seconds=30)) == []
        claimed = queue.dequeue(1, "w1", now=NOW + timedelta(seconds=61))
        assert [job.id for job in claimed] == [job_id]

    def test_dedupe_key_format(self, test_brand, test_connection):
        spec = parse_job_spec({
            "kind": "historical_demographics",
            "brand_id": test_brand.id,
            "connection_id": test_connection.id,
            "time_range": {"since": "2024-06-01", "until": "2024-06-30"},
            "breakdown": "region",
        })
        assert build_dedupe_key(spec, "act_123") == (
            "meta:act_123:historical_demographics:region:2024-06-01:2024-06-30"
        )
        rollover = parse_job_spec({"kind": "rollover", "brand_id": test_brand.id})
        assert build_dedupe_key(rollover) == f"meta:{test_brand.id}:rollover"


# ============================================================================
# Dequeue
# ============================================================================

class TestDequeue:
    def test_priority_tiers_then_most_recent_range(self, queue, test_db_session, test_brand):
        connections = [make_connection(test_db_session, test_brand, account_id=f"act_{i}") for i in range(4)]
        low = queue.enqueue(metrics_spec(test_brand, connections[0], "2024-06-01", "2024-06-30", priority="low"), now=NOW)
        old = queue.enqueue(metrics_spec(test_brand, connections[1], "2024-03-01", "2024-03-30"), now=NOW)
        recent = queue.enqueue(metrics_spec(test_brand, connections[2], "2024-05-01", "2024-05-30"), now=NOW)
        high = queue.enqueue(metrics_spec(test_brand, connections[3], "2024-01-01", "2024-01-30", priority="high"), now=NOW)

        claimed = queue.dequeue(4, "w1", now=NOW)

        assert [job.id for job in claimed] == [high, recent, old, low]

    def test_equal_range_falls_back_to_enqueue_order(self, queue, test_db_session, test_brand):
        first_conn = make_connection(test_db_session, test_brand, account_id="act_1")
        second_conn = make_connection(test_db_session, test_brand, account_id="act_2")
        second = queue.enqueue(metrics_spec(test_brand, second_conn, "2024-06-01", "2024-06-30"), now=NOW)
        first = queue.enqueue(
            metrics_spec(test_brand, first_conn, "2024-06-01", "2024-06-30"), now=NOW + timedelta(seconds=1),
        )

        claimed = queue.dequeue(2, "w1", now=NOW + timedelta(seconds=2))

        assert [job.id for job in claimed] == [second, first]

    def test_one_active_job_per_connection(self, queue, test_db_session, test_brand, test_connection):
        recent = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        older = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-05-01", "2024-05-31"), now=NOW)

        batch = queue.dequeue(5, "w1", now=NOW)
        assert [job.id for job in batch] == [recent]
        assert queue.dequeue(5, "w2", now=NOW) == []

        queue.ack(recent, "w1", now=NOW)
        assert [job.id for job in queue.dequeue(5, "w2", now=NOW)] == [older]

    def test_busy_connection_does_not_crowd_out_others(self, queue, test_db_session, test_brand, test_connection):
        quiet = make_connection(test_db_session, test_brand, account_id="act_quiet")
        for month in range(1, 7):
            queue.enqueue(metrics_spec(
                test_brand, test_connection, f"2024-0{month}-01", f"2024-0{month}-28", priority="high",
            ), now=NOW)
        low = queue.enqueue(metrics_spec(test_brand, quiet, "2024-06-01", "2024-06-30", priority="low"), now=NOW)

        batch = queue.dequeue(2, "w1", now=NOW)

        assert len(batch) == 2
        assert {job.connection_id for job in batch} == {test_connection.id, quiet.id}
        assert low in {job.id for job in batch}

    def test_claim_sets_lease_and_attempt(self, queue, test_db_session, test_brand, test_connection, settings):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)

        queue.dequeue(1, "w1", now=NOW)

        job = _job(test_db_session, job_id)
        assert job.status == JobStatusEnum.active
        assert job.locked_by == "w1"
        assert job.attempts == 1
        assert job.lease_expires_at == NOW + timedelta(seconds=settings.JOB_LEASE_SECONDS)

    def test_rate_limited_connection_is_skipped(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        test_connection.rate_limited_until = NOW + timedelta(minutes=10)
        test_db_session.commit()

        assert queue.dequeue(1, "w1", now=NOW) == []
        assert [job.id for job in queue.dequeue(1, "w1", now=NOW + timedelta(minutes=11))] == [job_id]

    def test_rollover_jobs_have_no_connection_gate(self, queue, test_brand, test_connection):
        queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        rollover = queue.enqueue({"kind": "rollover", "brand_id": test_brand.id, "priority": "low"}, now=NOW)

        claimed = queue.dequeue(5, "w1", now=NOW)

        assert len(claimed) == 2
        assert claimed[-1].id == rollover

    def test_two_dequeuers_cannot_claim_the_same_job(self, session_factory, test_brand, test_connection, settings):
        db1, db2 = session_factory(), session_factory()
        try:
            job_id = JobQueue(db1, settings).enqueue(
                metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW,
            )
            assert JobQueue(db1, settings)._try_claim(job_id, "w1", NOW) is True
            assert JobQueue(db2, settings)._try_claim(job_id, "w2", NOW) is False
        finally:
            db1.close()
            db2.close()

    def test_admission_index_rejects_second_active_job(self, session_factory, test_brand, test_connection, settings):
        db1, db2 = session_factory(), session_factory()
        try:
            queue1 = JobQueue(db1, settings)
            first = queue1.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
            second = queue1.enqueue(metrics_spec(test_brand, test_connection, "2024-05-01", "2024-05-31"), now=NOW)

            assert queue1._try_claim(first, "w1", NOW) is True
            assert JobQueue(db2, settings)._try_claim(second, "w2", NOW) is False
            assert _job(db2, second).status == JobStatusEnum.waiting
        finally:
            db1.close()
            db2.close()


# ============================================================================
# Transitions
# ============================================================================

class TestTransitions:
    def test_ack_is_fenced_on_worker(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)

        assert queue.ack(job_id, "w2", now=NOW) is False
        assert _job(test_db_session, job_id).status == JobStatusEnum.active

        assert queue.ack(job_id, "w1", now=NOW) is True
        job = _job(test_db_session, job_id)
        assert job.status == JobStatusEnum.completed
        assert job.finished_at == NOW

    def test_retryable_failure_backs_off_until_exhausted(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(
            metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30", max_attempts=3), now=NOW,
        )

        clock = NOW
        for attempt in (1, 2):
            assert [job.id for job in queue.dequeue(1, "w1", now=clock)] == [job_id]
            assert queue.fail(job_id, "timeout", retryable=True, worker_id="w1", now=clock) == JobStatusEnum.delayed
            job = _job(test_db_session, job_id)
            assert job.run_at == clock + timedelta(seconds=2 ** (attempt - 1))
            assert queue.dequeue(1, "w1", now=clock) == []
            clock = job.run_at

        queue.dequeue(1, "w1", now=clock)
        assert queue.fail(job_id, "timeout", retryable=True, worker_id="w1", now=clock) == JobStatusEnum.failed

        job = _job(test_db_session, job_id)
        assert job.attempts == 3
        assert job.last_error == "timeout"
        assert queue.get_stats()["failed"] == 1

    def test_non_retryable_failure_is_dead_lettered(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)

        assert queue.fail(job_id, "bad request", retryable=False, worker_id="w1", now=NOW) == JobStatusEnum.failed
        assert _job(test_db_session, job_id).attempts == 1

    def test_advisory_delay_overrides_backoff(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)

        queue.fail(job_id, "throttled", retryable=True, retry_after=300, worker_id="w1", now=NOW)

        assert _job(test_db_session, job_id).run_at == NOW + timedelta(seconds=300)

    def test_fail_from_superseded_worker_is_ignored(self, queue, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)

        assert queue.fail(job_id, "late", retryable=True, worker_id="w2", now=NOW) is None

    @pytest.mark.parametrize(
        "attempts, expected",
        [(1, 1.0), (2, 2.0), (3, 4.0), (6, 32.0), (7, 60.0), (20, 60.0)],
    )
    def test_backoff_is_exponential_and_capped(self, attempts, expected):
        assert backoff_seconds(attempts, base=1.0, cap=60.0) == expected


# ============================================================================
# Removal and cancellation
# ============================================================================

class TestRemove:
    def test_waiting_job_is_deleted(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)

        assert queue.remove(job_id) == RemoveResult.removed
        assert test_db_session.query(SyncJob).count() == 0

    def test_active_job_gets_cancellation_flag(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)
        assert queue.check_in(job_id, "w1", now=NOW) is False

        assert queue.remove(job_id) == RemoveResult.cancel_requested
        assert queue.check_in(job_id, "w1", now=NOW) is True

        assert queue.finalize_cancelled(job_id, "w1") is True
        assert test_db_session.query(SyncJob).count() == 0

    def test_finished_job_is_not_removable(self, queue, test_brand, test_connection):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)
        queue.ack(job_id, "w1", now=NOW)

        assert queue.remove(job_id) == RemoveResult.not_removable

    def test_unknown_job(self, queue):
        assert queue.remove(uuid4()) == RemoveResult.not_found

    def test_check_in_extends_lease(self, queue, test_db_session, test_brand, test_connection, settings):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)
        later = NOW + timedelta(minutes=20)

        queue.check_in(job_id, "w1", now=later)

        assert _job(test_db_session, job_id).lease_expires_at == later + timedelta(seconds=settings.JOB_LEASE_SECONDS)

    def test_cleanup_brand(self, queue, test_db_session, test_brand, test_connection):
        active = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.enqueue(metrics_spec(test_brand, test_connection, "2024-05-01", "2024-05-31"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)

        assert queue.cleanup_brand(test_brand.id) == {"removed": 1, "cancel_requested": 1}
        assert _job(test_db_session, active).cancel_requested is True


# ============================================================================
# Housekeeping
# ============================================================================

class TestHousekeeping:
    def test_expired_lease_is_redelivered(self, queue, test_db_session, test_brand, test_connection, settings):
        job_id = queue.enqueue(metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)

        assert queue.requeue_expired_leases(now=NOW + timedelta(minutes=1)) == 0
        expired_at = NOW + timedelta(seconds=settings.JOB_LEASE_SECONDS + 1)
        assert queue.requeue_expired_leases(now=expired_at) == 1

        job = _job(test_db_session, job_id)
        assert job.status == JobStatusEnum.waiting
        assert job.locked_by is None

        # The crashed worker can no longer complete it
        assert queue.ack(job_id, "w1", now=expired_at) is False
        assert [j.id for j in queue.dequeue(1, "w2", now=expired_at)] == [job_id]

    def test_expired_lease_on_last_attempt_fails(self, queue, test_db_session, test_brand, test_connection, settings):
        job_id = queue.enqueue(
            metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30", max_attempts=1), now=NOW,
        )
        queue.dequeue(1, "w1", now=NOW)

        queue.requeue_expired_leases(now=NOW + timedelta(seconds=settings.JOB_LEASE_SECONDS + 1))

        assert _job(test_db_session, job_id).status == JobStatusEnum.failed

    def test_stats_cover_every_status(self, queue, test_db_session, test_brand):
        connections = [make_connection(test_db_session, test_brand, account_id=f"act_{i}") for i in range(3)]
        done = queue.enqueue(metrics_spec(test_brand, connections[0], "2024-06-01", "2024-06-30"), now=NOW)
        queue.dequeue(1, "w1", now=NOW)
        queue.ack(done, "w1", now=NOW)
        queue.enqueue(metrics_spec(test_brand, connections[1], "2024-06-01", "2024-06-30"), now=NOW)
        queue.enqueue(
            metrics_spec(test_brand, connections[2], "2024-06-01", "2024-06-30", delay_seconds=600), now=NOW,
        )

        stats = queue.get_stats(test_brand.id)

        assert stats == {"waiting": 1, "active": 0, "completed": 1, "failed": 0, "delayed": 1}

    def test_archive_moves_old_finished_jobs(self, queue, test_db_session, test_brand, test_connection):
        job_id = queue.enqueue(
            metrics_spec(test_brand, test_connection, "2024-06-01", "2024-06-30", priority=JobPriorityEnum.high),
            now=NOW,
        )
        queue.dequeue(1, "w1", now=NOW)
        queue.ack(job_id, "w1", now=NOW)

        assert queue.archive_finished(now=NOW + timedelta(days=1)) == 0
        assert queue.archive_finished(now=NOW + timedelta(days=8)) == 1

        assert test_db_session.query(SyncJob).count() == 0
        archived = test_db_session.query(SyncJobArchive).one()
        assert archived.id == job_id
        assert archived.status == "completed"
