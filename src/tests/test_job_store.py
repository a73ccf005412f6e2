import uuid
from datetime import timedelta

import pytest

from racky.db.db import db_session
from racky.exceptions import InvalidTransitionError
from racky.jobs.models import HistoryEvent, Job, JobHistory, JobStatus
from racky.jobs.store import ClaimOutcome, JobFilters, TenantScope
from racky.jobs.types import JobPriority, JobType, queue_for, routing_key_for
from racky.utils import utcnow

WORKSPACE = "ws-1"
SCOPE = TenantScope.workspace(WORKSPACE)


def seed_jobs(db, counts, workspace_id=WORKSPACE, job_type=JobType.PRODUCT_BATCH, created_at=None):
    """Insert jobs directly, ``counts`` maps status to how many rows to create."""
    now = created_at or utcnow()
    rows = []
    for status, count in counts.items():
        for _ in range(count):
            rows.append(
                Job(
                    job_id=str(uuid.uuid4()),
                    job_type=job_type,
                    queue_name=queue_for(job_type),
                    routing_key=routing_key_for(job_type, JobPriority.NORMAL),
                    workspace_id=workspace_id,
                    data={},
                    status=status,
                    progress=100 if status == JobStatus.Completed else 0,
                    attempts=0 if status == JobStatus.Queued else 1,
                    max_attempts=3,
                    priority=JobPriority.NORMAL,
                    created_at=now,
                    updated_at=now,
                    processed_on=None if status == JobStatus.Queued else now,
                )
            )
    job_ids = [r.job_id for r in rows]
    with db_session(db) as session:
        session.add_all(rows)
        session.commit()
    return job_ids


def new_job(store, workspace_id=WORKSPACE, job_type=JobType.PRODUCT_INDIVIDUAL, **kwargs):
    return store.create_job(
        job_id=str(uuid.uuid4()),
        job_type=job_type,
        queue_name=queue_for(job_type),
        routing_key=routing_key_for(job_type, kwargs.get("priority", JobPriority.NORMAL)),
        workspace_id=workspace_id,
        data={"connection_id": "c", "product_id": "p"},
        **kwargs,
    )


def test_queue_stats_match_seeded_counts(services, db):
    job_ids = seed_jobs(
        db,
        {
            JobStatus.Queued: 250,
            JobStatus.Processing: 250,
            JobStatus.Completed: 250,
            JobStatus.Failed: 250,
        },
    )

    stats = services.queue_manager.get_queue_stats("products.batch", SCOPE)

    assert stats == {"waiting": 250, "active": 250, "completed": 250, "failed": 250}
    assert len(set(job_ids)) == 1000
    assert services.store.get_job(job_ids[-1], SCOPE).status == JobStatus.Failed


def test_reads_are_tenant_isolated(services, db):
    seed_jobs(db, {JobStatus.Queued: 3}, workspace_id="ws-a")
    other = seed_jobs(db, {JobStatus.Queued: 2}, workspace_id="ws-b")

    scope_a = TenantScope.workspace("ws-a")
    assert services.store.list_jobs(scope_a).total == 3
    assert services.store.get_job(other[0], scope_a) is None
    assert services.store.get_timeline(other[0], scope_a) == []
    assert services.store.request_cancel(other[0], scope_a) is None
    assert services.store.get_queue_stats("products.batch", scope_a)["waiting"] == 3
    assert services.store.get_queue_stats("products.batch", TenantScope.platform())["waiting"] == 5


def test_workspace_scope_requires_id():
    with pytest.raises(ValueError):
        TenantScope.workspace("")


def test_list_jobs_filters_sorts_and_pages(services, db):
    seed_jobs(db, {JobStatus.Completed: 5, JobStatus.Failed: 2})
    low = new_job(services.store, priority=JobPriority.LOW)
    high = new_job(services.store, priority=JobPriority.HIGH)

    page = services.store.list_jobs(SCOPE, per_page=3, page=2)
    assert page.total == 9
    assert page.pages == 3
    assert len(page.items) == 3

    failed = services.store.list_jobs(SCOPE, JobFilters(status=[JobStatus.Failed]))
    assert failed.total == 2

    individual = services.store.list_jobs(
        SCOPE, JobFilters(job_type=JobType.PRODUCT_INDIVIDUAL), sort="-priority"
    )
    assert [j.job_id for j in individual.items] == [high.job_id, low.job_id]

    with pytest.raises(ValueError):
        services.store.list_jobs(SCOPE, sort="workspace_id")


def test_count_by_status_always_has_every_status(services):
    assert services.store.count_by_status(SCOPE) == {
        "queued": 0,
        "processing": 0,
        "completed": 0,
        "failed": 0,
    }


def test_claim_increments_attempts_once(services):
    job = new_job(services.store)

    first = services.store.claim(job.job_id)
    second = services.store.claim(job.job_id)

    assert first.outcome is ClaimOutcome.CLAIMED
    assert first.job.status == JobStatus.Processing
    assert first.job.attempts == 1
    assert first.job.queue_wait_time is not None
    assert second.outcome is ClaimOutcome.DUPLICATE
    assert services.store.claim("missing").outcome is ClaimOutcome.NOT_FOUND


def test_claim_fails_job_without_attempts_left(services):
    job = new_job(services.store, max_attempts=1)
    services.store.claim(job.job_id)
    services.store.record_failure(job.job_id, "boom", retryable=True)
    # A stale redelivery of a job that was already failed is only a duplicate.
    assert services.store.claim(job.job_id).outcome is ClaimOutcome.DUPLICATE

    exhausted = new_job(services.store, max_attempts=1)
    with db_session(services.db) as session:
        row = session.query(Job).filter_by(job_id=exhausted.job_id).one()
        row.attempts = 1
        session.commit()

    result = services.store.claim(exhausted.job_id)
    assert result.outcome is ClaimOutcome.EXHAUSTED
    assert result.job.status == JobStatus.Failed


def test_progress_is_clamped_and_monotonic(services):
    job = new_job(services.store)
    assert services.store.update_progress(job.job_id, 10) is False  # not processing yet

    services.store.claim(job.job_id)
    assert services.store.update_progress(job.job_id, 40) is True
    assert services.store.update_progress(job.job_id, 20) is False
    assert services.store.update_progress(job.job_id, 250) is True
    assert services.store.get_job(job.job_id, SCOPE).progress == 100


def test_terminal_jobs_cannot_transition(services):
    job = new_job(services.store)
    services.store.claim(job.job_id)
    services.store.mark_completed(job.job_id, {"ok": True})

    with pytest.raises(InvalidTransitionError):
        services.store.record_failure(job.job_id, "late failure")
    with pytest.raises(InvalidTransitionError):
        services.store.mark_completed(job.job_id)


def test_request_cancel_leaves_terminal_jobs_alone(services):
    job = new_job(services.store)
    services.store.claim(job.job_id)
    services.store.mark_completed(job.job_id)

    cancelled = services.store.request_cancel(job.job_id, SCOPE)
    assert cancelled.status == JobStatus.Completed
    assert cancelled.cancel_requested is False


def test_rollback_stale_requeues_or_fails(services, db):
    old = utcnow() - timedelta(hours=2)
    retryable = new_job(services.store)
    exhausted = new_job(services.store, max_attempts=1)
    for job in (retryable, exhausted):
        services.store.claim(job.job_id)
    with db_session(db) as session:
        session.query(Job).update({Job.processed_on: old})
        session.commit()

    cutoff = utcnow() - timedelta(minutes=30)
    stale = {j.job_id for j in services.store.find_stale_processing(cutoff)}
    assert stale == {retryable.job_id, exhausted.job_id}

    requeued = services.store.rollback_stale(retryable.job_id, cutoff)
    failed = services.store.rollback_stale(exhausted.job_id, cutoff)

    assert requeued.status == JobStatus.Queued
    assert requeued.published_at is None
    assert failed.status == JobStatus.Failed
    assert services.store.get_timeline(retryable.job_id, SCOPE)[-1].event == HistoryEvent.Rollback
    assert services.store.rollback_stale(retryable.job_id, cutoff) is None


def test_purge_expired_removes_old_rows(services, db):
    seed_jobs(db, {JobStatus.Completed: 2}, created_at=utcnow() - timedelta(days=40))
    fresh = new_job(services.store)
    with db_session(db) as session:
        session.add(
            JobHistory(
                job_id=fresh.job_id,
                workspace_id=WORKSPACE,
                event=HistoryEvent.Progress,
                timestamp=utcnow() - timedelta(days=10),
            )
        )
        session.commit()

    jobs, histories = services.store.purge_expired(timedelta(days=30), timedelta(days=7))

    assert jobs == 2
    assert histories == 1
    assert services.store.list_jobs(SCOPE).total == 1
