from datetime import timedelta

import pytest

from racky.db.db import db_session
from racky.exceptions import BrokerUnavailableError
from racky.jobs.models import Job, JobStatus
from racky.jobs.store import TenantScope
from racky.jobs.types import JobType
from racky.utils import utcnow

WORKSPACE = "ws-1"
SCOPE = TenantScope.workspace(WORKSPACE)


def _age(db, seconds, column):
    """Push a timestamp column of every job into the past."""
    past = utcnow() - timedelta(seconds=seconds)
    with db_session(db) as session:
        session.query(Job).update({getattr(Job, column): past})
        session.commit()


def test_sweeper_republishes_jobs_the_broker_never_accepted(services, publisher, db, sync_payload):
    publisher.fail = True
    with pytest.raises(BrokerUnavailableError) as exc:
        services.producer.enqueue(JobType.MARKETPLACE_SYNC, sync_payload, workspace_id=WORKSPACE)
    job_id = exc.value.job_id

    publisher.fail = False
    _age(db, services.settings.jobs.republish_after_seconds + 5, "updated_at")

    report = services.sweeper.run_once()

    assert report.republished == 1
    assert publisher.last_job_message().job_id == job_id
    assert services.store.get_job(job_id, SCOPE).published_at is not None


def test_sweeper_stops_when_broker_is_still_down(services, publisher, db, sync_payload):
    publisher.fail = True
    for _ in range(3):
        with pytest.raises(BrokerUnavailableError):
            services.producer.enqueue(JobType.MARKETPLACE_SYNC, sync_payload, workspace_id=WORKSPACE)
    _age(db, 3600, "updated_at")

    report = services.sweeper.run_once()

    assert report.republished == 0
    assert services.store.count_by_status(SCOPE)["queued"] == 3


def test_recently_enqueued_jobs_are_left_alone(services, publisher, sync_payload):
    publisher.fail = True
    with pytest.raises(BrokerUnavailableError):
        services.producer.enqueue(JobType.MARKETPLACE_SYNC, sync_payload, workspace_id=WORKSPACE)
    publisher.fail = False

    assert services.sweeper.run_once().republished == 0


def test_sweeper_reclaims_stale_processing_jobs(services, publisher, db, sync_payload):
    job_id = services.producer.enqueue(JobType.MARKETPLACE_SYNC, sync_payload, workspace_id=WORKSPACE)
    services.store.claim(job_id)
    _age(db, services.settings.jobs.stale_after_seconds + 60, "processed_on")
    published_before = len(publisher.published)

    report = services.sweeper.run_once()

    job = services.store.get_job(job_id, SCOPE)
    assert report.rolled_back == 1
    assert job.status == JobStatus.Queued
    assert job.published_at is not None
    assert len(publisher.published) == published_before + 1


def test_sweeper_fails_stale_jobs_without_attempts(services, db, sync_payload):
    job_id = services.producer.enqueue(
        JobType.MARKETPLACE_SYNC, sync_payload, workspace_id=WORKSPACE, max_attempts=1
    )
    services.store.claim(job_id)
    _age(db, services.settings.jobs.stale_after_seconds + 60, "processed_on")

    report = services.sweeper.run_once()

    assert report.stalled_failed == 1
    assert services.store.get_job(job_id, SCOPE).status == JobStatus.Failed


def test_sweeper_purges_expired_jobs(services, db, sync_payload):
    services.producer.enqueue(JobType.MARKETPLACE_SYNC, sync_payload, workspace_id=WORKSPACE)
    _age(db, (services.settings.jobs.job_ttl_days + 1) * 86400, "created_at")

    report = services.sweeper.run_once()

    assert report.purged_jobs == 1
    assert services.store.list_jobs(SCOPE).total == 0
