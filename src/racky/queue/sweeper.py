"""
Reconciliation between the job store and the broker.

The store is authoritative, so anything the broker lost is repaired from it:
stale ``processing`` jobs are rolled back (or failed once out of attempts),
queued jobs the broker never accepted are republished, and rows past their
retention are purged.
"""
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Dict, Optional

from loguru import logger

from racky.jobs.models import JobStatus
from racky.jobs.store import JobStore
from racky.queue.producer import JobProducer
from racky.settings.models import JobsModel
from racky.utils import benchmark, utcnow
from racky.utils.logging import log_cleaner


@dataclass
class SweepReport:
    rolled_back: int = 0
    stalled_failed: int = 0
    republished: int = 0
    purged_jobs: int = 0
    purged_history: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class JobSweeper:
    def __init__(
        self,
        store: JobStore,
        producer: JobProducer,
        settings: JobsModel,
        snapshot_purger=None,
        batch_size: int = 100,
    ):
        self.store = store
        self.producer = producer
        self.settings = settings
        self.snapshot_purger = snapshot_purger
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def reclaim_stale(self, report: SweepReport) -> None:
        cutoff = utcnow() - timedelta(seconds=self.settings.stale_after_seconds)
        for job in self.store.find_stale_processing(cutoff, limit=self.batch_size):
            updated = self.store.rollback_stale(job.job_id, cutoff)
            if updated is None:
                continue
            if updated.status == JobStatus.Queued:
                report.rolled_back += 1
                logger.warning(f"Rolled back stale job {job.job_id} (attempt {updated.attempts})")
                if self.producer.republish(updated):
                    report.republished += 1
            else:
                report.stalled_failed += 1
                logger.error(f"Stale job {job.job_id} failed: {updated.error}")

    def republish_unpublished(self, report: SweepReport) -> None:
        cutoff = utcnow() - timedelta(seconds=self.settings.republish_after_seconds)
        for job in self.store.find_unpublished(cutoff, limit=self.batch_size):
            if self.producer.republish(job):
                report.republished += 1
            else:
                # Broker is still down; the rest would fail the same way.
                break

    def purge(self, report: SweepReport) -> None:
        report.purged_jobs, report.purged_history = self.store.purge_expired(
            timedelta(days=self.settings.job_ttl_days),
            timedelta(days=self.settings.history_ttl_days),
        )
        if self.snapshot_purger is not None:
            self.snapshot_purger()

    def run_once(self) -> SweepReport:
        report = SweepReport()
        with benchmark(log=lambda s: logger.trace(f"Sweep finished in {s}s")):
            self.reclaim_stale(report)
            self.republish_unpublished(report)
            self.purge(report)
        log_cleaner()
        if any(report.to_dict().values()):
            logger.log("QUEUE", f"Sweep: {report.to_dict()}")
        return report

    def _loop(self) -> None:
        while not self._stop.wait(self.settings.sweep_interval):
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Job sweep failed: {e}")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="racky-sweeper", daemon=True)
        self._thread.start()
        logger.log("QUEUE", f"Job sweeper started (every {self.settings.sweep_interval}s)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
