from collections.abc import Callable
from typing import Any

from loguru import logger

from photo_batch import jobs, ledger
from photo_batch.config import settings
from photo_batch.db import transaction
from photo_batch.errors import (
    InvalidBatchSize,
    InvalidJobType,
    JobAccessDenied,
    JobNotCancellable,
    JobNotFound,
    QueueUnavailable,
)
from photo_batch.notifications import Notifier, job_event
from photo_batch.queue import JobQueue

Pricing = Callable[[str, int], int]


def default_pricing(job_type: str, batch_size: int) -> int:
    return batch_size * settings.credits_per_image


class Dispatcher:
    def __init__(self, queue: JobQueue, notifier: Notifier, pricing: Pricing = default_pricing) -> None:
        self.queue = queue
        self.notifier = notifier
        self.pricing = pricing

    def _validate(self, job_type: str, batch_size: int) -> None:
        if job_type not in settings.job_type_list():
            raise InvalidJobType(f"unknown job type: {job_type}")
        if not 1 <= batch_size <= settings.max_batch_size:
            raise InvalidBatchSize(f"batch_size must be between 1 and {settings.max_batch_size}")

    def submit(self, user_id: str, job_type: str, batch_size: int, payload: dict[str, Any] | None = None) -> dict:
        """Charge the user and queue a generation job.

        The debit and the job row commit together. The queue write happens only
        after that commit; if it fails the job stays pending and
        ``QueueUnavailable`` is raised with its id so ``reconcile`` can pick it
        up later.
        """
        self._validate(job_type, batch_size)
        cost = int(self.pricing(job_type, batch_size))
        job_id = jobs.new_job_id()

        with transaction() as conn:
            ledger.debit(
                user_id,
                cost,
                "consume",
                related_job_id=job_id,
                description=f"{job_type} batch x{batch_size}",
                conn=conn,
            )
            jobs.insert_job(conn, job_id, user_id, job_type, batch_size, payload or {}, cost)

        log = logger.bind(job_id=job_id)
        log.info(f"job created user={user_id} type={job_type} batch={batch_size} cost={cost}")
        try:
            self.queue.enqueue(job_id, job_type)
        except QueueUnavailable as exc:
            log.error(f"job left pending, enqueue failed: {exc}")
            raise
        return jobs.get_job(job_id)

    def get_job(self, job_id: str, user_id: str | None = None) -> dict:
        job = jobs.get_job(job_id)
        if not job:
            raise JobNotFound(f"job {job_id} not found")
        if user_id is not None and job["user_id"] != user_id:
            raise JobAccessDenied("you do not own this job")
        return job

    def list_jobs(
        self,
        user_id: str,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict]:
        return jobs.list_jobs(user_id=user_id, status=status, job_type=job_type, limit=limit, offset=offset)

    def cancel(self, job_id: str, user_id: str | None = None) -> dict:
        job = self.get_job(job_id, user_id)
        if job["status"] in jobs.TERMINAL_STATUSES or not jobs.mark_cancelled(job_id):
            # Lost the race or already closed: whichever write landed first stands.
            raise JobNotCancellable(f"job {job_id} can no longer be cancelled")
        job = jobs.get_job(job_id)
        self.notifier.publish(job["user_id"], job_event("job_cancelled", job, error=job["error"]))
        return job

    def complete_from_callback(self, job_id: str, result: Any) -> dict:
        job = self.get_job(job_id)
        if jobs.mark_completed(job_id, result):
            job = jobs.get_job(job_id)
            logger.bind(job_id=job_id).info("job completed by callback")
            self.notifier.publish(job["user_id"], job_event("job_completed", job, result=job["result"]))
        return job

    def fail_from_callback(self, job_id: str, error: str | None) -> dict:
        job = self.get_job(job_id)
        message = error or "generator reported failure"
        if jobs.mark_failed(job_id, message, failure_code="CALLBACK_FAILED"):
            job = jobs.get_job(job_id)
            logger.bind(job_id=job_id).info(f"job failed by callback: {message}")
            self.notifier.publish(job["user_id"], job_event("job_failed", job, error=message))
        return job

    def reconcile(self, grace_seconds: int | None = None) -> list[str]:
        """Re-enqueue open jobs that have no queue entry behind them.

        Covers pending jobs whose enqueue failed after commit, and processing
        jobs whose lease ran out with no live delivery: the worker died, the
        delivery failed in RQ, or an accepted job never got its callback.
        """
        grace = settings.reconcile_grace_sec if grace_seconds is None else grace_seconds
        candidates = jobs.list_stale_pending(grace) + jobs.list_expired_processing(grace)
        if not candidates:
            return []

        queued: dict[str, set[str]] = {}
        requeued: list[str] = []
        for job in candidates:
            job_type = job["type"]
            if job_type not in queued:
                queued[job_type] = self.queue.queued_job_ids(job_type)
            if job["job_id"] in queued[job_type]:
                continue
            try:
                self.queue.enqueue(job["job_id"], job_type, attempt_count=job["attempt_count"])
            except QueueUnavailable as exc:
                logger.warning(f"reconcile stopped, queue unavailable: {exc}")
                break
            queued[job_type].add(job["job_id"])
            requeued.append(job["job_id"])
            logger.bind(job_id=job["job_id"]).warning(f"re-enqueued orphaned {job['status']} job")
        return requeued
