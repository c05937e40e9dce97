import threading
from dataclasses import dataclass

from loguru import logger
from redis import RedisError
from rq import SimpleWorker, Worker

from photo_batch import jobs, tasks
from photo_batch.config import settings
from photo_batch.dispatcher import Dispatcher
from photo_batch.errors import DuplicateDelivery, PermanentGeneratorFailure, QueueUnavailable, RetryCeilingExceeded
from photo_batch.generator import GenerationResult, GeneratorClient, build_request
from photo_batch.notifications import Notifier, RedisNotifier, job_event
from photo_batch.queue import JobQueue, get_redis_connection

COMPLETED = "completed"
FAILED = "failed"
RETRYING = "retrying"
AWAITING_CALLBACK = "awaiting_callback"
DUPLICATE = "duplicate"
DISCARDED = "discarded"
MISSING = "missing"


@dataclass(frozen=True)
class RetryPolicy:
    ceiling: int = 3
    base_delay: float = 5.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            ceiling=settings.retry_ceiling,
            base_delay=settings.retry_base_delay_sec,
            multiplier=settings.retry_multiplier,
        )

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.ceiling

    def delay_for(self, attempts_made: int) -> float:
        return self.base_delay * self.multiplier ** max(0, attempts_made - 1)


class WorkerPool:
    """Runs generation jobs delivered by RQ workers.

    ``process_job`` is what each delivery executes; ``run_burst`` and ``work``
    drive RQ workers over the per-type queues with this pool installed.
    """

    def __init__(
        self,
        queue: JobQueue,
        generator: GeneratorClient,
        notifier: Notifier,
        retry_policy: RetryPolicy | None = None,
        lease_seconds: int | None = None,
        job_types: list[str] | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.queue = queue
        self.generator = generator
        self.notifier = notifier
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy.from_settings()
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.job_lease_sec
        self.job_types = job_types if job_types is not None else settings.job_type_list()
        self.dispatcher = dispatcher if dispatcher is not None else Dispatcher(queue, notifier)

        if self.lease_seconds <= generator.timeout_sec:
            logger.warning(
                f"job lease ({self.lease_seconds}s) not longer than generator timeout "
                f"({generator.timeout_sec}s); live jobs may be re-delivered"
            )

    @classmethod
    def from_settings(cls, job_types: list[str] | None = None) -> "WorkerPool":
        conn = get_redis_connection()
        return cls(
            JobQueue.from_settings(conn),
            GeneratorClient(),
            RedisNotifier(conn, settings.notify_channel),
            job_types=job_types,
        )

    def _notify(self, event_type: str, job_id: str, **extra) -> None:
        job = jobs.get_job(job_id)
        if job:
            self.notifier.publish(job["user_id"], job_event(event_type, job, **extra))

    def process_job(self, job_id: str) -> str:
        """Drive one delivery of a job through the state machine.

        Unexpected errors propagate to RQ, which records the delivery as
        failed. The job keeps its lease; once that runs out the reconciler
        delivers it again, and the re-claim counts as an attempt.
        """
        log = logger.bind(job_id=job_id)
        job = jobs.get_job(job_id)
        if not job:
            log.warning("delivery references unknown job")
            return MISSING

        lease_id = jobs.claim(job_id, self.lease_seconds)
        if lease_id is None:
            log.debug(f"{DuplicateDelivery.code}: skipped, status={job['status']}")
            return DUPLICATE

        job = jobs.get_job(job_id)
        attempts_made = int(job["attempt_count"])
        if not self.retry_policy.should_retry(attempts_made):
            # earlier attempts ended without a result: owner died or no callback came
            reason = job["error"] or "no result before the lease expired"
            return self._fail(job, lease_id, RetryCeilingExceeded.code, f"{reason} (gave up after {attempts_made} attempts)")

        jobs.update_progress(job_id, lease_id, 10)
        attempt = attempts_made + 1
        log.info(f"processing type={job['type']} batch={job['batch_size']} attempt={attempt}")
        self._notify("job_processing", job_id, attempt=attempt)

        result = self.generator.generate(build_request(job))

        if result.ok and result.accepted:
            jobs.extend_lease(job_id, lease_id, settings.callback_timeout_sec)
            jobs.update_progress(job_id, lease_id, 50)
            log.info("generator accepted job, awaiting callback")
            self._notify("job_progress", job_id, message="generation started")
            return AWAITING_CALLBACK

        if result.ok:
            if not jobs.mark_completed(job_id, result.artifact, lease_id=lease_id):
                return DISCARDED
            log.info("job completed")
            self._notify("job_completed", job_id, result=result.artifact)
            return COMPLETED

        return self._handle_failure(job, lease_id, attempt, result)

    def _handle_failure(self, job: dict, lease_id: str, attempt: int, result: GenerationResult) -> str:
        job_id = job["job_id"]
        log = logger.bind(job_id=job_id)

        if result.retryable and self.retry_policy.should_retry(attempt):
            delay = self.retry_policy.delay_for(attempt)
            if not jobs.release_for_retry(job_id, lease_id, attempt, result.error or ""):
                return DISCARDED
            try:
                self.queue.enqueue(job_id, job["type"], attempt_count=attempt, delay=delay)
            except QueueUnavailable as exc:
                log.error(f"retry enqueue failed, left for reconcile: {exc}")
            log.warning(f"attempt {attempt} failed ({result.code}), retrying in {delay:.1f}s: {result.error}")
            self._notify("job_retrying", job_id, attempt=attempt, delay=delay, error=result.error)
            return RETRYING

        if result.retryable:
            return self._fail(job, lease_id, RetryCeilingExceeded.code, f"{result.error} (gave up after {attempt} attempts)")
        return self._fail(job, lease_id, result.code or PermanentGeneratorFailure.code, result.error or "generation failed")

    def _fail(self, job: dict, lease_id: str, code: str, error: str) -> str:
        job_id = job["job_id"]
        if not jobs.mark_failed(job_id, error, failure_code=code, lease_id=lease_id):
            return DISCARDED
        logger.bind(job_id=job_id).error(f"job failed {code}: {error}")
        self._notify("job_failed", job_id, error=error)
        return FAILED

    def run_maintenance(self) -> list[str]:
        return self.dispatcher.reconcile()

    def _rq_queues(self) -> list:
        return [self.queue.queue_for(t) for t in self.job_types]

    def run_burst(self) -> int:
        """Drain ready deliveries in this process and return how many ran."""
        tasks.install(self)
        worker = SimpleWorker(self._rq_queues(), connection=self.queue.conn)
        worker.work(burst=True, with_scheduler=True)
        return worker.successful_job_count + worker.failed_job_count

    def _maintenance_loop(self, stop: threading.Event) -> None:
        while not stop.wait(settings.maintenance_interval_sec):
            try:
                requeued = self.run_maintenance()
            except (RedisError, QueueUnavailable) as exc:
                logger.warning(f"maintenance skipped: {exc}")
                continue
            if requeued:
                logger.info(f"reconciler re-enqueued {len(requeued)} jobs")

    def work(self, name: str | None = None, logging_level: str = "INFO") -> None:
        """Run an RQ worker until it is told to stop, reconciling on the side."""
        tasks.install(self)
        stop = threading.Event()
        maintenance = threading.Thread(target=self._maintenance_loop, args=(stop,), name="worker-maintenance", daemon=True)
        maintenance.start()
        logger.info(f"worker started types={self.job_types}")
        try:
            Worker(self._rq_queues(), connection=self.queue.conn, name=name).work(
                logging_level=logging_level, with_scheduler=True
            )
        finally:
            stop.set()
            maintenance.join(timeout=2)
            logger.info("worker stopped")
