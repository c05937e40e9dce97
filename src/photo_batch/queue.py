from datetime import timedelta
from uuid import uuid4

from loguru import logger
from redis import Redis, RedisError
from rq import Queue

from photo_batch.config import settings
from photo_batch.errors import QueueUnavailable

EXECUTE_JOB = "photo_batch.tasks.execute_job"


def get_redis_connection(url: str | None = None) -> Redis:
    return Redis.from_url(
        url or settings.redis_url,
        decode_responses=False,  # RQ needs bytes
        socket_timeout=10,
        socket_connect_timeout=10,
        retry_on_timeout=True,
        health_check_interval=30,
    )


def delivery_id(job_id: str) -> str:
    return f"{job_id}_{uuid4().hex[:12]}"


def job_id_of(rq_job_id: str) -> str:
    return rq_job_id.rsplit("_", 1)[0]


class JobQueue:
    """One RQ queue per job type.

    Every enqueue is a fresh RQ job (a delivery) whose id starts with the
    job id, so several deliveries of one job can coexist. Delivery is
    at-least-once; the job row decides what is a duplicate.
    """

    def __init__(self, conn: Redis, job_types: list[str], prefix: str = "photo_batch", job_timeout: int = 315) -> None:
        self.conn = conn
        self.job_types = list(job_types)
        self.prefix = prefix
        self.job_timeout = job_timeout
        self._queues = {t: Queue(f"{prefix}-{t}", connection=conn) for t in self.job_types}

    @classmethod
    def from_settings(cls, conn: Redis | None = None) -> "JobQueue":
        return cls(
            conn or get_redis_connection(),
            settings.job_type_list(),
            prefix=settings.queue_prefix,
            job_timeout=settings.job_lease_sec + settings.stall_grace_sec,
        )

    def queue_for(self, job_type: str) -> Queue:
        return self._queues[job_type]

    def enqueue(self, job_id: str, job_type: str, attempt_count: int = 0, delay: float = 0.0) -> str:
        queue = self.queue_for(job_type)
        options = {
            "job_id": delivery_id(job_id),
            "job_timeout": self.job_timeout,
            "failure_ttl": 7 * 24 * 3600,
            "meta": {"attempt_count": attempt_count},
            "description": f"{job_type} job {job_id}",
        }
        try:
            if delay > 0:
                rq_job = queue.enqueue_in(timedelta(seconds=delay), EXECUTE_JOB, job_id, **options)
            else:
                rq_job = queue.enqueue(EXECUTE_JOB, job_id, **options)
        except RedisError as exc:
            raise QueueUnavailable(f"enqueue failed: {exc}", job_id=job_id) from exc
        logger.bind(job_id=job_id).debug(f"enqueued type={job_type} attempt={attempt_count} delay={delay:.1f}s")
        return rq_job.id

    def queued_job_ids(self, job_type: str) -> set[str]:
        """Jobs with a delivery that is waiting, scheduled or running."""
        queue = self.queue_for(job_type)
        ids = list(queue.job_ids)
        ids += queue.scheduled_job_registry.get_job_ids()
        ids += queue.started_job_registry.get_job_ids()
        return {job_id_of(i) for i in ids}

    def stats(self, job_type: str) -> dict:
        queue = self.queue_for(job_type)
        waiting = queue.count
        delayed = queue.scheduled_job_registry.count
        active = queue.started_job_registry.count
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "failed": queue.failed_job_registry.count,
            "total": waiting + delayed + active,
        }

    def health(self) -> dict:
        try:
            self.conn.ping()
            return {"status": "healthy", "connected": True, "queues": {t: self.stats(t) for t in self.job_types}}
        except RedisError as exc:
            return {"status": "unhealthy", "connected": False, "error": str(exc)}
