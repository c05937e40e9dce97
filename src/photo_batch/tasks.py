"""RQ task definitions.

These run inside RQ worker processes. The worker entry points install the
pool they built before handing control to RQ; a bare ``rq worker`` gets one
built from settings on first use.
"""

from loguru import logger
from rq import get_current_job

_pool = None


def install(pool) -> None:
    global _pool
    _pool = pool


def current_pool():
    global _pool
    if _pool is None:
        from photo_batch.worker import WorkerPool

        _pool = WorkerPool.from_settings()
    return _pool


def execute_job(job_id: str) -> str:
    rq_job = get_current_job()
    if rq_job is not None:
        logger.bind(job_id=job_id).debug(f"delivery {rq_job.id} queued at attempt {rq_job.meta.get('attempt_count', 0)}")
    return current_pool().process_job(job_id)
