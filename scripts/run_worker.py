import argparse
import sys

from loguru import logger

from photo_batch.config import settings
from photo_batch.db import init_db
from photo_batch.generator import GeneratorClient
from photo_batch.log import configure_logging
from photo_batch.notifications import RedisNotifier
from photo_batch.queue import JobQueue, get_redis_connection
from photo_batch.worker import RetryPolicy, WorkerPool


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a photo batch RQ worker")
    parser.add_argument("--types", "-t", nargs="+", default=settings.job_type_list(), help="job types to consume")
    parser.add_argument("--burst", "-b", action="store_true", help="drain ready deliveries once and exit")
    parser.add_argument("--name", "-n", default=None, help="worker name shown in RQ")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    args = parser.parse_args()

    unknown = set(args.types) - set(settings.job_type_list())
    if unknown:
        logger.error(f"unknown job types: {', '.join(sorted(unknown))}")
        sys.exit(2)

    level = "DEBUG" if args.verbose else settings.log_level
    configure_logging(level)
    init_db()

    conn = get_redis_connection()
    conn.ping()
    pool = WorkerPool(
        JobQueue.from_settings(conn),
        GeneratorClient(),
        RedisNotifier(conn, settings.notify_channel),
        retry_policy=RetryPolicy.from_settings(),
        job_types=args.types,
    )

    if args.burst:
        requeued = pool.run_maintenance()
        processed = pool.run_burst()
        logger.info(f"burst finished, re-enqueued {len(requeued)} jobs, ran {processed} deliveries")
        return

    # RQ handles SIGINT/SIGTERM with a warm shutdown
    pool.work(name=args.name, logging_level=level)


if __name__ == "__main__":
    main()
