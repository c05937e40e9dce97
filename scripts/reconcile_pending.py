import argparse

from loguru import logger

from photo_batch.config import settings
from photo_batch.db import init_db
from photo_batch.dispatcher import Dispatcher
from photo_batch.log import configure_logging
from photo_batch.notifications import RedisNotifier
from photo_batch.queue import JobQueue, get_redis_connection


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-enqueue open jobs that lost their delivery or their worker")
    parser.add_argument("--grace", type=int, default=settings.reconcile_grace_sec, help="age in seconds before a job counts as orphaned")
    args = parser.parse_args()

    configure_logging(settings.log_level)
    init_db()
    conn = get_redis_connection()
    dispatcher = Dispatcher(JobQueue.from_settings(conn), RedisNotifier(conn, settings.notify_channel))

    requeued = dispatcher.reconcile(grace_seconds=args.grace)
    logger.info(f"orphaned or stalled jobs re-enqueued: {len(requeued)}")


if __name__ == "__main__":
    main()
