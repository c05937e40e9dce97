import sys

from photo_batch import ledger
from photo_batch.dispatcher import Dispatcher
from photo_batch.queue import JobQueue
from scripts import reconcile_pending


def test_reconcile_script_requeues_orphaned_job(redis_conn, notifier, monkeypatch):
    monkeypatch.setattr(reconcile_pending, "get_redis_connection", lambda: redis_conn)
    monkeypatch.setattr(sys, "argv", ["reconcile_pending.py", "--grace", "0"])
    queue = JobQueue.from_settings(redis_conn)
    ledger.grant("u1", 5)
    job = Dispatcher(queue, notifier).submit("u1", "travel", 1, {})
    # delivery lost between commit and worker
    redis_conn.delete(queue.queue_for("travel").key)
    assert queue.queued_job_ids("travel") == set()

    reconcile_pending.main()

    assert queue.queued_job_ids("travel") == {job["job_id"]}
