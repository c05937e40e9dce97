import json
import sqlite3
from typing import Any
from uuid import uuid4

from loguru import logger

from photo_batch import ledger
from photo_batch.db import connect, iso_in, now_iso, transaction

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})
OPEN_STATUSES = (PENDING, PROCESSING)


def _row_to_job(row: sqlite3.Row) -> dict:
    job = dict(row)
    job["payload"] = json.loads(job["payload"]) if job.get("payload") else {}
    job["result"] = json.loads(job["result"]) if job.get("result") else None
    job["refunded"] = bool(job.get("refunded"))
    return job


def new_job_id() -> str:
    return str(uuid4())


def insert_job(
    conn: sqlite3.Connection,
    job_id: str,
    user_id: str,
    job_type: str,
    batch_size: int,
    payload: dict[str, Any],
    credits_reserved: int,
) -> None:
    ts = now_iso()
    conn.execute(
        """
        INSERT INTO jobs (
          job_id, user_id, type, batch_size, payload, status, credits_reserved, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
        """,
        (job_id, user_id, job_type, batch_size, json.dumps(payload), credits_reserved, ts, ts),
    )


def get_job(job_id: str) -> dict | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    user_id: str | None = None,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[dict]:
    clauses: list[str] = []
    values: list[Any] = []
    if user_id is not None:
        clauses.append("user_id = ?")
        values.append(user_id)
    if status is not None:
        clauses.append("status = ?")
        values.append(status)
    if job_type is not None:
        clauses.append("type = ?")
        values.append(job_type)

    sql = "SELECT * FROM jobs"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
    values.extend([limit, offset])
    with connect() as conn:
        rows = conn.execute(sql, tuple(values)).fetchall()
    return [_row_to_job(r) for r in rows]


def count_jobs(user_id: str | None = None, status: str | None = None, job_type: str | None = None) -> int:
    sql = "SELECT COUNT(*) c FROM jobs WHERE 1=1"
    values: list[Any] = []
    if user_id is not None:
        sql += " AND user_id = ?"
        values.append(user_id)
    if status is not None:
        sql += " AND status = ?"
        values.append(status)
    if job_type is not None:
        sql += " AND type = ?"
        values.append(job_type)
    with connect() as conn:
        return int(conn.execute(sql, tuple(values)).fetchone()["c"])


def claim(job_id: str, lease_seconds: int) -> str | None:
    """Take ownership of a job for one delivery.

    Succeeds for a pending job, or for a processing job whose lease is empty or
    expired. An empty lease was released for a retry and already counted; an
    expired one means the previous attempt never reported back, so it counts
    as an attempt here. Returns the new lease id, or None when someone else
    holds it or the job is terminal.
    """
    lease_id = uuid4().hex
    ts = now_iso()
    with transaction() as conn:
        cur = conn.execute(
            """
            UPDATE jobs
            SET attempt_count = attempt_count + (CASE WHEN status = 'processing' AND leased_until IS NOT NULL THEN 1 ELSE 0 END),
                status = 'processing', lease_id = ?, leased_until = ?,
                started_at = COALESCE(started_at, ?), updated_at = ?
            WHERE job_id = ?
              AND (status = 'pending'
                   OR (status = 'processing' AND (leased_until IS NULL OR leased_until <= ?)))
            """,
            (lease_id, iso_in(lease_seconds), ts, ts, job_id, ts),
        )
    return lease_id if cur.rowcount == 1 else None


def extend_lease(job_id: str, lease_id: str, seconds: int) -> bool:
    with transaction() as conn:
        cur = conn.execute(
            "UPDATE jobs SET leased_until = ?, updated_at = ? WHERE job_id = ? AND status = 'processing' AND lease_id = ?",
            (iso_in(seconds), now_iso(), job_id, lease_id),
        )
    return cur.rowcount == 1


def update_progress(job_id: str, lease_id: str, progress: int) -> bool:
    progress = max(0, min(100, int(progress)))
    with transaction() as conn:
        cur = conn.execute(
            "UPDATE jobs SET progress = ?, updated_at = ? WHERE job_id = ? AND status = 'processing' AND lease_id = ?",
            (progress, now_iso(), job_id, lease_id),
        )
    return cur.rowcount == 1


def release_for_retry(job_id: str, lease_id: str, attempt_count: int, error: str) -> bool:
    with transaction() as conn:
        cur = conn.execute(
            """
            UPDATE jobs
            SET lease_id = NULL, leased_until = NULL, attempt_count = ?, error = ?, updated_at = ?
            WHERE job_id = ? AND status = 'processing' AND lease_id = ?
            """,
            (attempt_count, error, now_iso(), job_id, lease_id),
        )
    return cur.rowcount == 1


def mark_completed(job_id: str, result: Any, lease_id: str | None = None) -> bool:
    ts = now_iso()
    sql = """
        UPDATE jobs
        SET status = 'completed', result = ?, error = NULL, failure_code = NULL, progress = 100,
            lease_id = NULL, leased_until = NULL, updated_at = ?, completed_at = ?
        WHERE job_id = ?
    """
    values: list[Any] = [json.dumps(result), ts, ts, job_id]
    if lease_id is not None:
        sql += " AND status = 'processing' AND lease_id = ?"
        values.append(lease_id)
    else:
        sql += " AND status IN ('pending', 'processing')"

    with transaction() as conn:
        cur = conn.execute(sql, tuple(values))
    if cur.rowcount != 1:
        logger.bind(job_id=job_id).info("completion discarded, job no longer open for this owner")
        return False
    return True


def _close_with_refund(
    job_id: str,
    status: str,
    error: str,
    failure_code: str | None,
    lease_id: str | None,
) -> bool:
    ts = now_iso()
    sql = """
        UPDATE jobs
        SET status = ?, error = ?, failure_code = ?, refunded = 1,
            lease_id = NULL, leased_until = NULL, updated_at = ?
        WHERE job_id = ? AND refunded = 0
    """
    values: list[Any] = [status, error, failure_code, ts, job_id]
    if lease_id is not None:
        sql += " AND status = 'processing' AND lease_id = ?"
        values.append(lease_id)
    else:
        sql += " AND status IN ('pending', 'processing')"

    with transaction() as conn:
        cur = conn.execute(sql, tuple(values))
        if cur.rowcount != 1:
            return False
        row = conn.execute("SELECT user_id, credits_reserved FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        reserved = int(row["credits_reserved"])
        if reserved > 0:
            ledger.credit(
                row["user_id"],
                reserved,
                "refund",
                related_job_id=job_id,
                description=f"refund for {status} job: {error}"[:500],
                conn=conn,
            )
    logger.bind(job_id=job_id).info(f"job {status}, refunded {reserved} credits")
    return True


def mark_failed(job_id: str, error: str, failure_code: str | None = None, lease_id: str | None = None) -> bool:
    return _close_with_refund(job_id, FAILED, error, failure_code, lease_id)


def mark_cancelled(job_id: str, reason: str = "cancelled by user") -> bool:
    return _close_with_refund(job_id, CANCELLED, reason, "CANCELLED", None)


def list_stale_pending(grace_seconds: int) -> list[dict]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE status = 'pending' AND created_at < ? ORDER BY created_at",
            (iso_in(-grace_seconds),),
        ).fetchall()
    return [_row_to_job(r) for r in rows]


def list_expired_processing(grace_seconds: int) -> list[dict]:
    # A NULL lease means "released for retry"; only old ones are suspicious.
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT * FROM jobs
            WHERE status = 'processing'
              AND ((leased_until IS NOT NULL AND leased_until <= ?)
                   OR (leased_until IS NULL AND updated_at < ?))
            ORDER BY updated_at
            """,
            (now_iso(), iso_in(-grace_seconds)),
        ).fetchall()
    return [_row_to_job(r) for r in rows]


def get_stats() -> dict:
    with connect() as conn:
        rows = conn.execute("SELECT status, COUNT(*) c FROM jobs GROUP BY status").fetchall()
    counts = {s: 0 for s in STATUSES}
    counts.update({r["status"]: int(r["c"]) for r in rows})
    return counts
