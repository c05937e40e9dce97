import sqlite3

from loguru import logger

from photo_batch.db import connect, now_iso, transaction
from photo_batch.errors import InsufficientCredits, InvalidInput

LEDGER_KINDS = ("consume", "refund", "recharge", "gift")


def _ensure_user(conn: sqlite3.Connection, user_id: str) -> None:
    ts = now_iso()
    conn.execute(
        "INSERT INTO users (user_id, created_at, updated_at) VALUES (?, ?, ?) ON CONFLICT(user_id) DO NOTHING",
        (user_id, ts, ts),
    )


def _validate(amount: int, kind: str) -> None:
    if kind not in LEDGER_KINDS:
        raise InvalidInput(f"unknown ledger kind: {kind}")
    if amount <= 0:
        raise InvalidInput("amount must be > 0")


def _apply(
    conn: sqlite3.Connection,
    user_id: str,
    delta: int,
    kind: str,
    related_job_id: str | None,
    description: str | None,
) -> int:
    _ensure_user(conn, user_id)
    row = conn.execute("SELECT credits FROM users WHERE user_id=?", (user_id,)).fetchone()
    balance = int(row["credits"])
    if delta < 0 and balance + delta < 0:
        raise InsufficientCredits(user_id, required=-delta, balance=balance)

    new_balance = balance + delta
    ts = now_iso()
    conn.execute(
        """
        UPDATE users
        SET credits = ?,
            total_earned = total_earned + ?,
            total_spent = total_spent + ?,
            updated_at = ?
        WHERE user_id = ?
        """,
        (new_balance, max(delta, 0), max(-delta, 0), ts, user_id),
    )
    conn.execute(
        """
        INSERT INTO credit_transactions (user_id, kind, amount, balance_after, related_job_id, description, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, kind, delta, new_balance, related_job_id, description, ts),
    )
    return new_balance


def debit(
    user_id: str,
    amount: int,
    kind: str = "consume",
    related_job_id: str | None = None,
    description: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Take ``amount`` credits from the user and log it, atomically.

    Pass ``conn`` to join a transaction opened with ``db.transaction()``; the
    debit then commits or rolls back together with the caller's other writes.
    Raises ``InsufficientCredits`` without touching anything when the balance
    is short.
    """
    _validate(amount, kind)
    if conn is not None:
        new_balance = _apply(conn, user_id, -amount, kind, related_job_id, description)
    else:
        with transaction() as tx:
            new_balance = _apply(tx, user_id, -amount, kind, related_job_id, description)
    logger.debug(f"ledger debit user={user_id} amount={amount} kind={kind} balance={new_balance}")
    return new_balance


def credit(
    user_id: str,
    amount: int,
    kind: str,
    related_job_id: str | None = None,
    description: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    _validate(amount, kind)
    if conn is not None:
        new_balance = _apply(conn, user_id, amount, kind, related_job_id, description)
    else:
        with transaction() as tx:
            new_balance = _apply(tx, user_id, amount, kind, related_job_id, description)
    logger.debug(f"ledger credit user={user_id} amount={amount} kind={kind} balance={new_balance}")
    return new_balance


def grant(user_id: str, amount: int, kind: str = "recharge", description: str | None = None) -> int:
    if kind not in {"recharge", "gift"}:
        raise InvalidInput("grants must be recharge or gift")
    return credit(user_id, amount, kind, description=description)


def get_balance(user_id: str) -> dict:
    with connect() as conn:
        row = conn.execute("SELECT * FROM users WHERE user_id=?", (user_id,)).fetchone()
    if not row:
        return {"user_id": user_id, "credits": 0, "total_earned": 0, "total_spent": 0}
    return {
        "user_id": row["user_id"],
        "credits": int(row["credits"]),
        "total_earned": int(row["total_earned"]),
        "total_spent": int(row["total_spent"]),
    }


def check(user_id: str, amount: int) -> dict:
    # Advisory only: the balance can move before the real debit runs.
    balance = get_balance(user_id)["credits"]
    return {
        "sufficient": balance >= amount,
        "balance": balance,
        "required": amount,
        "shortfall": max(0, amount - balance),
    }


def list_transactions(user_id: str, limit: int = 20, offset: int = 0, kind: str | None = None) -> list[dict]:
    sql = "SELECT * FROM credit_transactions WHERE user_id=?"
    params: list = [user_id]
    if kind:
        sql += " AND kind=?"
        params.append(kind)
    sql += " ORDER BY id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    with connect() as conn:
        rows = conn.execute(sql, tuple(params)).fetchall()
    return [dict(r) for r in rows]


def sum_transactions(user_id: str) -> int:
    with connect() as conn:
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) total FROM credit_transactions WHERE user_id=?",
            (user_id,),
        ).fetchone()
    return int(row["total"])
