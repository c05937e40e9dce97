import threading

import pytest

from photo_batch import ledger
from photo_batch.errors import InsufficientCredits, InvalidInput


def test_debit_and_credit_keep_balance_equal_to_log_sum() -> None:
    ledger.grant("u1", 10, kind="recharge", description="pack")
    ledger.debit("u1", 3, "consume", related_job_id="j1")
    ledger.credit("u1", 3, "refund", related_job_id="j1")
    ledger.debit("u1", 4, "consume", related_job_id="j2")
    ledger.credit("u1", 2, "gift")

    balance = ledger.get_balance("u1")
    assert balance["credits"] == 8
    assert balance["credits"] == ledger.sum_transactions("u1")
    assert balance["total_spent"] == 7
    assert balance["total_earned"] == 15


def test_debit_returns_new_balance_and_logs_signed_amount() -> None:
    ledger.grant("u1", 5)
    assert ledger.debit("u1", 3, "consume", related_job_id="job-a", description="fitting x3") == 2

    tx = ledger.list_transactions("u1", limit=1)[0]
    assert tx["kind"] == "consume"
    assert tx["amount"] == -3
    assert tx["balance_after"] == 2
    assert tx["related_job_id"] == "job-a"


def test_insufficient_credits_changes_nothing() -> None:
    ledger.grant("u1", 2)
    with pytest.raises(InsufficientCredits) as exc_info:
        ledger.debit("u1", 3, "consume")

    assert exc_info.value.shortfall == 1
    assert ledger.get_balance("u1")["credits"] == 2
    assert len(ledger.list_transactions("u1")) == 1


def test_unknown_user_has_zero_balance() -> None:
    assert ledger.get_balance("nobody")["credits"] == 0
    with pytest.raises(InsufficientCredits):
        ledger.debit("nobody", 1, "consume")


def test_rejects_bad_amounts_and_kinds() -> None:
    with pytest.raises(InvalidInput):
        ledger.credit("u1", 0, "gift")
    with pytest.raises(InvalidInput):
        ledger.debit("u1", -2, "consume")
    with pytest.raises(InvalidInput):
        ledger.credit("u1", 1, "bonus")
    with pytest.raises(InvalidInput):
        ledger.grant("u1", 1, kind="refund")


def test_check_reports_shortfall() -> None:
    ledger.grant("u1", 4)
    assert ledger.check("u1", 3) == {"sufficient": True, "balance": 4, "required": 3, "shortfall": 0}
    assert ledger.check("u1", 6)["shortfall"] == 2


def test_concurrent_debits_never_overdraw() -> None:
    ledger.grant("u1", 5)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _spend() -> None:
        try:
            ledger.debit("u1", 1, "consume")
            result = "ok"
        except InsufficientCredits:
            result = "short"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_spend) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 5
    assert outcomes.count("short") == 5
    assert ledger.get_balance("u1")["credits"] == 0
    assert ledger.sum_transactions("u1") == 0
