import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from commercepix import ledger
from commercepix.schemas import CreditReason, RefType


def test_balance_is_sum_of_entries() -> None:
    ledger.grant("u1", 5, CreditReason.SUBSCRIPTION_RESET, RefType.SUBSCRIPTION, "sub-1")
    ledger.grant("u1", 2, CreditReason.BONUS)
    result = ledger.spend("u1", 1, "job-1")

    assert result.success
    assert result.previous_balance == 7
    assert result.new_balance == 6
    assert ledger.get_balance("u1") == 6
    assert sum(e["delta"] for e in ledger.list_entries("u1")) == 6


def test_spend_rejected_when_balance_too_low() -> None:
    ledger.grant("u1", 1, CreditReason.BONUS)

    result = ledger.spend("u1", 2, "job-1")

    assert not result.success
    assert result.error == "Insufficient credits: balance 1, required 2"
    assert ledger.get_balance("u1") == 1
    assert ledger.entries_for_ref(RefType.JOB, "job-1") == []


def test_spend_rejects_non_positive_amount() -> None:
    ledger.grant("u1", 3, CreditReason.BONUS)
    assert not ledger.spend("u1", 0, "job-1").success
    assert ledger.get_balance("u1") == 3


def test_spend_records_job_reference() -> None:
    ledger.grant("u1", 3, CreditReason.BONUS)
    ledger.spend("u1", 1, "job-1")

    entries = ledger.entries_for_ref("job", "job-1")
    assert len(entries) == 1
    assert entries[0]["delta"] == -1
    assert entries[0]["reason"] == "generation_spend"


def test_second_spend_for_same_job_is_refused() -> None:
    ledger.grant("u1", 3, CreditReason.BONUS)
    ledger.spend("u1", 1, "job-1")

    with pytest.raises(sqlite3.IntegrityError):
        ledger.spend("u1", 1, "job-1")
    assert ledger.get_balance("u1") == 2


@pytest.mark.parametrize("amount", [0, -4])
def test_grant_requires_positive_amount(amount: int) -> None:
    with pytest.raises(ValueError):
        ledger.grant("u1", amount, CreditReason.BONUS)


def test_grant_cannot_write_spend_entries() -> None:
    with pytest.raises(ValueError):
        ledger.grant("u1", 1, CreditReason.GENERATION_SPEND)


def test_concurrent_spends_never_overdraw() -> None:
    ledger.grant("u1", 3, CreditReason.BONUS)

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda i: ledger.spend("u1", 1, f"job-{i}"), range(10)))

    assert sum(r.success for r in results) == 3
    assert ledger.get_balance("u1") == 0


def test_summary_totals() -> None:
    ledger.grant("u1", 4, CreditReason.OVERAGE_PURCHASE, RefType.PURCHASE, "order-9")
    ledger.spend("u1", 1, "job-1")
    ledger.spend("u1", 1, "job-2")

    assert ledger.get_summary("u1") == {
        "user_id": "u1",
        "balance": 2,
        "transaction_count": 3,
        "total_earned": 4,
        "total_spent": 2,
    }
