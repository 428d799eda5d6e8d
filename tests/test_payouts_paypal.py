from __future__ import annotations

from datetime import date

import pytest
from freezegun import freeze_time

from billing.store import InMemoryStore

PAYOUT_DATE = date(2024, 3, 7)
FRIDAY = "2024-03-08 10:00:00"


def _seller(s: InMemoryStore, seller_id: str = "sel_1", **fields) -> dict:
    values = {
        "email": f"{seller_id}@example.com",
        "paypal_email": f"paypal+{seller_id}@example.com",
        "legal_name": "Jane Seller",
        "payout_processor": "paypal",
    }
    values.update(fields)
    return s.upsert_seller(seller_id=seller_id, **values)


def _credit(s: InMemoryStore, seller_id: str, cents: int) -> None:
    with freeze_time("2024-03-05 09:00:00"):
        s.adjust_seller_balance(seller_id=seller_id, amount_cents=cents, reason="sale")


def _create(s: InMemoryStore, seller_ids: list[str]) -> list[dict]:
    with freeze_time(FRIDAY):
        return s.create_payments(payout_date=PAYOUT_DATE, processor="paypal", seller_ids=seller_ids)


def _jobs(s: InMemoryStore, job_type: str) -> list[dict]:
    return [j for j in s.jobs.values() if j["job_type"] == job_type]


def _balance_states(s: InMemoryStore, seller_id: str) -> list[str]:
    return [b["state"] for b in s.balances.values() if b["seller_id"] == seller_id]


def _sent(s: InMemoryStore) -> dict:
    _seller(s)
    _credit(s, "sel_1", 10000)
    payment = _create(s, ["sel_1"])[0]
    s.perform_paypal_payouts(payment_ids=[payment["payment_id"]])
    return s.get_payment(payment["payment_id"])


def test_paypal_payment_deducts_payout_fee_and_batches_job():
    s = InMemoryStore()
    _seller(s)
    _credit(s, "sel_1", 10000)

    payments = _create(s, ["sel_1"])

    payment = payments[0]
    assert payment["gumroad_fee_cents"] == 200
    assert payment["amount_cents"] == 9800
    assert payment["payment_address"] == "paypal+sel_1@example.com"
    job = _jobs(s, "perform_paypal_payouts")[0]
    assert job["payload"] == {"payment_ids": [payment["payment_id"]]}
    assert job["partition"] == "platform"


def test_fee_exempt_country_is_paid_in_full():
    s = InMemoryStore()
    _seller(s, country="BR")
    _credit(s, "sel_1", 10000)

    payment = _create(s, ["sel_1"])[0]

    assert payment["gumroad_fee_cents"] == 0
    assert payment["amount_cents"] == 10000


@pytest.mark.parametrize(
    "fields,note",
    [
        ({"paypal_email": "not-an-address"}, "valid PayPal payment address"),
        ({"paypal_email": "pé@example.com"}, "invalid characters"),
        ({"legal_name": ""}, "valid name on record"),
    ],
)
def test_sellers_without_payable_paypal_account_are_skipped(fields, note):
    s = InMemoryStore()
    _seller(s, **fields)
    _credit(s, "sel_1", 10000)

    assert _create(s, ["sel_1"]) == []
    assert note in s.get_seller("sel_1")["notes"][0]["note"]


def test_mass_pay_success_moves_payments_to_processing():
    s = InMemoryStore()
    payment = _sent(s)

    assert payment["state"] == "processing"
    assert payment["correlation_id"].startswith("corr_")
    batch = s.processors.get("paypal").state.mass_pay_batches[0]
    assert batch["items"][0]["unique_id"] == payment["payment_id"]
    assert batch["items"][0]["amount_cents"] == 9800
    assert batch["items"][0]["note"] == "Jane Seller, selling digital products / memberships"


def test_mass_pay_failure_fails_payments_and_releases_balance():
    s = InMemoryStore()
    _seller(s)
    _credit(s, "sel_1", 10000)
    payment = _create(s, ["sel_1"])[0]
    s.processors.get("paypal").script("mass_pay", "Failure")

    result = s.perform_paypal_payouts(payment_ids=[payment["payment_id"]])

    assert result == {"regular": [payment["payment_id"]], "split": []}
    failed = s.get_payment(payment["payment_id"])
    assert failed["state"] == "failed"
    assert failed["failure_reason"] == "PAYPAL Failure"
    assert _balance_states(s, "sel_1") == ["unpaid"]


def test_large_payment_is_split_into_capped_parts():
    s = InMemoryStore()
    _seller(s, country="BR")
    _credit(s, "sel_1", 4_500_000)
    payment = _create(s, ["sel_1"])[0]

    result = s.perform_paypal_payouts(payment_ids=[payment["payment_id"]])

    assert result == {"regular": [], "split": [payment["payment_id"]]}
    split = s.get_payment(payment["payment_id"])
    assert split["state"] == "processing"
    parts = split["split_payments_info"]
    assert [p["amount_cents"] for p in parts] == [2_000_000, 2_000_000, 500_000]
    assert [p["unique_id"] for p in parts] == [f"SPLIT_{payment['payment_id']}-{n}" for n in (1, 2, 3)]


def test_ipn_completion_marks_payment_and_balances_paid():
    s = InMemoryStore()
    payment = _sent(s)

    result = s.handle_paypal_ipn(
        params={
            "txn_type": "masspay",
            "unique_id_1": payment["payment_id"],
            "status_1": "Completed",
            "masspay_txn_id_1": "TXN1",
            "mc_fee_1": "1.25",
        }
    )

    assert result == {"handled": [payment["payment_id"]]}
    completed = s.get_payment(payment["payment_id"])
    assert completed["state"] == "completed"
    assert completed["txn_id"] == "TXN1"
    assert completed["processor_fee_cents"] == 125
    assert _balance_states(s, "sel_1") == ["paid"]


def test_ipn_unclaimed_then_returned():
    s = InMemoryStore()
    payment = _sent(s)

    s.handle_paypal_ipn(params={"unique_id_1": payment["payment_id"], "status_1": "Unclaimed"})
    assert s.get_payment(payment["payment_id"])["state"] == "unclaimed"
    assert _balance_states(s, "sel_1") == ["processing"]

    s.handle_paypal_ipn(params={"unique_id_1": payment["payment_id"], "status_1": "Returned"})
    assert s.get_payment(payment["payment_id"])["state"] == "returned"
    assert _balance_states(s, "sel_1") == ["unpaid"]


def test_ipn_failure_records_reason_code():
    s = InMemoryStore()
    payment = _sent(s)

    s.handle_paypal_ipn(
        params={"unique_id_1": payment["payment_id"], "status_1": "Failed", "reason_code_1": "14767"}
    )

    failed = s.get_payment(payment["payment_id"])
    assert failed["state"] == "failed"
    assert failed["failure_reason"] == "PAYPAL 14767"


def test_ipn_invalid_transition_is_skipped():
    s = InMemoryStore()
    payment = _sent(s)
    s.handle_paypal_ipn(params={"unique_id_1": payment["payment_id"], "status_1": "Completed"})

    s.handle_paypal_ipn(params={"unique_id_1": payment["payment_id"], "status_1": "Returned"})

    assert s.get_payment(payment["payment_id"])["state"] == "completed"


def test_ipn_pending_schedules_status_check():
    s = InMemoryStore()
    payment = _sent(s)

    with freeze_time(FRIDAY):
        s.handle_paypal_ipn(params={"unique_id_1": payment["payment_id"], "status_1": "Pending"})
        s.handle_paypal_ipn(params={"unique_id_1": payment["payment_id"], "status_1": "Pending"})

    checks = _jobs(s, "update_payout_status")
    assert len(checks) == 1
    assert checks[0]["run_at"] == "2024-03-08T10:05:00+00:00"
    assert s.get_payment(payment["payment_id"])["state"] == "processing"


def test_ipn_for_unknown_payment_is_ignored():
    s = InMemoryStore()
    assert s.handle_paypal_ipn(params={"unique_id_1": "pay_missing", "status_1": "Completed"}) == {"handled": []}


def test_ipn_items_are_grouped_by_index():
    items = InMemoryStore.group_ipn_items(
        {
            "txn_type": "masspay",
            "unique_id_2": "pay_b",
            "status_2": "Failed",
            "unique_id_1": "pay_a",
            "status_1": "Completed",
        }
    )
    assert items == [
        {"unique_id": "pay_a", "status": "Completed"},
        {"unique_id": "pay_b", "status": "Failed"},
    ]


def test_split_payment_completes_when_every_part_completes():
    s = InMemoryStore()
    _seller(s, country="BR")
    _credit(s, "sel_1", 3_000_000)
    payment = _create(s, ["sel_1"])[0]
    s.perform_paypal_payouts(payment_ids=[payment["payment_id"]])
    pid = payment["payment_id"]

    s.handle_paypal_ipn(params={"unique_id_1": f"SPLIT_{pid}-1", "status_1": "Completed", "mc_fee_1": "0.50"})
    assert s.get_payment(pid)["state"] == "processing"

    s.handle_paypal_ipn(params={"unique_id_1": f"SPLIT_{pid}-2", "status_1": "Completed", "mc_fee_1": "0.25"})

    completed = s.get_payment(pid)
    assert completed["state"] == "completed"
    assert completed["txn_id"] == "split payment; see split_payments_info"
    assert completed["processor_fee_cents"] == 75


def test_update_payout_status_polls_mass_pay_item():
    s = InMemoryStore()
    payment = _sent(s)
    paypal = s.processors.get("paypal")

    assert s.update_payout_status(payment_id=payment["payment_id"]) == {"updated": True, "state": "processing"}

    paypal.set_mass_pay_item_status(payment["payment_id"], "Completed")
    assert s.update_payout_status(payment_id=payment["payment_id"]) == {"updated": True, "state": "completed"}
    assert s.update_payout_status(payment_id=payment["payment_id"]) == {"updated": False, "state": "completed"}


def test_scheduled_payouts_cover_both_processors():
    s = InMemoryStore()
    _seller(s, "sel_pp")
    s.upsert_seller(seller_id="sel_st", email="st@example.com", stripe_account_id="acct_st")
    _credit(s, "sel_pp", 5000)
    _credit(s, "sel_st", 5000)

    with freeze_time(FRIDAY):
        result = s.create_scheduled_payouts()

    processors = sorted(s.get_payment(pid)["processor"] for pid in result["payment_ids"])
    assert processors == ["paypal", "stripe"]
    assert len(_jobs(s, "perform_paypal_payouts")) == 1
    assert len(_jobs(s, "perform_stripe_payout")) == 1
