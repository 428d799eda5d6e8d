from __future__ import annotations

from datetime import UTC, datetime, timedelta

from freezegun import freeze_time

from billing.scheduler import BillingScheduler, create_scheduler_from_env
from billing.store import InMemoryStore


def _at(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def _jobs(s: InMemoryStore, job_type: str) -> list[dict]:
    return [j for j in s.jobs.values() if j["job_type"] == job_type]


def test_hourly_tasks_run_once_per_hour():
    s = InMemoryStore()
    scheduler = BillingScheduler(store=s)

    first = scheduler.tick(now=_at(2024, 3, 6, 12, 5))
    again = scheduler.tick(now=_at(2024, 3, 6, 12, 55))
    next_hour = scheduler.tick(now=_at(2024, 3, 6, 13, 0))

    assert set(first) == {"recurring_charges", "plan_changes", "sync_stuck_purchases"}
    assert first["plan_changes"] == 0
    assert first["recurring_charges"] == 0
    assert again == {}
    assert next_hour["sync_stuck_purchases"] == first["sync_stuck_purchases"]
    assert len(_jobs(s, "sync_stuck_purchases")) == 1


@freeze_time("2024-03-06 12:00:00")
def test_tick_enqueues_overdue_subscriptions():
    s = InMemoryStore()
    s.upsert_seller(seller_id="sel_1", email="seller@example.com")
    s.upsert_product(product_id="prd_1", seller_id="sel_1", name="Digest", is_recurring_billing=True)
    s.upsert_subscription(
        subscription_id="sub_1",
        seller_id="sel_1",
        product_id="prd_1",
        email="buyer@example.com",
        price_cents=1000,
        paid_through_at="2024-03-01T00:00:00+00:00",
    )

    ran = BillingScheduler(store=s).tick()

    assert ran["recurring_charges"] == 1
    assert _jobs(s, "recurring_charge")[0]["payload"] == {"subscription_id": "sub_1", "ignore_consecutive_failures": True}


def test_payouts_start_at_the_configured_weekday_and_hour():
    s = InMemoryStore()
    scheduler = BillingScheduler(store=s)

    assert "create_payouts" not in scheduler.tick(now=_at(2024, 3, 7, 10, 0))
    assert "create_payouts" not in scheduler.tick(now=_at(2024, 3, 8, 9, 59))
    ran = scheduler.tick(now=_at(2024, 3, 8, 10, 0))
    later = scheduler.tick(now=_at(2024, 3, 8, 15, 0))

    job = s.get_job(ran["create_payouts"])
    assert job["payload"] == {"payout_date": "2024-03-07"}
    assert "create_payouts" not in later


@freeze_time("2024-03-08 10:00:00")
def test_scheduled_payout_job_pays_yesterday():
    s = InMemoryStore()
    ran = BillingScheduler(store=s).tick()

    out = s.run_job_once(job_id=ran["create_payouts"])

    assert out["final_status"] == "succeeded"
    assert out["result"] == {"payout_date": "2024-03-07", "payment_ids": []}


def test_sales_tax_reports_cover_the_previous_month_once():
    s = InMemoryStore()
    scheduler = BillingScheduler(store=s, sales_tax_states=["wa", "zz", "CA"])
    assert scheduler.sales_tax_states == ["WA", "CA"]

    ran = scheduler.tick(now=_at(2024, 1, 2, 0, 0))
    assert scheduler.tick(now=_at(2024, 1, 20, 0, 0)).get("sales_tax_reports") is None

    payloads = [s.get_job(job_id)["payload"] for job_id in ran["sales_tax_reports"]]
    assert payloads == [
        {"subdivision_code": "WA", "month": 12, "year": 2023},
        {"subdivision_code": "CA", "month": 12, "year": 2023},
    ]


def test_country_sales_reports_cover_the_previous_month_once():
    s = InMemoryStore()
    scheduler = BillingScheduler(store=s, country_sales_reports=["ca", "IN"])

    ran = scheduler.tick(now=_at(2024, 3, 1, 6, 0))
    assert scheduler.tick(now=_at(2024, 3, 15, 6, 0)).get("country_sales_reports") is None

    jobs = [s.get_job(job_id) for job_id in ran["country_sales_reports"]]
    assert [j["job_type"] for j in jobs] == ["create_canada_sales_report", "create_india_sales_report"]
    assert all(j["payload"] == {"month": 2, "year": 2024} for j in jobs)
    assert all(j["queue"] == "low" for j in jobs)


@freeze_time("2024-03-06 12:00:00")
def test_tick_enqueues_due_plan_changes():
    s = InMemoryStore()
    s.upsert_seller(seller_id="sel_1", email="seller@example.com")
    s.upsert_product(product_id="prd_1", seller_id="sel_1", name="Club", is_recurring_billing=True)
    for sub_id, effective_at in (("sub_due", "2024-03-06T00:00:00+00:00"), ("sub_later", "2024-04-06T00:00:00+00:00")):
        s.upsert_subscription(
            subscription_id=sub_id,
            seller_id="sel_1",
            product_id="prd_1",
            email="fan@example.com",
            price_cents=500,
            paid_through_at="2024-04-01T00:00:00+00:00",
            pending_plan_change={"price_cents": 700, "effective_at": effective_at},
        )

    ran = BillingScheduler(store=s).tick()

    assert ran["plan_changes"] == 1
    job = _jobs(s, "apply_plan_change")[0]
    assert job["payload"] == {"subscription_id": "sub_due"}
    out = s.run_job_once(job_id=job["job_id"])
    assert out["result"] == {"applied": True, "price_cents": 700, "recurrence": "monthly"}
    assert s.get_subscription("sub_later")["pending_plan_change"]["price_cents"] == 700


def test_scheduler_reads_environment():
    s = InMemoryStore()
    scheduler = create_scheduler_from_env(
        store=s,
        environ={
            "BILLING_PAYOUT_WEEKDAY": "1",
            "BILLING_PAYOUT_HOUR_UTC": "30",
            "BILLING_SALES_TAX_REPORT_STATES": "wa, ny",
            "BILLING_COUNTRY_SALES_REPORTS": "in, ca, fr",
            "BILLING_SCHEDULER_POLL_INTERVAL_S": "bogus",
        },
    )

    assert scheduler.payout_weekday == 1
    assert scheduler.payout_hour == 23
    assert scheduler.sales_tax_states == ["WA", "NY"]
    assert scheduler.country_sales_reports == ["IN", "CA"]
    assert scheduler.poll_interval_s == 60


def test_run_forever_stops_after_requested_iterations():
    s = InMemoryStore()
    assert BillingScheduler(store=s).run_forever(stop_after_iterations=1) == 1
    assert s.scheduler_runs


def test_declined_card_is_not_recharged_on_every_hourly_tick():
    s = InMemoryStore()
    s.upsert_seller(seller_id="sel_1", email="seller@example.com")
    s.upsert_product(product_id="prd_1", seller_id="sel_1", name="Digest", is_recurring_billing=True)
    s.upsert_subscription(
        subscription_id="sub_1",
        seller_id="sel_1",
        product_id="prd_1",
        email="buyer@example.com",
        price_cents=1000,
        customer_ref="cus_1",
        paid_through_at="2024-03-05T00:00:00+00:00",
    )
    stripe = s.processors.get("stripe")
    stripe.script("create_charge", *(["card_declined"] * 5))
    scheduler = BillingScheduler(store=s)

    with freeze_time("2024-03-06 12:00:00") as frozen:
        for _ in range(5):
            scheduler.tick()
            s.drain_due_jobs()
            frozen.tick(timedelta(hours=1))

    attempts = [call for call in stripe.state.calls if call[0] == "create_charge"]
    assert len(attempts) == 1
    assert len(s.list_outbox_events(event_type="notification.subscription_card_declined")) == 1
    assert not s.get_subscription("sub_1").get("failed_at")
