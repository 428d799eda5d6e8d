from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from billing.tax_rates import is_valid_state

logger = logging.getLogger(__name__)

FRIDAY = 4
COUNTRY_REPORT_JOBS = {"CA": "create_canada_sales_report", "IN": "create_india_sales_report"}


class BillingScheduler:
    """Periodic job producer.

    Each task runs at most once per period key (hour, day or month), recorded
    in the store's ``scheduler_runs`` so a restarted or duplicated scheduler
    does not enqueue the same batch twice.
    """

    def __init__(
        self,
        *,
        store: Any,
        payout_weekday: int = FRIDAY,
        payout_hour: int = 10,
        sales_tax_states: list[str] | None = None,
        country_sales_reports: list[str] | None = None,
        poll_interval_s: int = 60,
    ) -> None:
        self.store = store
        self.payout_weekday = payout_weekday % 7
        self.payout_hour = min(23, max(0, payout_hour))
        self.sales_tax_states = [s.upper() for s in (sales_tax_states or []) if is_valid_state(s.upper())]
        self.country_sales_reports = [
            c.upper() for c in (country_sales_reports or []) if c.upper() in COUNTRY_REPORT_JOBS
        ]
        self.poll_interval_s = max(1, poll_interval_s)

    def _claim(self, task: str, period_key: str) -> bool:
        return self.store.claim_scheduler_run(task=task, period_key=period_key)

    def tick(self, *, now: datetime | None = None) -> dict[str, Any]:
        moment = (now or datetime.now(UTC)).astimezone(UTC)
        hour_key = moment.strftime("%Y-%m-%dT%H")
        ran: dict[str, Any] = {}

        if self._claim("recurring_charges", hour_key):
            ran["recurring_charges"] = len(self.store.enqueue_due_recurring_charges())

        if self._claim("plan_changes", hour_key):
            ran["plan_changes"] = len(self.store.enqueue_due_plan_changes())

        if self._claim("sync_stuck_purchases", hour_key):
            job = self.store.enqueue_job(job_type="sync_stuck_purchases", unique_key="sync_stuck_purchases")
            ran["sync_stuck_purchases"] = job["job_id"]

        if moment.weekday() == self.payout_weekday and moment.hour >= self.payout_hour:
            payout_date = (moment.date() - timedelta(days=1)).isoformat()
            if self._claim("create_payouts", payout_date):
                job = self.store.enqueue_job(
                    job_type="create_payouts",
                    payload={"payout_date": payout_date},
                    unique_key=f"create_payouts:{payout_date}",
                )
                ran["create_payouts"] = job["job_id"]

        if self.sales_tax_states:
            first_of_month = moment.date().replace(day=1)
            previous = first_of_month - timedelta(days=1)
            if self._claim("sales_tax_reports", previous.strftime("%Y-%m")):
                ran["sales_tax_reports"] = [
                    self.store.enqueue_job(
                        job_type="create_sales_tax_report",
                        payload={"subdivision_code": state, "month": previous.month, "year": previous.year},
                    )["job_id"]
                    for state in self.sales_tax_states
                ]

        if self.country_sales_reports:
            previous = moment.date().replace(day=1) - timedelta(days=1)
            if self._claim("country_sales_reports", previous.strftime("%Y-%m")):
                ran["country_sales_reports"] = [
                    self.store.enqueue_job(
                        job_type=COUNTRY_REPORT_JOBS[country],
                        payload={"month": previous.month, "year": previous.year},
                        unique_key=f"{COUNTRY_REPORT_JOBS[country]}:{previous:%Y-%m}",
                    )["job_id"]
                    for country in self.country_sales_reports
                ]

        if ran:
            logger.info("scheduler_tick at=%s tasks=%s", moment.isoformat(), ",".join(sorted(ran)))
        return ran

    def run_forever(self, *, stop_after_iterations: int | None = None) -> int:
        iterations = 0
        while True:
            self.tick()
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                return iterations
            time.sleep(self.poll_interval_s)


def create_scheduler_from_env(*, store: Any, environ: Mapping[str, str] | None = None) -> BillingScheduler:
    env = os.environ if environ is None else environ

    def _int(name: str, default: int) -> int:
        raw = str(env.get(name, "")).strip()
        try:
            return int(raw) if raw else default
        except ValueError:
            return default

    states_raw = str(env.get("BILLING_SALES_TAX_REPORT_STATES", "")).strip()
    countries_raw = str(env.get("BILLING_COUNTRY_SALES_REPORTS", "")).strip()
    return BillingScheduler(
        store=store,
        payout_weekday=_int("BILLING_PAYOUT_WEEKDAY", FRIDAY),
        payout_hour=_int("BILLING_PAYOUT_HOUR_UTC", 10),
        sales_tax_states=[x.strip() for x in states_raw.split(",") if x.strip()],
        country_sales_reports=[x.strip() for x in countries_raw.split(",") if x.strip()],
        poll_interval_s=_int("BILLING_SCHEDULER_POLL_INTERVAL_S", 60),
    )
