from __future__ import annotations

from dataclasses import dataclass

from billing.errors import ApiError


@dataclass(frozen=True)
class JobSpec:
    job_type: str
    queue: str
    handler: str
    max_retries: int | None = None
    pass_job: bool = False


_SPECS: tuple[JobSpec, ...] = (
    JobSpec("recurring_charge", "critical", "charge_subscription"),
    JobSpec("unsubscribe_and_fail", "critical", "unsubscribe_and_fail"),
    JobSpec("charge_declined_reminder", "low", "send_charge_declined_reminder"),
    JobSpec("schedule_membership_price_updates", "default", "schedule_membership_price_updates"),
    JobSpec("apply_plan_change", "default", "apply_plan_change"),
    JobSpec("fail_abandoned_purchase", "critical", "fail_abandoned_purchase"),
    JobSpec("sync_stuck_purchases", "low", "sync_stuck_purchases"),
    JobSpec("charge_preorder", "critical", "charge_preorder"),
    JobSpec("release_preorder_product", "default", "release_preorder_product"),
    JobSpec("create_payouts", "default", "create_scheduled_payouts", max_retries=0),
    JobSpec("perform_stripe_payout", "default", "perform_stripe_payout"),
    JobSpec("perform_paypal_payouts", "default", "perform_paypal_payouts"),
    JobSpec("handle_stripe_payout_event", "default", "handle_stripe_payout_event"),
    JobSpec("handle_payout_reversed", "default", "handle_payout_reversed"),
    JobSpec("check_negative_balance", "low", "check_negative_balance"),
    JobSpec("handle_paypal_ipn", "default", "handle_paypal_ipn"),
    JobSpec("update_payout_status", "default", "update_payout_status"),
    JobSpec("handle_charge_event", "critical", "handle_charge_event"),
    JobSpec("fight_dispute", "default", "fight_dispute"),
    JobSpec("post_to_ping_endpoints", "default", "post_to_ping_endpoints"),
    JobSpec("post_to_ping_endpoint", "low", "post_to_ping_endpoint", max_retries=3, pass_job=True),
    JobSpec("create_sales_tax_report", "low", "create_us_state_sales_report", max_retries=1),
    JobSpec("create_canada_sales_report", "low", "create_canada_sales_report", max_retries=1),
    JobSpec("create_india_sales_report", "low", "create_india_sales_report", max_retries=1),
)

JOB_REGISTRY: dict[str, JobSpec] = {spec.job_type: spec for spec in _SPECS}


def job_spec(job_type: str) -> JobSpec:
    spec = JOB_REGISTRY.get(job_type)
    if spec is None:
        raise ApiError(
            code="JOB_TYPE_UNKNOWN",
            message=f"unknown job type: {job_type}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return spec


def job_queue(job_type: str) -> str:
    return job_spec(job_type).queue
