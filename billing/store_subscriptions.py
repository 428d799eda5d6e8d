from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from billing import error_codes
from billing.charge_processor import INTENT_PROCESSING, INTENT_REQUIRES_ACTION
from billing.errors import ApiError
from billing.locks import hold
from billing.store_ledger import RECURRENCE_MONTHS, add_months

logger = logging.getLogger(__name__)

ALLOWED_TIME_BEFORE_FAIL_AND_UNSUBSCRIBE = timedelta(days=5)
NETWORK_ERROR_RETRY_DELAY = timedelta(hours=1)
RETRYABLE_CARD_ERROR_RETRY_DELAY = timedelta(days=1)
CHARGE_DECLINED_REMINDER_DELAY = timedelta(days=3)
ABANDONED_PURCHASE_TIMEOUT = timedelta(minutes=15)
SUBSCRIPTION_LOCK_TTL_MS = 120_000


class StoreSubscriptionsMixin:
    def subscription_alive(self, subscription: dict[str, Any], *, include_pending_cancellation: bool = True) -> bool:
        if subscription.get("failed_at") or subscription.get("ended_at"):
            return False
        cancelled_at = self._parse_dt(subscription.get("cancelled_at"))
        if cancelled_at is None:
            return True
        return include_pending_cancellation and cancelled_at > self._now()

    def subscription_overdue(self, subscription: dict[str, Any]) -> bool:
        paid_through = self._parse_dt(subscription.get("paid_through_at"))
        return paid_through is None or paid_through <= self._now()

    def subscription_terminate_by(self, subscription: dict[str, Any]) -> datetime:
        anchor = self._parse_dt(subscription.get("paid_through_at")) or self._parse_dt(subscription.get("created_at"))
        return (anchor or self._now()) + ALLOWED_TIME_BEFORE_FAIL_AND_UNSUBSCRIBE

    def subscription_in_free_trial(self, subscription: dict[str, Any]) -> bool:
        ends_at = self._parse_dt(subscription.get("free_trial_ends_at"))
        return ends_at is not None and ends_at > self._now()

    def subscription_purchases(self, subscription_id: str) -> list[dict[str, Any]]:
        rows = [p for p in self.purchases.values() if p.get("subscription_id") == subscription_id]
        return sorted(rows, key=lambda p: str(p.get("created_at", "")))

    def subscription_charges_completed(self, subscription: dict[str, Any]) -> bool:
        limit = subscription.get("charge_occurrence_count")
        if not limit:
            return False
        successful = sum(
            1 for p in self.subscription_purchases(subscription["subscription_id"]) if p.get("state") == "successful"
        )
        return successful >= int(limit)

    def _last_subscription_purchase(self, subscription: dict[str, Any]) -> dict[str, Any] | None:
        rows = self.subscription_purchases(subscription["subscription_id"])
        return rows[-1] if rows else None

    def _original_subscription_purchase(self, subscription: dict[str, Any]) -> dict[str, Any] | None:
        rows = self.subscription_purchases(subscription["subscription_id"])
        return rows[0] if rows else None

    def cancel_subscription(self, *, subscription_id: str, by_seller: bool = False) -> dict[str, Any]:
        subscription = self.get_subscription(subscription_id)
        if subscription.get("cancelled_at"):
            return subscription
        subscription["cancelled_at"] = subscription.get("paid_through_at") or self._utcnow_iso()
        subscription["cancelled_by_seller"] = by_seller
        self._notify(
            "subscription_cancelled",
            recipient=subscription["email"],
            subscription_id=subscription_id,
            by_seller=by_seller,
        )
        original = self._original_subscription_purchase(subscription)
        if original is not None:
            self.enqueue_ping_notifications(purchase_id=original["purchase_id"], resource_name="cancellation")
        return subscription

    def _recurring_charge_skip_reason(self, subscription: dict[str, Any]) -> str | None:
        if subscription.get("is_test"):
            return "test_subscription"
        if int(subscription.get("price_cents", 0)) <= 0:
            return "free_subscription"
        if not self.subscription_alive(subscription, include_pending_cancellation=False):
            return "not_alive"
        if self.seller_is_suspended(subscription["seller_id"]):
            return "seller_suspended"
        if self.subscription_in_free_trial(subscription):
            return "in_free_trial"
        if not self.subscription_overdue(subscription):
            return "not_overdue"
        last = self._last_subscription_purchase(subscription)
        if last is not None and last.get("state") == "in_progress":
            return "charge_in_progress"
        return None

    def _apply_pending_plan_change(self, subscription: dict[str, Any]) -> bool:
        change = subscription.get("pending_plan_change")
        if not change:
            return False
        effective_at = self._parse_dt(change.get("effective_at"))
        if effective_at is not None and effective_at > self._now():
            return False
        if change.get("recurrence") in RECURRENCE_MONTHS:
            subscription["recurrence"] = change["recurrence"]
        if change.get("price_cents") is not None:
            subscription["price_cents"] = int(change["price_cents"])
        subscription["pending_plan_change"] = None
        logger.info(
            "plan_change_applied subscription_id=%s price_cents=%s recurrence=%s",
            subscription["subscription_id"],
            subscription["price_cents"],
            subscription["recurrence"],
        )
        return True

    def charge_subscription(self, *, subscription_id: str, ignore_consecutive_failures: bool = False) -> dict[str, Any]:
        subscription = self.get_subscription(subscription_id)
        reason = self._recurring_charge_skip_reason(subscription)
        if reason is not None:
            logger.info("recurring_charge_skipped subscription_id=%s reason=%s", subscription_id, reason)
            return {"charged": False, "reason": reason}
        if self.subscription_charges_completed(subscription):
            subscription["ended_at"] = self._utcnow_iso()
            self._notify("subscription_ended", recipient=subscription["email"], subscription_id=subscription_id)
            return {"charged": False, "reason": "charges_completed"}

        last = self._last_subscription_purchase(subscription)
        if ignore_consecutive_failures and last is not None and last.get("state") == "failed":
            if self._now() < self.subscription_terminate_by(subscription):
                logger.info("recurring_charge_skipped subscription_id=%s reason=recent_failure", subscription_id)
                return {"charged": False, "reason": "recent_failure"}
            self.unsubscribe_and_fail(subscription_id=subscription_id)
            return {"charged": False, "reason": "unsubscribed"}

        self._apply_pending_plan_change(subscription)
        with hold(self.locks, f"subscription_charge:{subscription_id}", ttl_ms=SUBSCRIPTION_LOCK_TTL_MS):
            purchase = self.upsert_purchase(
                seller_id=subscription["seller_id"],
                product_id=subscription["product_id"],
                variant_id=subscription.get("variant_id"),
                subscription_id=subscription_id,
                email=subscription["email"],
                buyer_id=subscription.get("buyer_id"),
                price_cents=int(subscription["price_cents"]),
                processor=subscription["processor"],
                customer_ref=subscription.get("customer_ref", ""),
                card_country=subscription.get("card_country"),
                off_session=True,
            )
            charge, error_code = self._attempt_charge(purchase)
            if charge is not None and charge.succeeded:
                self.mark_purchase_successful(purchase, charge=charge)
                months = RECURRENCE_MONTHS[subscription["recurrence"]]
                subscription["paid_through_at"] = add_months(self._now(), months).isoformat()
                self._notify(
                    "receipt",
                    recipient=purchase["email"],
                    purchase_id=purchase["purchase_id"],
                    subscription_id=subscription_id,
                )
                return {"charged": True, "purchase_id": purchase["purchase_id"], "state": purchase["state"]}
            if charge is not None and charge.status in {INTENT_PROCESSING, INTENT_REQUIRES_ACTION}:
                self.schedule_abandoned_purchase_check(purchase)
                if charge.requires_action:
                    self._notify(
                        "subscription_sca_required",
                        recipient=purchase["email"],
                        purchase_id=purchase["purchase_id"],
                        subscription_id=subscription_id,
                    )
                return {"charged": False, "purchase_id": purchase["purchase_id"], "state": purchase["state"]}
            self.mark_purchase_failed(purchase, error_code=error_code)
            self.handle_subscription_purchase_failure(subscription, purchase)
        return {
            "charged": False,
            "purchase_id": purchase["purchase_id"],
            "state": purchase["state"],
            "error_code": error_code,
        }

    def handle_subscription_purchase_failure(self, subscription: dict[str, Any], purchase: dict[str, Any]) -> None:
        subscription_id = subscription["subscription_id"]
        error_code = purchase.get("error_code")
        partition = subscription["seller_id"]
        if error_codes.is_temporary_network_error(error_code):
            self.enqueue_job(
                job_type="recurring_charge",
                payload={"subscription_id": subscription_id},
                partition=partition,
                delay=NETWORK_ERROR_RETRY_DELAY,
                unique_key=f"recurring_charge:{subscription_id}",
            )
        elif error_code:
            self._notify(
                "subscription_card_declined",
                recipient=subscription["email"],
                subscription_id=subscription_id,
                error_code=error_code,
            )
            self.enqueue_job(
                job_type="charge_declined_reminder",
                payload={"subscription_id": subscription_id},
                partition=partition,
                delay=CHARGE_DECLINED_REMINDER_DELAY,
                unique_key=f"charge_declined_reminder:{subscription_id}",
            )
            if error_codes.is_retryable(error_code):
                self.enqueue_job(
                    job_type="recurring_charge",
                    payload={"subscription_id": subscription_id},
                    partition=partition,
                    delay=RETRYABLE_CARD_ERROR_RETRY_DELAY,
                    unique_key=f"recurring_charge:{subscription_id}",
                )
        run_at = max(self.subscription_terminate_by(subscription), self._now() + timedelta(minutes=1))
        self.enqueue_job(
            job_type="unsubscribe_and_fail",
            payload={"subscription_id": subscription_id},
            partition=partition,
            run_at=run_at,
            unique_key=f"unsubscribe_and_fail:{subscription_id}",
        )

    def unsubscribe_and_fail(self, *, subscription_id: str) -> dict[str, Any]:
        subscription = self.get_subscription(subscription_id)
        if subscription.get("failed_at"):
            return {"failed": False, "reason": "already_failed"}
        if not self.subscription_overdue(subscription):
            return {"failed": False, "reason": "recovered"}
        now = self._utcnow_iso()
        subscription["failed_at"] = now
        subscription["deactivated_at"] = now
        self._notify("subscription_autocancelled", recipient=subscription["email"], subscription_id=subscription_id)
        seller = self.sellers.get(subscription["seller_id"])
        if seller is not None:
            self._notify(
                "subscription_autocancelled_seller",
                recipient=seller["email"],
                subscription_id=subscription_id,
            )
        original = self._original_subscription_purchase(subscription)
        if original is not None:
            self.enqueue_ping_notifications(purchase_id=original["purchase_id"], resource_name="cancellation")
        logger.info("subscription_failed subscription_id=%s", subscription_id)
        return {"failed": True, "subscription_id": subscription_id}

    def send_charge_declined_reminder(self, *, subscription_id: str) -> dict[str, Any]:
        subscription = self.get_subscription(subscription_id)
        last = self._last_subscription_purchase(subscription)
        if (
            not self.subscription_alive(subscription)
            or not self.subscription_overdue(subscription)
            or last is None
            or last.get("state") != "failed"
        ):
            return {"sent": False}
        self._notify(
            "subscription_charge_declined_reminder",
            recipient=subscription["email"],
            subscription_id=subscription_id,
        )
        return {"sent": True}

    def enqueue_due_recurring_charges(self) -> list[str]:
        job_ids: list[str] = []
        for subscription in list(self.subscriptions.values()):
            if self._recurring_charge_skip_reason(subscription) is not None:
                continue
            job = self.enqueue_job(
                job_type="recurring_charge",
                payload={"subscription_id": subscription["subscription_id"], "ignore_consecutive_failures": True},
                partition=subscription["seller_id"],
                unique_key=f"recurring_charge:{subscription['subscription_id']}",
            )
            job_ids.append(job["job_id"])
        return job_ids

    def _price_change_effective_at(self, subscription: dict[str, Any], *, recurrence: str, effective_on: date) -> datetime:
        """First billing period boundary on or after ``effective_on``."""
        boundary = self._parse_dt(subscription.get("paid_through_at")) or self._now()
        months = RECURRENCE_MONTHS[recurrence]
        while boundary.date() < effective_on:
            boundary = add_months(boundary, months)
        return boundary

    def schedule_membership_price_updates(
        self,
        *,
        product_id: str,
        price_cents: int,
        effective_on: str,
        recurrence: str | None = None,
        variant_id: str | None = None,
    ) -> dict[str, Any]:
        """Move existing members of a product onto a new price.

        Each live subscription (pending cancellations included) gets a pending
        plan change that takes effect at its first renewal on or after
        ``effective_on``. ``recurrence`` and ``variant_id`` narrow the members
        affected; a member already heading to another billing period is
        matched on that period.
        """
        self.get_product(product_id)
        if recurrence is not None and recurrence not in RECURRENCE_MONTHS:
            raise ApiError(
                code="RECURRENCE_INVALID",
                message=f"unknown recurrence: {recurrence}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        effective_date = date.fromisoformat(str(effective_on)[:10])
        price_cents = int(price_cents)
        scheduled: list[str] = []
        skipped: dict[str, str] = {}
        for subscription in list(self.subscriptions.values()):
            if subscription.get("product_id") != product_id:
                continue
            if variant_id is not None and subscription.get("variant_id") != variant_id:
                continue
            subscription_id = subscription["subscription_id"]
            if not self.subscription_alive(subscription):
                continue
            pending = subscription.get("pending_plan_change") or {}
            target_recurrence = pending.get("recurrence") or subscription["recurrence"]
            if recurrence is not None and target_recurrence != recurrence:
                skipped[subscription_id] = "other_recurrence"
                continue
            agreed = pending.get("price_cents")
            if agreed is None:
                agreed = subscription["price_cents"]
            if int(agreed) == price_cents:
                logger.warning(
                    "membership_price_update_skipped subscription_id=%s reason=price_unchanged",
                    subscription_id,
                )
                skipped[subscription_id] = "price_unchanged"
                continue
            effective_at = self._price_change_effective_at(
                subscription, recurrence=target_recurrence, effective_on=effective_date
            )
            subscription["pending_plan_change"] = {
                "price_cents": price_cents,
                "recurrence": target_recurrence,
                "effective_at": effective_at.isoformat(),
                "reason": "product_price_change",
            }
            self._notify(
                "subscription_price_change",
                recipient=subscription["email"],
                subscription_id=subscription_id,
                price_cents=price_cents,
                effective_at=effective_at.isoformat(),
            )
            scheduled.append(subscription_id)
        logger.info(
            "membership_price_updates_scheduled product_id=%s scheduled=%s skipped=%s",
            product_id,
            len(scheduled),
            len(skipped),
        )
        return {"scheduled": scheduled, "skipped": skipped}

    def enqueue_due_plan_changes(self) -> list[str]:
        job_ids: list[str] = []
        for subscription in list(self.subscriptions.values()):
            change = subscription.get("pending_plan_change")
            if not change or not self.subscription_alive(subscription):
                continue
            effective_at = self._parse_dt(change.get("effective_at"))
            if effective_at is not None and effective_at > self._now():
                continue
            job = self.enqueue_job(
                job_type="apply_plan_change",
                payload={"subscription_id": subscription["subscription_id"]},
                partition=subscription["seller_id"],
                unique_key=f"apply_plan_change:{subscription['subscription_id']}",
            )
            job_ids.append(job["job_id"])
        return job_ids

    def apply_plan_change(self, *, subscription_id: str) -> dict[str, Any]:
        subscription = self.get_subscription(subscription_id)
        applied = self._apply_pending_plan_change(subscription)
        return {
            "applied": applied,
            "price_cents": subscription["price_cents"],
            "recurrence": subscription["recurrence"],
        }

    def schedule_abandoned_purchase_check(self, purchase: dict[str, Any]) -> dict[str, Any]:
        created_at = self._parse_dt(purchase.get("created_at")) or self._now()
        return self.enqueue_job(
            job_type="fail_abandoned_purchase",
            payload={"purchase_id": purchase["purchase_id"]},
            partition=purchase["seller_id"],
            run_at=created_at + ABANDONED_PURCHASE_TIMEOUT,
            unique_key=f"fail_abandoned_purchase:{purchase['purchase_id']}",
        )
