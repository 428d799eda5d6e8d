from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from billing import error_codes
from billing.charge_processor import (
    INTENT_CANCELED,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
    ChargeResult,
)
from billing.errors import ApiError, ChargeProcessorError, ChargeProcessorUnavailableError
from billing.state_machines import transition
from billing.store_ledger import RECURRENCE_MONTHS, add_months
from billing.store_subscriptions import ABANDONED_PURCHASE_TIMEOUT

logger = logging.getLogger(__name__)

STUCK_PURCHASE_MIN_AGE = timedelta(hours=4)
STUCK_PURCHASE_MAX_AGE = timedelta(days=3)
INDIAN_CARD_MANDATE_WINDOW = timedelta(hours=26)

CHARGE_EVENT_INFORMATIONAL = "informational"
CHARGE_EVENT_CHARGE_SUCCEEDED = "charge_succeeded"
CHARGE_EVENT_PAYMENT_FAILED = "payment_failed"
CHARGE_EVENT_DISPUTE_FORMALIZED = "dispute_formalized"
CHARGE_EVENT_DISPUTE_WON = "dispute_won"
CHARGE_EVENT_DISPUTE_LOST = "dispute_lost"
CHARGE_EVENT_SETTLEMENT_DECLINED = "settlement_declined"
CHARGE_EVENT_TYPES = frozenset(
    {
        CHARGE_EVENT_INFORMATIONAL,
        CHARGE_EVENT_CHARGE_SUCCEEDED,
        CHARGE_EVENT_PAYMENT_FAILED,
        CHARGE_EVENT_DISPUTE_FORMALIZED,
        CHARGE_EVENT_DISPUTE_WON,
        CHARGE_EVENT_DISPUTE_LOST,
        CHARGE_EVENT_SETTLEMENT_DECLINED,
    }
)


class StorePurchasesMixin:
    def _attempt_charge(self, purchase: dict[str, Any]) -> tuple[ChargeResult | None, str | None]:
        """Charge the purchase; returns the result or the purchase error code."""
        processor = self.processors.get(purchase["processor"])
        try:
            charge = processor.create_charge(
                amount_cents=int(purchase["price_cents"]) + int(purchase.get("tax_cents") or 0),
                currency=purchase.get("currency", "usd"),
                customer_ref=purchase.get("customer_ref", ""),
                reference=purchase["purchase_id"],
                off_session=bool(purchase.get("off_session")),
                card_country=purchase.get("card_country"),
            )
        except ChargeProcessorUnavailableError as exc:
            logger.warning(
                "charge_processor_unavailable purchase_id=%s processor=%s error=%s",
                purchase["purchase_id"],
                purchase["processor"],
                exc.message,
            )
            return None, exc.error_code or error_codes.unavailable_code_for(purchase["processor"])
        except ChargeProcessorError as exc:
            purchase["charge_id"] = exc.charge_id
            return None, exc.error_code or error_codes.PROCESSOR_REQUEST_INVALID
        purchase["payment_intent_id"] = charge.payment_intent_id
        purchase["stripe_status"] = charge.status
        return charge, None

    def _complete_in_progress_purchase(self, purchase: dict[str, Any]) -> None:
        self.mark_purchase_successful(purchase)
        subscription_id = purchase.get("subscription_id")
        if subscription_id and subscription_id in self.subscriptions:
            subscription = self.subscriptions[subscription_id]
            months = RECURRENCE_MONTHS[subscription["recurrence"]]
            subscription["paid_through_at"] = add_months(self._now(), months).isoformat()

    def _fail_in_progress_purchase(self, purchase: dict[str, Any], *, error_code: str | None) -> None:
        self.mark_purchase_failed(purchase, error_code=error_code)
        subscription_id = purchase.get("subscription_id")
        if subscription_id and subscription_id in self.subscriptions:
            self.handle_subscription_purchase_failure(self.subscriptions[subscription_id], purchase)

    def fail_abandoned_purchase(self, *, purchase_id: str) -> dict[str, Any]:
        purchase = self.get_purchase(purchase_id)
        if purchase["state"] != "in_progress":
            return {"failed": False, "reason": "not_in_progress"}
        deadline = (self._parse_dt(purchase.get("created_at")) or self._now()) + ABANDONED_PURCHASE_TIMEOUT
        if self._now() < deadline:
            self.enqueue_job(
                job_type="fail_abandoned_purchase",
                payload={"purchase_id": purchase_id},
                partition=purchase["seller_id"],
                run_at=deadline,
                unique_key=f"fail_abandoned_purchase:{purchase_id}",
            )
            return {"failed": False, "reason": "rescheduled", "run_at": deadline.isoformat()}
        if not purchase.get("payment_intent_id") and not purchase.get("setup_intent_id"):
            raise ApiError(
                code="PURCHASE_INTENT_MISSING",
                message=f"purchase {purchase_id} has neither payment intent nor setup intent",
                error_class="permanent",
                retryable=False,
                http_status=409,
            )
        processor = self.processors.get(purchase["processor"])
        if purchase.get("setup_intent_id"):
            intent_id = purchase["setup_intent_id"]
            try:
                processor.cancel_setup_intent(intent_id)
            except ChargeProcessorError:
                intent = processor.get_setup_intent(intent_id)
                if intent.get("status") in {INTENT_CANCELED, INTENT_SUCCEEDED}:
                    logger.info(
                        "abandoned_purchase_cancel_skipped purchase_id=%s intent_status=%s",
                        purchase_id,
                        intent.get("status"),
                    )
                    return {"failed": False, "reason": f"intent_{intent.get('status')}"}
                raise
            transition("purchase", purchase, "preorder_authorization_failed")
            preorder = self.preorders.get(purchase.get("preorder_id") or "")
            if preorder is not None and preorder["state"] == "in_progress":
                transition("preorder", preorder, "authorization_failed")
            return {"failed": True, "state": purchase["state"]}

        intent_id = purchase["payment_intent_id"]
        try:
            processor.cancel_payment_intent(intent_id)
        except ChargeProcessorError:
            intent = processor.get_payment_intent(intent_id)
            if intent.get("status") in {INTENT_CANCELED, INTENT_SUCCEEDED}:
                logger.info(
                    "abandoned_purchase_cancel_skipped purchase_id=%s intent_status=%s",
                    purchase_id,
                    intent.get("status"),
                )
                return {"failed": False, "reason": f"intent_{intent.get('status')}"}
            raise
        self._fail_in_progress_purchase(purchase, error_code=purchase.get("error_code"))
        return {"failed": True, "state": purchase["state"]}

    def sync_purchase_status(self, purchase: dict[str, Any]) -> str:
        if int(purchase["price_cents"]) == 0:
            self._complete_in_progress_purchase(purchase)
            return purchase["state"]
        if not purchase.get("payment_intent_id") and not purchase.get("charge_id"):
            self._fail_in_progress_purchase(purchase, error_code=None)
            return purchase["state"]
        processor = self.processors.get(purchase["processor"])
        if purchase.get("payment_intent_id"):
            intent = processor.get_payment_intent(purchase["payment_intent_id"])
            status = intent.get("status")
            charge_id = intent.get("charge_id")
        else:
            charge = processor.get_charge(purchase["charge_id"])
            status = charge.get("status")
            charge_id = charge.get("id")
        purchase["stripe_status"] = status
        if status == INTENT_SUCCEEDED:
            if charge_id:
                charge = processor.get_charge(charge_id)
                purchase["charge_id"] = charge_id
                purchase["processor_fee_cents"] = int(charge.get("fee_cents", 0))
            self._complete_in_progress_purchase(purchase)
        elif status in {INTENT_CANCELED, INTENT_REQUIRES_PAYMENT_METHOD, "failed"}:
            self._fail_in_progress_purchase(purchase, error_code=purchase.get("error_code"))
        return purchase["state"]

    def sync_stuck_purchases(self) -> dict[str, Any]:
        now = self._now()
        synced: list[str] = []
        refunded: list[str] = []
        for purchase in list(self.purchases.values()):
            if purchase["state"] != "in_progress":
                continue
            created_at = self._parse_dt(purchase.get("created_at"))
            if created_at is None or not (now - STUCK_PURCHASE_MAX_AGE <= created_at <= now - STUCK_PURCHASE_MIN_AGE):
                continue
            # Indian card mandates settle up to a day after the off-session charge.
            if (
                purchase.get("off_session")
                and purchase.get("card_country") == "IN"
                and created_at > now - INDIAN_CARD_MANDATE_WINDOW
            ):
                continue
            state = self.sync_purchase_status(purchase)
            synced.append(purchase["purchase_id"])
            if state != "successful" or int(purchase["price_cents"]) == 0:
                continue
            if self.later_successful_purchase_exists(purchase):
                self.refund_purchase(purchase_id=purchase["purchase_id"])
                refunded.append(purchase["purchase_id"])
        logger.info("stuck_purchases_synced synced=%s refunded=%s", len(synced), len(refunded))
        return {"synced": synced, "refunded": refunded}

    def refund_purchase(self, *, purchase_id: str, amount_cents: int | None = None) -> dict[str, Any]:
        purchase = self.get_purchase(purchase_id)
        if purchase["state"] != "successful":
            raise ApiError(
                code="PURCHASE_NOT_REFUNDABLE",
                message=f"purchase in state {purchase['state']} cannot be refunded",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        total = int(purchase["price_cents"]) + int(purchase.get("tax_cents") or 0)
        refundable = total - int(purchase.get("refunded_cents") or 0)
        amount = refundable if amount_cents is None else int(amount_cents)
        if amount <= 0 or amount > refundable:
            raise ApiError(
                code="REFUND_AMOUNT_INVALID",
                message=f"refund amount must be between 1 and {refundable}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if purchase.get("charge_id"):
            self.processors.get(purchase["processor"]).refund(charge_id=purchase["charge_id"], amount_cents=amount)
        purchase["refunded_cents"] = int(purchase.get("refunded_cents") or 0) + amount
        debit = self.seller_share_cents(purchase, min(amount, int(purchase["price_cents"])))
        if debit:
            self.adjust_seller_balance(
                seller_id=purchase["seller_id"],
                amount_cents=-debit,
                reason="refund",
                purchase_id=purchase_id,
            )
        self._notify("refund_issued", recipient=purchase["email"], purchase_id=purchase_id, amount_cents=amount)
        self.enqueue_ping_notifications(purchase_id=purchase_id, resource_name="refund")
        return {
            "purchase_id": purchase_id,
            "refunded_cents": amount,
            "fully_refunded": purchase["refunded_cents"] >= total,
        }

    def find_purchase_for_charge_event(self, event: dict[str, Any]) -> dict[str, Any] | None:
        reference = event.get("charge_reference")
        if reference and reference in self.purchases:
            return self.purchases[reference]
        for key, field in (("charge_id", "charge_id"), ("payment_intent_id", "payment_intent_id")):
            value = event.get(key)
            if not value:
                continue
            for purchase in self.purchases.values():
                if purchase.get(field) == value:
                    return purchase
        return None

    def handle_charge_event(self, *, event: dict[str, Any]) -> dict[str, Any]:
        event_type = str(event.get("type", ""))
        if event_type not in CHARGE_EVENT_TYPES:
            raise ApiError(
                code="CHARGE_EVENT_TYPE_UNKNOWN",
                message=f"unknown charge event type: {event_type}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        purchase = self.find_purchase_for_charge_event(event)
        if purchase is None:
            logger.warning(
                "charge_event_unmatched type=%s charge_id=%s payment_intent_id=%s",
                event_type,
                event.get("charge_id"),
                event.get("payment_intent_id"),
            )
            return {"handled": False, "reason": "purchase_not_found"}

        if event_type == CHARGE_EVENT_INFORMATIONAL:
            purchase["stripe_status"] = event.get("comment") or purchase.get("stripe_status")
            if event.get("processor_fee_cents") is not None:
                purchase["processor_fee_cents"] = int(event["processor_fee_cents"])
        elif event_type == CHARGE_EVENT_CHARGE_SUCCEEDED:
            if purchase["state"] == "in_progress" and not purchase.get("is_preorder_authorization"):
                if event.get("charge_id"):
                    purchase["charge_id"] = event["charge_id"]
                if event.get("processor_fee_cents") is not None:
                    purchase["processor_fee_cents"] = int(event["processor_fee_cents"])
                self._complete_in_progress_purchase(purchase)
        elif event_type == CHARGE_EVENT_PAYMENT_FAILED:
            if purchase["state"] == "in_progress" and not purchase.get("is_preorder_authorization"):
                self._fail_in_progress_purchase(
                    purchase,
                    error_code=event.get("error_code") or error_codes.CARD_DECLINED,
                )
        elif event_type == CHARGE_EVENT_DISPUTE_FORMALIZED:
            self.handle_dispute_formalized(purchase, event)
        elif event_type == CHARGE_EVENT_DISPUTE_WON:
            self.handle_dispute_won(purchase, event)
        elif event_type == CHARGE_EVENT_DISPUTE_LOST:
            self.handle_dispute_lost(purchase, event)
        elif event_type == CHARGE_EVENT_SETTLEMENT_DECLINED:
            if purchase["state"] == "successful" and int(purchase.get("refunded_cents") or 0) < int(
                purchase["price_cents"]
            ) + int(purchase.get("tax_cents") or 0):
                self.refund_purchase(purchase_id=purchase["purchase_id"])
            else:
                logger.info(
                    "settlement_declined_ignored purchase_id=%s state=%s",
                    purchase["purchase_id"],
                    purchase["state"],
                )
        return {"handled": True, "purchase_id": purchase["purchase_id"], "state": purchase["state"]}
