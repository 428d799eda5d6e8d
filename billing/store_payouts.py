from __future__ import annotations

import logging
import math
import re
from datetime import date, timedelta
from typing import Any

from billing.charge_processor import MASS_PAY_SUCCESS_ACKS, PAYPAL, STRIPE
from billing.errors import ApiError, ChargeProcessorError, ChargeProcessorUnavailableError
from billing.state_machines import (
    PAYMENT_BALANCE_EFFECTS,
    PAYMENT_NON_TERMINAL_STATES,
    can_transition,
    transition,
)

logger = logging.getLogger(__name__)

PAYOUT_RECIPIENTS_PER_JOB = 240
PAYPAL_PAYOUT_FEE_PERCENT = 2
PAYPAL_PAYOUT_FEE_EXEMPT_COUNTRIES = frozenset({"BR", "IN"})
MAX_SPLIT_PAYMENT_CENTS = 2_000_000
SPLIT_PAYMENT_UNIQUE_ID_PREFIX = "SPLIT_"
SPLIT_PAYMENT_TXN_ID = "split payment; see split_payments_info"
INSTANT_PAYOUT_FEE_PERCENT = 3
PAYOUT_STATUS_RECHECK_DELAY = timedelta(minutes=5)
PAYOUT_REVERSAL_SETTLE_DELAY = timedelta(days=7)
STRIPE_PAYOUT_EVENT_TYPES = frozenset({"payout.paid", "payout.canceled", "payout.failed"})
PAYOUT_TYPES = frozenset({"standard", "instant"})

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_INDEXED_KEY_RE = re.compile(r"^(.+)_(\d+)$")


def _payout_error(code: str, message: str, *, retryable: bool = False, http_status: int = 409) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="transient" if retryable else "business_rule",
        retryable=retryable,
        http_status=http_status,
    )


class StorePayoutsMixin:
    """Seller payouts through Stripe transfers and PayPal MassPay."""

    def transition_payment(
        self,
        payment: dict[str, Any],
        to_state: str,
        *,
        failure_reason: str | None = None,
    ) -> str:
        from_state = transition("payment", payment, to_state, processor=payment["processor"])
        effect = PAYMENT_BALANCE_EFFECTS.get((from_state, to_state))
        if effect is not None:
            self._set_balance_state(payment["balance_ids"], effect)
        payment["state_changed_at"] = self._utcnow_iso()
        if failure_reason:
            payment["failure_reason"] = failure_reason
        logger.info(
            "payment_transitioned payment_id=%s from=%s to=%s reason=%s",
            payment["payment_id"],
            from_state,
            to_state,
            failure_reason,
        )
        return from_state

    def _payments_for_seller(self, seller_id: str, *, processor: str | None = None) -> list[dict[str, Any]]:
        return [
            p
            for p in self.payments.values()
            if p["seller_id"] == seller_id and (processor is None or p["processor"] == processor)
        ]

    def is_user_payable(
        self,
        seller_id: str,
        *,
        payout_date: date,
        processor: str,
        add_note: bool = True,
    ) -> bool:
        seller = self.get_seller(seller_id)
        day = payout_date.isoformat()

        def skip(reason: str) -> bool:
            if add_note:
                self.add_seller_note(seller_id, f"Payout on {day} skipped because {reason}")
            return False

        if seller.get("payouts_paused"):
            return skip("payouts are paused")
        if seller.get("suspended_reason") in {"tos", "fraud"}:
            return skip(f"the account is suspended for {seller['suspended_reason']}")

        amount = self.unpaid_balance_cents(seller_id, up_to=payout_date)
        already_paid_today = any(
            p["payout_date"] == day and p["state"] == "completed" for p in self._payments_for_seller(seller_id)
        )
        if amount < self.min_payout_cents and not already_paid_today:
            return skip(f"the balance {amount} is below the minimum payout amount")

        in_flight = [
            p["payment_id"]
            for p in self._payments_for_seller(seller_id, processor=processor)
            if p["state"] in {"creating", "processing"}
        ]
        if processor == PAYPAL:
            email = str(seller.get("paypal_email") or "")
            if not _EMAIL_RE.match(email):
                return skip("the account does not have a valid PayPal payment address")
            if not email.isascii():
                return skip("the PayPal payment address contains invalid characters")
            if not seller.get("legal_name"):
                return skip("the account does not have a valid name on record")
            if in_flight:
                return skip(f"there are already payouts ({', '.join(in_flight)}) in processing")
            return True
        if processor == STRIPE:
            if in_flight:
                return skip("there was already a payout in processing")
            if not seller.get("stripe_account_id"):
                return skip("a merchant account was not set up")
            return True
        return skip(f"the processor {processor} cannot pay this account")

    def _new_payment(
        self,
        seller: dict[str, Any],
        *,
        processor: str,
        payout_date: date,
        payout_type: str,
    ) -> dict[str, Any]:
        payment = {
            "payment_id": self._new_id("pay"),
            "seller_id": seller["seller_id"],
            "processor": processor,
            "payout_date": payout_date.isoformat(),
            "payout_type": payout_type,
            "state": "creating",
            "amount_cents": 0,
            "currency": "usd",
            "gumroad_fee_cents": 0,
            "processor_fee_cents": 0,
            "balance_ids": [],
            "payment_address": seller.get("paypal_email") if processor == PAYPAL else None,
            "stripe_account_id": seller.get("stripe_account_id") if processor == STRIPE else None,
            "stripe_transfer_id": None,
            "arrival_date": None,
            "txn_id": None,
            "correlation_id": None,
            "split_payments_info": None,
            "failure_reason": None,
            "reversing_payout_id": None,
            "created_at": self._utcnow_iso(),
        }
        return payment

    def create_payments(
        self,
        *,
        payout_date: date,
        processor: str,
        seller_ids: list[str],
        payout_type: str = "standard",
    ) -> list[dict[str, Any]]:
        if payout_date >= self._now().date():
            raise _payout_error(
                "PAYOUT_DATE_INVALID",
                f"payout date {payout_date.isoformat()} must be in the past",
                http_status=400,
            )
        if payout_type not in PAYOUT_TYPES:
            raise _payout_error("PAYOUT_TYPE_INVALID", f"unsupported payout type: {payout_type}", http_status=400)

        payments: list[dict[str, Any]] = []
        for seller_id in seller_ids:
            if not self.is_user_payable(seller_id, payout_date=payout_date, processor=processor):
                continue
            seller = self.get_seller(seller_id)
            if payout_type == "instant" and (processor != STRIPE or not seller.get("instant_payouts")):
                self.add_seller_note(seller_id, f"Instant payout on {payout_date.isoformat()} skipped")
                continue
            balances = self.unpaid_balances(seller_id, up_to=payout_date)
            balance_ids = [b["balance_id"] for b in balances]
            self._set_balance_state(balance_ids, "processing")
            total = sum(int(b["amount_cents"]) for b in balances)
            if total <= 0:
                self._set_balance_state(balance_ids, "unpaid")
                continue

            payment = self._new_payment(seller, processor=processor, payout_date=payout_date, payout_type=payout_type)
            payment["balance_ids"] = balance_ids
            amount = total
            if processor == PAYPAL and seller.get("country") not in PAYPAL_PAYOUT_FEE_EXEMPT_COUNTRIES:
                payment["gumroad_fee_cents"] = math.ceil(total * PAYPAL_PAYOUT_FEE_PERCENT / 100)
                amount = total - payment["gumroad_fee_cents"]
            if payout_type == "instant":
                amount = total * 100 // (100 + INSTANT_PAYOUT_FEE_PERCENT)
                payment["gumroad_fee_cents"] = total - amount
            payment["amount_cents"] = amount
            self.payments[payment["payment_id"]] = payment
            payments.append(payment)

        if processor == STRIPE:
            for payment in payments:
                self.enqueue_job(
                    job_type="perform_stripe_payout",
                    payload={"payment_id": payment["payment_id"]},
                    partition=payment["seller_id"],
                    unique_key=f"perform_stripe_payout:{payment['payment_id']}",
                )
        elif processor == PAYPAL:
            for index in range(0, len(payments), PAYOUT_RECIPIENTS_PER_JOB):
                chunk = payments[index : index + PAYOUT_RECIPIENTS_PER_JOB]
                self.enqueue_job(
                    job_type="perform_paypal_payouts",
                    payload={"payment_ids": [p["payment_id"] for p in chunk]},
                    delay=timedelta(minutes=index // PAYOUT_RECIPIENTS_PER_JOB),
                )
        logger.info(
            "payments_created processor=%s payout_date=%s count=%s",
            processor,
            payout_date.isoformat(),
            len(payments),
        )
        return payments

    def create_scheduled_payouts(
        self,
        *,
        payout_date: str | None = None,
        processor: str | None = None,
        payout_type: str = "standard",
    ) -> dict[str, Any]:
        day = date.fromisoformat(payout_date) if payout_date else self._now().date() - timedelta(days=1)
        processors = [processor] if processor else [STRIPE, PAYPAL]
        payment_ids: list[str] = []
        for processor_id in processors:
            seller_ids = [
                s["seller_id"] for s in self.sellers.values() if s.get("payout_processor") == processor_id
            ]
            payments = self.create_payments(
                payout_date=day,
                processor=processor_id,
                seller_ids=seller_ids,
                payout_type=payout_type,
            )
            payment_ids.extend(p["payment_id"] for p in payments)
        return {"payout_date": day.isoformat(), "payment_ids": payment_ids}

    # Stripe

    def perform_stripe_payout(self, *, payment_id: str) -> dict[str, Any]:
        payment = self.get_payment(payment_id)
        if payment["state"] != "creating":
            return {"performed": False, "state": payment["state"]}
        processor = self.processors.get(STRIPE)
        try:
            payout = processor.create_payout(
                amount_cents=int(payment["amount_cents"]),
                currency=payment["currency"],
                account_ref=str(payment["stripe_account_id"]),
                payment_id=payment_id,
                instant=payment["payout_type"] == "instant",
            )
        except ChargeProcessorUnavailableError:
            raise
        except ChargeProcessorError as exc:
            self.transition_payment(payment, "failed", failure_reason=_stripe_failure_reason(exc.message))
            return {"performed": False, "state": payment["state"], "error": exc.message}
        payment["stripe_transfer_id"] = payout["id"]
        payment["arrival_date"] = payout.get("arrival_date")
        self.transition_payment(payment, "processing")
        return {"performed": True, "state": payment["state"], "payout_id": payout["id"]}

    def _find_stripe_payment(self, *, payout_id: str, account_id: str | None) -> dict[str, Any] | None:
        for payment in self.payments.values():
            if payment["processor"] != STRIPE or payment.get("stripe_transfer_id") != payout_id:
                continue
            if account_id and payment.get("stripe_account_id") != account_id:
                continue
            return payment
        return None

    def handle_stripe_payout_event(self, *, event: dict[str, Any]) -> dict[str, Any]:
        event_id = event.get("id")
        event_type = str(event.get("type", ""))
        if event_type not in STRIPE_PAYOUT_EVENT_TYPES:
            return {"handled": False, "reason": "event_type_ignored"}
        obj = (event.get("data") or {}).get("object") or {}
        if obj.get("object") != "payout":
            raise _payout_error("STRIPE_EVENT_INVALID", f"stripe event {event_id} does not contain a payout")
        is_reversal = bool(obj.get("original_payout"))
        payout_id = obj.get("original_payout") if is_reversal else obj.get("id")
        if not payout_id:
            raise _payout_error("STRIPE_EVENT_INVALID", f"stripe event {event_id} has no payout id")
        account_id = event.get("account")
        payout = self.processors.get(STRIPE).get_payout(payout_id)

        if payout.get("automatic"):
            if int(payout.get("amount_cents", 0)) >= 0:
                logger.info("stripe_automatic_payout_ignored event_id=%s account=%s", event_id, account_id)
            elif event_type == "payout.paid":
                self.enqueue_job(
                    job_type="check_negative_balance",
                    payload={"stripe_account_id": account_id, "payout_id": payout_id},
                    delay=PAYOUT_REVERSAL_SETTLE_DELAY,
                )
            return {"handled": False, "reason": "automatic_payout"}

        payment = self._find_stripe_payment(payout_id=payout_id, account_id=account_id)
        if payment is None:
            raise _payout_error(
                "PAYMENT_NOT_FOUND",
                f"stripe event {event_id}: payout {payout_id} does not match any payment",
                retryable=True,
            )
        if (payout.get("metadata") or {}).get("payment") != payment["payment_id"]:
            raise _payout_error(
                "PAYOUT_METADATA_MISMATCH",
                f"stripe event {event_id}: payout mismatches on payment id",
            )

        if is_reversal:
            reversing_payout_id = obj.get("id")
            if event_type == "payout.paid":
                self.enqueue_job(
                    job_type="handle_payout_reversed",
                    payload={"payment_id": payment["payment_id"], "reversing_payout_id": reversing_payout_id},
                    partition=payment["seller_id"],
                    delay=PAYOUT_REVERSAL_SETTLE_DELAY,
                )
            elif event_type == "payout.failed" and payment.get("reversing_payout_id") == reversing_payout_id:
                raise _payout_error(
                    "PAYOUT_REVERSAL_FAILED",
                    f"payment {payment['payment_id']} was marked returned but its reversal failed; manual review needed",
                )
            return {"handled": True, "payment_id": payment["payment_id"], "state": payment["state"]}

        if event_type == "payout.paid":
            if payment["state"] == "processing":
                payment["arrival_date"] = payout.get("arrival_date")
                self.transition_payment(payment, "completed")
        elif event_type == "payout.canceled":
            if payment["state"] != "processing":
                raise _payout_error(
                    "PAYMENT_STATE_UNEXPECTED",
                    f"expected payment {payment['payment_id']} to be processing, got {payment['state']}",
                )
            self.transition_payment(payment, "cancelled")
        elif event_type == "payout.failed":
            self._fail_or_return_payment(payment, failure_reason=payout.get("failure_code"))
        return {"handled": True, "payment_id": payment["payment_id"], "state": payment["state"]}

    def _fail_or_return_payment(self, payment: dict[str, Any], *, failure_reason: str | None) -> bool:
        if payment["state"] == "processing":
            self.transition_payment(payment, "failed", failure_reason=failure_reason)
        elif payment["state"] == "completed":
            self.transition_payment(payment, "returned", failure_reason=failure_reason)
        else:
            return False
        if failure_reason:
            seller = self.sellers.get(payment["seller_id"])
            if seller is not None:
                self._notify(
                    "payout_failed",
                    recipient=seller["email"],
                    payment_id=payment["payment_id"],
                    failure_reason=failure_reason,
                )
        return True

    def handle_payout_reversed(self, *, payment_id: str, reversing_payout_id: str) -> dict[str, Any]:
        payment = self.get_payment(payment_id)
        if not self._fail_or_return_payment(payment, failure_reason=None):
            return {"reversed": False, "state": payment["state"]}
        payment["reversing_payout_id"] = reversing_payout_id
        return {"reversed": True, "state": payment["state"]}

    def check_negative_balance(self, *, stripe_account_id: str, payout_id: str) -> dict[str, Any]:
        payout = self.processors.get(STRIPE).get_payout(payout_id)
        amount = int(payout.get("amount_cents", 0))
        if amount >= 0:
            return {"credited": False}
        seller = next(
            (s for s in self.sellers.values() if s.get("stripe_account_id") == stripe_account_id),
            None,
        )
        if seller is None:
            logger.warning("negative_balance_account_unknown stripe_account_id=%s", stripe_account_id)
            return {"credited": False}
        self.adjust_seller_balance(seller_id=seller["seller_id"], amount_cents=abs(amount), reason="bank_debit")
        return {"credited": True, "seller_id": seller["seller_id"], "amount_cents": abs(amount)}

    # PayPal

    def _paypal_note(self, payment: dict[str, Any]) -> str:
        seller = self.sellers.get(payment["seller_id"]) or {}
        return f"{seller.get('legal_name', '')}, selling digital products / memberships"

    def perform_paypal_payouts(self, *, payment_ids: list[str]) -> dict[str, Any]:
        regular: list[dict[str, Any]] = []
        split: list[dict[str, Any]] = []
        for payment_id in payment_ids:
            payment = self.payments.get(payment_id)
            if payment is None or payment["state"] != "creating":
                continue
            if int(payment["amount_cents"]) > MAX_SPLIT_PAYMENT_CENTS:
                split.append(payment)
            else:
                regular.append(payment)

        for payment in split:
            try:
                self._perform_split_payment(payment)
            except ChargeProcessorError:
                logger.exception("paypal_split_payout_failed payment_id=%s", payment["payment_id"])

        if regular:
            items = [
                {
                    "email": p["payment_address"],
                    "amount_cents": int(p["amount_cents"]),
                    "unique_id": p["payment_id"],
                    "note": self._paypal_note(p),
                }
                for p in regular
            ]
            response = self.processors.get(PAYPAL).mass_pay(items)
            ack = response.get("ACK")
            for payment in regular:
                payment["correlation_id"] = response.get("CORRELATIONID")
                if ack in MASS_PAY_SUCCESS_ACKS:
                    self.transition_payment(payment, "processing")
                else:
                    self.transition_payment(payment, "failed", failure_reason=f"PAYPAL {ack}")
            if ack != "Success":
                logger.info("paypal_mass_pay_ack ack=%s payments=%s", ack, len(regular))
        return {
            "regular": [p["payment_id"] for p in regular],
            "split": [p["payment_id"] for p in split],
        }

    def _perform_split_payment(self, payment: dict[str, Any]) -> None:
        processor = self.processors.get(PAYPAL)
        amount = int(payment["amount_cents"])
        parts = math.ceil(amount / MAX_SPLIT_PAYMENT_CENTS)
        payment["split_payments_info"] = []
        paid_so_far = 0
        for number in range(1, parts + 1):
            part_amount = min(amount - paid_so_far, MAX_SPLIT_PAYMENT_CENTS)
            unique_id = f"{SPLIT_PAYMENT_UNIQUE_ID_PREFIX}{payment['payment_id']}-{number}"
            response = processor.mass_pay(
                [
                    {
                        "email": payment["payment_address"],
                        "amount_cents": part_amount,
                        "unique_id": unique_id,
                        "note": self._paypal_note(payment),
                    }
                ]
            )
            paid_so_far += part_amount
            succeeded = response.get("ACK") in MASS_PAY_SUCCESS_ACKS
            payment["split_payments_info"].append(
                {
                    "unique_id": unique_id,
                    "state": "processing" if succeeded else "failed",
                    "correlation_id": response.get("CORRELATIONID"),
                    "amount_cents": part_amount,
                    "txn_id": None,
                }
            )
            payment["correlation_id"] = response.get("CORRELATIONID")
            if not succeeded and number == 1:
                self.transition_payment(payment, "failed", failure_reason=f"PAYPAL {response.get('ACK')}")
                return
        self.transition_payment(payment, "processing")
        logger.info("paypal_split_payout_sent payment_id=%s parts=%s", payment["payment_id"], parts)

    @staticmethod
    def group_ipn_items(params: dict[str, Any]) -> list[dict[str, Any]]:
        grouped: dict[int, dict[str, Any]] = {}
        for key, value in params.items():
            match = _INDEXED_KEY_RE.match(str(key))
            if match is None:
                continue
            grouped.setdefault(int(match.group(2)), {})[match.group(1)] = value
        return [grouped[index] for index in sorted(grouped)]

    def handle_paypal_ipn(self, *, params: dict[str, Any]) -> dict[str, Any]:
        handled: list[str] = []
        for item in self.group_ipn_items(params):
            unique_id = str(item.get("unique_id", ""))
            if unique_id.startswith(SPLIT_PAYMENT_UNIQUE_ID_PREFIX):
                payment = self._apply_split_ipn_item(unique_id, item)
            else:
                payment = self._apply_ipn_item(unique_id, item)
            if payment is not None:
                handled.append(payment["payment_id"])
        return {"handled": handled}

    def _schedule_payout_status_check(self, payment: dict[str, Any]) -> None:
        self.enqueue_job(
            job_type="update_payout_status",
            payload={"payment_id": payment["payment_id"]},
            partition=payment["seller_id"],
            delay=PAYOUT_STATUS_RECHECK_DELAY,
            unique_key=f"update_payout_status:{payment['payment_id']}",
        )

    def _apply_payment_status(self, payment: dict[str, Any], new_state: str, *, reason_code: str | None) -> None:
        if new_state == payment["state"]:
            return
        if not can_transition("payment", payment["state"], new_state, processor=payment["processor"]):
            logger.warning(
                "payment_transition_skipped payment_id=%s from=%s to=%s",
                payment["payment_id"],
                payment["state"],
                new_state,
            )
            return
        failure_reason = f"PAYPAL {reason_code}" if new_state == "failed" and reason_code else None
        self.transition_payment(payment, new_state, failure_reason=failure_reason)

    def _apply_ipn_item(self, unique_id: str, item: dict[str, Any]) -> dict[str, Any] | None:
        payment = self.payments.get(unique_id)
        if payment is None:
            logger.warning("paypal_ipn_unknown_payment unique_id=%s", unique_id)
            return None
        if payment["state"] not in PAYMENT_NON_TERMINAL_STATES:
            return None
        payment["txn_id"] = item.get("masspay_txn_id")
        if item.get("mc_fee"):
            payment["processor_fee_cents"] = round(float(item["mc_fee"]) * 100)
        new_state = str(item.get("status") or "").lower()
        if new_state == "pending":
            self._schedule_payout_status_check(payment)
        elif new_state:
            self._apply_payment_status(payment, new_state, reason_code=item.get("reason_code"))
        return payment

    def _apply_split_ipn_item(self, unique_id: str, item: dict[str, Any]) -> dict[str, Any] | None:
        payment_id, _, number = unique_id[len(SPLIT_PAYMENT_UNIQUE_ID_PREFIX) :].rpartition("-")
        payment = self.payments.get(payment_id)
        if payment is None or not number.isdigit():
            logger.warning("paypal_ipn_unknown_payment unique_id=%s", unique_id)
            return None
        parts = payment.get("split_payments_info") or []
        index = int(number) - 1
        if not 0 <= index < len(parts):
            logger.warning("paypal_ipn_unknown_split unique_id=%s", unique_id)
            return None
        part = parts[index]
        if part["state"] not in {"processing", "pending"}:
            return None
        part["txn_id"] = item.get("masspay_txn_id")
        part["state"] = str(item.get("status") or "").lower()
        if item.get("mc_fee"):
            payment["processor_fee_cents"] = int(payment["processor_fee_cents"]) + round(float(item["mc_fee"]) * 100)
        if part["state"] == "pending":
            self._schedule_payout_status_check(payment)
        self._update_split_payment_state(payment)
        return payment

    def _update_split_payment_state(self, payment: dict[str, Any]) -> None:
        states = [part["state"] for part in payment.get("split_payments_info") or []]
        if not states or payment["state"] != "processing":
            return
        if all(state == "completed" for state in states):
            payment["txn_id"] = SPLIT_PAYMENT_TXN_ID
            self.transition_payment(payment, "completed")
        elif all(state == "failed" for state in states):
            self.transition_payment(payment, "failed")
        elif not any(state in {"processing", "pending"} for state in states):
            logger.error("paypal_split_payout_mixed payment_id=%s states=%s", payment["payment_id"], states)

    def update_payout_status(self, *, payment_id: str) -> dict[str, Any]:
        payment = self.get_payment(payment_id)
        if payment["processor"] != PAYPAL or payment["state"] not in {"processing", "unclaimed"}:
            return {"updated": False, "state": payment["state"]}
        processor = self.processors.get(PAYPAL)
        if payment.get("split_payments_info"):
            for part in payment["split_payments_info"]:
                if part["state"] in {"processing", "pending"}:
                    part["state"] = processor.get_mass_pay_item_status(part["unique_id"]).lower()
            self._update_split_payment_state(payment)
        else:
            status = processor.get_mass_pay_item_status(payment_id).lower()
            if status != "pending":
                self._apply_payment_status(payment, status, reason_code=None)
        return {"updated": True, "state": payment["state"]}


def _stripe_failure_reason(message: str) -> str | None:
    if "Cannot create live transfers" in message:
        return "cannot_pay"
    if "Debit card transfers are only supported for amounts less" in message:
        return "debit_card_limit"
    if "Insufficient funds in Stripe account" in message:
        return "insufficient_funds"
    return None
