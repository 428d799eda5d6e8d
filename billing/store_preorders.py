from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from billing import error_codes
from billing.charge_processor import INTENT_PROCESSING, INTENT_REQUIRES_ACTION, INTENT_SUCCEEDED
from billing.errors import ChargeProcessorError, ChargeProcessorUnavailableError
from billing.locks import hold
from billing.state_machines import transition

logger = logging.getLogger(__name__)

MAX_PREORDER_CHARGE_ATTEMPTS = 4
PREORDER_CHARGE_RETRY_DELAY = timedelta(hours=2)
AUTHORIZED_STATES = frozenset({"authorization_successful", "test_authorization_successful"})


class StorePreordersMixin:
    def _authorization_purchase(self, preorder: dict[str, Any]) -> dict[str, Any] | None:
        purchase_id = preorder.get("authorization_purchase_id")
        return self.purchases.get(purchase_id) if purchase_id else None

    def _preorder_is_test(self, preorder: dict[str, Any]) -> bool:
        return bool(preorder.get("buyer_id")) and preorder.get("buyer_id") == preorder["seller_id"]

    def authorize_preorder(self, *, preorder_id: str) -> dict[str, Any]:
        preorder = self.get_preorder(preorder_id)
        purchase = self.upsert_purchase(
            seller_id=preorder["seller_id"],
            product_id=preorder["product_id"],
            preorder_id=preorder_id,
            email=preorder["email"],
            buyer_id=preorder.get("buyer_id"),
            price_cents=int(preorder["price_cents"]),
            processor=preorder["processor"],
            customer_ref=preorder.get("customer_ref", ""),
            is_preorder_authorization=True,
        )
        preorder["authorization_purchase_id"] = purchase["purchase_id"]

        if self._preorder_is_test(preorder):
            transition("purchase", purchase, "test_preorder_successful")
            transition("preorder", preorder, "test_authorization_successful")
            return {"preorder_id": preorder_id, "state": preorder["state"]}

        processor = self.processors.get(preorder["processor"])
        try:
            intent = processor.create_setup_intent(
                customer_ref=preorder.get("customer_ref", ""),
                reference=purchase["purchase_id"],
            )
        except ChargeProcessorUnavailableError as exc:
            error_code = exc.error_code or error_codes.unavailable_code_for(preorder["processor"])
        except ChargeProcessorError as exc:
            error_code = exc.error_code or error_codes.PROCESSOR_REQUEST_INVALID
        else:
            purchase["setup_intent_id"] = intent["id"]
            preorder["setup_intent_id"] = intent["id"]
            if intent["status"] == INTENT_SUCCEEDED:
                transition("purchase", purchase, "preorder_authorization_successful")
                transition("preorder", preorder, "authorization_successful")
                self._notify("preorder_receipt", recipient=preorder["email"], preorder_id=preorder_id)
            elif intent["status"] in {INTENT_PROCESSING, INTENT_REQUIRES_ACTION}:
                self.schedule_abandoned_purchase_check(purchase)
            return {"preorder_id": preorder_id, "state": preorder["state"]}

        purchase["error_code"] = error_code
        transition("purchase", purchase, "preorder_authorization_failed")
        transition("preorder", preorder, "authorization_failed")
        return {"preorder_id": preorder_id, "state": preorder["state"], "error_code": error_code}

    def _preorder_charge_exists(self, preorder_id: str) -> bool:
        return any(
            p.get("preorder_id") == preorder_id
            and not p.get("is_preorder_authorization")
            and p.get("state") in {"in_progress", "successful", "test_successful"}
            for p in self.purchases.values()
        )

    def _conclude_preorder(self, preorder: dict[str, Any], *, successful: bool) -> None:
        authorization = self._authorization_purchase(preorder)
        if authorization is None:
            return
        target = "preorder_concluded_successfully" if successful else "preorder_concluded_unsuccessfully"
        if authorization["state"] in {"preorder_authorization_successful", "test_preorder_successful"}:
            transition("purchase", authorization, target)

    def charge_preorder(self, *, preorder_id: str, attempt: int = 1) -> dict[str, Any] | None:
        preorder = self.get_preorder(preorder_id)
        product = self.get_product(preorder["product_id"])
        if product.get("is_in_preorder_state"):
            return None
        if preorder["state"] not in AUTHORIZED_STATES:
            return None
        if self._preorder_charge_exists(preorder_id):
            return None

        with hold(self.locks, f"preorder_charge:{preorder_id}"):
            purchase = self.upsert_purchase(
                seller_id=preorder["seller_id"],
                product_id=preorder["product_id"],
                preorder_id=preorder_id,
                email=preorder["email"],
                buyer_id=preorder.get("buyer_id"),
                price_cents=int(preorder["price_cents"]),
                processor=preorder["processor"],
                customer_ref=preorder.get("customer_ref", ""),
                off_session=True,
            )
            preorder["charge_attempts"] = int(preorder.get("charge_attempts") or 0) + 1

            if preorder["state"] == "test_authorization_successful":
                transition("purchase", purchase, "test_successful")
                transition("preorder", preorder, "charge_successful")
                self._conclude_preorder(preorder, successful=True)
                return {"charged": True, "purchase_id": purchase["purchase_id"], "test": True}

            charge, error_code = self._attempt_charge(purchase)
            if charge is not None and charge.succeeded:
                self.mark_purchase_successful(purchase, charge=charge)
                transition("preorder", preorder, "charge_successful")
                self._conclude_preorder(preorder, successful=True)
                self._notify("receipt", recipient=purchase["email"], purchase_id=purchase["purchase_id"])
                return {"charged": True, "purchase_id": purchase["purchase_id"]}
            if charge is not None and charge.status in {INTENT_PROCESSING, INTENT_REQUIRES_ACTION}:
                self.schedule_abandoned_purchase_check(purchase)
                return {"charged": False, "purchase_id": purchase["purchase_id"], "state": purchase["state"]}

            self.mark_purchase_failed(purchase, error_code=error_code)
        retry = error_codes.is_retryable(error_code) or error_codes.is_temporary_network_error(error_code)
        if retry and attempt < MAX_PREORDER_CHARGE_ATTEMPTS:
            self.enqueue_job(
                job_type="charge_preorder",
                payload={"preorder_id": preorder_id, "attempt": attempt + 1},
                partition=preorder["seller_id"],
                delay=PREORDER_CHARGE_RETRY_DELAY,
            )
            logger.info(
                "preorder_charge_rescheduled preorder_id=%s attempt=%s error_code=%s",
                preorder_id,
                attempt + 1,
                error_code,
            )
        else:
            self._notify(
                "preorder_card_declined",
                recipient=preorder["email"],
                preorder_id=preorder_id,
                error_code=error_code,
            )
        return {
            "charged": False,
            "purchase_id": purchase["purchase_id"],
            "state": purchase["state"],
            "error_code": error_code,
        }

    def cancel_preorder(self, *, preorder_id: str, by_seller: bool = False) -> dict[str, Any]:
        preorder = self.get_preorder(preorder_id)
        transition("preorder", preorder, "cancelled")
        self._conclude_preorder(preorder, successful=False)
        self._notify(
            "preorder_cancelled",
            recipient=preorder["email"],
            preorder_id=preorder_id,
            by_seller=by_seller,
        )
        return {"preorder_id": preorder_id, "state": preorder["state"]}

    def release_preorder_product(self, *, product_id: str) -> dict[str, Any]:
        product = self.get_product(product_id)
        release_at = self._parse_dt(product.get("release_at"))
        if release_at is not None and release_at > self._now():
            self.enqueue_job(
                job_type="release_preorder_product",
                payload={"product_id": product_id},
                partition=product["seller_id"] or None,
                run_at=release_at,
            )
            return {"released": False, "reason": "release_at_in_future"}
        product["is_in_preorder_state"] = False
        job_ids: list[str] = []
        for preorder in list(self.preorders.values()):
            if preorder["product_id"] != product_id or preorder["state"] not in AUTHORIZED_STATES:
                continue
            job = self.enqueue_job(
                job_type="charge_preorder",
                payload={"preorder_id": preorder["preorder_id"], "attempt": 1},
                partition=preorder["seller_id"],
                unique_key=f"charge_preorder:{preorder['preorder_id']}",
            )
            job_ids.append(job["job_id"])
        logger.info("preorder_product_released product_id=%s charges=%s", product_id, len(job_ids))
        return {"released": True, "job_ids": job_ids}
