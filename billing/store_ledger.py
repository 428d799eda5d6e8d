from __future__ import annotations

import calendar
import logging
from datetime import date, datetime
from typing import Any

from billing.errors import ApiError
from billing.state_machines import transition

logger = logging.getLogger(__name__)

RECURRENCE_MONTHS: dict[str, int] = {
    "monthly": 1,
    "quarterly": 3,
    "biannually": 6,
    "yearly": 12,
    "every_two_years": 24,
}

SELLER_DEFAULTS: dict[str, Any] = {
    "email": "",
    "name": "",
    "legal_name": "",
    "country": "US",
    "province": None,
    "payouts_paused": False,
    "suspended_reason": None,
    "stripe_account_id": None,
    "paypal_email": None,
    "payout_processor": "stripe",
    "instant_payouts": False,
    "ping_url": None,
    "ping_content_type": "application/x-www-form-urlencoded",
    "resource_subscriptions": [],
    "last_ping_failure_notification_at": None,
    "notes": [],
}

PRODUCT_DEFAULTS: dict[str, Any] = {
    "seller_id": "",
    "name": "",
    "permalink": "",
    "price_cents": 0,
    "currency": "usd",
    "native_type": "digital",
    "is_recurring_billing": False,
    "is_in_preorder_state": False,
    "release_at": None,
    "refund_policy": "",
}

SUBSCRIPTION_DEFAULTS: dict[str, Any] = {
    "seller_id": "",
    "product_id": "",
    "email": "",
    "buyer_id": None,
    "price_cents": 0,
    "recurrence": "monthly",
    "processor": "stripe",
    "customer_ref": "",
    "card_country": None,
    "is_test": False,
    "paid_through_at": None,
    "free_trial_ends_at": None,
    "cancelled_at": None,
    "failed_at": None,
    "ended_at": None,
    "deactivated_at": None,
    "charge_occurrence_count": None,
    "variant_id": None,
    "pending_plan_change": None,
}

PURCHASE_DEFAULTS: dict[str, Any] = {
    "seller_id": "",
    "product_id": "",
    "variant_id": None,
    "subscription_id": None,
    "preorder_id": None,
    "email": "",
    "buyer_id": None,
    "price_cents": 0,
    "tax_cents": 0,
    "quantity": 1,
    "currency": "usd",
    "fee_cents": 0,
    "processor_fee_cents": 0,
    "state": "in_progress",
    "processor": "stripe",
    "charge_id": None,
    "payment_intent_id": None,
    "setup_intent_id": None,
    "customer_ref": "",
    "off_session": False,
    "card_country": None,
    "error_code": None,
    "stripe_status": None,
    "succeeded_at": None,
    "refunded_cents": 0,
    "chargeback_date": None,
    "chargeback_reversed": False,
    "zip_code": None,
    "country": "US",
    "region": None,
    "card_visual": None,
    "shipping_cents": 0,
    "discover_fee_cents": 0,
    "business_vat_id": None,
    "tax_info": None,
    "is_preorder_authorization": False,
    "license_key": None,
    "url_params": {},
    "custom_fields": {},
}

PREORDER_DEFAULTS: dict[str, Any] = {
    "seller_id": "",
    "product_id": "",
    "email": "",
    "buyer_id": None,
    "price_cents": 0,
    "processor": "stripe",
    "customer_ref": "",
    "state": "in_progress",
    "authorization_purchase_id": None,
    "setup_intent_id": None,
    "charge_attempts": 0,
}


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class StoreLedgerMixin:
    """Seller, product, subscription, purchase and balance records."""

    def _upsert_record(
        self,
        collection: dict[str, dict[str, Any]],
        *,
        id_field: str,
        prefix: str,
        defaults: dict[str, Any],
        record_id: str | None,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        unknown = sorted(set(fields) - set(defaults))
        if unknown:
            raise ApiError(
                code="RECORD_FIELDS_INVALID",
                message=f"unknown fields for {id_field}: {', '.join(unknown)}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        existing = collection.get(record_id) if record_id else None
        if existing is None:
            existing = {
                key: (list(value) if isinstance(value, list) else dict(value) if isinstance(value, dict) else value)
                for key, value in defaults.items()
            }
            existing[id_field] = record_id or self._new_id(prefix)
            existing["created_at"] = self._utcnow_iso()
            collection[existing[id_field]] = existing
        existing.update(fields)
        existing["updated_at"] = self._utcnow_iso()
        return existing

    def upsert_seller(self, *, seller_id: str | None = None, **fields: Any) -> dict[str, Any]:
        return self._upsert_record(
            self.sellers,
            id_field="seller_id",
            prefix="sel",
            defaults=SELLER_DEFAULTS,
            record_id=seller_id,
            fields=fields,
        )

    def upsert_product(self, *, product_id: str | None = None, **fields: Any) -> dict[str, Any]:
        product = self._upsert_record(
            self.products,
            id_field="product_id",
            prefix="prd",
            defaults=PRODUCT_DEFAULTS,
            record_id=product_id,
            fields=fields,
        )
        if not product["permalink"]:
            product["permalink"] = product["product_id"][-6:]
        return product

    def upsert_subscription(self, *, subscription_id: str | None = None, **fields: Any) -> dict[str, Any]:
        if fields.get("recurrence", "monthly") not in RECURRENCE_MONTHS:
            raise ApiError(
                code="RECORD_FIELDS_INVALID",
                message=f"unsupported recurrence: {fields.get('recurrence')}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        return self._upsert_record(
            self.subscriptions,
            id_field="subscription_id",
            prefix="sub",
            defaults=SUBSCRIPTION_DEFAULTS,
            record_id=subscription_id,
            fields=fields,
        )

    def upsert_purchase(self, *, purchase_id: str | None = None, **fields: Any) -> dict[str, Any]:
        purchase = self._upsert_record(
            self.purchases,
            id_field="purchase_id",
            prefix="pur",
            defaults=PURCHASE_DEFAULTS,
            record_id=purchase_id,
            fields=fields,
        )
        if "fee_cents" not in fields and purchase["fee_cents"] == 0:
            purchase["fee_cents"] = self.compute_fee_cents(int(purchase["price_cents"]))
        return purchase

    def upsert_preorder(self, *, preorder_id: str | None = None, **fields: Any) -> dict[str, Any]:
        return self._upsert_record(
            self.preorders,
            id_field="preorder_id",
            prefix="pre",
            defaults=PREORDER_DEFAULTS,
            record_id=preorder_id,
            fields=fields,
        )

    def _require(self, collection: dict[str, dict[str, Any]], record_id: str, *, kind: str) -> dict[str, Any]:
        record = collection.get(record_id)
        if record is None:
            raise ApiError(
                code=f"{kind.upper()}_NOT_FOUND",
                message=f"{kind} not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return record

    def get_seller(self, seller_id: str) -> dict[str, Any]:
        return self._require(self.sellers, seller_id, kind="seller")

    def get_product(self, product_id: str) -> dict[str, Any]:
        return self._require(self.products, product_id, kind="product")

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._require(self.subscriptions, subscription_id, kind="subscription")

    def get_purchase(self, purchase_id: str) -> dict[str, Any]:
        return self._require(self.purchases, purchase_id, kind="purchase")

    def get_preorder(self, preorder_id: str) -> dict[str, Any]:
        return self._require(self.preorders, preorder_id, kind="preorder")

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        return self._require(self.payments, payment_id, kind="payment")

    def get_dispute(self, dispute_id: str) -> dict[str, Any]:
        return self._require(self.disputes, dispute_id, kind="dispute")

    def seller_is_suspended(self, seller_id: str) -> bool:
        seller = self.sellers.get(seller_id)
        return bool(seller and seller.get("suspended_reason"))

    # Fees and balances

    def compute_fee_cents(self, price_cents: int) -> int:
        if price_cents <= 0:
            return 0
        fee = (price_cents * self.platform_fee_bps + 5000) // 10000 + self.platform_fee_fixed_cents
        return min(price_cents, fee)

    @staticmethod
    def seller_share_cents(purchase: dict[str, Any], amount_cents: int) -> int:
        """Seller portion of ``amount_cents`` of this purchase, rounded up."""
        price = int(purchase.get("price_cents", 0))
        fee = int(purchase.get("fee_cents", 0))
        if price <= 0 or amount_cents <= 0:
            return 0
        return -(-amount_cents * (price - fee) // price)

    def _unpaid_balance_for(self, seller_id: str, on: date) -> dict[str, Any]:
        day = on.isoformat()
        for balance in self.balances.values():
            if balance["seller_id"] == seller_id and balance["date"] == day and balance["state"] == "unpaid":
                return balance
        balance = {
            "balance_id": self._new_id("bal"),
            "seller_id": seller_id,
            "date": day,
            "amount_cents": 0,
            "state": "unpaid",
            "payment_id": None,
            "created_at": self._utcnow_iso(),
        }
        self.balances[balance["balance_id"]] = balance
        return balance

    def adjust_seller_balance(
        self,
        *,
        seller_id: str,
        amount_cents: int,
        reason: str,
        purchase_id: str | None = None,
    ) -> dict[str, Any]:
        balance = self._unpaid_balance_for(seller_id, self._now().date())
        balance["amount_cents"] = int(balance["amount_cents"]) + int(amount_cents)
        entry = {
            "transaction_id": self._new_id("btx"),
            "seller_id": seller_id,
            "balance_id": balance["balance_id"],
            "amount_cents": int(amount_cents),
            "reason": reason,
            "purchase_id": purchase_id,
            "created_at": self._utcnow_iso(),
        }
        self.balance_transactions.append(entry)
        logger.info(
            "balance_adjusted seller_id=%s amount_cents=%s reason=%s purchase_id=%s",
            seller_id,
            amount_cents,
            reason,
            purchase_id,
        )
        return entry

    def unpaid_balances(self, seller_id: str, *, up_to: date | None = None) -> list[dict[str, Any]]:
        rows = [
            b
            for b in self.balances.values()
            if b["seller_id"] == seller_id
            and b["state"] == "unpaid"
            and (up_to is None or b["date"] <= up_to.isoformat())
        ]
        return sorted(rows, key=lambda b: b["date"])

    def unpaid_balance_cents(self, seller_id: str, *, up_to: date | None = None) -> int:
        return sum(int(b["amount_cents"]) for b in self.unpaid_balances(seller_id, up_to=up_to))

    def seller_balance_summary(self, seller_id: str) -> dict[str, Any]:
        self.get_seller(seller_id)
        by_state: dict[str, int] = {}
        for balance in self.balances.values():
            if balance["seller_id"] != seller_id:
                continue
            by_state[balance["state"]] = by_state.get(balance["state"], 0) + int(balance["amount_cents"])
        return {
            "seller_id": seller_id,
            "unpaid_cents": by_state.get("unpaid", 0),
            "processing_cents": by_state.get("processing", 0),
            "paid_cents": by_state.get("paid", 0),
        }

    def _set_balance_state(self, balance_ids: list[str], state: str) -> None:
        for balance_id in balance_ids:
            balance = self.balances.get(balance_id)
            if balance is None or balance["state"] == state:
                continue
            transition("balance", balance, state)

    # Purchase outcomes shared by every charging flow

    def mark_purchase_successful(self, purchase: dict[str, Any], *, charge: Any | None = None) -> None:
        if charge is not None:
            purchase["charge_id"] = charge.charge_id
            purchase["payment_intent_id"] = charge.payment_intent_id or purchase.get("payment_intent_id")
            purchase["processor_fee_cents"] = int(charge.fee_cents)
        transition("purchase", purchase, "successful")
        purchase["succeeded_at"] = self._utcnow_iso()
        purchase["error_code"] = None
        self.adjust_seller_balance(
            seller_id=purchase["seller_id"],
            amount_cents=int(purchase["price_cents"]) - int(purchase["fee_cents"]),
            reason="sale",
            purchase_id=purchase["purchase_id"],
        )
        self.enqueue_ping_notifications(purchase_id=purchase["purchase_id"], resource_name="sale")

    def mark_purchase_failed(self, purchase: dict[str, Any], *, error_code: str | None) -> None:
        transition("purchase", purchase, "failed")
        purchase["error_code"] = error_code
        purchase["failed_at"] = self._utcnow_iso()

    def later_successful_purchase_exists(self, purchase: dict[str, Any]) -> bool:
        created_at = str(purchase.get("created_at", ""))
        for other in self.purchases.values():
            if other["purchase_id"] == purchase["purchase_id"]:
                continue
            if other.get("state") != "successful":
                continue
            if other.get("email") != purchase.get("email") or other.get("product_id") != purchase.get("product_id"):
                continue
            if other.get("variant_id") != purchase.get("variant_id"):
                continue
            if str(other.get("created_at", "")) > created_at:
                return True
        return False

    # Notifications are handed to the mailer and chat relays through the outbox.

    def _notify(self, kind: str, *, recipient: str, **data: Any) -> dict[str, Any]:
        return self.append_outbox_event(
            event_type=f"notification.{kind}",
            aggregate_type="notification",
            aggregate_id=recipient,
            payload={"recipient": recipient, **data},
        )

    def add_seller_note(self, seller_id: str, note: str) -> None:
        seller = self.sellers.get(seller_id)
        if seller is None:
            return
        seller.setdefault("notes", []).append({"note": note, "created_at": self._utcnow_iso()})
