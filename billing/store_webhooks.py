from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from billing.errors import ApiError
from billing.store_purchases import (
    CHARGE_EVENT_CHARGE_SUCCEEDED,
    CHARGE_EVENT_DISPUTE_FORMALIZED,
    CHARGE_EVENT_DISPUTE_LOST,
    CHARGE_EVENT_DISPUTE_WON,
    CHARGE_EVENT_INFORMATIONAL,
    CHARGE_EVENT_PAYMENT_FAILED,
)

logger = logging.getLogger(__name__)

WEBHOOK_DEDUP_TTL_S = 7 * 24 * 3600

_PAYPAL_CHARGE_STATUSES = {
    "Reversed": CHARGE_EVENT_DISPUTE_FORMALIZED,
    "Canceled_Reversal": CHARGE_EVENT_DISPUTE_WON,
    "Denied": CHARGE_EVENT_PAYMENT_FAILED,
}
_STRIPE_INFORMATIONAL_TYPES = frozenset(
    {"charge.captured", "charge.updated", "charge.refunded", "charge.dispute.updated", "charge.dispute.funds_withdrawn"}
)


def stripe_charge_event(event: dict[str, Any]) -> dict[str, Any] | None:
    """Translate a Stripe event into a charge event, or None when it is not one."""
    event_type = str(event.get("type", ""))
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    base = {"processor": "stripe", "event_id": event.get("id"), "charge_reference": metadata.get("purchase")}

    if event_type == "charge.succeeded":
        return {
            **base,
            "type": CHARGE_EVENT_CHARGE_SUCCEEDED,
            "charge_id": obj.get("id"),
            "payment_intent_id": obj.get("payment_intent"),
        }
    if event_type == "payment_intent.succeeded":
        return {
            **base,
            "type": CHARGE_EVENT_CHARGE_SUCCEEDED,
            "charge_id": obj.get("latest_charge"),
            "payment_intent_id": obj.get("id"),
        }
    if event_type in {"charge.failed", "payment_intent.payment_failed"}:
        error = obj.get("last_payment_error") or {}
        decline_code = error.get("decline_code") or obj.get("failure_code")
        is_intent = event_type.startswith("payment_intent.")
        return {
            **base,
            "type": CHARGE_EVENT_PAYMENT_FAILED,
            "charge_id": None if is_intent else obj.get("id"),
            "payment_intent_id": obj.get("id") if is_intent else obj.get("payment_intent"),
            "error_code": f"card_declined_{decline_code}" if decline_code else "card_declined",
        }
    if event_type in {"charge.dispute.created", "charge.dispute.closed"}:
        dispute_type = CHARGE_EVENT_DISPUTE_FORMALIZED
        if event_type == "charge.dispute.closed":
            status = obj.get("status")
            if status == "won":
                dispute_type = CHARGE_EVENT_DISPUTE_WON
            elif status == "lost":
                dispute_type = CHARGE_EVENT_DISPUTE_LOST
            else:
                return None
        return {
            **base,
            "type": dispute_type,
            "charge_id": obj.get("charge"),
            "payment_intent_id": obj.get("payment_intent"),
            "dispute_id": obj.get("id"),
            "reason": obj.get("reason"),
        }
    if event_type in _STRIPE_INFORMATIONAL_TYPES:
        return {
            **base,
            "type": CHARGE_EVENT_INFORMATIONAL,
            "charge_id": obj.get("charge") or obj.get("id"),
            "payment_intent_id": obj.get("payment_intent"),
            "comment": event_type,
        }
    return None


def paypal_ipn_key(params: dict[str, Any]) -> str:
    for name in ("ipn_track_id", "txn_id", "masspay_txn_id_0"):
        if params.get(name):
            return str(params[name])
    blob = json.dumps(params, sort_keys=True, ensure_ascii=True)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:32]


class StoreWebhooksMixin:
    """Turns verified webhook deliveries into jobs, at most once per event."""

    def _claim_webhook_event(self, *, source: str, event_id: str, event_type: str) -> dict[str, Any] | None:
        key = f"{source}:{event_id}"
        if key in self.webhook_events or not self.locks.mark_once(f"webhook:{key}", ttl_s=WEBHOOK_DEDUP_TTL_S):
            logger.info("webhook_duplicate source=%s event_id=%s", source, event_id)
            return None
        record = {
            "source": source,
            "event_id": event_id,
            "event_type": event_type,
            "status": "ignored",
            "job_id": None,
            "received_at": self._utcnow_iso(),
        }
        self.webhook_events[key] = record
        return record

    def _accept_webhook(self, record: dict[str, Any], *, job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        job = self.enqueue_job(job_type=job_type, payload=payload)
        record["status"] = "accepted"
        record["job_id"] = job["job_id"]
        return {"event_id": record["event_id"], "status": "accepted", "job_id": job["job_id"], "duplicate": False}

    def ingest_stripe_event(self, *, event: dict[str, Any]) -> dict[str, Any]:
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        if not event_id or not event_type:
            raise ApiError(
                code="WEBHOOK_EVENT_INVALID",
                message="stripe event requires id and type",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        record = self._claim_webhook_event(source="stripe", event_id=event_id, event_type=event_type)
        if record is None:
            return {"event_id": event_id, "status": "duplicate", "job_id": None, "duplicate": True}
        if event_type.startswith("payout."):
            return self._accept_webhook(record, job_type="handle_stripe_payout_event", payload={"event": event})
        if event_type.startswith(("charge.", "payment_intent.")):
            charge_event = stripe_charge_event(event)
            if charge_event is not None:
                return self._accept_webhook(record, job_type="handle_charge_event", payload={"event": charge_event})
        logger.info("webhook_ignored source=stripe event_id=%s type=%s", event_id, event_type)
        return {"event_id": event_id, "status": "ignored", "job_id": None, "duplicate": False}

    def ingest_paypal_ipn(self, *, params: dict[str, Any]) -> dict[str, Any]:
        event_id = paypal_ipn_key(params)
        txn_type = str(params.get("txn_type") or "")
        payment_status = str(params.get("payment_status") or "")
        record = self._claim_webhook_event(
            source="paypal",
            event_id=event_id,
            event_type=txn_type or payment_status or "unknown",
        )
        if record is None:
            return {"event_id": event_id, "status": "duplicate", "job_id": None, "duplicate": True}
        if txn_type == "masspay":
            return self._accept_webhook(record, job_type="handle_paypal_ipn", payload={"params": dict(params)})
        charge_type = _PAYPAL_CHARGE_STATUSES.get(payment_status)
        if charge_type is not None:
            charge_event = {
                "type": charge_type,
                "processor": "paypal",
                "event_id": event_id,
                "charge_reference": params.get("invoice") or params.get("custom"),
                "charge_id": params.get("parent_txn_id") or params.get("txn_id"),
                "reason": params.get("reason_code"),
            }
            return self._accept_webhook(record, job_type="handle_charge_event", payload={"event": charge_event})
        logger.info(
            "webhook_ignored source=paypal event_id=%s txn_type=%s status=%s",
            event_id,
            txn_type,
            payment_status,
        )
        return {"event_id": event_id, "status": "ignored", "job_id": None, "duplicate": False}
