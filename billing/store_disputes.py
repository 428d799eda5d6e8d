from __future__ import annotations

import logging
from typing import Any

from billing.charge_processor import STRIPE
from billing.state_machines import transition

logger = logging.getLogger(__name__)


class StoreDisputesMixin:
    """Chargebacks raised against successful purchases."""

    def _dispute_for_purchase(self, purchase: dict[str, Any], event: dict[str, Any]) -> dict[str, Any]:
        for dispute in self.disputes.values():
            if dispute["purchase_id"] == purchase["purchase_id"]:
                return dispute
        dispute = {
            "dispute_id": self._new_id("dsp"),
            "purchase_id": purchase["purchase_id"],
            "seller_id": purchase["seller_id"],
            "charge_id": purchase.get("charge_id"),
            "processor": purchase["processor"],
            "processor_dispute_id": event.get("dispute_id"),
            "reason": event.get("reason") or "",
            "state": "created",
            "debited_cents": 0,
            "formalized_at": None,
            "won_at": None,
            "lost_at": None,
            "evidence_submitted_at": None,
            "created_at": self._utcnow_iso(),
        }
        self.disputes[dispute["dispute_id"]] = dispute
        return dispute

    @staticmethod
    def dispute_fightable(purchase: dict[str, Any]) -> bool:
        return purchase["processor"] == STRIPE and bool(purchase.get("charge_id"))

    def handle_dispute_formalized(self, purchase: dict[str, Any], event: dict[str, Any]) -> None:
        if purchase["state"] != "successful":
            logger.info(
                "dispute_ignored purchase_id=%s state=%s",
                purchase["purchase_id"],
                purchase["state"],
            )
            return
        if purchase.get("chargeback_date") and not purchase.get("chargeback_reversed"):
            return
        dispute = self._dispute_for_purchase(purchase, event)
        if dispute["state"] in {"won", "lost", "closed"}:
            logger.info("dispute_already_resolved dispute_id=%s state=%s", dispute["dispute_id"], dispute["state"])
            return
        if dispute["state"] != "formalized":
            transition("dispute", dispute, "formalized")
        dispute["formalized_at"] = self._utcnow_iso()
        purchase["chargeback_date"] = dispute["formalized_at"]
        purchase["chargeback_reversed"] = False

        refundable = int(purchase["price_cents"]) - int(purchase.get("refunded_cents") or 0)
        debit = self.seller_share_cents(purchase, max(0, refundable))
        dispute["debited_cents"] = debit
        if debit:
            self.adjust_seller_balance(
                seller_id=purchase["seller_id"],
                amount_cents=-debit,
                reason="chargeback",
                purchase_id=purchase["purchase_id"],
            )
        self._notify(
            "chargeback_notice",
            recipient="admin",
            purchase_id=purchase["purchase_id"],
            dispute_id=dispute["dispute_id"],
            debited_cents=debit,
        )
        if self.dispute_fightable(purchase):
            self.enqueue_job(
                job_type="fight_dispute",
                payload={"dispute_id": dispute["dispute_id"]},
                partition=purchase["seller_id"],
                unique_key=f"fight_dispute:{dispute['dispute_id']}",
            )
        self.enqueue_ping_notifications(purchase_id=purchase["purchase_id"], resource_name="dispute")

    def handle_dispute_won(self, purchase: dict[str, Any], event: dict[str, Any]) -> None:
        if not purchase.get("chargeback_date") or purchase.get("chargeback_reversed"):
            return
        dispute = self._dispute_for_purchase(purchase, event)
        transition("dispute", dispute, "won")
        dispute["won_at"] = self._utcnow_iso()
        purchase["chargeback_reversed"] = True
        if dispute["debited_cents"]:
            self.adjust_seller_balance(
                seller_id=purchase["seller_id"],
                amount_cents=int(dispute["debited_cents"]),
                reason="chargeback_reversed",
                purchase_id=purchase["purchase_id"],
            )
        seller = self.sellers.get(purchase["seller_id"])
        if seller is not None:
            self._notify("chargeback_won", recipient=seller["email"], purchase_id=purchase["purchase_id"])
        self.enqueue_ping_notifications(purchase_id=purchase["purchase_id"], resource_name="dispute_won")

    def handle_dispute_lost(self, purchase: dict[str, Any], event: dict[str, Any]) -> None:
        dispute = self._dispute_for_purchase(purchase, event)
        if dispute["state"] in {"lost", "won", "closed"}:
            return
        transition("dispute", dispute, "lost")
        dispute["lost_at"] = self._utcnow_iso()
        logger.info("dispute_lost dispute_id=%s purchase_id=%s", dispute["dispute_id"], purchase["purchase_id"])

    def build_dispute_evidence(self, dispute: dict[str, Any]) -> dict[str, Any]:
        purchase = self.get_purchase(dispute["purchase_id"])
        product = self.products.get(purchase["product_id"]) or {}
        access_log = [
            f"{event['created_at']} {event['event_type']}"
            for event in self.domain_events_outbox.values()
            if event.get("payload", {}).get("purchase_id") == purchase["purchase_id"]
        ]
        return {
            "customer_email_address": purchase["email"],
            "product_description": product.get("name", ""),
            "receipt": {
                "purchase_id": purchase["purchase_id"],
                "price_cents": purchase["price_cents"],
                "currency": purchase.get("currency", "usd"),
                "purchased_at": purchase.get("succeeded_at") or purchase.get("created_at"),
            },
            "refund_policy": product.get("refund_policy", ""),
            "access_activity_log": "\n".join(access_log),
        }

    def fight_dispute(self, *, dispute_id: str) -> dict[str, Any]:
        dispute = self.get_dispute(dispute_id)
        if dispute.get("evidence_submitted_at"):
            return {"submitted": False, "reason": "already_submitted"}
        if dispute["state"] != "formalized":
            return {"submitted": False, "reason": f"dispute_{dispute['state']}"}
        evidence = self.build_dispute_evidence(dispute)
        self.processors.get(dispute["processor"]).submit_dispute_evidence(
            charge_id=dispute["charge_id"],
            evidence=evidence,
        )
        dispute["evidence_submitted_at"] = self._utcnow_iso()
        logger.info("dispute_evidence_submitted dispute_id=%s", dispute_id)
        return {"submitted": True, "dispute_id": dispute_id}
