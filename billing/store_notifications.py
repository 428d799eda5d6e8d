from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from billing.errors import RetryableJobError
from billing.ping_delivery import FORM_CONTENT_TYPE, post_ping

logger = logging.getLogger(__name__)

PING_RESOURCE_NAMES = frozenset({"sale", "refund", "dispute", "dispute_won", "cancellation"})
MAX_PING_ATTEMPTS = 4


class StoreNotificationsMixin:
    """Seller ping endpoints for sales and purchase lifecycle events."""

    def _ping_targets(self, seller: dict[str, Any], resource_name: str) -> list[tuple[str, str]]:
        targets: list[tuple[str, str]] = []
        if resource_name == "sale" and seller.get("ping_url"):
            targets.append((seller["ping_url"], seller.get("ping_content_type") or FORM_CONTENT_TYPE))
        for subscription in seller.get("resource_subscriptions") or []:
            if subscription.get("resource_name") != resource_name or not subscription.get("post_url"):
                continue
            targets.append((subscription["post_url"], subscription.get("content_type") or FORM_CONTENT_TYPE))
        return targets

    def enqueue_ping_notifications(self, *, purchase_id: str, resource_name: str) -> dict[str, Any] | None:
        if resource_name not in PING_RESOURCE_NAMES:
            raise ValueError(f"unknown ping resource: {resource_name}")
        purchase = self.purchases.get(purchase_id)
        if purchase is None:
            return None
        seller = self.sellers.get(purchase["seller_id"])
        if seller is None or not self._ping_targets(seller, resource_name):
            return None
        return self.enqueue_job(
            job_type="post_to_ping_endpoints",
            payload={"purchase_id": purchase_id, "resource_name": resource_name},
            partition=purchase["seller_id"],
        )

    def ping_params(self, purchase: dict[str, Any], *, resource_name: str) -> dict[str, Any]:
        product = self.products.get(purchase["product_id"]) or {}
        total = int(purchase["price_cents"]) + int(purchase.get("tax_cents") or 0)
        params: dict[str, Any] = {
            "seller_id": purchase["seller_id"],
            "product_id": purchase["product_id"],
            "product_name": product.get("name", ""),
            "permalink": product.get("permalink", ""),
            "product_permalink": f"https://gumroad.com/l/{product.get('permalink', '')}",
            "email": purchase["email"],
            "price": int(purchase["price_cents"]),
            "gumroad_fee": int(purchase.get("fee_cents") or 0),
            "currency": purchase.get("currency", "usd"),
            "quantity": int(purchase.get("quantity") or 1),
            "order_number": purchase.get("order_number") or purchase["purchase_id"],
            "sale_id": purchase["purchase_id"],
            "sale_timestamp": purchase.get("succeeded_at") or purchase.get("created_at"),
            "resource_name": resource_name,
            "refunded": total > 0 and int(purchase.get("refunded_cents") or 0) >= total,
            "disputed": bool(purchase.get("chargeback_date")),
            "dispute_won": bool(purchase.get("chargeback_reversed")),
            "test": bool(purchase.get("buyer_id")) and purchase.get("buyer_id") == purchase["seller_id"],
        }
        if purchase.get("url_params"):
            params["url_params"] = dict(purchase["url_params"])
        if purchase.get("custom_fields"):
            params["custom_fields"] = dict(purchase["custom_fields"])
        if purchase.get("buyer_id"):
            params["purchaser_id"] = purchase["buyer_id"]
        if purchase.get("license_key"):
            params["license_key"] = purchase["license_key"]
        if purchase.get("subscription_id"):
            params["subscription_id"] = purchase["subscription_id"]
        return params

    def post_to_ping_endpoints(self, *, purchase_id: str, resource_name: str = "sale") -> dict[str, Any]:
        purchase = self.get_purchase(purchase_id)
        seller = self.get_seller(purchase["seller_id"])
        params = self.ping_params(purchase, resource_name=resource_name)
        job_ids: list[str] = []
        for url, content_type in self._ping_targets(seller, resource_name):
            job = self.enqueue_job(
                job_type="post_to_ping_endpoint",
                payload={
                    "url": url,
                    "params": params,
                    "content_type": content_type,
                    "seller_id": seller["seller_id"],
                },
                partition=seller["seller_id"],
            )
            job_ids.append(job["job_id"])
        return {"job_ids": job_ids}

    def post_to_ping_endpoint(
        self,
        *,
        url: str,
        params: dict[str, Any],
        content_type: str = FORM_CONTENT_TYPE,
        seller_id: str | None = None,
        job: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        result = post_ping(url, params, content_type)
        if result.network_error is not None:
            return {"url": url, "status_code": None, "network_error": result.network_error}
        if result.delivered:
            return {"url": url, "status_code": result.status_code}
        attempt = int((job or {}).get("retry_count", 0)) + 1
        if result.should_retry and attempt < MAX_PING_ATTEMPTS:
            raise RetryableJobError(f"ping to {url} returned {result.status_code}", code="PING_SERVER_ERROR")
        logger.info("ping_gave_up url=%s status_code=%s attempt=%s", url, result.status_code, attempt)
        if seller_id:
            self._notify_ping_failure(seller_id, url=url, status_code=result.status_code)
        return {"url": url, "status_code": result.status_code, "gave_up": True}

    def _notify_ping_failure(self, seller_id: str, *, url: str, status_code: int | None) -> None:
        seller = self.sellers.get(seller_id)
        if seller is None or url != seller.get("ping_url"):
            return
        last = self._parse_dt(seller.get("last_ping_failure_notification_at"))
        if last is not None and self._now() - last < timedelta(days=self.ping_failure_throttle_days):
            return
        seller["last_ping_failure_notification_at"] = self._utcnow_iso()
        self._notify("ping_endpoint_failure", recipient=seller["email"], url=url, status_code=status_code)
