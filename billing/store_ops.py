from __future__ import annotations

from typing import Any

from billing.errors import ApiError


class StoreOpsMixin:
    """Outbox, dead letter queue and operational metrics."""

    def append_outbox_event(
        self,
        *,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        event_id = self._new_id("evt")
        event = {
            "event_id": event_id,
            "event_type": event_type,
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "payload": payload,
            "status": "pending",
            "published_at": None,
            "created_at": self._utcnow_iso(),
        }
        self.domain_events_outbox[event_id] = event
        return event

    def list_outbox_events(
        self,
        *,
        status: str | None = None,
        event_type: str | None = None,
        event_prefix: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        items = list(self.domain_events_outbox.values())
        if status:
            items = [x for x in items if x.get("status") == status]
        if event_type:
            items = [x for x in items if x.get("event_type") == event_type]
        if event_prefix:
            items = [x for x in items if str(x.get("event_type", "")).startswith(event_prefix)]
        items = sorted(items, key=lambda x: x.get("created_at", ""))
        return items[: max(1, min(limit, 1000))]

    def _require_outbox_event(self, event_id: str) -> dict[str, Any]:
        event = self.domain_events_outbox.get(event_id)
        if event is None:
            raise ApiError(
                code="OUTBOX_EVENT_NOT_FOUND",
                message="outbox event not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return event

    def mark_outbox_event_published(self, *, event_id: str) -> dict[str, Any]:
        event = self._require_outbox_event(event_id)
        event["status"] = "published"
        event["published_at"] = self._utcnow_iso()
        return event

    @staticmethod
    def _outbox_delivery_key(*, event_id: str, consumer_name: str) -> str:
        return f"{event_id}:{consumer_name}"

    def get_outbox_delivery(self, *, event_id: str, consumer_name: str) -> dict[str, Any] | None:
        return self.outbox_delivery_records.get(
            self._outbox_delivery_key(event_id=event_id, consumer_name=consumer_name)
        )

    def mark_outbox_delivered(
        self,
        *,
        event_id: str,
        consumer_name: str,
        message_id: str,
    ) -> dict[str, Any]:
        self._require_outbox_event(event_id)
        key = self._outbox_delivery_key(event_id=event_id, consumer_name=consumer_name)
        existing = self.outbox_delivery_records.get(key)
        if existing is not None:
            return existing
        record = {
            "delivery_id": self._new_id("odl"),
            "event_id": event_id,
            "consumer_name": consumer_name,
            "message_id": message_id,
            "created_at": self._utcnow_iso(),
        }
        self.outbox_delivery_records[key] = record
        return record

    def seed_dlq_item(
        self,
        *,
        job_id: str,
        error_class: str,
        error_code: str,
        job_type: str = "",
        partition: str = "platform",
        message: str = "",
    ) -> dict[str, Any]:
        item = {
            "dlq_id": self._new_id("dlq"),
            "job_id": job_id,
            "job_type": job_type,
            "partition": partition,
            "error_class": error_class,
            "error_code": error_code,
            "message": message,
            "status": "open",
            "created_at": self._utcnow_iso(),
        }
        return self._persist_dlq_item(item=item)

    def list_dlq_items(self, *, status: str | None = None) -> list[dict[str, Any]]:
        return self.dlq_repository.list(status=status)

    def get_dlq_item(self, dlq_id: str) -> dict[str, Any] | None:
        return self.dlq_repository.get(dlq_id=dlq_id)

    def _require_dlq_item(self, dlq_id: str) -> dict[str, Any]:
        item = self.get_dlq_item(dlq_id)
        if item is None:
            raise ApiError(
                code="DLQ_ITEM_NOT_FOUND",
                message="dlq item not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return item

    def requeue_dlq_item(self, *, dlq_id: str, trace_id: str | None = None) -> dict[str, Any]:
        item = self._require_dlq_item(dlq_id)
        if item["status"] != "open":
            raise ApiError(
                code="DLQ_REQUEUE_CONFLICT",
                message="dlq item is not open",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        source_job = self._require_job(str(item["job_id"]))
        new_job = self.enqueue_job(
            job_type=str(source_job["job_type"]),
            payload=dict(source_job.get("payload") or {}),
            partition=str(source_job.get("partition") or "platform"),
            trace_id=trace_id,
        )
        item["status"] = "requeued"
        item["requeued_job_id"] = new_job["job_id"]
        self._persist_dlq_item(item=item)
        self._append_audit_log(
            log={
                "action": "dlq_requeue_submitted",
                "dlq_id": dlq_id,
                "source_job_id": item["job_id"],
                "new_job_id": new_job["job_id"],
                "trace_id": trace_id or "",
            }
        )
        return {"dlq_id": dlq_id, "job_id": new_job["job_id"], "status": "queued"}

    def discard_dlq_item(
        self,
        *,
        dlq_id: str,
        reason: str,
        reviewer_id: str,
        reviewer_id_2: str,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        item = self._require_dlq_item(dlq_id)
        reviewer_a = reviewer_id.strip()
        reviewer_b = reviewer_id_2.strip()
        if not reason.strip() or not reviewer_a or not reviewer_b:
            raise ApiError(
                code="APPROVAL_REQUIRED",
                message="discard requires reason and dual reviewers",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )
        if reviewer_a == reviewer_b:
            raise ApiError(
                code="APPROVAL_REQUIRED",
                message="dual reviewers must be different identities",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )
        if item["status"] != "open":
            raise ApiError(
                code="DLQ_DISCARD_CONFLICT",
                message="dlq item is not open",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )

        item["status"] = "discarded"
        item["discard_reason"] = reason
        item["reviewer_id"] = reviewer_a
        item["reviewer_id_2"] = reviewer_b
        self._persist_dlq_item(item=item)
        self._append_audit_log(
            log={
                "action": "dlq_discard_submitted",
                "dlq_id": dlq_id,
                "approval_reviewers": [reviewer_a, reviewer_b],
                "reason": reason,
                "trace_id": trace_id or "",
            }
        )
        return {"dlq_id": dlq_id, "status": "discarded"}

    def claim_scheduler_run(self, *, task: str, period_key: str) -> bool:
        """Record that ``task`` ran for ``period_key``; False when it already had."""
        key = f"{task}:{period_key}"
        if key in self.scheduler_runs:
            return False
        self.scheduler_runs[key] = {"task": task, "period_key": period_key, "ran_at": self._utcnow_iso()}
        return True

    def summarize_ops_metrics(self) -> dict[str, Any]:
        jobs = list(self.jobs.values())
        by_status: dict[str, int] = {}
        by_type_failed: dict[str, int] = {}
        for job in jobs:
            status = str(job.get("status", ""))
            by_status[status] = by_status.get(status, 0) + 1
            if status == "failed":
                job_type = str(job.get("job_type", ""))
                by_type_failed[job_type] = by_type_failed.get(job_type, 0) + 1
        total_jobs = len(jobs)
        succeeded = by_status.get("succeeded", 0)
        failed = by_status.get("failed", 0)

        payments_by_state: dict[str, int] = {}
        for payment in self.payments.values():
            state = str(payment.get("state", ""))
            payments_by_state[state] = payments_by_state.get(state, 0) + 1
        purchases_in_progress = sum(1 for p in self.purchases.values() if p.get("state") == "in_progress")

        return {
            "jobs": {
                "total": total_jobs,
                "by_status": by_status,
                "failed_by_type": by_type_failed,
                "success_rate": round(succeeded / total_jobs, 4) if total_jobs else 0.0,
                "error_rate": round(failed / total_jobs, 4) if total_jobs else 0.0,
            },
            "worker": {
                "dlq_open": sum(1 for x in self.dlq_items.values() if x.get("status") == "open"),
                "outbox_pending": sum(
                    1 for x in self.domain_events_outbox.values() if x.get("status") == "pending"
                ),
                "max_retries": self.worker_max_retries,
                "retry_backoff_base_ms": self.worker_retry_backoff_base_ms,
                "retry_backoff_max_ms": self.worker_retry_backoff_max_ms,
            },
            "billing": {
                "purchases_in_progress": purchases_in_progress,
                "payments_by_state": payments_by_state,
                "open_disputes": sum(
                    1 for d in self.disputes.values() if d.get("state") in {"created", "initiated", "formalized"}
                ),
            },
        }
