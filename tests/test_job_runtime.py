from __future__ import annotations

from datetime import timedelta

import pytest

from billing.errors import ApiError, RetryableJobError
from billing.store import InMemoryStore


def _enqueue_reminder(s: InMemoryStore, **kwargs) -> dict:
    return s.enqueue_job(
        job_type="charge_declined_reminder",
        payload={"subscription_id": "sub_missing"},
        partition="sel_1",
        **kwargs,
    )


def test_enqueue_job_records_queue_and_outbox_event():
    s = InMemoryStore()
    job = _enqueue_reminder(s, trace_id="trace_enqueue")

    assert job["status"] == "queued"
    assert job["queue"] == "low"
    assert job["partition"] == "sel_1"
    assert job["retry_count"] == 0
    assert job["max_retries"] == s.worker_max_retries

    events = s.list_outbox_events(status="pending", event_type="job.enqueued")
    assert len(events) == 1
    assert events[0]["aggregate_id"] == job["job_id"]
    assert events[0]["payload"]["queue"] == "low"


def test_enqueue_job_defaults_to_platform_partition():
    s = InMemoryStore()
    job = s.enqueue_job(job_type="sync_stuck_purchases")
    assert job["partition"] == "platform"


def test_unique_key_returns_waiting_job_instead_of_duplicate():
    s = InMemoryStore()
    first = _enqueue_reminder(s, unique_key="reminder:sub_missing")
    second = _enqueue_reminder(s, unique_key="reminder:sub_missing")

    assert first["job_id"] == second["job_id"]
    assert len(s.jobs) == 1


def test_unique_key_allows_new_job_after_previous_finished():
    s = InMemoryStore()
    first = s.enqueue_job(job_type="sync_stuck_purchases", unique_key="sync")
    s.run_job_once(job_id=first["job_id"])
    second = s.enqueue_job(job_type="sync_stuck_purchases", unique_key="sync")

    assert second["job_id"] != first["job_id"]


def test_unknown_job_type_is_rejected():
    s = InMemoryStore()
    with pytest.raises(ApiError) as exc_info:
        s.enqueue_job(job_type="mine_bitcoin")
    assert exc_info.value.code == "JOB_TYPE_UNKNOWN"
    assert exc_info.value.http_status == 400


def test_successful_job_stores_handler_result():
    s = InMemoryStore()
    job = s.enqueue_job(job_type="sync_stuck_purchases")

    result = s.run_job_once(job_id=job["job_id"])

    assert result["final_status"] == "succeeded"
    assert result["result"] == {"synced": [], "refunded": []}
    stored = s.get_job(job["job_id"])
    assert stored["status"] == "succeeded"
    assert stored["finished_at"]


def test_permanent_handler_error_goes_straight_to_dlq():
    s = InMemoryStore()
    job = _enqueue_reminder(s)

    result = s.run_job_once(job_id=job["job_id"])

    assert result["final_status"] == "failed"
    assert result["dlq_id"] is not None
    stored = s.get_job(job["job_id"])
    assert stored["status"] == "failed"
    assert stored["error_code"] == "SUBSCRIPTION_NOT_FOUND"
    assert stored["last_error"]["retryable"] is False

    item = s.get_dlq_item(result["dlq_id"])
    assert item["status"] == "open"
    assert item["job_type"] == "charge_declined_reminder"
    assert item["partition"] == "sel_1"
    assert item["error_class"] == "validation"


def test_transient_failures_retry_with_backoff_then_dead_letter():
    s = InMemoryStore()
    job = _enqueue_reminder(s)

    for attempt in range(1, s.worker_max_retries + 1):
        result = s.run_job_once(job_id=job["job_id"], transient_fail=True)
        assert result["final_status"] == "retrying"
        assert result["retry_count"] == attempt
        expected_base = min(
            s.worker_retry_backoff_max_ms,
            s.worker_retry_backoff_base_ms * (2 ** (attempt - 1)),
        )
        assert expected_base <= result["retry_after_ms"] <= expected_base + 300

    final = s.run_job_once(job_id=job["job_id"], transient_fail=True)
    assert final["final_status"] == "failed"
    assert final["retry_count"] == s.worker_max_retries
    assert s.get_job(job["job_id"])["error_code"] == "INTERNAL_DEBUG_FORCED_FAIL"
    assert len(s.list_dlq_items(status="open")) == 1


def test_retry_backoff_jitter_is_deterministic_per_job_and_attempt():
    s = InMemoryStore()
    first = s._retry_backoff_ms(job_id="job_fixed", retry_count=2)
    second = s._retry_backoff_ms(job_id="job_fixed", retry_count=2)
    assert first == second


def test_force_fail_is_not_retried():
    s = InMemoryStore()
    job = _enqueue_reminder(s)

    result = s.run_job_once(job_id=job["job_id"], force_fail=True, force_error_code="PAYOUT_METADATA_MISMATCH")

    assert result["final_status"] == "failed"
    item = s.get_dlq_item(result["dlq_id"])
    assert item["error_code"] == "PAYOUT_METADATA_MISMATCH"
    assert item["error_class"] == "permanent"


def test_retryable_job_error_from_handler_schedules_retry(monkeypatch):
    s = InMemoryStore()
    job = s.enqueue_job(job_type="sync_stuck_purchases")

    def _busy(**kwargs):
        raise RetryableJobError("upstream busy", code="UPSTREAM_BUSY")

    monkeypatch.setattr(s, "sync_stuck_purchases", _busy)
    result = s.run_job_once(job_id=job["job_id"])

    assert result["final_status"] == "retrying"
    stored = s.get_job(job["job_id"])
    assert stored["last_error"]["code"] == "UPSTREAM_BUSY"
    assert stored["next_retry_at"] == result["retry_at"]


def test_unexpected_handler_exception_is_retryable(monkeypatch):
    s = InMemoryStore()
    job = s.enqueue_job(job_type="sync_stuck_purchases")

    def _boom(**kwargs):
        raise KeyError("missing")

    monkeypatch.setattr(s, "sync_stuck_purchases", _boom)
    result = s.run_job_once(job_id=job["job_id"])

    assert result["final_status"] == "retrying"
    assert s.get_job(job["job_id"])["last_error"]["code"] == "JOB_HANDLER_EXCEPTION"


def test_max_retries_can_be_configured_from_env(monkeypatch):
    monkeypatch.setenv("WORKER_MAX_RETRIES", "1")
    monkeypatch.setenv("WORKER_RETRY_BACKOFF_BASE_MS", "10")
    monkeypatch.setenv("WORKER_RETRY_BACKOFF_MAX_MS", "20")
    s = InMemoryStore()
    job = _enqueue_reminder(s)

    first = s.run_job_once(job_id=job["job_id"], transient_fail=True)
    assert first["final_status"] == "retrying"
    assert first["retry_after_ms"] <= 10 + 300
    second = s.run_job_once(job_id=job["job_id"], transient_fail=True)
    assert second["final_status"] == "failed"


def test_job_type_max_retries_override_global_default():
    s = InMemoryStore()
    job = s.enqueue_job(job_type="create_payouts")
    assert job["max_retries"] == 0

    result = s.run_job_once(job_id=job["job_id"], transient_fail=True)
    assert result["final_status"] == "failed"


def test_redelivered_message_for_finished_job_is_skipped():
    s = InMemoryStore()
    job = s.enqueue_job(job_type="sync_stuck_purchases")
    s.run_job_once(job_id=job["job_id"])

    again = s.run_job_once(job_id=job["job_id"])

    assert again["skipped"] is True
    assert again["final_status"] == "succeeded"


def test_invalid_job_transition_is_rejected():
    s = InMemoryStore()
    job = _enqueue_reminder(s)
    with pytest.raises(ApiError) as exc_info:
        s.transition_job_status(job_id=job["job_id"], new_status="succeeded")
    assert exc_info.value.code == "JOB_STATE_TRANSITION_INVALID"
    assert exc_info.value.http_status == 409


def test_cancel_queued_job_and_conflict_on_terminal():
    s = InMemoryStore()
    job = _enqueue_reminder(s)

    cancelled = s.cancel_job(job_id=job["job_id"])
    assert cancelled == {"job_id": job["job_id"], "status": "failed", "error_code": "JOB_CANCELLED"}

    with pytest.raises(ApiError) as exc_info:
        s.cancel_job(job_id=job["job_id"])
    assert exc_info.value.code == "JOB_CANCEL_CONFLICT"


def test_list_jobs_filters_and_paginates():
    s = InMemoryStore()
    for _ in range(3):
        _enqueue_reminder(s)
    s.enqueue_job(job_type="sync_stuck_purchases")

    page = s.list_jobs(job_type="charge_declined_reminder", limit=2)
    assert page["total"] == 3
    assert len(page["items"]) == 2
    assert page["next_cursor"] == "2"

    rest = s.list_jobs(job_type="charge_declined_reminder", cursor=page["next_cursor"], limit=2)
    assert len(rest["items"]) == 1
    assert rest["next_cursor"] is None
    assert s.list_jobs(partition="platform")["total"] == 1


def test_drain_due_jobs_skips_jobs_scheduled_in_future():
    s = InMemoryStore()
    due = s.enqueue_job(job_type="sync_stuck_purchases")
    later = s.enqueue_job(job_type="sync_stuck_purchases", delay=timedelta(hours=1))

    results = s.drain_due_jobs()

    assert [r["job_id"] for r in results] == [due["job_id"]]
    assert s.get_job(later["job_id"])["status"] == "queued"


def test_requeue_dlq_item_creates_new_job_and_audit_entry():
    s = InMemoryStore()
    job = _enqueue_reminder(s)
    failed = s.run_job_once(job_id=job["job_id"], force_fail=True)

    requeued = s.requeue_dlq_item(dlq_id=failed["dlq_id"], trace_id="trace_requeue")

    assert requeued["status"] == "queued"
    new_job = s.get_job(requeued["job_id"])
    assert new_job["job_type"] == "charge_declined_reminder"
    assert new_job["partition"] == "sel_1"
    assert new_job["payload"] == {"subscription_id": "sub_missing"}
    assert s.get_dlq_item(failed["dlq_id"])["status"] == "requeued"
    assert s.audit_logs[-1]["action"] == "dlq_requeue_submitted"
    assert s.verify_audit_integrity()["valid"] is True

    with pytest.raises(ApiError) as exc_info:
        s.requeue_dlq_item(dlq_id=failed["dlq_id"])
    assert exc_info.value.code == "DLQ_REQUEUE_CONFLICT"


def test_discard_dlq_item_requires_two_distinct_reviewers():
    s = InMemoryStore()
    job = _enqueue_reminder(s)
    failed = s.run_job_once(job_id=job["job_id"], force_fail=True)

    with pytest.raises(ApiError) as exc_info:
        s.discard_dlq_item(dlq_id=failed["dlq_id"], reason="dup", reviewer_id="u1", reviewer_id_2="u1")
    assert exc_info.value.code == "APPROVAL_REQUIRED"

    discarded = s.discard_dlq_item(dlq_id=failed["dlq_id"], reason="dup", reviewer_id="u1", reviewer_id_2="u2")
    assert discarded == {"dlq_id": failed["dlq_id"], "status": "discarded"}


def test_audit_chain_detects_tampering():
    s = InMemoryStore()
    s._append_audit_log(log={"action": "first"})
    s._append_audit_log(log={"action": "second"})
    assert s.verify_audit_integrity() == {
        "valid": True,
        "checked_count": 2,
        "last_hash": s.audit_logs[-1]["audit_hash"],
    }

    s.audit_logs[0]["action"] = "edited"
    verdict = s.verify_audit_integrity()
    assert verdict["valid"] is False
    assert verdict["reason"] == "audit_hash_mismatch"


def test_run_idempotent_replays_and_detects_conflicts():
    s = InMemoryStore()
    calls: list[int] = []

    def _execute() -> dict:
        calls.append(1)
        return {"n": len(calls)}

    first = s.run_idempotent(endpoint="POST:/x", idempotency_key="k1", payload={"a": 1}, execute=_execute)
    second = s.run_idempotent(endpoint="POST:/x", idempotency_key="k1", payload={"a": 1}, execute=_execute)
    assert first == second == {"n": 1}
    assert len(calls) == 1

    with pytest.raises(ApiError) as exc_info:
        s.run_idempotent(endpoint="POST:/x", idempotency_key="k1", payload={"a": 2}, execute=_execute)
    assert exc_info.value.code == "IDEMPOTENCY_CONFLICT"


def test_ops_metrics_summarize_jobs_and_billing():
    s = InMemoryStore()
    ok = s.enqueue_job(job_type="sync_stuck_purchases")
    s.run_job_once(job_id=ok["job_id"])
    bad = _enqueue_reminder(s)
    s.run_job_once(job_id=bad["job_id"])

    metrics = s.summarize_ops_metrics()

    assert metrics["jobs"]["total"] == 2
    assert metrics["jobs"]["by_status"] == {"succeeded": 1, "failed": 1}
    assert metrics["jobs"]["failed_by_type"] == {"charge_declined_reminder": 1}
    assert metrics["jobs"]["success_rate"] == 0.5
    assert metrics["worker"]["dlq_open"] == 1
    assert metrics["worker"]["outbox_pending"] == 2
