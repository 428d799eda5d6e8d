from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from billing.charge_processor import ChargeProcessorRegistry, create_charge_processors_from_env
from billing.errors import (
    ApiError,
    ChargeProcessorError,
    ChargeProcessorUnavailableError,
    RetryableJobError,
)
from billing.jobs import job_spec
from billing.locks import create_lock_backend_from_env
from billing.object_storage import ObjectStorageBackend, create_object_storage_from_env
from billing.queue_backend import PLATFORM_PARTITION
from billing.repositories.audit_logs import InMemoryAuditLogsRepository
from billing.repositories.dlq_items import InMemoryDlqItemsRepository
from billing.repositories.jobs import InMemoryJobsRepository
from billing.runtime_profile import true_stack_required
from billing.state_machines import JOB_TERMINAL_STATES, JOB_TRANSITIONS
from billing.store_disputes import StoreDisputesMixin
from billing.store_ledger import StoreLedgerMixin
from billing.store_notifications import StoreNotificationsMixin
from billing.store_ops import StoreOpsMixin
from billing.store_payouts import StorePayoutsMixin
from billing.store_preorders import StorePreordersMixin
from billing.store_purchases import StorePurchasesMixin
from billing.store_reports import StoreReportsMixin
from billing.store_subscriptions import StoreSubscriptionsMixin
from billing.store_webhooks import StoreWebhooksMixin

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


# Collections captured by snapshot persistence, with their empty value factory.
STATE_COLLECTIONS: dict[str, Callable[[], Any]] = {
    "jobs": dict,
    "dlq_items": dict,
    "audit_logs": list,
    "domain_events_outbox": dict,
    "outbox_delivery_records": dict,
    "sellers": dict,
    "products": dict,
    "subscriptions": dict,
    "purchases": dict,
    "preorders": dict,
    "disputes": dict,
    "balances": dict,
    "balance_transactions": list,
    "payments": dict,
    "reports": dict,
    "webhook_events": dict,
    "scheduler_runs": dict,
}


class InMemoryStore(
    StoreOpsMixin,
    StoreLedgerMixin,
    StoreSubscriptionsMixin,
    StorePurchasesMixin,
    StoreDisputesMixin,
    StorePreordersMixin,
    StorePayoutsMixin,
    StoreNotificationsMixin,
    StoreReportsMixin,
    StoreWebhooksMixin,
):
    ALLOWED_TRANSITIONS: dict[str, set[str]] = JOB_TRANSITIONS

    def __init__(
        self,
        *,
        processors: ChargeProcessorRegistry | None = None,
        locks: Any | None = None,
        object_storage: ObjectStorageBackend | None = None,
    ) -> None:
        self.worker_max_retries = self._env_int("WORKER_MAX_RETRIES", default=3, minimum=0)
        self.worker_retry_backoff_base_ms = self._env_int("WORKER_RETRY_BACKOFF_BASE_MS", default=1000, minimum=0)
        self.worker_retry_backoff_max_ms = self._env_int("WORKER_RETRY_BACKOFF_MAX_MS", default=30000, minimum=0)
        self.platform_fee_bps = self._env_int("BILLING_FEE_BPS", default=1000, minimum=0)
        self.platform_fee_fixed_cents = self._env_int("BILLING_FEE_FIXED_CENTS", default=50, minimum=0)
        self.min_payout_cents = self._env_int("BILLING_MIN_PAYOUT_CENTS", default=1000, minimum=0)
        self.ping_failure_throttle_days = self._env_int(
            "BILLING_PING_FAILURE_THROTTLE_DAYS",
            default=7,
            minimum=0,
        )
        self.processors = processors if processors is not None else create_charge_processors_from_env()
        self.locks = locks if locks is not None else create_lock_backend_from_env()
        self._object_storage = object_storage
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        for name, factory in STATE_COLLECTIONS.items():
            setattr(self, name, factory())
        self._bind_repositories()

    @staticmethod
    def _env_int(name: str, *, default: int, minimum: int = 0) -> int:
        raw = os.environ.get(name, "").strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return max(minimum, value)

    @staticmethod
    def _env_bool(name: str, *, default: bool) -> bool:
        raw = os.environ.get(name, "").strip().lower()
        if not raw:
            return default
        return raw in {"1", "true", "yes", "on"}

    def _bind_repositories(self) -> None:
        self.jobs_repository = InMemoryJobsRepository(self.jobs)
        self.audit_repository = InMemoryAuditLogsRepository(self.audit_logs)
        self.dlq_repository = InMemoryDlqItemsRepository(self.dlq_items)

    @property
    def object_storage(self) -> ObjectStorageBackend:
        if self._object_storage is None:
            self._object_storage = create_object_storage_from_env(os.environ)
        return self._object_storage

    def reset(self) -> None:
        self.idempotency_records.clear()
        for name in STATE_COLLECTIONS:
            getattr(self, name).clear()
        self._object_storage = None
        self.processors.reset()
        reset_locks = getattr(self.locks, "reset", None)
        if callable(reset_locks):
            reset_locks()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _parse_dt(value: Any) -> datetime | None:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=UTC)
        if not isinstance(value, str) or not value:
            return None
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=UTC)

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _retry_jitter_ms(*, job_id: str, retry_count: int) -> int:
        seed = f"{job_id}:{retry_count}".encode("utf-8")
        digest = hashlib.sha256(seed).digest()
        return int.from_bytes(digest[:2], byteorder="big") % 301

    def _retry_backoff_ms(self, *, job_id: str, retry_count: int) -> int:
        normalized_retry = max(1, int(retry_count))
        base = max(0, int(self.worker_retry_backoff_base_ms))
        max_backoff = max(base, int(self.worker_retry_backoff_max_ms))
        exponential = base * (2 ** (normalized_retry - 1))
        return min(max_backoff, exponential) + self._retry_jitter_ms(
            job_id=job_id,
            retry_count=normalized_retry,
        )

    def _persist_job(self, *, job: dict[str, Any]) -> dict[str, Any]:
        job["updated_at"] = self._utcnow_iso()
        return self.jobs_repository.upsert(job=job)

    def _persist_dlq_item(self, *, item: dict[str, Any]) -> dict[str, Any]:
        return self.dlq_repository.upsert(item=item)

    @staticmethod
    def _compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
        material = {key: value for key, value in log.items() if key not in {"audit_hash", "prev_hash"}}
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def _append_audit_log(self, *, log: dict[str, Any]) -> dict[str, Any]:
        entry = dict(log)
        if not entry.get("audit_id"):
            entry["audit_id"] = self._new_id("audit")
        if not entry.get("occurred_at"):
            entry["occurred_at"] = self._utcnow_iso()
        prev_hash = str(self.audit_logs[-1].get("audit_hash") or "") if self.audit_logs else ""
        entry["prev_hash"] = prev_hash
        entry["audit_hash"] = self._compute_audit_hash(log=entry, prev_hash=prev_hash)
        return self.audit_repository.append(log=entry)

    def verify_audit_integrity(self) -> dict[str, Any]:
        prev_hash = ""
        for idx, row in enumerate(self.audit_logs):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            actual = str(row.get("audit_hash") or "")
            if actual != self._compute_audit_hash(log=row, prev_hash=stored_prev):
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {"valid": True, "checked_count": len(self.audit_logs), "last_hash": prev_hash}

    def run_idempotent(
        self,
        *,
        endpoint: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (endpoint, idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        if key in self.idempotency_records:
            record = self.idempotency_records[key]
            if record.fingerprint != current_fingerprint:
                raise ApiError(
                    code="IDEMPOTENCY_CONFLICT",
                    message="same key with different payload",
                    error_class="validation",
                    retryable=False,
                    http_status=409,
                )
            return record.data

        data = execute()
        self.idempotency_records[key] = IdempotencyRecord(fingerprint=current_fingerprint, data=data)
        return data

    # Jobs

    def _find_pending_unique_job(self, unique_key: str) -> dict[str, Any] | None:
        for job in self.jobs.values():
            if job.get("unique_key") != unique_key:
                continue
            if job.get("status") in {"queued", "retrying"}:
                return dict(job)
        return None

    def enqueue_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any] | None = None,
        partition: str | None = None,
        run_at: datetime | None = None,
        delay: timedelta | None = None,
        unique_key: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Record a queued job and its ``job.enqueued`` outbox event.

        A job with ``unique_key`` is not duplicated while another job with the
        same key is still waiting to run; the waiting job is returned instead.
        """
        spec = job_spec(job_type)
        if unique_key:
            existing = self._find_pending_unique_job(unique_key)
            if existing is not None:
                return existing
        now = self._now()
        if run_at is None:
            run_at = now + delay if delay is not None else now
        job = {
            "job_id": self._new_id("job"),
            "job_type": job_type,
            "status": "queued",
            "partition": partition or PLATFORM_PARTITION,
            "queue": spec.queue,
            "payload": dict(payload or {}),
            "unique_key": unique_key,
            "run_at": run_at.astimezone(UTC).isoformat(),
            "retry_count": 0,
            "max_retries": self.worker_max_retries if spec.max_retries is None else spec.max_retries,
            "trace_id": trace_id,
            "last_error": None,
            "result": None,
            "created_at": now.isoformat(),
        }
        self._persist_job(job=job)
        self.append_outbox_event(
            event_type="job.enqueued",
            aggregate_type="job",
            aggregate_id=job["job_id"],
            payload={
                "job_id": job["job_id"],
                "job_type": job_type,
                "partition": job["partition"],
                "queue": spec.queue,
                "run_at": job["run_at"],
            },
        )
        return dict(job)

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        return self.jobs_repository.get(job_id=job_id)

    def _require_job(self, job_id: str) -> dict[str, Any]:
        job = self.get_job(job_id)
        if job is None:
            raise ApiError(
                code="JOB_NOT_FOUND",
                message="job not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return job

    def transition_job_status(self, *, job_id: str, new_status: str) -> dict[str, Any]:
        job = self._require_job(job_id)
        current_status = job["status"]
        if new_status == current_status:
            return job
        if new_status not in self.ALLOWED_TRANSITIONS.get(current_status, set()):
            raise ApiError(
                code="JOB_STATE_TRANSITION_INVALID",
                message=f"invalid transition: {current_status} -> {new_status}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        if new_status == "retrying":
            job["retry_count"] = int(job.get("retry_count", 0)) + 1
        job["status"] = new_status
        return self._persist_job(job=job)

    def cancel_job(self, *, job_id: str) -> dict[str, Any]:
        job = self._require_job(job_id)
        if job["status"] in JOB_TERMINAL_STATES or job["status"] == "running":
            raise ApiError(
                code="JOB_CANCEL_CONFLICT",
                message=f"job cannot be cancelled from status: {job['status']}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        job["status"] = "failed"
        job["error_code"] = "JOB_CANCELLED"
        job["last_error"] = {
            "code": "JOB_CANCELLED",
            "message": "job cancelled by operator",
            "retryable": False,
            "class": "business_rule",
        }
        self._persist_job(job=job)
        return {"job_id": job_id, "status": "failed", "error_code": "JOB_CANCELLED"}

    def list_jobs(
        self,
        *,
        status: str | None = None,
        job_type: str | None = None,
        partition: str | None = None,
        cursor: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        jobs = self.jobs_repository.list()
        if status:
            jobs = [j for j in jobs if j.get("status") == status]
        if job_type:
            jobs = [j for j in jobs if j.get("job_type") == job_type]
        if partition:
            jobs = [j for j in jobs if j.get("partition") == partition]

        start = 0
        if cursor:
            try:
                start = max(0, int(cursor))
            except ValueError:
                start = 0
        limit = min(max(limit, 1), 100)
        sliced = jobs[start : start + limit]
        next_cursor = str(start + limit) if start + limit < len(jobs) else None
        return {"items": sliced, "total": len(jobs), "next_cursor": next_cursor}

    @staticmethod
    def _classify_error_code(error_code: str) -> dict[str, Any]:
        matrix: dict[str, dict[str, Any]] = {
            "INTERNAL_DEBUG_FORCED_FAIL": {
                "class": "transient",
                "retryable": True,
                "message": "forced failure by internal debug run",
            },
            "PROCESSOR_UNAVAILABLE": {
                "class": "transient",
                "retryable": True,
                "message": "charge processor unavailable",
            },
            "PAYOUT_METADATA_MISMATCH": {
                "class": "permanent",
                "retryable": False,
                "message": "payout metadata does not match payment",
            },
        }
        return matrix.get(
            error_code,
            {"class": "transient", "retryable": True, "message": "forced failure by internal debug run"},
        )

    @staticmethod
    def _classify_exception(exc: Exception) -> dict[str, Any]:
        if isinstance(exc, ApiError):
            return {
                "code": exc.code,
                "class": exc.error_class,
                "retryable": exc.retryable,
                "message": exc.message,
            }
        if isinstance(exc, RetryableJobError):
            return {"code": exc.code, "class": "transient", "retryable": True, "message": exc.message}
        if isinstance(exc, ChargeProcessorUnavailableError):
            return {
                "code": exc.error_code or "PROCESSOR_UNAVAILABLE",
                "class": "transient",
                "retryable": True,
                "message": exc.message,
            }
        if isinstance(exc, ChargeProcessorError):
            return {
                "code": exc.error_code or "PROCESSOR_REQUEST_FAILED",
                "class": "permanent",
                "retryable": False,
                "message": exc.message,
            }
        return {
            "code": "JOB_HANDLER_EXCEPTION",
            "class": "transient",
            "retryable": True,
            "message": f"{type(exc).__name__}: {exc}",
        }

    def _dispatch_job(self, job: dict[str, Any]) -> dict[str, Any]:
        spec = job_spec(str(job.get("job_type", "")))
        handler = getattr(self, spec.handler)
        kwargs = dict(job.get("payload") or {})
        if spec.pass_job:
            kwargs["job"] = job
        result = handler(**kwargs)
        if isinstance(result, dict):
            return result
        return {"returned": result}

    def _fail_job(self, *, job_id: str, error: dict[str, Any]) -> dict[str, Any]:
        job = self._require_job(job_id)
        last_error = {
            "code": error["code"],
            "message": error["message"],
            "retryable": bool(error["retryable"]),
            "class": error["class"],
        }
        max_retries = int(job.get("max_retries", self.worker_max_retries))
        if error["retryable"] and int(job.get("retry_count", 0)) < max_retries:
            retried_job = self.transition_job_status(job_id=job_id, new_status="retrying")
            retry_count = int(retried_job.get("retry_count", 0))
            retry_after_ms = self._retry_backoff_ms(job_id=job_id, retry_count=retry_count)
            retry_at = (self._now() + timedelta(milliseconds=retry_after_ms)).isoformat()
            retried_job["next_retry_at"] = retry_at
            retried_job["last_error"] = last_error
            self._persist_job(job=retried_job)
            logger.info(
                "job_retrying job_id=%s job_type=%s retry_count=%s code=%s retry_after_ms=%s",
                job_id,
                job.get("job_type"),
                retry_count,
                error["code"],
                retry_after_ms,
            )
            return {
                "job_id": job_id,
                "job_type": job.get("job_type"),
                "final_status": "retrying",
                "retry_count": retry_count,
                "dlq_id": None,
                "retry_after_ms": retry_after_ms,
                "retry_at": retry_at,
            }

        self.transition_job_status(job_id=job_id, new_status="dlq_pending")
        self.transition_job_status(job_id=job_id, new_status="dlq_recorded")
        dlq_item = self.seed_dlq_item(
            job_id=job_id,
            job_type=str(job.get("job_type", "")),
            partition=str(job.get("partition", PLATFORM_PARTITION)),
            error_class=error["class"],
            error_code=error["code"],
            message=error["message"],
        )
        failed_job = self.transition_job_status(job_id=job_id, new_status="failed")
        failed_job.pop("next_retry_at", None)
        failed_job["last_error"] = last_error
        failed_job["error_code"] = error["code"]
        self._persist_job(job=failed_job)
        logger.warning(
            "job_dead_lettered job_id=%s job_type=%s code=%s dlq_id=%s",
            job_id,
            job.get("job_type"),
            error["code"],
            dlq_item["dlq_id"],
        )
        return {
            "job_id": job_id,
            "job_type": job.get("job_type"),
            "final_status": "failed",
            "retry_count": int(failed_job.get("retry_count", 0)),
            "dlq_id": dlq_item["dlq_id"],
        }

    def run_job_once(
        self,
        *,
        job_id: str,
        force_fail: bool = False,
        transient_fail: bool = False,
        force_error_code: str | None = None,
    ) -> dict[str, Any]:
        job = self._require_job(job_id)
        status = job["status"]
        if status in JOB_TERMINAL_STATES:
            # Redelivered message for a finished job.
            return {
                "job_id": job_id,
                "job_type": job.get("job_type"),
                "final_status": status,
                "retry_count": int(job.get("retry_count", 0)),
                "dlq_id": None,
                "skipped": True,
            }
        if status in {"queued", "retrying"}:
            job = self.transition_job_status(job_id=job_id, new_status="running")
        elif status != "running":
            raise ApiError(
                code="JOB_STATE_TRANSITION_INVALID",
                message=f"job cannot run from status: {status}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )

        if force_fail or transient_fail:
            error_code = force_error_code or "INTERNAL_DEBUG_FORCED_FAIL"
            classified = self._classify_error_code(error_code)
            return self._fail_job(
                job_id=job_id,
                error={
                    "code": error_code,
                    "class": classified["class"],
                    "retryable": bool(transient_fail and not force_fail),
                    "message": classified["message"],
                },
            )

        try:
            result = self._dispatch_job(job)
        except Exception as exc:  # noqa: BLE001
            error = self._classify_exception(exc)
            if error["code"] == "JOB_HANDLER_EXCEPTION":
                logger.exception("job_handler_failed job_id=%s job_type=%s", job_id, job.get("job_type"))
            return self._fail_job(job_id=job_id, error=error)

        finished = self.transition_job_status(job_id=job_id, new_status="succeeded")
        finished["result"] = result
        finished["finished_at"] = self._utcnow_iso()
        finished.pop("next_retry_at", None)
        self._persist_job(job=finished)
        return {
            "job_id": job_id,
            "job_type": job.get("job_type"),
            "final_status": "succeeded",
            "retry_count": int(finished.get("retry_count", 0)),
            "dlq_id": None,
            "result": result,
        }

    def due_job_ids(self, *, now: datetime | None = None, limit: int = 100) -> list[str]:
        moment = now or self._now()
        due: list[tuple[str, str]] = []
        for job in self.jobs.values():
            if job.get("status") not in {"queued", "retrying"}:
                continue
            at = self._parse_dt(job.get("next_retry_at") or job.get("run_at"))
            if at is None or at <= moment:
                due.append((str(job.get("run_at", "")), str(job["job_id"])))
        due.sort()
        return [job_id for _, job_id in due[: max(1, limit)]]

    def drain_due_jobs(self, *, limit: int = 100, max_rounds: int = 10) -> list[dict[str, Any]]:
        """Run due jobs inline, including the due follow-ups they enqueue."""
        results: list[dict[str, Any]] = []
        for _ in range(max(1, max_rounds)):
            job_ids = self.due_job_ids(limit=limit)
            if not job_ids:
                break
            for job_id in job_ids:
                results.append(self.run_job_once(job_id=job_id))
        return results


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("BILLING_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("BILLING_REQUIRE_TRUESTACK=true requires BILLING_STORE_BACKEND=postgres")
    if backend == "memory":
        return InMemoryStore()

    from billing.store_backends import PostgresBackedStore, SqliteBackedStore

    if backend == "sqlite":
        return SqliteBackedStore(env.get("BILLING_STORE_SQLITE_PATH", ".runtime/billing_store.sqlite3"))
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when BILLING_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn)
    raise RuntimeError(f"unsupported store backend: {backend}")


store = create_store_from_env()
