from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from billing.db.postgres import PostgresTxRunner, _import_psycopg
from billing.repositories._sql import validate_identifier
from billing.repositories.audit_logs import PostgresAuditLogsRepository
from billing.repositories.dlq_items import PostgresDlqItemsRepository
from billing.repositories.jobs import PostgresJobsRepository
from billing.store import STATE_COLLECTIONS, IdempotencyRecord, InMemoryStore

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA_VERSION = 1


class SnapshotPersistenceMixin:
    """Writes the whole store state after every public mutation.

    Subclasses provide ``_save_state`` and ``_load_state``; job handlers are
    covered through ``run_job_once`` and direct API mutations through the
    overrides below.
    """

    def _state_snapshot(self) -> dict[str, Any]:
        idempotency_records = []
        for (scope, key), record in self.idempotency_records.items():
            idempotency_records.append(
                {
                    "scope": scope,
                    "key": key,
                    "fingerprint": record.fingerprint,
                    "data": record.data,
                }
            )
        snapshot: dict[str, Any] = {
            "schema_version": SNAPSHOT_SCHEMA_VERSION,
            "idempotency_records": idempotency_records,
        }
        for name in STATE_COLLECTIONS:
            snapshot[name] = getattr(self, name)
        return snapshot

    def _restore_state(self, payload: dict[str, Any]) -> None:
        self.idempotency_records = {}
        for row in payload.get("idempotency_records", []):
            if not isinstance(row, dict):
                continue
            scope = row.get("scope")
            key = row.get("key")
            fingerprint = row.get("fingerprint")
            data = row.get("data")
            if not isinstance(scope, str) or not isinstance(key, str) or not isinstance(fingerprint, str):
                continue
            if not isinstance(data, dict):
                continue
            self.idempotency_records[(scope, key)] = IdempotencyRecord(fingerprint=fingerprint, data=data)
        for name, factory in STATE_COLLECTIONS.items():
            value = payload.get(name)
            empty = factory()
            setattr(self, name, value if isinstance(value, type(empty)) else empty)
        self._bind_repositories()

    @staticmethod
    def _encode_snapshot(snapshot: dict[str, Any]) -> str:
        return json.dumps(snapshot, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)

    def _restore_from_text(self, payload_raw: Any) -> None:
        if not isinstance(payload_raw, str):
            return
        try:
            payload = json.loads(payload_raw)
        except json.JSONDecodeError:
            logger.warning("store_snapshot_unreadable backend=%s", type(self).__name__)
            return
        if not isinstance(payload, dict):
            return
        self._restore_state(payload)

    def _save_state(self) -> None:
        raise NotImplementedError

    def reset(self) -> None:
        super().reset()
        self._save_state()

    def run_idempotent(self, **kwargs: Any) -> dict[str, Any]:
        result = super().run_idempotent(**kwargs)
        self._save_state()
        return result

    def enqueue_job(self, **kwargs: Any) -> dict[str, Any]:
        job = super().enqueue_job(**kwargs)
        self._save_state()
        return job

    def run_job_once(self, **kwargs: Any) -> dict[str, Any]:
        result = super().run_job_once(**kwargs)
        self._save_state()
        return result

    def transition_job_status(self, *, job_id: str, new_status: str) -> dict[str, Any]:
        job = super().transition_job_status(job_id=job_id, new_status=new_status)
        self._save_state()
        return job

    def cancel_job(self, *, job_id: str) -> dict[str, Any]:
        result = super().cancel_job(job_id=job_id)
        self._save_state()
        return result

    def mark_outbox_event_published(self, *, event_id: str) -> dict[str, Any]:
        event = super().mark_outbox_event_published(event_id=event_id)
        self._save_state()
        return event

    def mark_outbox_delivered(self, *, event_id: str, consumer_name: str, message_id: str) -> dict[str, Any]:
        record = super().mark_outbox_delivered(event_id=event_id, consumer_name=consumer_name, message_id=message_id)
        self._save_state()
        return record

    def requeue_dlq_item(self, *, dlq_id: str, trace_id: str | None = None) -> dict[str, Any]:
        result = super().requeue_dlq_item(dlq_id=dlq_id, trace_id=trace_id)
        self._save_state()
        return result

    def discard_dlq_item(self, **kwargs: Any) -> dict[str, Any]:
        result = super().discard_dlq_item(**kwargs)
        self._save_state()
        return result

    def claim_scheduler_run(self, *, task: str, period_key: str) -> bool:
        claimed = super().claim_scheduler_run(task=task, period_key=period_key)
        if claimed:
            self._save_state()
        return claimed

    def upsert_seller(self, **kwargs: Any) -> dict[str, Any]:
        record = super().upsert_seller(**kwargs)
        self._save_state()
        return record

    def upsert_product(self, **kwargs: Any) -> dict[str, Any]:
        record = super().upsert_product(**kwargs)
        self._save_state()
        return record

    def upsert_subscription(self, **kwargs: Any) -> dict[str, Any]:
        record = super().upsert_subscription(**kwargs)
        self._save_state()
        return record

    def upsert_purchase(self, **kwargs: Any) -> dict[str, Any]:
        record = super().upsert_purchase(**kwargs)
        self._save_state()
        return record

    def upsert_preorder(self, **kwargs: Any) -> dict[str, Any]:
        record = super().upsert_preorder(**kwargs)
        self._save_state()
        return record

    def ingest_stripe_event(self, *, event: dict[str, Any]) -> dict[str, Any]:
        result = super().ingest_stripe_event(event=event)
        self._save_state()
        return result

    def ingest_paypal_ipn(self, *, params: dict[str, Any]) -> dict[str, Any]:
        result = super().ingest_paypal_ipn(params=params)
        self._save_state()
        return result

    def refund_purchase(self, *, purchase_id: str, amount_cents: int | None = None) -> dict[str, Any]:
        result = super().refund_purchase(purchase_id=purchase_id, amount_cents=amount_cents)
        self._save_state()
        return result

    def cancel_subscription(self, *, subscription_id: str, by_seller: bool = False) -> dict[str, Any]:
        result = super().cancel_subscription(subscription_id=subscription_id, by_seller=by_seller)
        self._save_state()
        return result

    def cancel_preorder(self, *, preorder_id: str, by_seller: bool = False) -> dict[str, Any]:
        result = super().cancel_preorder(preorder_id=preorder_id, by_seller=by_seller)
        self._save_state()
        return result

    def authorize_preorder(self, *, preorder_id: str) -> dict[str, Any]:
        result = super().authorize_preorder(preorder_id=preorder_id)
        self._save_state()
        return result

    def create_payments(self, **kwargs: Any) -> list[dict[str, Any]]:
        result = super().create_payments(**kwargs)
        self._save_state()
        return result

    def create_us_state_sales_report(self, *, subdivision_code: str, month: int, year: int) -> dict[str, Any]:
        report = super().create_us_state_sales_report(subdivision_code=subdivision_code, month=month, year=year)
        self._save_state()
        return report

    def enqueue_due_recurring_charges(self) -> list[str]:
        job_ids = super().enqueue_due_recurring_charges()
        self._save_state()
        return job_ids


class SqliteBackedStore(SnapshotPersistenceMixin, InMemoryStore):
    """Store that snapshots its state into a single SQLite row."""

    def __init__(self, db_path: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._initialize_database()
        self._load_state()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _save_state(self) -> None:
        blob = self._encode_snapshot(self._state_snapshot())
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO store_state(id, payload) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
                """,
                (blob,),
            )
            conn.commit()

    def _load_state(self) -> None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT payload FROM store_state WHERE id = 1").fetchone()
        if row is None:
            return
        self._restore_from_text(row[0])


class PostgresBackedStore(SnapshotPersistenceMixin, InMemoryStore):
    """Snapshot store on PostgreSQL that also mirrors jobs, DLQ items and audit logs into tables."""

    def __init__(self, *, dsn: str, table_name: str = "billing_store_state", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._table_name = validate_identifier(table_name.strip() or "billing_store_state")
        self._lock = threading.RLock()
        self._tx_runner = PostgresTxRunner(self._dsn)
        self._jobs_pg_repo = PostgresJobsRepository(tx_runner=self._tx_runner)
        self._dlq_pg_repo = PostgresDlqItemsRepository(tx_runner=self._tx_runner)
        self._audit_pg_repo = PostgresAuditLogsRepository(tx_runner=self._tx_runner)
        self._initialize_database()
        self._load_state()

    def _connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def _initialize_database(self) -> None:
        create_sql = f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                  id SMALLINT PRIMARY KEY CHECK (id = 1),
                  payload JSONB NOT NULL
                )
                """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(create_sql)
            conn.commit()
        self._jobs_pg_repo.ensure_schema()
        self._dlq_pg_repo.ensure_schema()
        self._audit_pg_repo.ensure_schema()

    def _persist_job(self, *, job: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_job(job=job)
        self._jobs_pg_repo.upsert(job=saved)
        return saved

    def _persist_dlq_item(self, *, item: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_dlq_item(item=item)
        self._dlq_pg_repo.upsert(item=saved)
        return saved

    def _append_audit_log(self, *, log: dict[str, Any]) -> dict[str, Any]:
        saved = super()._append_audit_log(log=log)
        self._audit_pg_repo.append(log=saved)
        return saved

    def _save_state(self) -> None:
        blob = self._encode_snapshot(self._state_snapshot())
        upsert_sql = f"""
                    INSERT INTO {self._table_name}(id, payload)
                    VALUES (1, %s::jsonb)
                    ON CONFLICT(id) DO UPDATE SET payload = EXCLUDED.payload
                    """
        with self._lock, self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(upsert_sql, (blob,))
            conn.commit()

    def _load_state(self) -> None:
        select_sql = f"SELECT payload::text FROM {self._table_name} WHERE id = 1"
        with self._lock, self._connect() as conn, conn.cursor() as cur:
            cur.execute(select_sql)
            row = cur.fetchone()
        if row is None:
            return
        self._restore_from_text(row[0])

    def reset(self) -> None:
        tables = ", ".join(
            validate_identifier(name) for name in ("billing_jobs", "billing_dlq_items", "billing_audit_logs")
        )
        with self._lock, self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"TRUNCATE TABLE {tables}")
            conn.commit()
        super().reset()
