from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from billing.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

# Worker drain order; a partition is a seller id or "platform".
QUEUE_PRIORITY: tuple[str, ...] = ("critical", "default", "low")
PLATFORM_PARTITION = "platform"


@dataclass
class QueueMessage:
    message_id: str
    partition: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None

    @property
    def job_id(self) -> str:
        return str(self.payload.get("job_id", ""))


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _available_at_iso(available_at: datetime | None) -> str:
    if isinstance(available_at, datetime):
        if available_at.tzinfo is None:
            available_at = available_at.replace(tzinfo=UTC)
        return available_at.astimezone(UTC).isoformat()
    return _utcnow_iso()


def _due_after(delay_ms: int) -> datetime:
    return datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))


def _new_message(
    *,
    partition: str,
    queue_name: str,
    payload: dict[str, Any],
    available_at: datetime | None,
) -> QueueMessage:
    if not partition.strip():
        raise ValueError("partition must not be empty")
    return QueueMessage(
        message_id=f"msg_{uuid.uuid4().hex[:12]}",
        partition=partition,
        queue_name=queue_name,
        payload=payload,
        attempt=int(payload.get("attempt", 0)),
        available_at=_available_at_iso(available_at),
    )


class InMemoryQueueBackend:
    """Process-local queue used by tests and the single-process dev profile.

    Messages whose ``available_at`` lies in the future sit in a per-queue
    schedule and are promoted to the ready deque when they come due, so a
    delayed retry never blocks ready work behind it.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ready: dict[tuple[str, str], deque[QueueMessage]] = {}
        self._scheduled: dict[tuple[str, str], list[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def _promote_due(self, key: tuple[str, str]) -> None:
        scheduled = self._scheduled.get(key)
        if not scheduled:
            return
        now = datetime.now(UTC)
        still_waiting: list[QueueMessage] = []
        due: list[QueueMessage] = []
        for msg in scheduled:
            at = _parse_iso(msg.available_at)
            if at is None or at <= now:
                due.append(msg)
            else:
                still_waiting.append(msg)
        due.sort(key=lambda m: m.available_at or "")
        self._ready.setdefault(key, deque()).extend(due)
        self._scheduled[key] = still_waiting

    def _place(self, msg: QueueMessage, *, front: bool = False) -> None:
        key = (msg.partition, msg.queue_name)
        at = _parse_iso(msg.available_at)
        if at is not None and at > datetime.now(UTC):
            self._scheduled.setdefault(key, []).append(msg)
            return
        ready = self._ready.setdefault(key, deque())
        if front:
            ready.appendleft(msg)
        else:
            ready.append(msg)

    def enqueue(
        self,
        *,
        partition: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = _new_message(
                partition=partition,
                queue_name=queue_name,
                payload=payload,
                available_at=available_at,
            )
            self._place(msg)
            return msg

    def dequeue(self, *, partition: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            key = (partition, queue_name)
            self._promote_due(key)
            ready = self._ready.get(key)
            if not ready:
                return None
            msg = ready.popleft()
            self._inflight[msg.message_id] = msg
            return msg

    def ack(self, *, partition: str, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return
            if msg.partition != partition:
                raise RuntimeError("partition mismatch for queue message")
            self._inflight.pop(message_id, None)

    def nack(
        self,
        *,
        partition: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            if msg.partition != partition:
                self._inflight[message_id] = msg
                raise RuntimeError("partition mismatch for queue message")
            msg.attempt += 1
            if requeue:
                msg.available_at = _due_after(delay_ms).isoformat()
                self._place(msg, front=True)
            return msg

    def pending_count(self, *, partition: str, queue_name: str) -> int:
        with self._lock:
            key = (partition, queue_name)
            return len(self._ready.get(key, ())) + len(self._scheduled.get(key, ()))

    def reset(self) -> None:
        with self._lock:
            self._ready.clear()
            self._scheduled.clear()
            self._inflight.clear()

    def list_partitions(self, *, queue_name: str) -> list[str]:
        with self._lock:
            partitions = {
                partition
                for (partition, name), msgs in list(self._ready.items()) + list(self._scheduled.items())
                if name == queue_name and msgs
            }
            return sorted(partitions)


class SqliteQueueBackend:
    """SQLite-backed queue used for local persistence and replay tests."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_messages (
                    message_id TEXT PRIMARY KEY,
                    partition_key TEXT NOT NULL,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_messages_ready
                ON queue_messages(partition_key, queue_name, status, available_at)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> QueueMessage:
        return QueueMessage(
            message_id=row["message_id"],
            partition=row["partition_key"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            attempt=int(row["attempt"]),
            available_at=row["available_at"],
        )

    def enqueue(
        self,
        *,
        partition: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = _new_message(
                partition=partition,
                queue_name=queue_name,
                payload=payload,
                available_at=available_at,
            )
            now = _utcnow_iso()
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO queue_messages(
                        message_id, partition_key, queue_name, payload, attempt, status,
                        available_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                    """,
                    (
                        msg.message_id,
                        msg.partition,
                        msg.queue_name,
                        json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                        msg.attempt,
                        msg.available_at,
                        now,
                        now,
                    ),
                )
                conn.commit()
            return msg

    def dequeue(self, *, partition: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT message_id, partition_key, queue_name, payload, attempt, available_at
                    FROM queue_messages
                    WHERE partition_key = ? AND queue_name = ? AND status = 'pending' AND available_at <= ?
                    ORDER BY available_at ASC, created_at ASC, message_id ASC
                    LIMIT 1
                    """,
                    (partition, queue_name, _utcnow_iso()),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                conn.execute(
                    "UPDATE queue_messages SET status = 'inflight', updated_at = ? WHERE message_id = ?",
                    (_utcnow_iso(), row["message_id"]),
                )
                conn.commit()
                return self._row_to_message(row)

    def _inflight_row(self, conn: sqlite3.Connection, *, partition: str, message_id: str) -> sqlite3.Row | None:
        row = conn.execute(
            """
            SELECT message_id, partition_key, queue_name, payload, attempt, available_at
            FROM queue_messages
            WHERE message_id = ? AND status = 'inflight'
            LIMIT 1
            """,
            (message_id,),
        ).fetchone()
        if row is not None and row["partition_key"] != partition:
            raise RuntimeError("partition mismatch for queue message")
        return row

    def ack(self, *, partition: str, message_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                row = self._inflight_row(conn, partition=partition, message_id=message_id)
                if row is not None:
                    conn.execute("DELETE FROM queue_messages WHERE message_id = ?", (message_id,))
                conn.commit()

    def nack(
        self,
        *,
        partition: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = self._inflight_row(conn, partition=partition, message_id=message_id)
                except RuntimeError:
                    conn.commit()
                    raise
                if row is None:
                    conn.commit()
                    return None
                msg = self._row_to_message(row)
                msg.attempt += 1
                if requeue:
                    msg.available_at = _due_after(delay_ms).isoformat()
                status = "pending" if requeue else "dead"
                conn.execute(
                    """
                    UPDATE queue_messages
                    SET attempt = ?, status = ?, available_at = ?, updated_at = ?
                    WHERE message_id = ?
                    """,
                    (msg.attempt, status, msg.available_at, _utcnow_iso(), message_id),
                )
                conn.commit()
                return msg

    def pending_count(self, *, partition: str, queue_name: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT COUNT(1) AS cnt
                    FROM queue_messages
                    WHERE partition_key = ? AND queue_name = ? AND status = 'pending'
                    """,
                    (partition, queue_name),
                ).fetchone()
                return int(row["cnt"]) if row is not None else 0

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM queue_messages")
                conn.commit()

    def list_partitions(self, *, queue_name: str) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT partition_key
                    FROM queue_messages
                    WHERE queue_name = ? AND status = 'pending'
                    ORDER BY partition_key ASC
                    """,
                    (queue_name,),
                ).fetchall()
        return [str(row["partition_key"]) for row in rows if row["partition_key"]]


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for BILLING_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue.

    Ready messages live in a list per partition/queue; delayed messages wait
    in a sorted set scored by epoch seconds and are moved to the list by
    ``dequeue`` once due. Message bodies are stored under ``msg:<id>``.
    """

    def __init__(self, *, dsn: str, namespace: str = "billing") -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or "billing"
        self._lock = threading.RLock()
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)

    def _key(self, *parts: str) -> str:
        return ":".join((self._namespace, *parts))

    def _ready_key(self, partition: str, queue_name: str) -> str:
        return self._key("queue", queue_name, partition, "ready")

    def _scheduled_key(self, partition: str, queue_name: str) -> str:
        return self._key("queue", queue_name, partition, "scheduled")

    def _partitions_key(self, queue_name: str) -> str:
        return self._key("queue", queue_name, "partitions")

    def _msg_key(self, message_id: str) -> str:
        return self._key("msg", message_id)

    def _load_msg(self, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    def _push(self, msg_data: dict[str, Any], message_id: str, *, front: bool = False) -> None:
        partition = str(msg_data["partition"])
        queue_name = str(msg_data["queue_name"])
        at = _parse_iso(msg_data.get("available_at"))
        if at is not None and at > datetime.now(UTC):
            self._client.zadd(self._scheduled_key(partition, queue_name), {message_id: at.timestamp()})
        elif front:
            self._client.lpush(self._ready_key(partition, queue_name), message_id)
        else:
            self._client.rpush(self._ready_key(partition, queue_name), message_id)
        self._client.sadd(self._partitions_key(queue_name), partition)

    def _promote_due(self, partition: str, queue_name: str) -> None:
        scheduled_key = self._scheduled_key(partition, queue_name)
        due = self._client.zrangebyscore(scheduled_key, "-inf", datetime.now(UTC).timestamp())
        for message_id in due or []:
            # zrem decides ownership when several workers promote concurrently.
            if self._client.zrem(scheduled_key, message_id):
                self._client.rpush(self._ready_key(partition, queue_name), message_id)

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            partition=str(data.get("partition", "")),
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    def enqueue(
        self,
        *,
        partition: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = _new_message(
                partition=partition,
                queue_name=queue_name,
                payload=payload,
                available_at=available_at,
            )
            data = {
                "partition": msg.partition,
                "queue_name": msg.queue_name,
                "payload": msg.payload,
                "attempt": msg.attempt,
                "status": "pending",
                "available_at": msg.available_at,
            }
            self._save_msg(msg.message_id, data)
            self._push(data, msg.message_id)
            return msg

    def dequeue(self, *, partition: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            self._promote_due(partition, queue_name)
            while True:
                message_id = self._client.lpop(self._ready_key(partition, queue_name))
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load_msg(message_id)
                if data is None:
                    continue
                data["status"] = "inflight"
                self._save_msg(message_id, data)
                return self._to_message(message_id, data)

    def _inflight(self, *, partition: str, message_id: str) -> dict[str, Any] | None:
        data = self._load_msg(message_id)
        if data is None or data.get("status") != "inflight":
            return None
        if data.get("partition") != partition:
            raise RuntimeError("partition mismatch for queue message")
        return data

    def ack(self, *, partition: str, message_id: str) -> None:
        with self._lock:
            if self._inflight(partition=partition, message_id=message_id) is None:
                return
            self._client.delete(self._msg_key(message_id))

    def nack(
        self,
        *,
        partition: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            data = self._inflight(partition=partition, message_id=message_id)
            if data is None:
                return None
            data["attempt"] = int(data.get("attempt", 0)) + 1
            if requeue:
                data["status"] = "pending"
                data["available_at"] = _due_after(delay_ms).isoformat()
                self._save_msg(message_id, data)
                self._push(data, message_id, front=True)
            else:
                data["status"] = "dead"
                self._save_msg(message_id, data)
            return self._to_message(message_id, data)

    def pending_count(self, *, partition: str, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._ready_key(partition, queue_name))) + int(
                self._client.zcard(self._scheduled_key(partition, queue_name))
            )

    def reset(self) -> None:
        with self._lock:
            keys = list(self._client.scan_iter(match=f"{self._namespace}:*"))
            if keys:
                self._client.delete(*keys)

    def list_partitions(self, *, queue_name: str) -> list[str]:
        with self._lock:
            members = self._client.smembers(self._partitions_key(queue_name)) or set()
            return sorted(
                str(partition)
                for partition in members
                if self.pending_count(partition=str(partition), queue_name=queue_name) > 0
            )


QueueBackend = InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend


def create_queue_from_env(environ: Mapping[str, str] | None = None) -> QueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("BILLING_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "sqlite":
        return SqliteQueueBackend(env.get("BILLING_QUEUE_SQLITE_PATH", ".runtime/billing_queue.sqlite3"))
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when BILLING_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=env.get("BILLING_QUEUE_KEY_PREFIX", "billing"))
    raise RuntimeError(f"unsupported queue backend: {backend}")


def create_queue_backend_for_runtime(environ: Mapping[str, str] | None = None) -> QueueBackend:
    env = os.environ if environ is None else environ
    try:
        return create_queue_from_env(env)
    except RuntimeError as exc:
        if true_stack_required(env):
            raise
        logger.warning("queue_backend_fallback backend=memory reason=%s", exc)
        return InMemoryQueueBackend()


def queue_depths(backend: QueueBackend) -> dict[str, int]:
    depths: dict[str, int] = {}
    for queue_name in QUEUE_PRIORITY:
        depths[queue_name] = sum(
            backend.pending_count(partition=partition, queue_name=queue_name)
            for partition in backend.list_partitions(queue_name=queue_name)
        )
    return depths
