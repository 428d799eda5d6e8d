from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from billing.queue_backend import (
    InMemoryQueueBackend,
    SqliteQueueBackend,
    create_queue_backend_for_runtime,
    create_queue_from_env,
    queue_depths,
)


def test_in_memory_queue_roundtrip_by_partition():
    q = InMemoryQueueBackend()
    q.enqueue(partition="sel_a", queue_name="critical", payload={"job_id": "job_a"})
    q.enqueue(partition="sel_b", queue_name="critical", payload={"job_id": "job_b"})

    assert q.list_partitions(queue_name="critical") == ["sel_a", "sel_b"]
    msg = q.dequeue(partition="sel_a", queue_name="critical")
    assert msg is not None
    assert msg.job_id == "job_a"
    assert q.dequeue(partition="sel_a", queue_name="critical") is None

    q.ack(partition="sel_a", message_id=msg.message_id)
    assert q.pending_count(partition="sel_a", queue_name="critical") == 0
    assert q.pending_count(partition="sel_b", queue_name="critical") == 1


def test_in_memory_queue_holds_messages_until_available():
    q = InMemoryQueueBackend()
    later = datetime.now(UTC) + timedelta(hours=1)
    q.enqueue(partition="sel_a", queue_name="default", payload={"job_id": "job_later"}, available_at=later)
    q.enqueue(partition="sel_a", queue_name="default", payload={"job_id": "job_now"})

    msg = q.dequeue(partition="sel_a", queue_name="default")
    assert msg is not None
    assert msg.job_id == "job_now"
    assert q.dequeue(partition="sel_a", queue_name="default") is None
    assert q.pending_count(partition="sel_a", queue_name="default") == 1


def test_in_memory_nack_requeues_with_attempt_count():
    q = InMemoryQueueBackend()
    q.enqueue(partition="sel_a", queue_name="low", payload={"job_id": "job_1"})
    msg = q.dequeue(partition="sel_a", queue_name="low")

    requeued = q.nack(partition="sel_a", message_id=msg.message_id, requeue=True, delay_ms=0)
    assert requeued.attempt == 1
    again = q.dequeue(partition="sel_a", queue_name="low")
    assert again.message_id == msg.message_id

    delayed = q.nack(partition="sel_a", message_id=again.message_id, requeue=True, delay_ms=60_000)
    assert delayed.attempt == 2
    assert q.dequeue(partition="sel_a", queue_name="low") is None


def test_in_memory_ack_rejects_partition_mismatch():
    q = InMemoryQueueBackend()
    q.enqueue(partition="sel_a", queue_name="low", payload={"job_id": "job_1"})
    msg = q.dequeue(partition="sel_a", queue_name="low")
    with pytest.raises(RuntimeError):
        q.ack(partition="sel_b", message_id=msg.message_id)


def test_empty_partition_is_rejected():
    q = InMemoryQueueBackend()
    with pytest.raises(ValueError):
        q.enqueue(partition=" ", queue_name="low", payload={})


def test_sqlite_queue_persists_across_instances(tmp_path):
    path = tmp_path / "queue.sqlite3"
    first = SqliteQueueBackend(path)
    first.enqueue(partition="sel_a", queue_name="critical", payload={"job_id": "job_1"})

    second = SqliteQueueBackend(path)
    assert second.list_partitions(queue_name="critical") == ["sel_a"]
    msg = second.dequeue(partition="sel_a", queue_name="critical")
    assert msg.job_id == "job_1"

    second.nack(partition="sel_a", message_id=msg.message_id, requeue=True, delay_ms=0)
    redelivered = second.dequeue(partition="sel_a", queue_name="critical")
    assert redelivered.attempt == 1
    second.ack(partition="sel_a", message_id=redelivered.message_id)
    assert second.pending_count(partition="sel_a", queue_name="critical") == 0


def test_queue_depths_sum_over_partitions():
    q = InMemoryQueueBackend()
    q.enqueue(partition="sel_a", queue_name="critical", payload={"job_id": "1"})
    q.enqueue(partition="sel_b", queue_name="critical", payload={"job_id": "2"})
    q.enqueue(partition="platform", queue_name="low", payload={"job_id": "3"})

    assert queue_depths(q) == {"critical": 2, "default": 0, "low": 1}


def test_queue_factory_selects_backend(tmp_path):
    assert isinstance(create_queue_from_env({"BILLING_QUEUE_BACKEND": "memory"}), InMemoryQueueBackend)
    sqlite_backend = create_queue_from_env(
        {"BILLING_QUEUE_BACKEND": "sqlite", "BILLING_QUEUE_SQLITE_PATH": str(tmp_path / "q.sqlite3")}
    )
    assert isinstance(sqlite_backend, SqliteQueueBackend)
    with pytest.raises(ValueError):
        create_queue_from_env({"BILLING_QUEUE_BACKEND": "redis"})


def test_runtime_queue_falls_back_to_memory_unless_true_stack_required():
    fallback = create_queue_backend_for_runtime({"BILLING_QUEUE_BACKEND": "kafka"})
    assert isinstance(fallback, InMemoryQueueBackend)

    with pytest.raises(RuntimeError):
        create_queue_backend_for_runtime({"BILLING_QUEUE_BACKEND": "kafka", "BILLING_REQUIRE_TRUESTACK": "true"})
