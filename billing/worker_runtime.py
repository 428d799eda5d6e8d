from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from billing.outbox_relay import DEFAULT_CONSUMER, relay_outbox_events
from billing.queue_backend import QUEUE_PRIORITY

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    relayed: int = 0
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "relayed": self.relayed,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "acked": self.acked,
            "requeued": self.requeued,
        }

    def add(self, other: dict[str, int]) -> None:
        for name, value in other.items():
            setattr(self, name, getattr(self, name) + int(value))


class WorkerRuntime:
    """Resident worker: relays the outbox, then drains queues by priority.

    Within a queue, partitions (sellers) are served round-robin with at most
    ``partition_burst_limit`` messages each per pass, so one seller with a
    large backlog cannot starve the others.
    """

    def __init__(
        self,
        *,
        store: Any,
        queue_backend: Any,
        queue_names: list[str] | None = None,
        partition_burst_limit: int = 1,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
        consumer_name: str = DEFAULT_CONSUMER,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.queue_names = list(queue_names or QUEUE_PRIORITY)
        self.partition_burst_limit = max(1, int(partition_burst_limit))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.consumer_name = consumer_name

    def _list_partitions(self, *, queue_name: str) -> list[str]:
        partitions = self.queue_backend.list_partitions(queue_name=queue_name)
        return [str(x) for x in partitions if str(x)]

    def _process_message(self, *, queue_name: str, partition: str, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(partition=partition, queue_name=queue_name)
        if msg is None:
            return False
        stats.processed += 1
        job_id = msg.job_id
        if not job_id:
            self.queue_backend.ack(partition=partition, message_id=msg.message_id)
            stats.acked += 1
            return True

        try:
            result = self.store.run_job_once(job_id=job_id)
        except Exception:
            logger.exception("worker_message_failed job_id=%s queue=%s partition=%s", job_id, queue_name, partition)
            self.queue_backend.ack(partition=partition, message_id=msg.message_id)
            stats.acked += 1
            stats.failed += 1
            return True
        final_status = str(result.get("final_status", ""))
        if final_status == "retrying":
            delay_ms = int(result.get("retry_after_ms", 0) or 0)
            self.queue_backend.nack(
                partition=partition,
                message_id=msg.message_id,
                requeue=True,
                delay_ms=max(0, delay_ms),
            )
            stats.requeued += 1
            stats.retrying += 1
            return True

        self.queue_backend.ack(partition=partition, message_id=msg.message_id)
        stats.acked += 1
        if final_status == "succeeded":
            stats.succeeded += 1
        else:
            stats.failed += 1
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        relay = relay_outbox_events(self.store, self.queue_backend, consumer_name=self.consumer_name)
        stats.relayed = int(relay["queued_count"])
        for queue_name in self.queue_names:
            while stats.processed < self.max_messages_per_iteration:
                partitions = self._list_partitions(queue_name=queue_name)
                if not partitions:
                    break
                progressed = False
                for partition in partitions:
                    for _ in range(self.partition_burst_limit):
                        if stats.processed >= self.max_messages_per_iteration:
                            break
                        handled = self._process_message(queue_name=queue_name, partition=partition, stats=stats)
                        progressed = progressed or handled
                        if not handled:
                            break
                if not progressed:
                    break
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0 and int(current["relayed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_worker_runtime_from_env(
    *,
    store: Any,
    queue_backend: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    queue_names_raw = str(env.get("WORKER_QUEUE_NAMES", ",".join(QUEUE_PRIORITY))).strip()
    queue_names = [x.strip() for x in queue_names_raw.split(",") if x.strip()] or list(QUEUE_PRIORITY)
    return WorkerRuntime(
        store=store,
        queue_backend=queue_backend,
        queue_names=queue_names,
        partition_burst_limit=_env_int(env, "WORKER_PARTITION_BURST_LIMIT", default=1, minimum=1),
        max_messages_per_iteration=_env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
        consumer_name=str(env.get("WORKER_CONSUMER_NAME", DEFAULT_CONSUMER)).strip() or DEFAULT_CONSUMER,
    )
