from __future__ import annotations

import logging
from typing import Any

from billing.jobs import job_queue
from billing.queue_backend import PLATFORM_PARTITION

logger = logging.getLogger(__name__)

JOB_ENQUEUED_EVENT = "job.enqueued"
DEFAULT_CONSUMER = "worker"


def relay_outbox_events(
    store: Any,
    queue_backend: Any,
    *,
    consumer_name: str = DEFAULT_CONSUMER,
    limit: int = 100,
) -> dict[str, Any]:
    """Move pending ``job.enqueued`` events onto the queue, once per consumer."""
    pending_events = store.list_outbox_events(status="pending", event_type=JOB_ENQUEUED_EVENT, limit=limit)
    message_ids: list[str] = []
    skipped = 0
    for event in pending_events:
        existing_delivery = store.get_outbox_delivery(event_id=event["event_id"], consumer_name=consumer_name)
        if existing_delivery is not None:
            store.mark_outbox_event_published(event_id=event["event_id"])
            skipped += 1
            continue
        event_payload = event.get("payload") or {}
        job_id = str(event_payload.get("job_id") or event["aggregate_id"])
        job = store.get_job(job_id)
        if job is None:
            logger.warning("outbox_relay_job_missing event_id=%s job_id=%s", event["event_id"], job_id)
            store.mark_outbox_event_published(event_id=event["event_id"])
            skipped += 1
            continue
        job_type = str(job.get("job_type") or event_payload.get("job_type") or "")
        msg = queue_backend.enqueue(
            partition=str(job.get("partition") or PLATFORM_PARTITION),
            queue_name=str(job.get("queue") or job_queue(job_type)),
            payload={
                "event_id": event["event_id"],
                "job_id": job_id,
                "job_type": job_type,
                "trace_id": str(job.get("trace_id") or ""),
                "consumer_name": consumer_name,
            },
            available_at=store._parse_dt(job.get("run_at")),
        )
        message_ids.append(msg.message_id)
        store.mark_outbox_delivered(
            event_id=event["event_id"],
            consumer_name=consumer_name,
            message_id=msg.message_id,
        )
        store.mark_outbox_event_published(event_id=event["event_id"])
    if message_ids:
        logger.info("outbox_relayed consumer=%s queued=%s skipped=%s", consumer_name, len(message_ids), skipped)
    return {
        "published_count": len(message_ids) + skipped,
        "queued_count": len(message_ids),
        "message_ids": message_ids,
        "consumer_name": consumer_name,
    }
