from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Header, Query, Request

from billing.errors import ApiError
from billing.outbox_relay import DEFAULT_CONSUMER, relay_outbox_events
from billing.routes._deps import require_internal_debug, trace_id_from_request
from billing.schemas import EnqueueJobRequest, InternalTransitionRequest, RecordUpsertRequest, success_envelope
from billing.store import store

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])

_RECORD_UPSERTS = {
    "sellers": ("seller_id", "upsert_seller"),
    "products": ("product_id", "upsert_product"),
    "subscriptions": ("subscription_id", "upsert_subscription"),
    "purchases": ("purchase_id", "upsert_purchase"),
    "preorders": ("preorder_id", "upsert_preorder"),
}

# ---------------------------------------------------------------------------
# Jobs internal
# ---------------------------------------------------------------------------


@router.post("/jobs")
def internal_enqueue_job(
    payload: EnqueueJobRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    job = store.enqueue_job(
        job_type=payload.job_type,
        payload=payload.payload,
        partition=payload.partition,
        delay=timedelta(seconds=payload.delay_s) if payload.delay_s else None,
        unique_key=payload.unique_key,
        trace_id=trace_id_from_request(request),
    )
    return success_envelope(job, trace_id_from_request(request))


@router.post("/jobs/{job_id}/transition")
def internal_transition_job(
    job_id: str,
    payload: InternalTransitionRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    updated = store.transition_job_status(job_id=job_id, new_status=payload.new_status)
    return success_envelope(
        {
            "job_id": updated["job_id"],
            "status": updated["status"],
            "retry_count": updated.get("retry_count", 0),
        },
        trace_id_from_request(request),
    )


@router.post("/jobs/{job_id}/run")
def internal_run_job(
    job_id: str,
    request: Request,
    force_fail: bool = Query(default=False),
    transient_fail: bool = Query(default=False),
    error_code: str | None = Query(default=None),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    result = store.run_job_once(
        job_id=job_id,
        force_fail=force_fail,
        transient_fail=transient_fail,
        force_error_code=error_code,
    )
    return success_envelope(result, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Outbox, worker and scheduler
# ---------------------------------------------------------------------------


@router.get("/outbox/events")
def internal_list_outbox_events(
    request: Request,
    status: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    items = store.list_outbox_events(status=status, event_type=event_type, limit=limit)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/outbox/events/{event_id}/publish")
def internal_publish_outbox_event(
    event_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    event = store.mark_outbox_event_published(event_id=event_id)
    return success_envelope(event, trace_id_from_request(request))


@router.post("/outbox/relay")
def internal_relay_outbox_events(
    request: Request,
    consumer_name: str = Query(default=DEFAULT_CONSUMER),
    limit: int = Query(default=100, ge=1, le=1000),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = relay_outbox_events(
        store,
        request.app.state.queue_backend,
        consumer_name=consumer_name,
        limit=limit,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/worker/run-once")
def internal_worker_run_once(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    stats = request.app.state.worker_runtime.run_once()
    return success_envelope(stats, trace_id_from_request(request))


@router.post("/scheduler/tick")
def internal_scheduler_tick(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    ran = request.app.state.scheduler.tick()
    return success_envelope({"ran": ran}, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Billing records
# ---------------------------------------------------------------------------


@router.post("/records/{kind}")
def internal_upsert_record(
    kind: str,
    payload: RecordUpsertRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    target = _RECORD_UPSERTS.get(kind)
    if target is None:
        raise ApiError(
            code="RECORD_KIND_UNKNOWN",
            message=f"unknown record kind: {kind}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
    id_field, method_name = target
    fields = dict(payload.fields)
    fields.pop(id_field, None)
    record = getattr(store, method_name)(**{id_field: payload.record_id}, **fields)
    return success_envelope(record, trace_id_from_request(request))


@router.post("/preorders/{preorder_id}/authorize")
def internal_authorize_preorder(
    preorder_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = store.authorize_preorder(preorder_id=preorder_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/products/{product_id}/release")
def internal_release_preorder_product(
    product_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    job = store.enqueue_job(
        job_type="release_preorder_product",
        payload={"product_id": product_id},
        unique_key=f"release_preorder_product:{product_id}",
    )
    return success_envelope({"job_id": job["job_id"]}, trace_id_from_request(request))
