from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from billing.queue_backend import queue_depths
from billing.routes._deps import require_approval, require_idempotency_key, trace_id_from_request
from billing.schemas import (
    CancelRequest,
    DlqDiscardRequest,
    PayoutCreateRequest,
    RefundRequest,
    SalesTaxReportRequest,
    success_envelope,
)
from billing.store import store

router = APIRouter(prefix="/api/v1", tags=["ops"])

# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@router.get("/jobs")
def list_jobs(
    request: Request,
    status: str | None = Query(default=None),
    job_type: str | None = Query(default=None),
    partition: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
):
    data = store.list_jobs(status=status, job_type=job_type, partition=partition, cursor=cursor, limit=limit)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request):
    return success_envelope(store._require_job(job_id), trace_id_from_request(request))


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, request: Request):
    return success_envelope(store.cancel_job(job_id=job_id), trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Dead letter queue
# ---------------------------------------------------------------------------


@router.get("/dlq/items")
def list_dlq_items(request: Request, status: str | None = Query(default=None)):
    items = store.list_dlq_items(status=status)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/dlq/items/{item_id}/requeue")
def requeue_dlq_item(
    item_id: str,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = require_idempotency_key(idempotency_key)
    data = store.run_idempotent(
        endpoint=f"POST:/api/v1/dlq/items/{item_id}/requeue",
        idempotency_key=key,
        payload={"dlq_id": item_id},
        execute=lambda: store.requeue_dlq_item(dlq_id=item_id, trace_id=trace_id_from_request(request)),
    )
    return JSONResponse(status_code=202, content=success_envelope(data, trace_id_from_request(request)))


@router.post("/dlq/items/{item_id}/discard")
def discard_dlq_item(
    item_id: str,
    payload: DlqDiscardRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = require_idempotency_key(idempotency_key)
    require_approval(
        action="dlq_discard",
        request=request,
        reviewer_id=payload.reviewer_id,
        reviewer_id_2=payload.reviewer_id_2,
        reason=payload.reason,
    )
    data = store.run_idempotent(
        endpoint=f"POST:/api/v1/dlq/items/{item_id}/discard",
        idempotency_key=key,
        payload=payload.model_dump(mode="json"),
        execute=lambda: store.discard_dlq_item(
            dlq_id=item_id,
            reason=payload.reason,
            reviewer_id=payload.reviewer_id,
            reviewer_id_2=payload.reviewer_id_2,
            trace_id=trace_id_from_request(request),
        ),
    )
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Purchases, subscriptions, preorders
# ---------------------------------------------------------------------------


@router.get("/purchases/{purchase_id}")
def get_purchase(purchase_id: str, request: Request):
    return success_envelope(store.get_purchase(purchase_id), trace_id_from_request(request))


@router.post("/purchases/{purchase_id}/refund")
def refund_purchase(
    purchase_id: str,
    payload: RefundRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = require_idempotency_key(idempotency_key)
    data = store.run_idempotent(
        endpoint=f"POST:/api/v1/purchases/{purchase_id}/refund",
        idempotency_key=key,
        payload=payload.model_dump(mode="json"),
        execute=lambda: store.refund_purchase(purchase_id=purchase_id, amount_cents=payload.amount_cents),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/subscriptions/{subscription_id}")
def get_subscription(subscription_id: str, request: Request):
    return success_envelope(store.get_subscription(subscription_id), trace_id_from_request(request))


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(subscription_id: str, payload: CancelRequest, request: Request):
    data = store.cancel_subscription(subscription_id=subscription_id, by_seller=payload.by_seller)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/preorders/{preorder_id}/cancel")
def cancel_preorder(preorder_id: str, payload: CancelRequest, request: Request):
    data = store.cancel_preorder(preorder_id=preorder_id, by_seller=payload.by_seller)
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Payouts and balances
# ---------------------------------------------------------------------------


@router.get("/sellers/{seller_id}/balance")
def get_seller_balance(seller_id: str, request: Request):
    store.get_seller(seller_id)
    return success_envelope(store.seller_balance_summary(seller_id), trace_id_from_request(request))


@router.post("/payouts")
def create_payouts(
    payload: PayoutCreateRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = require_idempotency_key(idempotency_key)
    require_approval(
        action="payout_create",
        request=request,
        reviewer_id=payload.reviewer_id,
        reason=payload.reason,
    )

    def _execute() -> dict[str, object]:
        payments = store.create_payments(
            payout_date=payload.payout_date,
            processor=payload.processor,
            seller_ids=list(payload.seller_ids),
            payout_type=payload.payout_type,
        )
        return {"payment_ids": [p["payment_id"] for p in payments], "total": len(payments)}

    data = store.run_idempotent(
        endpoint="POST:/api/v1/payouts",
        idempotency_key=key,
        payload=payload.model_dump(mode="json"),
        execute=_execute,
    )
    return JSONResponse(status_code=202, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/payments/{payment_id}")
def get_payment(payment_id: str, request: Request):
    return success_envelope(store.get_payment(payment_id), trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@router.post("/reports/sales-tax")
def create_sales_tax_report(payload: SalesTaxReportRequest, request: Request):
    job = store.enqueue_job(job_type="create_sales_tax_report", payload=payload.model_dump(mode="json"))
    return JSONResponse(
        status_code=202,
        content=success_envelope({"job_id": job["job_id"], "status": job["status"]}, trace_id_from_request(request)),
    )


@router.get("/reports/{report_id}")
def get_report(report_id: str, request: Request):
    report = store.get_report(report_id)
    data = {**report, "download_url": store.report_download_url(report_id)}
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.get("/ops/metrics")
def ops_metrics(request: Request):
    data = store.summarize_ops_metrics()
    data["queue_depths"] = queue_depths(request.app.state.queue_backend)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/audit/integrity")
def audit_integrity(request: Request):
    return success_envelope(store.verify_audit_integrity(), trace_id_from_request(request))


@router.get("/notifications")
def list_notifications(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
):
    items = store.list_outbox_events(status=status, event_prefix="notification.", limit=limit)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))
