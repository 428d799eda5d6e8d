from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Header, Request
from starlette.concurrency import run_in_threadpool

from billing.errors import ApiError
from billing.routes._deps import append_security_audit_log, trace_id_from_request
from billing.schemas import success_envelope
from billing.store import store
from billing.webhook_verification import parse_ipn_body, verify_paypal_ipn, verify_stripe

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _signature_rejected(request: Request, *, source: str) -> ApiError:
    append_security_audit_log(
        request=request,
        action="webhook_rejected",
        code="WEBHOOK_SIGNATURE_INVALID",
        detail=f"{source} webhook failed verification",
    )
    return ApiError(
        code="WEBHOOK_SIGNATURE_INVALID",
        message=f"{source} webhook signature invalid",
        error_class="security_sensitive",
        retryable=False,
        http_status=400,
    )


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    body = await request.body()
    if not verify_stripe(body, stripe_signature, config=request.app.state.webhook_cfg):
        raise _signature_rejected(request, source="stripe")
    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        event = None
    if not isinstance(event, dict):
        raise ApiError(
            code="WEBHOOK_EVENT_INVALID",
            message="stripe event body must be a JSON object",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    data = store.ingest_stripe_event(event=event)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/paypal/ipn")
async def paypal_ipn(request: Request):
    body = await request.body()
    verified = await run_in_threadpool(verify_paypal_ipn, body, config=request.app.state.webhook_cfg)
    if not verified:
        raise _signature_rejected(request, source="paypal")
    params = parse_ipn_body(body)
    data = store.ingest_paypal_ipn(params=params)
    logger.info("paypal_ipn_received event_id=%s status=%s", data["event_id"], data["status"])
    return success_envelope(data, trace_id_from_request(request))
