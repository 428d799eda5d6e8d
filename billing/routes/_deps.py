from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from billing.errors import ApiError
from billing.schemas import error_envelope
from billing.security import redact_sensitive
from billing.store import store


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def append_security_audit_log(
    *,
    request: Request,
    action: str,
    code: str,
    detail: str,
) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    store._append_audit_log(
        log={
            "action": action,
            "error_code": code,
            "detail": detail,
            "path": request.url.path,
            "subject": getattr(request.state, "auth_subject", "anonymous"),
            "trace_id": trace_id_from_request(request),
            "headers": headers_payload,
        }
    )


def require_idempotency_key(idempotency_key: str | None) -> str:
    if not idempotency_key:
        raise ApiError(
            code="IDEMPOTENCY_MISSING",
            message="Idempotency-Key header is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return idempotency_key


def require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def require_approval(
    *,
    action: str,
    request: Request,
    reviewer_id: str,
    reason: str,
    reviewer_id_2: str = "",
) -> None:
    security_cfg = request.app.state.security_cfg
    if action not in security_cfg.approval_required_actions:
        return
    reviewer_a = reviewer_id.strip()
    reviewer_b = reviewer_id_2.strip()
    if not reviewer_a or not reason.strip():
        raise ApiError(
            code="APPROVAL_REQUIRED",
            message=f"approval required for action: {action}",
            error_class="business_rule",
            retryable=False,
            http_status=400,
        )
    if action in security_cfg.dual_approval_required_actions:
        if not reviewer_b or reviewer_a == reviewer_b:
            raise ApiError(
                code="APPROVAL_REQUIRED",
                message=f"dual approval required for action: {action}",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )
