from __future__ import annotations

import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing.errors import ApiError
from billing.queue_backend import create_queue_backend_for_runtime
from billing.routes import internal, ops, webhooks
from billing.routes._deps import (
    append_security_audit_log,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from billing.scheduler import create_scheduler_from_env
from billing.schemas import success_envelope
from billing.security import JwtSecurityConfig, parse_and_validate_bearer_token
from billing.store import store
from billing.webhook_verification import WebhookVerificationConfig
from billing.worker_runtime import create_worker_runtime_from_env

queue_backend = create_queue_backend_for_runtime()

_SECURITY_AUDITED_CODES = {
    "AUTH_UNAUTHORIZED",
    "AUTH_FORBIDDEN",
    "APPROVAL_REQUIRED",
    "WEBHOOK_SIGNATURE_INVALID",
}


def _requires_bearer(path: str) -> bool:
    return path.startswith("/api/v1/") and not path.startswith("/api/v1/internal/") and path != "/api/v1/health"


def create_app() -> FastAPI:
    app = FastAPI(title="Billing Jobs Service", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.webhook_cfg = WebhookVerificationConfig.from_env()
    app.state.queue_backend = queue_backend
    app.state.worker_runtime = create_worker_runtime_from_env(store=store, queue_backend=queue_backend)
    app.state.scheduler = create_scheduler_from_env(store=store)

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        if security_cfg.trace_id_strict_required and _requires_bearer(request.url.path) and not incoming_trace_id:
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        try:
            if security_cfg.enabled and _requires_bearer(request.url.path):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
            response = await call_next(request)
        except ApiError as exc:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_AUDITED_CODES:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(ops.router)
    app.include_router(internal.router)
    app.include_router(webhooks.router)
    return app


app = create_app()
