from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field


class DlqDiscardRequest(BaseModel):
    reason: str = ""
    reviewer_id: str = ""
    reviewer_id_2: str = ""


class InternalTransitionRequest(BaseModel):
    new_status: str


class RefundRequest(BaseModel):
    amount_cents: int | None = Field(default=None, gt=0)


class CancelRequest(BaseModel):
    by_seller: bool = False


class PayoutCreateRequest(BaseModel):
    payout_date: date
    processor: Literal["stripe", "paypal"]
    seller_ids: list[str] = Field(default_factory=list)
    payout_type: Literal["standard", "instant"] = "standard"
    reviewer_id: str = ""
    reason: str = ""


class SalesTaxReportRequest(BaseModel):
    subdivision_code: str = Field(min_length=2, max_length=2)
    month: int
    year: int


class RecordUpsertRequest(BaseModel):
    record_id: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class EnqueueJobRequest(BaseModel):
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    partition: str | None = None
    delay_s: int = Field(default=0, ge=0)
    unique_key: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
