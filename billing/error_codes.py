from __future__ import annotations

STRIPE_UNAVAILABLE = "stripe_unavailable"
PAYPAL_UNAVAILABLE = "paypal_unavailable"
PROCESSING_ERROR = "processing_error"
CARD_DECLINED = "card_declined"
CARD_DECLINED_INSUFFICIENT_FUNDS = "card_declined_insufficient_funds"
CARD_EXPIRED = "card_declined_expired_card"
CARD_STOLEN = "card_declined_stolen_card"
STRIPE_INSUFFICIENT_FUNDS = "stripe_insufficient_funds"
PRICE_CHANGED = "price_changed"
SELLER_SUSPENDED = "seller_suspended"
PROCESSOR_REQUEST_INVALID = "processor_request_invalid"

TEMPORARY_NETWORK_ERRORS = frozenset({STRIPE_UNAVAILABLE, PAYPAL_UNAVAILABLE, PROCESSING_ERROR})
RETRYABLE_ERRORS = frozenset({CARD_DECLINED_INSUFFICIENT_FUNDS})

UNAVAILABLE_BY_PROCESSOR = {
    "stripe": STRIPE_UNAVAILABLE,
    "paypal": PAYPAL_UNAVAILABLE,
}


def is_temporary_network_error(error_code: str | None) -> bool:
    return bool(error_code) and error_code in TEMPORARY_NETWORK_ERRORS


def is_retryable(error_code: str | None) -> bool:
    return bool(error_code) and error_code in RETRYABLE_ERRORS


def unavailable_code_for(processor: str) -> str:
    return UNAVAILABLE_BY_PROCESSOR.get(processor, PROCESSING_ERROR)
