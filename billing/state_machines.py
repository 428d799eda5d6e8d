from __future__ import annotations

from typing import Any

from billing.errors import ApiError

JOB_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"running"},
    "running": {"retrying", "succeeded", "dlq_pending"},
    "retrying": {"running", "dlq_pending"},
    "dlq_pending": {"dlq_recorded"},
    "dlq_recorded": {"failed"},
    "succeeded": set(),
    "failed": set(),
}
JOB_TERMINAL_STATES = frozenset({"succeeded", "failed"})

PURCHASE_TRANSITIONS: dict[str, set[str]] = {
    "in_progress": {
        "successful",
        "failed",
        "preorder_authorization_successful",
        "preorder_authorization_failed",
        "test_successful",
        "test_preorder_successful",
        "not_charged",
    },
    "preorder_authorization_successful": {
        "preorder_concluded_successfully",
        "preorder_concluded_unsuccessfully",
    },
    "test_preorder_successful": {
        "preorder_concluded_successfully",
        "preorder_concluded_unsuccessfully",
    },
    "successful": set(),
    "failed": set(),
    "preorder_authorization_failed": set(),
    "preorder_concluded_successfully": set(),
    "preorder_concluded_unsuccessfully": set(),
    "test_successful": set(),
    "not_charged": set(),
}

PREORDER_TRANSITIONS: dict[str, set[str]] = {
    "in_progress": {"authorization_successful", "authorization_failed", "test_authorization_successful"},
    "authorization_successful": {"charge_successful", "cancelled"},
    "test_authorization_successful": {"charge_successful", "cancelled"},
    "authorization_failed": set(),
    "charge_successful": set(),
    "cancelled": set(),
}

DISPUTE_TRANSITIONS: dict[str, set[str]] = {
    "created": {"initiated", "formalized", "won", "lost", "closed"},
    "initiated": {"formalized", "closed", "won", "lost"},
    "formalized": {"won", "lost"},
    "won": set(),
    "lost": set(),
    "closed": set(),
}

BALANCE_TRANSITIONS: dict[str, set[str]] = {
    "unpaid": {"processing"},
    "processing": {"paid", "unpaid"},
    "paid": {"unpaid"},
}

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "creating": {"processing", "failed"},
    "processing": {"cancelled", "completed", "failed", "reversed", "returned", "unclaimed"},
    "unclaimed": {"completed", "cancelled", "reversed", "returned"},
    "completed": {"returned"},
    "failed": set(),
    "cancelled": set(),
    "reversed": set(),
    "returned": set(),
}
PAYMENT_NON_TERMINAL_STATES = frozenset({"creating", "processing", "unclaimed", "completed"})

# Balance side effects of a payment transition: (from, to) -> balance state.
PAYMENT_BALANCE_EFFECTS: dict[tuple[str, str], str] = {
    ("creating", "failed"): "unpaid",
    ("processing", "cancelled"): "unpaid",
    ("processing", "failed"): "unpaid",
    ("unclaimed", "cancelled"): "unpaid",
    ("unclaimed", "reversed"): "unpaid",
    ("unclaimed", "returned"): "unpaid",
    ("completed", "returned"): "unpaid",
    ("processing", "completed"): "paid",
    ("unclaimed", "completed"): "paid",
}

MACHINES: dict[str, dict[str, set[str]]] = {
    "job": JOB_TRANSITIONS,
    "purchase": PURCHASE_TRANSITIONS,
    "preorder": PREORDER_TRANSITIONS,
    "dispute": DISPUTE_TRANSITIONS,
    "balance": BALANCE_TRANSITIONS,
    "payment": PAYMENT_TRANSITIONS,
}


def payment_transition_allowed(from_state: str, to_state: str, *, processor: str) -> bool:
    if to_state not in PAYMENT_TRANSITIONS.get(from_state, set()):
        return False
    is_paypal = processor == "paypal"
    if to_state == "unclaimed" and not is_paypal:
        return False
    if from_state == "unclaimed" and to_state == "cancelled" and not is_paypal:
        return False
    if from_state == "completed" and to_state == "returned" and is_paypal:
        return False
    return True


def can_transition(machine: str, from_state: str, to_state: str, *, processor: str = "") -> bool:
    if machine == "payment":
        return payment_transition_allowed(from_state, to_state, processor=processor)
    return to_state in MACHINES[machine].get(from_state, set())


def transition(
    machine: str,
    record: dict[str, Any],
    to_state: str,
    *,
    field: str = "state",
    processor: str = "",
) -> str:
    """Move ``record[field]`` to ``to_state`` or raise a 409 ApiError."""
    from_state = str(record.get(field, ""))
    if not can_transition(machine, from_state, to_state, processor=processor):
        raise ApiError(
            code=f"{machine.upper()}_STATE_TRANSITION_INVALID",
            message=f"{machine} cannot transition from {from_state} to {to_state}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
    record[field] = to_state
    return from_state
