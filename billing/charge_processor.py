"""
Charge processor boundary.

Every interaction with Stripe or PayPal goes through the ``ChargeProcessor``
interface. Gateway SDK bindings live outside this service; the in-process
``ScriptedChargeProcessor`` is deterministic and lets callers queue outcomes
per operation, which is how the dev profile and the tests drive failures.
"""

from __future__ import annotations

import hashlib
import os
from collections import deque
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from billing import error_codes
from billing.errors import (
    ChargeProcessorCardError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorUnavailableError,
)

STRIPE = "stripe"
PAYPAL = "paypal"
PROCESSOR_IDS: tuple[str, ...] = (STRIPE, PAYPAL)

INTENT_SUCCEEDED = "succeeded"
INTENT_PROCESSING = "processing"
INTENT_REQUIRES_ACTION = "requires_action"
INTENT_CANCELED = "canceled"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"

MASS_PAY_SUCCESS_ACKS = frozenset({"Success", "SuccessWithWarning"})


@dataclass
class ChargeResult:
    charge_id: str | None
    status: str
    amount_cents: int
    fee_cents: int = 0
    payment_intent_id: str | None = None
    setup_intent_id: str | None = None
    card_country: str | None = None
    requires_action: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _short_id(prefix: str, seed: str) -> str:
    return f"{prefix}_{hashlib.sha256(seed.encode()).hexdigest()[:16]}"


class ChargeProcessor:
    processor_id = ""

    def create_charge(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_ref: str,
        reference: str,
        off_session: bool = False,
        card_country: str | None = None,
    ) -> ChargeResult:
        raise NotImplementedError

    def create_setup_intent(self, *, customer_ref: str, reference: str) -> dict[str, Any]:
        raise NotImplementedError

    def get_payment_intent(self, intent_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def get_setup_intent(self, intent_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def cancel_payment_intent(self, intent_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def cancel_setup_intent(self, intent_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def get_charge(self, charge_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def refund(self, *, charge_id: str, amount_cents: int) -> dict[str, Any]:
        raise NotImplementedError

    def submit_dispute_evidence(self, *, charge_id: str, evidence: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def create_payout(
        self,
        *,
        amount_cents: int,
        currency: str,
        account_ref: str,
        payment_id: str,
        instant: bool = False,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def get_payout(self, payout_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def mass_pay(self, items: list[dict[str, Any]]) -> dict[str, Any]:
        raise NotImplementedError

    def get_mass_pay_item_status(self, unique_id: str) -> str:
        raise NotImplementedError

    def get_account_balance(self, account_ref: str) -> int:
        raise NotImplementedError


@dataclass
class _ScriptedState:
    intents: dict[str, dict[str, Any]] = field(default_factory=dict)
    setup_intents: dict[str, dict[str, Any]] = field(default_factory=dict)
    charges: dict[str, dict[str, Any]] = field(default_factory=dict)
    refunds: list[dict[str, Any]] = field(default_factory=list)
    evidence: list[dict[str, Any]] = field(default_factory=list)
    payouts: dict[str, dict[str, Any]] = field(default_factory=dict)
    mass_pay_batches: list[dict[str, Any]] = field(default_factory=list)
    mass_pay_items: dict[str, str] = field(default_factory=dict)
    account_balances: dict[str, int] = field(default_factory=dict)
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)


class ScriptedChargeProcessor(ChargeProcessor):
    """Deterministic processor whose outcomes are queued with ``script``.

    An outcome is ``"succeeded"``, ``"processing"``, ``"requires_action"``,
    ``"unavailable"`` or any purchase error code, which is raised as a card
    error. Operations without a queued outcome succeed.
    """

    def __init__(self, processor_id: str) -> None:
        self.processor_id = processor_id
        self._scripts: dict[str, deque[str]] = {}
        self.state = _ScriptedState()
        self._counter = 0

    def reset(self) -> None:
        self._scripts.clear()
        self.state = _ScriptedState()
        self._counter = 0

    def script(self, operation: str, *outcomes: str) -> None:
        self._scripts.setdefault(operation, deque()).extend(outcomes)

    def _next_outcome(self, operation: str, default: str = INTENT_SUCCEEDED) -> str:
        queue = self._scripts.get(operation)
        if queue:
            return queue.popleft()
        return default

    def _seed(self, *parts: str) -> str:
        self._counter += 1
        return ":".join((self.processor_id, str(self._counter), *parts))

    def _raise_if_unavailable(self, outcome: str) -> None:
        if outcome == "unavailable":
            raise ChargeProcessorUnavailableError(
                f"{self.processor_id} is unavailable",
                error_code=error_codes.unavailable_code_for(self.processor_id),
            )

    def _fee_cents(self, amount_cents: int) -> int:
        return int(round(amount_cents * 0.029)) + 30 if amount_cents > 0 else 0

    def create_charge(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_ref: str,
        reference: str,
        off_session: bool = False,
        card_country: str | None = None,
    ) -> ChargeResult:
        self.state.calls.append(("create_charge", {"reference": reference, "off_session": off_session}))
        outcome = self._next_outcome("create_charge")
        self._raise_if_unavailable(outcome)
        seed = self._seed(reference)
        intent_id = _short_id("pi", seed)
        charge_id = _short_id("ch", seed)
        if outcome not in {INTENT_SUCCEEDED, INTENT_PROCESSING, INTENT_REQUIRES_ACTION}:
            self.state.intents[intent_id] = {
                "id": intent_id,
                "status": INTENT_REQUIRES_PAYMENT_METHOD,
                "charge_id": charge_id,
            }
            raise ChargeProcessorCardError(
                f"card was declined: {outcome}",
                error_code=outcome,
                charge_id=charge_id,
            )
        fee_cents = self._fee_cents(amount_cents)
        self.state.intents[intent_id] = {
            "id": intent_id,
            "status": outcome,
            "charge_id": charge_id if outcome == INTENT_SUCCEEDED else None,
            "amount_cents": amount_cents,
            "reference": reference,
        }
        if outcome == INTENT_SUCCEEDED:
            self.state.charges[charge_id] = {
                "id": charge_id,
                "status": INTENT_SUCCEEDED,
                "amount_cents": amount_cents,
                "fee_cents": fee_cents,
                "currency": currency,
                "customer_ref": customer_ref,
            }
        return ChargeResult(
            charge_id=charge_id if outcome == INTENT_SUCCEEDED else None,
            status=outcome,
            amount_cents=amount_cents,
            fee_cents=fee_cents if outcome == INTENT_SUCCEEDED else 0,
            payment_intent_id=intent_id,
            card_country=card_country,
            requires_action=outcome == INTENT_REQUIRES_ACTION,
        )

    def create_setup_intent(self, *, customer_ref: str, reference: str) -> dict[str, Any]:
        outcome = self._next_outcome("create_setup_intent")
        self._raise_if_unavailable(outcome)
        if outcome not in {INTENT_SUCCEEDED, INTENT_PROCESSING, INTENT_REQUIRES_ACTION}:
            raise ChargeProcessorCardError(f"card was declined: {outcome}", error_code=outcome)
        intent_id = _short_id("seti", self._seed(reference))
        intent = {"id": intent_id, "status": outcome, "customer_ref": customer_ref}
        self.state.setup_intents[intent_id] = intent
        return dict(intent)

    def set_intent_status(self, intent_id: str, status: str, *, charge_id: str | None = None) -> None:
        intent = self.state.intents.setdefault(intent_id, {"id": intent_id})
        intent["status"] = status
        if charge_id is not None:
            intent["charge_id"] = charge_id
            self.state.charges.setdefault(
                charge_id,
                {"id": charge_id, "status": INTENT_SUCCEEDED, "amount_cents": 0, "fee_cents": 0},
            )

    def get_payment_intent(self, intent_id: str) -> dict[str, Any]:
        self._raise_if_unavailable(self._next_outcome("get_payment_intent"))
        intent = self.state.intents.get(intent_id)
        if intent is None:
            raise ChargeProcessorInvalidRequestError(f"no such payment intent: {intent_id}")
        return dict(intent)

    def get_setup_intent(self, intent_id: str) -> dict[str, Any]:
        intent = self.state.setup_intents.get(intent_id)
        if intent is None:
            raise ChargeProcessorInvalidRequestError(f"no such setup intent: {intent_id}")
        return dict(intent)

    def _cancel(self, store: dict[str, dict[str, Any]], intent_id: str, operation: str) -> dict[str, Any]:
        self._raise_if_unavailable(self._next_outcome(operation))
        intent = store.setdefault(intent_id, {"id": intent_id, "status": INTENT_PROCESSING})
        if intent.get("status") in {INTENT_SUCCEEDED, INTENT_CANCELED}:
            raise ChargeProcessorInvalidRequestError(
                f"intent {intent_id} cannot be canceled from status {intent.get('status')}"
            )
        intent["status"] = INTENT_CANCELED
        return dict(intent)

    def cancel_payment_intent(self, intent_id: str) -> dict[str, Any]:
        return self._cancel(self.state.intents, intent_id, "cancel_payment_intent")

    def cancel_setup_intent(self, intent_id: str) -> dict[str, Any]:
        return self._cancel(self.state.setup_intents, intent_id, "cancel_setup_intent")

    def get_charge(self, charge_id: str) -> dict[str, Any]:
        charge = self.state.charges.get(charge_id)
        if charge is None:
            raise ChargeProcessorInvalidRequestError(f"no such charge: {charge_id}")
        return dict(charge)

    def refund(self, *, charge_id: str, amount_cents: int) -> dict[str, Any]:
        outcome = self._next_outcome("refund")
        self._raise_if_unavailable(outcome)
        if outcome != INTENT_SUCCEEDED:
            raise ChargeProcessorInvalidRequestError(f"refund rejected: {outcome}")
        refund = {
            "id": _short_id("re", self._seed(charge_id)),
            "charge_id": charge_id,
            "amount_cents": int(amount_cents),
            "status": INTENT_SUCCEEDED,
        }
        self.state.refunds.append(refund)
        return dict(refund)

    def submit_dispute_evidence(self, *, charge_id: str, evidence: dict[str, Any]) -> dict[str, Any]:
        self._raise_if_unavailable(self._next_outcome("submit_dispute_evidence"))
        submission = {"charge_id": charge_id, "evidence": dict(evidence), "status": "under_review"}
        self.state.evidence.append(submission)
        return dict(submission)

    def create_payout(
        self,
        *,
        amount_cents: int,
        currency: str,
        account_ref: str,
        payment_id: str,
        instant: bool = False,
    ) -> dict[str, Any]:
        outcome = self._next_outcome("create_payout")
        self._raise_if_unavailable(outcome)
        if outcome != INTENT_SUCCEEDED:
            raise ChargeProcessorInvalidRequestError(f"payout rejected: {outcome}")
        payout_id = _short_id("po", self._seed(payment_id))
        arrival = datetime.now(UTC) + timedelta(days=0 if instant else 2)
        payout = {
            "id": payout_id,
            "status": "pending",
            "amount_cents": int(amount_cents),
            "currency": currency,
            "account_ref": account_ref,
            "method": "instant" if instant else "standard",
            "arrival_date": int(arrival.timestamp()),
            "metadata": {"payment": payment_id},
        }
        self.state.payouts[payout_id] = payout
        return dict(payout)

    def get_payout(self, payout_id: str) -> dict[str, Any]:
        payout = self.state.payouts.get(payout_id)
        if payout is None:
            raise ChargeProcessorInvalidRequestError(f"no such payout: {payout_id}")
        return dict(payout)

    def mass_pay(self, items: list[dict[str, Any]]) -> dict[str, Any]:
        outcome = self._next_outcome("mass_pay", default="Success")
        self._raise_if_unavailable(outcome)
        correlation_id = _short_id("corr", self._seed(str(len(items))))
        batch = {"ACK": outcome, "CORRELATIONID": correlation_id, "items": [dict(x) for x in items]}
        self.state.mass_pay_batches.append(batch)
        if outcome in MASS_PAY_SUCCESS_ACKS:
            for item in items:
                self.state.mass_pay_items[str(item["unique_id"])] = "Pending"
        return {"ACK": outcome, "CORRELATIONID": correlation_id}

    def set_mass_pay_item_status(self, unique_id: str, status: str) -> None:
        self.state.mass_pay_items[unique_id] = status

    def get_mass_pay_item_status(self, unique_id: str) -> str:
        self._raise_if_unavailable(self._next_outcome("get_mass_pay_item_status"))
        return self.state.mass_pay_items.get(unique_id, "Pending")

    def set_account_balance(self, account_ref: str, amount_cents: int) -> None:
        self.state.account_balances[account_ref] = int(amount_cents)

    def get_account_balance(self, account_ref: str) -> int:
        return self.state.account_balances.get(account_ref, 0)


class ChargeProcessorRegistry:
    def __init__(self, processors: Mapping[str, ChargeProcessor]) -> None:
        self._processors = dict(processors)

    def get(self, processor_id: str) -> ChargeProcessor:
        processor = self._processors.get(processor_id)
        if processor is None:
            raise ChargeProcessorInvalidRequestError(f"unknown charge processor: {processor_id}")
        return processor

    def ids(self) -> list[str]:
        return sorted(self._processors)

    def reset(self) -> None:
        for processor in self._processors.values():
            reset = getattr(processor, "reset", None)
            if callable(reset):
                reset()


def create_charge_processors_from_env(environ: Mapping[str, str] | None = None) -> ChargeProcessorRegistry:
    env = os.environ if environ is None else environ
    mode = env.get("BILLING_CHARGE_PROCESSOR_MODE", "scripted").strip().lower()
    if mode != "scripted":
        raise RuntimeError(f"unsupported charge processor mode: {mode}")
    return ChargeProcessorRegistry({pid: ScriptedChargeProcessor(pid) for pid in PROCESSOR_IDS})
