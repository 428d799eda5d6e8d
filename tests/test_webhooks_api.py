from __future__ import annotations

import hashlib
import hmac
import json
import time
from urllib.parse import urlencode

import pytest

from billing import webhook_verification
from billing.errors import ApiError
from billing.routes import webhooks as webhook_routes
from billing.store import store
from billing.store_webhooks import paypal_ipn_key, stripe_charge_event
from billing.webhook_verification import WebhookVerificationConfig, verify_paypal_ipn, verify_stripe

STRIPE_SECRET = "whsec_test_secret"


def _stripe_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def _signed(event: dict, *, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> tuple[bytes, dict]:
    body = json.dumps(event).encode("utf-8")
    ts = int(time.time()) if timestamp is None else timestamp
    header = f"t={ts},v1={_stripe_signature(secret, ts, body)}"
    return body, {"Stripe-Signature": header, "Content-Type": "application/json"}


def _config(**overrides) -> WebhookVerificationConfig:
    values = {
        "stripe_secret": STRIPE_SECRET,
        "stripe_tolerance_s": 300,
        "paypal_verify_url": "https://ipn.example.com/verify",
        "paypal_verification_enabled": True,
    }
    values.update(overrides)
    return WebhookVerificationConfig(**values)


def _charge_succeeded(event_id: str = "evt_1", purchase_id: str = "pur_1") -> dict:
    return {
        "id": event_id,
        "type": "charge.succeeded",
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_1", "metadata": {"purchase": purchase_id}}},
    }


def test_stripe_signature_checks():
    body = b'{"id":"evt_1"}'
    now = int(time.time())
    good = f"t={now},v1={_stripe_signature(STRIPE_SECRET, now, body)}"
    stale_ts = now - 301
    stale = f"t={stale_ts},v1={_stripe_signature(STRIPE_SECRET, stale_ts, body)}"

    assert verify_stripe(body, good, config=_config()) is True
    assert verify_stripe(body, f"t={now},v1=deadbeef,{good.split(',')[1]}", config=_config()) is True
    assert verify_stripe(body, stale, config=_config()) is False
    assert verify_stripe(b'{"id":"evt_2"}', good, config=_config()) is False
    assert verify_stripe(body, "v1=abc", config=_config()) is False
    assert verify_stripe(body, "garbage", config=_config()) is False
    assert verify_stripe(body, None, config=_config()) is False
    assert verify_stripe(b"\xff\xfe", good, config=_config()) is False
    assert verify_stripe(body, good, config=_config(stripe_secret="")) is False


def test_paypal_ipn_postback(monkeypatch):
    calls = []

    class _Response:
        status_code = 200

        def __init__(self, text):
            self.text = text

    def fake_post(url, data=None, headers=None, timeout=None):
        calls.append(data)
        return _Response("VERIFIED" if b"txn_id=T1" in data else "INVALID")

    monkeypatch.setattr(webhook_verification.requests, "post", fake_post)

    assert verify_paypal_ipn(b"txn_id=T1", config=_config()) is True
    assert verify_paypal_ipn(b"txn_id=T2", config=_config()) is False
    assert calls[0] == b"cmd=_notify-validate&txn_id=T1"
    assert verify_paypal_ipn(b"anything", config=_config(paypal_verification_enabled=False)) is True


def test_stripe_events_map_to_charge_events():
    failed = stripe_charge_event(
        {
            "id": "evt_f",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_9", "last_payment_error": {"decline_code": "insufficient_funds"}}},
        }
    )
    assert failed["type"] == "payment_failed"
    assert failed["payment_intent_id"] == "pi_9"
    assert failed["error_code"] == "card_declined_insufficient_funds"

    won = stripe_charge_event(
        {"id": "evt_w", "type": "charge.dispute.closed", "data": {"object": {"status": "won", "charge": "ch_1"}}}
    )
    assert won["type"] == "dispute_won"
    assert won["charge_id"] == "ch_1"

    undecided = {"id": "evt_u", "type": "charge.dispute.closed", "data": {"object": {"status": "warning_closed"}}}
    assert stripe_charge_event(undecided) is None
    assert stripe_charge_event({"id": "evt_c", "type": "customer.created", "data": {"object": {}}}) is None


def test_ipn_key_prefers_track_id_and_falls_back_to_digest():
    assert paypal_ipn_key({"ipn_track_id": "trk_1", "txn_id": "T1"}) == "trk_1"
    digest = paypal_ipn_key({"payment_status": "Completed"})
    assert len(digest) == 32
    assert digest == paypal_ipn_key({"payment_status": "Completed"})


def test_signed_charge_event_is_accepted_once(client):
    body, headers = _signed(_charge_succeeded())

    first = client.post("/webhooks/stripe", content=body, headers=headers)
    second = client.post("/webhooks/stripe", content=body, headers=headers)

    assert first.status_code == 200
    data = first.json()["data"]
    assert data["status"] == "accepted"
    job = store.get_job(data["job_id"])
    assert job["job_type"] == "handle_charge_event"
    assert job["payload"]["event"]["charge_reference"] == "pur_1"
    assert second.json()["data"] == {"event_id": "evt_1", "status": "duplicate", "job_id": None, "duplicate": True}


def test_bad_signature_is_rejected_and_audited(client):
    body, headers = _signed(_charge_succeeded(), secret="whsec_wrong")

    resp = client.post("/webhooks/stripe", content=body, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    actions = [log["action"] for log in store.audit_logs]
    assert "webhook_rejected" in actions
    assert store.webhook_events == {}


def test_stale_signature_is_rejected(client):
    body, headers = _signed(_charge_succeeded(), timestamp=int(time.time()) - 3600)

    resp = client.post("/webhooks/stripe", content=body, headers=headers)

    assert resp.status_code == 400


def test_signed_body_must_be_json_object(client):
    ts = int(time.time())
    body = b"[1, 2]"
    headers = {"Stripe-Signature": f"t={ts},v1={_stripe_signature(STRIPE_SECRET, ts, body)}"}

    resp = client.post("/webhooks/stripe", content=body, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "WEBHOOK_EVENT_INVALID"


def test_payout_and_unhandled_stripe_events(client):
    payout = {"id": "evt_po", "type": "payout.paid", "data": {"object": {"id": "po_1"}}}
    body, headers = _signed(payout)
    accepted = client.post("/webhooks/stripe", content=body, headers=headers).json()["data"]
    assert store.get_job(accepted["job_id"])["job_type"] == "handle_stripe_payout_event"

    other = {"id": "evt_cus", "type": "customer.created", "data": {"object": {}}}
    body, headers = _signed(other)
    ignored = client.post("/webhooks/stripe", content=body, headers=headers).json()["data"]
    assert ignored == {"event_id": "evt_cus", "status": "ignored", "job_id": None, "duplicate": False}


def test_charge_webhook_completes_purchase_when_jobs_run(client):
    store.upsert_seller(seller_id="sel_1", email="seller@example.com")
    store.upsert_product(product_id="prd_1", seller_id="sel_1", name="Zine")
    store.upsert_purchase(
        purchase_id="pur_1",
        seller_id="sel_1",
        product_id="prd_1",
        email="buyer@example.com",
        price_cents=1000,
        payment_intent_id="pi_1",
    )
    body, headers = _signed(_charge_succeeded())
    client.post("/webhooks/stripe", content=body, headers=headers)

    store.drain_due_jobs()

    purchase = store.get_purchase("pur_1")
    assert purchase["state"] == "successful"
    assert purchase["charge_id"] == "ch_1"
    assert store.unpaid_balance_cents("sel_1") == 850


def test_paypal_masspay_ipn_is_queued(client):
    params = {"txn_type": "masspay", "ipn_track_id": "trk_1", "unique_id_1": "pay_1", "status_1": "Completed"}

    resp = client.post(
        "/webhooks/paypal/ipn",
        content=urlencode(params),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    again = client.post(
        "/webhooks/paypal/ipn",
        content=urlencode(params),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    data = resp.json()["data"]
    assert data["event_id"] == "trk_1"
    job = store.get_job(data["job_id"])
    assert job["job_type"] == "handle_paypal_ipn"
    assert job["payload"]["params"] == params
    assert again.json()["data"]["duplicate"] is True


def test_paypal_reversal_becomes_dispute_event():
    result = store.ingest_paypal_ipn(
        params={"txn_id": "T9", "parent_txn_id": "T1", "payment_status": "Reversed", "invoice": "pur_1"}
    )

    event = store.get_job(result["job_id"])["payload"]["event"]
    assert event["type"] == "dispute_formalized"
    assert event["processor"] == "paypal"
    assert event["charge_id"] == "T1"
    assert event["charge_reference"] == "pur_1"


def test_paypal_completed_payment_is_ignored():
    result = store.ingest_paypal_ipn(params={"txn_id": "T2", "payment_status": "Completed"})
    assert result["status"] == "ignored"
    assert store.webhook_events["paypal:T2"]["status"] == "ignored"


def test_stripe_event_requires_id_and_type():
    with pytest.raises(ApiError) as exc:
        store.ingest_stripe_event(event={"type": "charge.succeeded"})
    assert exc.value.code == "WEBHOOK_EVENT_INVALID"


def test_paypal_postback_runs_in_threadpool(client, monkeypatch):
    offloaded = []
    real_run_in_threadpool = webhook_routes.run_in_threadpool

    async def recording_run_in_threadpool(func, *args, **kwargs):
        offloaded.append(func.__name__)
        return await real_run_in_threadpool(func, *args, **kwargs)

    monkeypatch.setattr(webhook_routes, "run_in_threadpool", recording_run_in_threadpool)

    resp = client.post(
        "/webhooks/paypal/ipn",
        content="txn_id=T7&payment_status=Completed",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert resp.status_code == 200
    assert offloaded == ["verify_paypal_ipn"]
