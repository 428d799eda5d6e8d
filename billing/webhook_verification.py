"""Webhook authenticity checks.

Stripe events are checked against the ``Stripe-Signature`` header with the
stripe library's webhook signature verifier. PayPal IPN messages are
verified by posting them back with ``cmd=_notify-validate``.
Missing secrets fail closed.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl

import requests
import stripe

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_TOLERANCE_S = 300


@dataclass(frozen=True)
class WebhookVerificationConfig:
    stripe_secret: str
    stripe_tolerance_s: int
    paypal_verify_url: str
    paypal_verification_enabled: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WebhookVerificationConfig:
        env = os.environ if environ is None else environ
        try:
            tolerance = int(env.get("STRIPE_WEBHOOK_TOLERANCE_S", str(DEFAULT_STRIPE_TOLERANCE_S)))
        except ValueError:
            tolerance = DEFAULT_STRIPE_TOLERANCE_S
        verify_url = env.get("PAYPAL_IPN_VERIFY_URL", "https://ipnpb.paypal.com/cgi-bin/webscr").strip()
        return cls(
            stripe_secret=env.get("STRIPE_WEBHOOK_SECRET", "").strip(),
            stripe_tolerance_s=max(1, tolerance),
            paypal_verify_url=verify_url,
            paypal_verification_enabled=env.get("PAYPAL_IPN_VERIFY", "true").strip().lower()
            in {"1", "true", "yes", "on"},
        )


def verify_stripe(
    body: bytes,
    signature_header: str | None,
    *,
    config: WebhookVerificationConfig,
) -> bool:
    if not config.stripe_secret:
        logger.warning("stripe_webhook_rejected reason=secret_not_configured")
        return False
    if not signature_header:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"),
            signature_header,
            config.stripe_secret,
            tolerance=config.stripe_tolerance_s,
        )
    except UnicodeDecodeError:
        logger.warning("stripe_webhook_rejected reason=body_not_utf8")
        return False
    except stripe.SignatureVerificationError as exc:
        logger.warning("stripe_webhook_rejected reason=%s", exc)
        return False
    return True


def parse_ipn_body(body: bytes) -> dict[str, str]:
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


def verify_paypal_ipn(body: bytes, *, config: WebhookVerificationConfig) -> bool:
    if not config.paypal_verification_enabled:
        return True
    if not config.paypal_verify_url:
        logger.warning("paypal_ipn_rejected reason=verify_url_not_configured")
        return False
    try:
        response = requests.post(
            config.paypal_verify_url,
            data=b"cmd=_notify-validate&" + body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=10,
        )
    except requests.exceptions.RequestException as exc:
        logger.warning("paypal_ipn_verification_failed error=%s", exc)
        return False
    return response.status_code == 200 and response.text.strip() == "VERIFIED"
