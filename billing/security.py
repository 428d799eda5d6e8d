from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import jwt

from billing.errors import ApiError


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "token",
        "secret",
        "password",
        "api_key",
        "apikey",
        "access_token",
        "stripe-signature",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk_", "whsec_", "bearer ", "token")):
            return "***REDACTED***"
    return value


@dataclass
class AuthContext:
    subject: str
    role: str
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    role_claim: str
    approval_required_actions: set[str]
    dual_approval_required_actions: set[str]
    log_redaction_enabled: bool
    trace_id_strict_required: bool

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        issuer = os.environ.get("JWT_ISSUER", "").strip()
        audience = os.environ.get("JWT_AUDIENCE", "").strip()
        shared_secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
        enabled = bool(issuer or audience or shared_secret)
        return cls(
            enabled=enabled,
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(os.environ.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            role_claim=os.environ.get("JWT_ROLE_CLAIM", "role").strip() or "role",
            approval_required_actions=set(
                _split_csv(os.environ.get("SECURITY_APPROVAL_REQUIRED_ACTIONS", "dlq_discard,payout_create"))
            ),
            dual_approval_required_actions=set(
                _split_csv(os.environ.get("SECURITY_DUAL_APPROVAL_REQUIRED_ACTIONS", "dlq_discard"))
            ),
            log_redaction_enabled=_env_bool("SECURITY_LOG_REDACTION_ENABLED", True),
            trace_id_strict_required=_env_bool("TRACE_ID_STRICT_REQUIRED", False),
        )


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")

    options = {"require": list(cfg.required_claims), "verify_aud": bool(cfg.audience)}
    try:
        claims = jwt.decode(
            token,
            cfg.shared_secret,
            algorithms=["HS256"],
            audience=cfg.audience or None,
            issuer=cfg.issuer or None,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("token expired") from None
    except jwt.ImmatureSignatureError:
        raise _unauthorized("token not yet valid") from None
    except jwt.InvalidIssuerError:
        raise _unauthorized("jwt issuer mismatch") from None
    except jwt.InvalidAudienceError:
        raise _unauthorized("jwt audience mismatch") from None
    except jwt.MissingRequiredClaimError as exc:
        raise _unauthorized(f"missing required claim: {exc.claim}") from None
    except jwt.InvalidSignatureError:
        raise _unauthorized("invalid token signature") from None
    except jwt.InvalidTokenError:
        raise _unauthorized("invalid token") from None

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise _unauthorized("missing subject claim")
    return AuthContext(subject=subject, role=str(claims.get(cfg.role_claim) or "operator"), claims=claims)


def issue_operator_token(
    *,
    subject: str,
    secret: str,
    issuer: str = "",
    audience: str = "",
    role: str = "operator",
    ttl_s: int = 3600,
    now_ts: int,
) -> str:
    payload: dict[str, Any] = {"sub": subject, "role": role, "iat": now_ts, "exp": now_ts + max(1, ttl_s)}
    if issuer:
        payload["iss"] = issuer
    if audience:
        payload["aud"] = audience
    return jwt.encode(payload, secret, algorithm="HS256")
