from __future__ import annotations

import time

import pytest

from billing.errors import ApiError
from billing.locks import InMemoryLockBackend, create_lock_backend_from_env, hold


def test_lock_is_exclusive_until_released():
    backend = InMemoryLockBackend()

    token = backend.acquire("payout:sel_1", ttl_ms=60_000)

    assert token is not None
    assert backend.acquire("payout:sel_1", ttl_ms=60_000) is None
    assert backend.release("payout:sel_1", "someone-else") is False
    assert backend.release("payout:sel_1", token) is True
    assert backend.acquire("payout:sel_1", ttl_ms=60_000) is not None


def test_lock_expires_after_ttl():
    backend = InMemoryLockBackend()
    backend.acquire("k", ttl_ms=1)
    time.sleep(0.01)
    assert backend.acquire("k", ttl_ms=1_000) is not None


def test_mark_once_dedupes_until_reset():
    backend = InMemoryLockBackend()

    assert backend.mark_once("stripe:evt_1", ttl_s=60) is True
    assert backend.mark_once("stripe:evt_1", ttl_s=60) is False
    backend.reset()
    assert backend.mark_once("stripe:evt_1", ttl_s=60) is True


def test_hold_raises_retryable_error_when_contended():
    backend = InMemoryLockBackend()

    with hold(backend, "purchase:pur_1"):
        with pytest.raises(ApiError) as exc:
            with hold(backend, "purchase:pur_1"):
                pass

    assert exc.value.code == "LOCK_NOT_ACQUIRED"
    assert exc.value.retryable is True
    assert exc.value.http_status == 409
    with hold(backend, "purchase:pur_1") as token:
        assert token


def test_lock_backend_factory():
    assert isinstance(create_lock_backend_from_env({}), InMemoryLockBackend)
    with pytest.raises(RuntimeError, match="BILLING_LOCK_BACKEND=redis"):
        create_lock_backend_from_env({"BILLING_REQUIRE_TRUESTACK": "true"})
    with pytest.raises(ValueError, match="REDIS_DSN"):
        create_lock_backend_from_env({"BILLING_LOCK_BACKEND": "redis"})
    with pytest.raises(RuntimeError, match="unsupported lock backend"):
        create_lock_backend_from_env({"BILLING_LOCK_BACKEND": "zookeeper"})
