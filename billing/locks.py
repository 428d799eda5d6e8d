from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from billing.errors import ApiError
from billing.queue_backend import _import_redis
from billing.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class InMemoryLockBackend:
    """Expiring mutex and dedup marks for a single process."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._held: dict[str, tuple[str, float]] = {}
        self._marks: dict[str, float] = {}

    def acquire(self, key: str, *, ttl_ms: int) -> str | None:
        with self._lock:
            now = time.monotonic()
            current = self._held.get(key)
            if current is not None and current[1] > now:
                return None
            token = uuid.uuid4().hex
            self._held[key] = (token, now + max(1, ttl_ms) / 1000.0)
            return token

    def release(self, key: str, token: str) -> bool:
        with self._lock:
            current = self._held.get(key)
            if current is None or current[0] != token:
                return False
            self._held.pop(key, None)
            return True

    def mark_once(self, key: str, *, ttl_s: int) -> bool:
        with self._lock:
            now = time.monotonic()
            expires_at = self._marks.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._marks[key] = now + max(1, ttl_s)
            return True

    def reset(self) -> None:
        with self._lock:
            self._held.clear()
            self._marks.clear()


class RedisLockBackend:
    def __init__(self, *, dsn: str, namespace: str = "billing") -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis lock backend")
        self._namespace = namespace.strip() or "billing"
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._release = self._client.register_script(_RELEASE_SCRIPT)

    def _lock_key(self, key: str) -> str:
        return f"{self._namespace}:lock:{key}"

    def _mark_key(self, key: str) -> str:
        return f"{self._namespace}:seen:{key}"

    def acquire(self, key: str, *, ttl_ms: int) -> str | None:
        token = uuid.uuid4().hex
        ok = self._client.set(self._lock_key(key), token, nx=True, px=max(1, int(ttl_ms)))
        return token if ok else None

    def release(self, key: str, token: str) -> bool:
        return bool(self._release(keys=[self._lock_key(key)], args=[token]))

    def mark_once(self, key: str, *, ttl_s: int) -> bool:
        return bool(self._client.set(self._mark_key(key), "1", nx=True, ex=max(1, int(ttl_s))))

    def reset(self) -> None:
        keys = list(self._client.scan_iter(match=f"{self._namespace}:lock:*"))
        keys.extend(self._client.scan_iter(match=f"{self._namespace}:seen:*"))
        if keys:
            self._client.delete(*keys)


LockBackend = InMemoryLockBackend | RedisLockBackend


@contextmanager
def hold(backend: Any, key: str, *, ttl_ms: int = 60_000) -> Iterator[str]:
    """Hold ``key`` for the duration of the block.

    Raises a retryable ``LOCK_NOT_ACQUIRED`` so a job that loses the race is
    rescheduled rather than failed.
    """
    token = backend.acquire(key, ttl_ms=ttl_ms)
    if token is None:
        raise ApiError(
            code="LOCK_NOT_ACQUIRED",
            message=f"lock is held: {key}",
            error_class="transient",
            retryable=True,
            http_status=409,
        )
    try:
        yield token
    finally:
        if not backend.release(key, token):
            logger.warning("lock_release_skipped key=%s reason=expired_or_stolen", key)


def create_lock_backend_from_env(environ: Mapping[str, str] | None = None) -> LockBackend:
    env = os.environ if environ is None else environ
    backend = env.get("BILLING_LOCK_BACKEND", "memory").strip().lower()
    if backend == "memory":
        if true_stack_required(env):
            raise RuntimeError("BILLING_REQUIRE_TRUESTACK=true requires BILLING_LOCK_BACKEND=redis")
        return InMemoryLockBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when BILLING_LOCK_BACKEND=redis")
        return RedisLockBackend(dsn=dsn, namespace=env.get("BILLING_QUEUE_KEY_PREFIX", "billing"))
    raise RuntimeError(f"unsupported lock backend: {backend}")
