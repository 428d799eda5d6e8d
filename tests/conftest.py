import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing.main import create_app, queue_backend
from billing.store import store

JWT_TEST_SECRET = "jwt_test_secret"
STRIPE_TEST_WEBHOOK_SECRET = "whsec_test_secret"


def issue_token(
    *,
    secret: str = JWT_TEST_SECRET,
    subject: str = "ops_user_1",
    ttl: timedelta = timedelta(minutes=30),
    issuer: str = "test-issuer",
    audience: str = "test-audience",
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": "operator",
        "exp": int((now + ttl).timestamp()),
        "iat": int(now.timestamp()),
        "iss": issuer,
        "aud": audience,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                headers["Authorization"] = f"Bearer {issue_token(secret=self._jwt_secret)}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BILLING_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_TEST_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_TEST_WEBHOOK_SECRET)
    monkeypatch.setenv("PAYPAL_IPN_VERIFY", "false")
    store.reset()
    if hasattr(queue_backend, "reset"):
        queue_backend.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_TEST_SECRET)
