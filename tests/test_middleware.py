from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from gatekey.modules.api.models import ApiKeyView, AuthOutcome
from gatekey.modules.auth.validator import AuthResult
from gatekey.modules.middleware import create_api_key_middleware

VALID_KEY = "sk-valid"


def make_service(outcome_by_key=None):
    """Service double whose validate() answers from a {secret: outcome} table."""
    outcome_by_key = outcome_by_key or {}
    view = ApiKeyView(id="key-1", name="svc", created_at=datetime.now(timezone.utc))

    async def validate(secret, source):
        outcome = outcome_by_key.get(secret, AuthOutcome.NOT_FOUND)
        if outcome is AuthOutcome.VALID:
            return AuthResult(outcome, view=view)
        return AuthResult(outcome, error="rejected")

    service = AsyncMock()
    service.validate.side_effect = validate
    return service


def build_client(service) -> TestClient:
    app = FastAPI()
    auth_middleware = create_api_key_middleware(service)

    @app.middleware("http")
    async def add_auth(request: Request, call_next):
        return await auth_middleware(request, call_next)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/protected")
    def protected(request: Request):
        return {"key_id": request.state.api_key.id}

    return TestClient(app)


@pytest.fixture
def service():
    return make_service(
        {
            VALID_KEY: AuthOutcome.VALID,
            "sk-busy": AuthOutcome.SERVICE_UNAVAILABLE,
            "sk-broken": AuthOutcome.INTERNAL_ERROR,
            "sk-off": AuthOutcome.DISABLED,
        }
    )


def test_health_skips_auth(service):
    client = build_client(service)

    assert client.get("/health").status_code == 200
    service.validate.assert_not_called()


def test_missing_key_rejected(service):
    response = build_client(service).get("/protected")

    assert response.status_code == 401
    assert "Authentication required" in response.json()["error"]


def test_valid_key_via_header(service):
    response = build_client(service).get("/protected", headers={"X-API-Key": VALID_KEY})

    assert response.status_code == 200
    assert response.json() == {"key_id": "key-1"}
    secret, source = service.validate.call_args[0]
    assert secret == VALID_KEY
    assert source == "testclient"


def test_valid_key_via_bearer(service):
    response = build_client(service).get(
        "/protected", headers={"Authorization": f"Bearer {VALID_KEY}"}
    )
    assert response.status_code == 200


@pytest.mark.parametrize(
    "api_key,status_code",
    [
        ("sk-unknown", 401),
        ("sk-off", 401),
        ("sk-busy", 503),
        ("sk-broken", 500),
    ],
)
def test_outcome_status_mapping(service, api_key, status_code):
    response = build_client(service).get("/protected", headers={"X-API-Key": api_key})

    assert response.status_code == status_code
    # Rejections never echo the presented key
    assert api_key not in response.text
