import httpx
import pytest
from fastapi.testclient import TestClient

from hydra.config import Config
from hydra.main import app as main_app
from hydra.main import configure_app
from hydra.vault import CredentialVault


@pytest.fixture
def env():
    return {"GROQ_API_KEYS": "gsk-test-key-1111,gsk-test-key-2222"}


@pytest.fixture
def app(env):
    vault = CredentialVault(environ=env)
    configure_app(main_app, Config(), httpx.AsyncClient(), vault=vault)

    yield main_app

    for name in ("config", "http_client", "vault", "gateway", "race", "sessions"):
        if hasattr(main_app.state, name):
            delattr(main_app.state, name)


def test_get_all_status(app):
    client = TestClient(app)
    response = client.get("/admin/status")
    assert response.status_code == 200
    providers = {item["id"]: item for item in response.json()["providers"]}
    assert providers["GROQ"] == {
        "id": "GROQ",
        "status": "HEALTHY",
        "keyCount": 2,
        "cooldownRemaining": 0,
    }
    assert providers["GEMINI"]["keyCount"] == 0
    assert providers["GEMINI"]["status"] == "COOLDOWN"


def test_get_provider_status(app):
    client = TestClient(app)
    response = client.get("/admin/status/groq")
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == "GROQ"
    assert len(data["keys"]) == 2
    key = data["keys"][0]
    assert key["id"] == "GROQ_0"
    assert key["key_prefix"] == "gsk-test...111"
    assert key["status"] == "ACTIVE"
    assert "gsk-test-key-1111" not in response.text


def test_get_provider_status_reflects_cooldown(app):
    app.state.vault.report_failure("GROQ", "gsk-test-key-1111", RuntimeError("429 quota"))

    client = TestClient(app)
    keys = client.get("/admin/status/GROQ").json()["keys"]

    assert keys[0]["status"] == "COOLDOWN"
    assert keys[0]["fails"] == 1
    assert keys[0]["cooldown_seconds"] > 0
    assert keys[1]["status"] == "ACTIVE"


def test_get_provider_status_not_found(app):
    client = TestClient(app)
    response = client.get("/admin/status/nonexistent")
    assert response.status_code == 404
    data = response.json()
    assert "detail" in data
    assert "nonexistent" in data["detail"]


def test_refresh_picks_up_new_keys(app, env):
    env["OPENAI_API_KEY"] = "sk-test-key-9999"

    client = TestClient(app)
    response = client.post("/admin/refresh")

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "Key pools refreshed"
    providers = {item["id"]: item for item in data["providers"]}
    assert providers["OPENAI"]["status"] == "HEALTHY"
    assert providers["OPENAI"]["keyCount"] == 1
