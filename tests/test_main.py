"""
End-to-end tests for the FastAPI surface.
Covers:
  - /chatbot-complete success envelope
  - OPTIONS preflight and 405 for other methods
  - 401 / 429 / 504 reaching the wire with CORS headers
  - /health reports configuration without secrets
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from chatgate import config as cfg_mod
from chatgate.main import app


def _cfg(tmp_path, **rate):
    return {
        "upstream": {
            "endpoint": "http://upstream.test/v1/responses",
            "model": "test-model",
            "api_key": "sk-test",
            "timeout_ms": 2000,
        },
        "identity": {"provider": "static", "tokens": {"good-token": "user-1"}},
        "rate_limit": {"window_ms": 60000, "max_requests": rate.get("max_requests", 20)},
        "audit": {"mode": "metadata", "path": str(tmp_path / "audit.jsonl")},
        "logging": {"level": "WARNING"},
    }


@pytest.fixture
def client(tmp_path):
    with patch.object(cfg_mod, "_config", _cfg(tmp_path)):
        with TestClient(app) as c:
            yield c


@pytest.fixture
def strict_client(tmp_path):
    with patch.object(cfg_mod, "_config", _cfg(tmp_path, max_requests=2)):
        with TestClient(app) as c:
            yield c


AUTH = {"Authorization": "Bearer good-token"}


def _mock_upstream(mock_client_cls, payload=None, status_code=200, side_effect=None):
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    mock_resp.json.return_value = payload

    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = mock_resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


def test_chatbot_complete_success(client):
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _mock_upstream(mock_client_cls, payload={"output_text": '{"reply":"hi"}'})
        r = client.post("/chatbot-complete", json={"input": "hello"}, headers=AUTH)

    assert r.status_code == 200
    assert r.json() == {"success": True, "data": {"reply": "hi"}}
    assert r.headers["access-control-allow-origin"] == "*"


def test_chatbot_complete_writes_audit_file(client, tmp_path):
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _mock_upstream(mock_client_cls, payload={"output_text": "ok"})
        client.post("/chatbot-complete", json={"input": "hello"}, headers=AUTH)

    from chatgate.audit import read_events
    events = read_events(str(tmp_path / "audit.jsonl"))
    assert events[-1]["outcome"] == "success"
    assert events[-1]["userId"] == "user-1"


def test_preflight(client):
    r = client.options("/chatbot-complete")
    assert r.status_code == 200
    assert r.text == "ok"
    assert r.headers["access-control-allow-methods"] == "POST, OPTIONS"


def test_get_is_method_not_allowed(client):
    r = client.get("/chatbot-complete", headers=AUTH)
    assert r.status_code == 405
    assert r.json()["code"] == "METHOD_NOT_ALLOWED"


def test_missing_auth_is_401(client):
    r = client.post("/chatbot-complete", json={"input": "hello"})
    assert r.status_code == 401
    assert r.json()["code"] == "UNAUTHORIZED"
    assert r.headers["access-control-allow-origin"] == "*"


def test_invalid_body_is_400(client):
    r = client.post("/chatbot-complete", content=b"{nope", headers=AUTH)
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_REQUEST"


def test_upstream_timeout_is_504(client):
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _mock_upstream(mock_client_cls, side_effect=httpx.ReadTimeout("slow"))
        r = client.post("/chatbot-complete", json={"input": "hello"}, headers=AUTH)

    assert r.status_code == 504
    assert r.json() == {"message": "Chat provider timed out.", "code": "UPSTREAM_TIMEOUT"}


def test_rate_limit_reaches_the_wire(strict_client):
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _mock_upstream(mock_client_cls, payload={"output_text": "ok"})
        for _ in range(2):
            assert strict_client.post(
                "/chatbot-complete", json={"input": "hello"}, headers=AUTH
            ).status_code == 200
        r = strict_client.post("/chatbot-complete", json={"input": "hello"}, headers=AUTH)

    assert r.status_code == 429
    assert r.json()["code"] == "RATE_LIMITED"
    assert "retry-after" in r.headers


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {
        "status": "ok",
        "upstream_configured": True,
        "identity_configured": True,
        "audit_mode": "metadata",
    }
    assert "sk-test" not in r.text
