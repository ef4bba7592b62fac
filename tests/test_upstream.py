"""
Tests for the upstream client: body shape and failure classification.
Uses mocked httpx, no real network calls.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatgate.contract import ChatHistoryItem
from chatgate.upstream import UpstreamClient, UpstreamResponse, UpstreamSettings


def _client(timeout_ms=15_000) -> UpstreamClient:
    return UpstreamClient(UpstreamSettings(
        endpoint="http://upstream.test/v1/responses",
        model="test-model",
        api_key="sk-test",
        timeout_ms=timeout_ms,
    ))


def _patch_post(mock_client_cls, response=None, side_effect=None):
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


def _response(status_code=200, payload=None, bad_json=False):
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    if bad_json:
        mock_resp.json.side_effect = ValueError("no json")
    else:
        mock_resp.json.return_value = payload
    return mock_resp


def test_build_body():
    body = _client().build_body([ChatHistoryItem(role="user", text="a")], "b", "user-9")
    assert body["model"] == "test-model"
    assert body["metadata"] == {"source": "chatgate-proxy", "userId": "user-9"}
    assert [m["role"] for m in body["input"]] == ["system", "user", "user"]


@pytest.mark.asyncio
async def test_complete_success():
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        mock_client = _patch_post(mock_client_cls, _response(payload={"output_text": "hi"}))
        resp = await _client().complete([], "hello", "user-1")

    assert resp.ok
    assert resp.status_code == 200
    assert resp.data == {"output_text": "hi"}
    assert resp.error_kind == ""
    headers = mock_client.post.call_args.kwargs["headers"]
    assert headers["Authorization"] == "Bearer sk-test"
    assert mock_client_cls.call_args.kwargs["timeout"] == 15.0


@pytest.mark.asyncio
async def test_complete_http_error_keeps_body():
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _patch_post(mock_client_cls, _response(401, {"error": {"message": "bad key"}}))
        resp = await _client().complete([], "hello", "user-1")

    assert not resp.ok
    assert resp.error_kind == "http"
    assert resp.status_code == 401
    assert resp.data == {"error": {"message": "bad key"}}


@pytest.mark.asyncio
async def test_complete_non_json_body():
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _patch_post(mock_client_cls, _response(200, bad_json=True))
        resp = await _client().complete([], "hello", "user-1")

    assert resp.ok
    assert resp.data is None


@pytest.mark.asyncio
async def test_complete_httpx_timeout():
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _patch_post(mock_client_cls, side_effect=httpx.ConnectTimeout("timeout"))
        resp = await _client().complete([], "hello", "user-1")

    assert resp.error_kind == "timeout"
    assert not resp.ok


@pytest.mark.asyncio
async def test_complete_deadline_expires():
    async def never_returns(*args, **kwargs):
        await asyncio.sleep(5)

    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _patch_post(mock_client_cls, side_effect=never_returns)
        resp = await _client(timeout_ms=30).complete([], "hello", "user-1")

    assert resp.error_kind == "timeout"
    assert resp.latency_ms < 5000


@pytest.mark.asyncio
async def test_complete_network_error():
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _patch_post(mock_client_cls, side_effect=httpx.ConnectError("refused"))
        resp = await _client().complete([], "hello", "user-1")

    assert resp.error_kind == "network"
    assert "refused" in resp.error


def test_upstream_response_defaults():
    resp = UpstreamResponse(ok=False)
    assert resp.status_code == 0
    assert resp.error_kind == ""


@pytest.mark.asyncio
async def test_complete_logs_latency(caplog):
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _patch_post(mock_client_cls, _response(payload={"output_text": "hi"}))
        with caplog.at_level(logging.DEBUG, logger="chatgate.upstream"):
            resp = await _client().complete([], "hello", "user-1")

    assert resp.latency_ms >= 0
    assert "answered HTTP 200 in" in caplog.text


@pytest.mark.asyncio
async def test_complete_deeply_nested_body_decodes_to_none():
    mock_resp = _response(502)
    mock_resp.json.side_effect = RecursionError("maximum recursion depth exceeded")
    with patch("chatgate.upstream.httpx.AsyncClient") as mock_client_cls:
        _patch_post(mock_client_cls, mock_resp)
        resp = await _client().complete([], "hello", "user-1")

    assert resp.error_kind == "http"
    assert resp.data is None
