"""
Upstream client: the single outbound call to the completion provider.

Speaks the Responses-style API: POST <endpoint> with
{model, input: [...messages], metadata: {...}}. The whole request runs
under one deadline; when it expires the in-flight request is cancelled.

Failures come back as an UpstreamResponse with ok=False rather than an
exception, so the proxy can map each kind to its own status code.
Nothing is retried: a duplicate POST would be billed twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from chatgate.contract import ChatHistoryItem, build_upstream_input

logger = logging.getLogger(__name__)


@dataclass
class UpstreamSettings:
    endpoint: str
    model: str
    api_key: str
    timeout_ms: int = 15_000
    source_tag: str = "chatgate-proxy"


@dataclass
class UpstreamResponse:
    """Outcome of one upstream call."""
    ok: bool
    status_code: int = 0
    data: Any = None
    latency_ms: float = 0.0
    error_kind: str = ""  # "", "timeout", "network" or "http"
    error: str = ""


class UpstreamClient:
    """Posts completion requests to the configured provider endpoint."""

    def __init__(self, settings: UpstreamSettings):
        self.settings = settings

    def build_body(self, history: list[ChatHistoryItem], text: str, user_id: str) -> dict:
        return {
            "model": self.settings.model,
            "input": build_upstream_input(history, text),
            "metadata": {
                "source": self.settings.source_tag,
                "userId": user_id,
            },
        }

    async def complete(
        self,
        history: list[ChatHistoryItem],
        text: str,
        user_id: str,
    ) -> UpstreamResponse:
        timeout_s = self.settings.timeout_ms / 1000
        body = self.build_body(history, text, user_id)
        t0 = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=timeout_s) as client:
                resp = await asyncio.wait_for(
                    client.post(
                        self.settings.endpoint,
                        json=body,
                        headers={
                            "Authorization": f"Bearer {self.settings.api_key}",
                            "Content-Type": "application/json",
                        },
                    ),
                    timeout=timeout_s,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Upstream '%s' timed out after %.0fms", self.settings.endpoint, latency)
            return UpstreamResponse(
                ok=False,
                latency_ms=latency,
                error_kind="timeout",
                error=f"Timeout after {self.settings.timeout_ms}ms",
            )
        except httpx.HTTPError as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Upstream '%s' network error: %s", self.settings.endpoint, e)
            return UpstreamResponse(
                ok=False,
                latency_ms=latency,
                error_kind="network",
                error=str(e),
            )

        latency = (time.monotonic() - t0) * 1000
        try:
            data = resp.json()
        except (ValueError, RecursionError):
            data = None

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning("Upstream '%s' returned HTTP %d after %.0fms",
                           self.settings.endpoint, resp.status_code, latency)
            return UpstreamResponse(
                ok=False,
                status_code=resp.status_code,
                data=data,
                latency_ms=latency,
                error_kind="http",
                error=f"HTTP {resp.status_code}",
            )

        logger.debug("Upstream '%s' answered HTTP %d in %.0fms",
                     self.settings.endpoint, resp.status_code, latency)
        return UpstreamResponse(
            ok=True,
            status_code=resp.status_code,
            data=data,
            latency_ms=latency,
        )
