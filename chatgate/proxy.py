"""
Proxy: the core of chatgate.
Brokers chat completions between an untrusted mobile client and the
upstream language-model provider. The provider API key never leaves
this process.

One request walks a fixed pipeline, with an error exit at every step:

    received -> authenticated -> rate checked -> upstream called -> responded

  1. method gate      OPTIONS = CORS preflight, anything but POST = 405
  2. authenticate     bearer token -> identity provider -> caller id (401)
  3. parse body       allow-list parse of {input, history?} (400)
  4. rate check       fixed window per caller (429)
  5. provider config  missing API key fails loudly (500)
  6. upstream call    timeout 504, network 502, non-2xx 502, empty 502
  7. respond          sanitized {reply, ui?} wrapped in {success, data}

Every exit after step 3 emits an audit event carrying the error code and
the rate-limit snapshot. Unexpected exceptions become a bare 500.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import uuid4

from chatgate.audit import AuditLog
from chatgate.config import ProxySettings
from chatgate.contract import (
    ChatCompleteRequest,
    extract_output_text,
    parse_request_payload,
    parse_structured_reply,
    to_upstream_error_message,
)
from chatgate.governance import (
    AuditContext,
    InMemoryRateLimiter,
    RateLimitDecision,
    build_audit_event,
)
from chatgate.identity import IdentityProvider
from chatgate.upstream import UpstreamClient, UpstreamSettings

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


class ProxyError(Exception):
    """A typed failure that maps straight onto an HTTP error response."""

    def __init__(self, status: int, code: str, message: str, headers: dict | None = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.headers = headers or {}


@dataclass
class ProxyResult:
    status: int
    payload: Any
    headers: dict = field(default_factory=dict)

    @classmethod
    def from_error(cls, err: ProxyError) -> "ProxyResult":
        return cls(
            status=err.status,
            payload={"message": err.message, "code": err.code},
            headers={**CORS_HEADERS, **err.headers},
        )


@dataclass
class _RequestTrace:
    """Per-request audit state, filled in as the pipeline advances."""
    request_id: str
    user_id: str = ""
    request: ChatCompleteRequest | None = None
    started: float = 0.0
    rate_limit: RateLimitDecision | None = None

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000) if self.started else 0


def _header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup that works on plain dicts too."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


def parse_bearer_token(headers: Mapping[str, str]) -> str | None:
    authorization = _header(headers, "Authorization")
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


class ChatProxy:
    """Request broker for POST /chatbot-complete."""

    def __init__(
        self,
        settings: ProxySettings,
        identity: IdentityProvider | None,
        rate_limiter: InMemoryRateLimiter | None = None,
        audit_log: AuditLog | None = None,
    ):
        self.settings = settings
        self.identity = identity
        self.rate_limiter = rate_limiter or InMemoryRateLimiter(
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.rate_limit_max_requests,
        )
        self.audit_log = audit_log or AuditLog(settings.audit_path)

    async def handle(self, method: str, headers: Mapping[str, str], body: bytes) -> ProxyResult:
        method = method.upper()
        if method == "OPTIONS":
            return ProxyResult(status=200, payload="ok", headers=dict(CORS_HEADERS))
        if method != "POST":
            return ProxyResult.from_error(ProxyError(405, "METHOD_NOT_ALLOWED", "Method not allowed."))

        trace = _RequestTrace(request_id=uuid4().hex)
        try:
            data = await self._complete(trace, headers, body)
            return ProxyResult(
                status=200,
                payload={"success": True, "data": data},
                headers=dict(CORS_HEADERS),
            )
        except ProxyError as err:
            return ProxyResult.from_error(err)
        except Exception:
            logger.exception("Unexpected chatbot proxy error (request %s)", trace.request_id)
            if trace.user_id and trace.request is not None:
                self._audit(trace, "internal_error", "INTERNAL_ERROR")
            return ProxyResult.from_error(
                ProxyError(500, "INTERNAL_ERROR", "Unexpected chatbot proxy error.")
            )

    async def _complete(self, trace: _RequestTrace, headers: Mapping[str, str], body: bytes) -> dict:
        token = parse_bearer_token(headers)
        if not token:
            raise ProxyError(401, "UNAUTHORIZED", "Missing bearer token.")

        if self.identity is None:
            raise ProxyError(500, "CONFIG_ERROR", "Identity provider is not configured.")

        identity = await self.identity.resolve(token)
        if identity is None:
            raise ProxyError(401, "UNAUTHORIZED", "Invalid or expired token.")
        trace.user_id = identity.id

        try:
            raw = json.loads(body) if body else None
        except (ValueError, UnicodeDecodeError, RecursionError):
            raw = None
        request = parse_request_payload(raw)
        if request is None:
            raise ProxyError(400, "INVALID_REQUEST", "Invalid request body. Expected { input, history? }.")
        trace.request = request
        trace.started = time.monotonic()

        decision = self.rate_limiter.check(identity.id)
        trace.rate_limit = decision
        if not decision.allowed:
            self._audit(trace, "rate_limited", "RATE_LIMITED")
            raise ProxyError(
                429,
                "RATE_LIMITED",
                f"Too many chatbot requests. Try again in {decision.retry_after_seconds} seconds.",
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )

        if not self.settings.upstream_api_key:
            self._audit(trace, "config_error", "CONFIG_ERROR")
            raise ProxyError(500, "CONFIG_ERROR", "OPENAI_API_KEY is not configured.")

        upstream = self._make_upstream()
        resp = await upstream.complete(request.history, request.input, identity.id)

        if resp.error_kind == "timeout":
            self._audit(trace, "upstream_timeout", "UPSTREAM_TIMEOUT")
            raise ProxyError(504, "UPSTREAM_TIMEOUT", "Chat provider timed out.")
        if resp.error_kind == "network":
            self._audit(trace, "upstream_network_error", "UPSTREAM_NETWORK_ERROR")
            raise ProxyError(502, "UPSTREAM_NETWORK_ERROR", "Chat provider network error.")
        if not resp.ok:
            self._audit(trace, "upstream_error", "UPSTREAM_ERROR")
            raise ProxyError(502, "UPSTREAM_ERROR", to_upstream_error_message(resp.data))

        output_text = extract_output_text(resp.data)
        if output_text is None:
            self._audit(trace, "upstream_empty_response", "UPSTREAM_EMPTY_RESPONSE")
            raise ProxyError(502, "UPSTREAM_EMPTY_RESPONSE", "Chat provider returned an empty response.")

        structured = parse_structured_reply(output_text)
        self._audit(trace, "success")
        return structured.to_dict()

    def _make_upstream(self) -> UpstreamClient:
        return UpstreamClient(UpstreamSettings(
            endpoint=self.settings.upstream_endpoint,
            model=self.settings.upstream_model,
            api_key=self.settings.upstream_api_key or "",
            timeout_ms=self.settings.timeout_ms,
            source_tag=self.settings.source_tag,
        ))

    def _audit(self, trace: _RequestTrace, outcome: str, error_code: str | None = None):
        request = trace.request
        event = build_audit_event(self.settings.audit_mode, AuditContext(
            request_id=trace.request_id,
            user_id=trace.user_id,
            outcome=outcome,
            history_count=len(request.history) if request else 0,
            duration_ms=trace.duration_ms,
            error_code=error_code,
            input=request.input if request else None,
            rate_limit=trace.rate_limit,
        ))
        self.audit_log.write(event)
