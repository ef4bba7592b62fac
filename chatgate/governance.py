"""
Governance: abuse control and audit shaping for the chatbot proxy.

Two independent pieces:
  - InMemoryRateLimiter: fixed-window request counter per caller key
  - audit helpers: mode resolution, text redaction, event building

No I/O here. Writing events somewhere is chatgate.audit's job.
"""

from __future__ import annotations

import math
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable

DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX_REQUESTS = 20
DEFAULT_MAX_KEYS = 10_000

AUDIT_MODES = ("none", "metadata", "redacted_input")
DEFAULT_AUDIT_LOG_MODE = "metadata"
AUDIT_EVENT_NAME = "chatbot_proxy"
MAX_AUDIT_INPUT_PREVIEW_LENGTH = 220

_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_LONG_NUMBER_RE = re.compile(r"\b\d{6,}\b")


def _now_ms() -> float:
    return time.time() * 1000


def clamp_positive_int(value, fallback: int) -> int:
    """Floor of a positive finite number, else the fallback."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number) or number <= 0:
        return fallback
    return max(1, math.floor(number))


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int

    def snapshot(self) -> dict:
        """Audit-friendly view of the decision."""
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "retryAfterSeconds": self.retry_after_seconds,
        }


@dataclass
class RateLimitState:
    window_started_at: float
    count: int


class InMemoryRateLimiter:
    """
    Fixed-window counter keyed by caller id.

    State lives in process memory and is lost on restart. It is an abuse
    guard, not a quota. Once more than `max_keys` callers are tracked, keys
    whose window has already expired are pruned, at most once per window.
    """

    def __init__(
        self,
        window_ms: float = DEFAULT_WINDOW_MS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        now: Callable[[], float] | None = None,
        max_keys: int = DEFAULT_MAX_KEYS,
    ):
        self.window_ms = clamp_positive_int(window_ms, DEFAULT_WINDOW_MS)
        self.max_requests = clamp_positive_int(max_requests, DEFAULT_MAX_REQUESTS)
        self.max_keys = clamp_positive_int(max_keys, DEFAULT_MAX_KEYS)
        self._now = now or _now_ms
        self._state: dict[str, RateLimitState] = {}
        self._lock = threading.Lock()
        self._last_prune_at: float | None = None

    def check(self, key: str) -> RateLimitDecision:
        """Count one request for `key` and say whether it may proceed."""
        with self._lock:
            timestamp = self._now()
            current = self._state.get(key)

            if current is None or timestamp - current.window_started_at >= self.window_ms:
                self._state[key] = RateLimitState(window_started_at=timestamp, count=1)
                if len(self._state) > self.max_keys and self._prune_due(timestamp):
                    self._evict_expired(timestamp)
                return RateLimitDecision(
                    allowed=True,
                    limit=self.max_requests,
                    remaining=max(0, self.max_requests - 1),
                    retry_after_seconds=0,
                )

            if current.count >= self.max_requests:
                elapsed = timestamp - current.window_started_at
                retry_after_ms = max(0, self.window_ms - elapsed)
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after_seconds=max(1, math.ceil(retry_after_ms / 1000)),
                )

            current.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=max(0, self.max_requests - current.count),
                retry_after_seconds=0,
            )

    def _prune_due(self, timestamp: float) -> bool:
        # At most one full scan per window.
        return self._last_prune_at is None or timestamp - self._last_prune_at >= self.window_ms

    def _evict_expired(self, timestamp: float):
        self._last_prune_at = timestamp
        stale = [
            key for key, state in self._state.items()
            if timestamp - state.window_started_at >= self.window_ms
        ]
        for key in stale:
            del self._state[key]

    @property
    def tracked_keys(self) -> int:
        return len(self._state)


def create_in_memory_rate_limiter(
    window_ms: float,
    max_requests: int,
    now: Callable[[], float] | None = None,
) -> InMemoryRateLimiter:
    return InMemoryRateLimiter(window_ms=window_ms, max_requests=max_requests, now=now)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@dataclass
class AuditContext:
    request_id: str
    user_id: str
    outcome: str
    history_count: int
    duration_ms: int
    error_code: str | None = None
    input: str | None = None
    rate_limit: RateLimitDecision | None = None


def resolve_audit_log_mode(value: str | None) -> str:
    """Allow-list parse of the operator setting; anything else is 'metadata'."""
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in AUDIT_MODES:
            return normalized
    return DEFAULT_AUDIT_LOG_MODE


def redact_audit_text(text: str) -> str:
    """Mask emails and long digit runs, then cap the length."""
    redacted = _EMAIL_RE.sub("[email]", text)
    redacted = _LONG_NUMBER_RE.sub("[number]", redacted)
    return redacted[:MAX_AUDIT_INPUT_PREVIEW_LENGTH]


def build_audit_event(mode: str, context: AuditContext) -> dict | None:
    """
    Structured audit event for one request, or None when auditing is off.

    Raw input never appears; `inputPreview` is only added in
    'redacted_input' mode and only after redaction.
    """
    if mode == "none":
        return None

    event = {
        "event": AUDIT_EVENT_NAME,
        "requestId": context.request_id,
        "userId": context.user_id,
        "outcome": context.outcome,
        "historyCount": context.history_count,
        "durationMs": context.duration_ms,
    }
    if context.error_code:
        event["errorCode"] = context.error_code
    if context.rate_limit is not None:
        event["rateLimit"] = context.rate_limit.snapshot()
    if mode == "redacted_input" and context.input:
        event["inputPreview"] = redact_audit_text(context.input)
    return event
