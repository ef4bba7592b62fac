"""
Tests for rate limiting and audit shaping.
Run with: pytest tests/test_governance.py
"""

from unittest.mock import patch

import pytest

from chatgate.governance import (
    AuditContext,
    InMemoryRateLimiter,
    RateLimitDecision,
    build_audit_event,
    create_in_memory_rate_limiter,
    redact_audit_text,
    resolve_audit_log_mode,
)


class FakeClock:
    def __init__(self, start: float = 0):
        self.now = start

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Audit mode
# ---------------------------------------------------------------------------

def test_resolve_audit_mode_with_safe_fallback():
    assert resolve_audit_log_mode("none") == "none"
    assert resolve_audit_log_mode("metadata") == "metadata"
    assert resolve_audit_log_mode("redacted_input") == "redacted_input"
    assert resolve_audit_log_mode("  Redacted_Input ") == "redacted_input"
    assert resolve_audit_log_mode("unknown") == "metadata"
    assert resolve_audit_log_mode("") == "metadata"
    assert resolve_audit_log_mode(None) == "metadata"


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

def test_redacts_emails_and_long_numbers():
    redacted = redact_audit_text("contact alice@example.com re order 1234567")
    assert "[email]" in redacted
    assert "[number]" in redacted
    assert "alice@example.com" not in redacted
    assert "1234567" not in redacted


def test_short_numbers_survive_redaction():
    assert redact_audit_text("call me at 12345") == "call me at 12345"


def test_redaction_truncates_preview():
    assert len(redact_audit_text("a" * 500)) == 220


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

def test_rate_limiter_window_and_reset():
    clock = FakeClock()
    limiter = create_in_memory_rate_limiter(window_ms=10_000, max_requests=2, now=clock)

    first = limiter.check("user-1")
    second = limiter.check("user-1")
    third = limiter.check("user-1")

    assert first.allowed and first.remaining == 1
    assert second.allowed and second.remaining == 0
    assert not third.allowed
    assert third.retry_after_seconds > 0

    clock.now = 11_000
    after_reset = limiter.check("user-1")
    assert after_reset.allowed
    assert after_reset.remaining == 1


def test_rate_limiter_retry_after_rounds_up():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(window_ms=10_000, max_requests=1, now=clock)
    limiter.check("u")

    clock.now = 8_500
    decision = limiter.check("u")
    assert decision == RateLimitDecision(allowed=False, limit=1, remaining=0, retry_after_seconds=2)

    clock.now = 9_999
    assert limiter.check("u").retry_after_seconds == 1


def test_rate_limiter_window_boundary_resets():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(window_ms=1_000, max_requests=1, now=clock)
    assert limiter.check("u").allowed
    clock.now = 999
    assert not limiter.check("u").allowed
    clock.now = 1_000
    assert limiter.check("u").allowed


def test_rate_limiter_keys_are_independent():
    limiter = InMemoryRateLimiter(window_ms=10_000, max_requests=1, now=FakeClock())
    assert limiter.check("a").allowed
    assert not limiter.check("a").allowed
    assert limiter.check("b").allowed


@pytest.mark.parametrize("window_ms,max_requests", [
    (0, 0),
    (-5, -1),
    (float("nan"), float("inf")),
    (None, "abc"),
])
def test_rate_limiter_falls_back_to_defaults(window_ms, max_requests):
    limiter = InMemoryRateLimiter(window_ms=window_ms, max_requests=max_requests)
    assert limiter.window_ms == 60_000
    assert limiter.max_requests == 20


def test_rate_limiter_floors_fractional_config():
    limiter = InMemoryRateLimiter(window_ms=1500.7, max_requests=3.9)
    assert limiter.window_ms == 1500
    assert limiter.max_requests == 3


def test_rate_limiter_prunes_expired_keys_over_capacity():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(window_ms=1_000, max_requests=5, now=clock, max_keys=2)
    limiter.check("a")
    limiter.check("b")
    assert limiter.tracked_keys == 2

    clock.now = 5_000
    limiter.check("c")
    assert limiter.tracked_keys == 1


def test_rate_limiter_never_prunes_live_windows():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(window_ms=10_000, max_requests=1, now=clock, max_keys=1)
    limiter.check("a")
    limiter.check("b")
    assert limiter.tracked_keys == 2
    assert not limiter.check("a").allowed


# ---------------------------------------------------------------------------
# Audit events
# ---------------------------------------------------------------------------

@pytest.fixture
def ctx():
    return AuditContext(
        request_id="req-1",
        user_id="user-1",
        outcome="success",
        history_count=2,
        duration_ms=45,
        input="Contact me at admin@example.com",
    )


def test_audit_none_mode_builds_nothing(ctx):
    assert build_audit_event("none", ctx) is None


def test_audit_metadata_mode_has_no_input(ctx):
    event = build_audit_event("metadata", ctx)
    assert event == {
        "event": "chatbot_proxy",
        "requestId": "req-1",
        "userId": "user-1",
        "outcome": "success",
        "historyCount": 2,
        "durationMs": 45,
    }
    assert "inputPreview" not in event


def test_audit_redacted_mode_previews_redacted_input(ctx):
    event = build_audit_event("redacted_input", ctx)
    assert "[email]" in event["inputPreview"]
    assert "admin@example.com" not in event["inputPreview"]


def test_audit_carries_error_code_and_rate_limit(ctx):
    ctx.outcome = "rate_limited"
    ctx.error_code = "RATE_LIMITED"
    ctx.rate_limit = RateLimitDecision(allowed=False, limit=20, remaining=0, retry_after_seconds=12)

    event = build_audit_event("metadata", ctx)
    assert event["errorCode"] == "RATE_LIMITED"
    assert event["rateLimit"] == {"limit": 20, "remaining": 0, "retryAfterSeconds": 12}


def test_rate_limiter_prunes_at_most_once_per_window():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(window_ms=1_000, max_requests=5, now=clock, max_keys=1)
    limiter.check("a")
    limiter.check("b")

    clock.now = 500
    with patch.object(limiter, "_evict_expired", wraps=limiter._evict_expired) as evict:
        limiter.check("c")
        assert evict.call_count == 0
        assert limiter.tracked_keys == 3

        clock.now = 1_000
        limiter.check("d")
        assert evict.call_count == 1

    # a and b expired; c and d are still inside their windows
    assert limiter.tracked_keys == 2
