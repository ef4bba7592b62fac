"""
FastAPI application — the chatgate entry point.
Exposes the chatbot completion proxy at /chatbot-complete.

One ChatProxy (and with it one rate limiter) is built per process in the
lifespan hook, so every request served by this worker shares the same
per-caller counters.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from chatgate.audit import AuditLog
from chatgate.config import get_config, resolve_proxy_settings
from chatgate.governance import InMemoryRateLimiter
from chatgate.identity import make_identity_provider
from chatgate.proxy import ChatProxy, ProxyResult


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
proxy: ChatProxy | None = None
audit_log: AuditLog | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global proxy, audit_log

    cfg = get_config()
    _setup_logging(cfg)
    logger = logging.getLogger(__name__)

    settings = resolve_proxy_settings(cfg)
    identity = make_identity_provider(cfg)
    audit_log = AuditLog(settings.audit_path)
    rate_limiter = InMemoryRateLimiter(
        window_ms=settings.rate_limit_window_ms,
        max_requests=settings.rate_limit_max_requests,
    )
    proxy = ChatProxy(settings, identity, rate_limiter=rate_limiter, audit_log=audit_log)

    logger.info("chatgate starting")
    logger.info("Upstream: %s (model %s)", settings.upstream_endpoint, settings.upstream_model)
    if not settings.upstream_configured:
        logger.warning("Upstream API key is not set; completions will fail with CONFIG_ERROR")
    logger.info("Identity provider: %s", identity.name if identity else "NOT CONFIGURED")
    logger.info(
        "Rate limit: %d requests / %dms per caller",
        rate_limiter.max_requests, rate_limiter.window_ms,
    )
    logger.info("Audit mode: %s%s", settings.audit_mode,
                f" (file {settings.audit_path})" if settings.audit_path else "")

    yield

    audit_log.close()
    logger.info("chatgate shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatgate",
    description="Authenticated, rate-limited chatbot completion proxy.",
    version="1.0.0",
    lifespan=lifespan,
)


def _to_response(result: ProxyResult) -> Response:
    if isinstance(result.payload, str):
        return PlainTextResponse(result.payload, status_code=result.status, headers=result.headers)
    return JSONResponse(result.payload, status_code=result.status, headers=result.headers)


@app.api_route(
    "/chatbot-complete",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
async def chatbot_complete(request: Request):
    """
    Main proxy endpoint. Accepts {input, history?} from an authenticated
    caller and returns {success: true, data: {reply, ui?}}.
    """
    body = await request.body() if request.method == "POST" else b""
    result = await proxy.handle(request.method, request.headers, body)
    return _to_response(result)


@app.get("/health")
async def health():
    """Liveness plus a secret-free view of the proxy configuration."""
    settings = proxy.settings if proxy else None
    return JSONResponse({
        "status": "ok" if proxy else "starting",
        "upstream_configured": bool(settings and settings.upstream_configured),
        "identity_configured": bool(proxy and proxy.identity),
        "audit_mode": settings.audit_mode if settings else None,
    })
