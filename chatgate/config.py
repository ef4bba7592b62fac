"""
Config loader for chatgate.
Reads config.yaml once at startup. All other modules import from here.

String values may reference the environment as ${ENV_VAR}. Operator
settings left blank in the file fall back to their well-known environment
variables, then to safe defaults. The upstream API key is the only setting
without a default.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

from chatgate.governance import clamp_positive_int, resolve_audit_log_mode

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULT_UPSTREAM_ENDPOINT = "https://api.openai.com/v1/responses"
DEFAULT_UPSTREAM_MODEL = "gpt-5.2-mini"
DEFAULT_TIMEOUT_MS = 15_000
DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX_REQUESTS = 20
DEFAULT_SOURCE_TAG = "chatgate-proxy"


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


# ---------------------------------------------------------------------------
# Proxy settings
# ---------------------------------------------------------------------------

def _setting(value, env_name: str) -> str | None:
    """Trimmed config value, else the env var, else None."""
    if value is not None and str(value).strip():
        return str(value).strip()
    env_value = os.environ.get(env_name, "").strip()
    return env_value or None


@dataclass
class ProxySettings:
    upstream_endpoint: str = DEFAULT_UPSTREAM_ENDPOINT
    upstream_model: str = DEFAULT_UPSTREAM_MODEL
    upstream_api_key: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    rate_limit_window_ms: int = DEFAULT_WINDOW_MS
    rate_limit_max_requests: int = DEFAULT_MAX_REQUESTS
    audit_mode: str = "metadata"
    audit_path: str | None = None
    source_tag: str = DEFAULT_SOURCE_TAG

    @property
    def upstream_configured(self) -> bool:
        return bool(self.upstream_api_key)


def resolve_proxy_settings(cfg: dict | None = None) -> ProxySettings:
    """Build ProxySettings from the config dict plus environment fallbacks."""
    cfg = cfg if cfg is not None else get_config()
    upstream = cfg.get("upstream", {}) or {}
    rate = cfg.get("rate_limit", {}) or {}
    audit = cfg.get("audit", {}) or {}

    return ProxySettings(
        upstream_endpoint=_setting(upstream.get("endpoint"), "OPENAI_RESPONSES_ENDPOINT")
            or DEFAULT_UPSTREAM_ENDPOINT,
        upstream_model=_setting(upstream.get("model"), "CHATBOT_MODEL") or DEFAULT_UPSTREAM_MODEL,
        upstream_api_key=_setting(upstream.get("api_key"), "OPENAI_API_KEY"),
        timeout_ms=clamp_positive_int(
            _setting(upstream.get("timeout_ms"), "CHATBOT_PROVIDER_TIMEOUT_MS"), DEFAULT_TIMEOUT_MS
        ),
        rate_limit_window_ms=clamp_positive_int(
            _setting(rate.get("window_ms"), "CHATBOT_RATE_LIMIT_WINDOW_MS"), DEFAULT_WINDOW_MS
        ),
        rate_limit_max_requests=clamp_positive_int(
            _setting(rate.get("max_requests"), "CHATBOT_RATE_LIMIT_MAX_REQUESTS"), DEFAULT_MAX_REQUESTS
        ),
        audit_mode=resolve_audit_log_mode(_setting(audit.get("mode"), "CHATBOT_AUDIT_LOG_MODE")),
        audit_path=_setting(audit.get("path"), "CHATBOT_AUDIT_LOG_PATH"),
        source_tag=upstream.get("source_tag") or DEFAULT_SOURCE_TAG,
    )
