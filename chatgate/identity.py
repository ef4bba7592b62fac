"""
Identity providers: turn a bearer token into a caller id.

The proxy only needs to know *who* is calling so it can rate limit and
audit per caller. Any failure to resolve (bad token, expired token,
unreachable auth server) is reported as None; the handler answers 401
either way.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    id: str
    email: str | None = None


class IdentityProvider(abc.ABC):
    """Resolves bearer tokens to identities."""

    name: str = "base"

    @abc.abstractmethod
    async def resolve(self, token: str) -> Identity | None:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class SupabaseIdentityProvider(IdentityProvider):
    """Validates tokens against a Supabase auth server (GET /auth/v1/user)."""

    name = "supabase"

    def __init__(self, url: str, anon_key: str, timeout: float = 10):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout

    async def resolve(self, token: str) -> Identity | None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    f"{self.url}/auth/v1/user",
                    headers={
                        "apikey": self.anon_key,
                        "Authorization": f"Bearer {token}",
                    },
                )
        except httpx.HTTPError as e:
            logger.warning("Identity lookup failed: %s", e)
            return None

        if resp.status_code != 200:
            logger.debug("Identity lookup rejected token (HTTP %d)", resp.status_code)
            return None

        try:
            data = resp.json()
        except (ValueError, RecursionError):
            return None

        user_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(user_id, str) or not user_id:
            return None
        email = data.get("email")
        return Identity(id=user_id, email=email if isinstance(email, str) else None)


class StaticTokenIdentityProvider(IdentityProvider):
    """Fixed token -> user id map. Local development only."""

    name = "static"

    def __init__(self, tokens: dict[str, str]):
        self.tokens = {str(k): str(v) for k, v in tokens.items() if k and v}

    async def resolve(self, token: str) -> Identity | None:
        user_id = self.tokens.get(token)
        return Identity(id=user_id) if user_id else None


def make_identity_provider(cfg: dict) -> IdentityProvider | None:
    """
    Build the provider named in the `identity` config block.

    Returns None when the provider's required settings are missing; the
    proxy reports that as a configuration error at request time.
    """
    id_cfg = cfg.get("identity", {}) or {}
    provider = str(id_cfg.get("provider") or "supabase").strip().lower()

    if provider == "static":
        tokens = id_cfg.get("tokens") or {}
        if not isinstance(tokens, dict) or not tokens:
            logger.warning("identity.provider=static but no tokens configured")
            return None
        return StaticTokenIdentityProvider(tokens)

    if provider == "supabase":
        url = (id_cfg.get("supabase_url") or "").strip()
        anon_key = (id_cfg.get("supabase_anon_key") or "").strip()
        if not url or not anon_key:
            logger.warning("Supabase identity provider is not configured")
            return None
        return SupabaseIdentityProvider(url, anon_key, timeout=id_cfg.get("timeout", 10))

    logger.warning("Unknown identity provider '%s'", provider)
    return None
