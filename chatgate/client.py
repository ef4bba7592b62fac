"""
Client-side completion service.

What an app (or the `chatgate ask` command) uses to get one assistant
turn. Three delivery modes, picked in this order:

    proxy   a proxy path is configured: POST {input, history} to chatgate
    direct  an API key is configured AND allow_direct is set: call the
            provider straight from the client (the key ships with the client)
    mock    neither: canned keyword-matched replies, no network

Direct mode is opt-in even when a key is present. Proxy is the default
recommendation because the provider key then stays server-side.

Environment overrides (win over the `client` config block):
    CHATBOT_CLIENT_BASE_URL      e.g. http://localhost:8000
    CHATBOT_CLIENT_PROXY_PATH    e.g. /chatbot-complete
    CHATBOT_CLIENT_TOKEN         bearer token sent to the proxy
    CHATBOT_CLIENT_API_KEY       provider key for direct mode
    CHATBOT_CLIENT_ALLOW_DIRECT  "true" to permit direct mode
    CHATBOT_CLIENT_ENDPOINT      provider endpoint for direct mode
    CHATBOT_CLIENT_MODEL         provider model for direct mode
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping
from uuid import uuid4

import httpx

from chatgate.contract import (
    MAX_HISTORY_ITEMS,
    ActionOption,
    ChatHistoryItem,
    FormBlock,
    FormField,
    FormFieldOption,
    MenuBlock,
    QuickRepliesBlock,
    StructuredReply,
    UiBlock,
    build_upstream_input,
    extract_output_text,
    parse_structured_reply,
    structured_reply_from_object,
    to_upstream_error_message,
    unwrap_reply_envelope,
)

logger = logging.getLogger(__name__)

API_KEY_PLACEHOLDER = "PASTE_YOUR_API_KEY_HERE"
DEFAULT_ENDPOINT = "https://api.openai.com/v1/responses"
DEFAULT_MODEL = "gpt-5.2-mini"
DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_TIMEOUT_MS = 30_000


class CompletionError(Exception):
    """A remote turn failed; the message names the mode that failed."""


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _message_id() -> str:
    return f"chat-{int(time.time() * 1000)}-{uuid4().hex[:6]}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ChatMessage:
    role: str
    text: str
    id: str = field(default_factory=_message_id)
    created_at: str = field(default_factory=_now_iso)
    ui_blocks: tuple[UiBlock, ...] = ()

    def to_history_item(self) -> ChatHistoryItem:
        return ChatHistoryItem(role=self.role, text=self.text)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "createdAt": self.created_at,
        }
        if self.ui_blocks:
            data["uiBlocks"] = [block.to_dict() for block in self.ui_blocks]
        return data


def create_user_message(text: str) -> ChatMessage:
    return ChatMessage(role="user", text=text.strip())


def assistant_message(reply: StructuredReply) -> ChatMessage:
    return ChatMessage(role="assistant", text=reply.reply, ui_blocks=tuple(reply.ui or ()))


def create_welcome_message() -> ChatMessage:
    return ChatMessage(
        role="assistant",
        text="Assistant ready. I can respond with text, quick replies, menu cards, and structured forms.",
        ui_blocks=(
            QuickRepliesBlock(
                title="Get started",
                options=[
                    ActionOption(id="welcome-menu", label="Menu example",
                                 payload="Show me a chatbot menu block"),
                    ActionOption(id="welcome-form", label="Form example",
                                 payload="I need support, open a form"),
                    ActionOption(id="welcome-pricing", label="Pricing prompt",
                                 payload="Show pricing options and a recommendation"),
                ],
            ),
        ),
    )


def to_history_items(history: list[ChatMessage]) -> list[ChatHistoryItem]:
    """Wire history: last MAX_HISTORY_ITEMS messages that carry text."""
    items = [m.to_history_item() for m in history if m.text.strip()]
    return items[-MAX_HISTORY_ITEMS:]


# ---------------------------------------------------------------------------
# Runtime config and mode selection
# ---------------------------------------------------------------------------

@dataclass
class ClientRuntimeConfig:
    endpoint: str = DEFAULT_ENDPOINT
    model: str = DEFAULT_MODEL
    api_key: str = API_KEY_PLACEHOLDER
    base_url: str = DEFAULT_BASE_URL
    proxy_path: str | None = None
    auth_token: str | None = None
    allow_direct: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @property
    def proxy_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.proxy_path or ''}"


def normalize_proxy_path(value) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed if trimmed.startswith("/") else f"/{trimmed}"


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.strip().lower() == "true"


def resolve_client_config(cfg: dict | None = None, env: Mapping[str, str] | None = None) -> ClientRuntimeConfig:
    """Client settings from the environment first, then the `client` config block."""
    env = os.environ if env is None else env
    client_cfg = (cfg or {}).get("client", {}) or {}

    def pick(env_name: str, cfg_key: str):
        value = env.get(env_name)
        if value is not None and value.strip():
            return value.strip()
        value = client_cfg.get(cfg_key)
        return value if value not in (None, "") else None

    timeout = pick("CHATBOT_CLIENT_TIMEOUT_MS", "timeout_ms")
    try:
        timeout_ms = int(timeout) if timeout is not None else DEFAULT_TIMEOUT_MS
    except (TypeError, ValueError):
        timeout_ms = DEFAULT_TIMEOUT_MS

    return ClientRuntimeConfig(
        endpoint=pick("CHATBOT_CLIENT_ENDPOINT", "endpoint") or DEFAULT_ENDPOINT,
        model=pick("CHATBOT_CLIENT_MODEL", "model") or DEFAULT_MODEL,
        api_key=pick("CHATBOT_CLIENT_API_KEY", "api_key") or API_KEY_PLACEHOLDER,
        base_url=pick("CHATBOT_CLIENT_BASE_URL", "base_url") or DEFAULT_BASE_URL,
        proxy_path=normalize_proxy_path(pick("CHATBOT_CLIENT_PROXY_PATH", "proxy_path")),
        auth_token=pick("CHATBOT_CLIENT_TOKEN", "auth_token"),
        allow_direct=_truthy(pick("CHATBOT_CLIENT_ALLOW_DIRECT", "allow_direct")),
        timeout_ms=timeout_ms if timeout_ms > 0 else DEFAULT_TIMEOUT_MS,
    )


def has_configured_api_key(config: ClientRuntimeConfig) -> bool:
    key = (config.api_key or "").strip()
    return bool(key) and key != API_KEY_PLACEHOLDER


def has_configured_proxy(config: ClientRuntimeConfig) -> bool:
    return bool(config.proxy_path and config.proxy_path.strip())


def resolve_runtime_mode(config: ClientRuntimeConfig) -> str:
    if has_configured_proxy(config):
        return "proxy"
    if config.allow_direct and has_configured_api_key(config):
        return "direct"
    return "mock"


# ---------------------------------------------------------------------------
# Mock replies
# ---------------------------------------------------------------------------

def _support_form() -> FormBlock:
    return FormBlock(
        id="support-intake",
        title="Support Intake",
        description="Collect structured issue details before handing off to an agent.",
        submit_label="Submit ticket",
        fields=[
            FormField(name="name", label="Name", kind="text", required=True, placeholder="Jane Doe"),
            FormField(name="email", label="Email", kind="email", required=True,
                      placeholder="jane@example.com"),
            FormField(
                name="priority", label="Priority", kind="select", required=True,
                options=[
                    FormFieldOption(label="Low", value="low"),
                    FormFieldOption(label="Normal", value="normal"),
                    FormFieldOption(label="High", value="high"),
                ],
            ),
            FormField(name="issue", label="Issue Summary", kind="text", required=True,
                      placeholder="Describe the issue"),
        ],
    )


def _workflow_menu() -> MenuBlock:
    return MenuBlock(
        title="Choose a workflow",
        description="Use menu items to branch into guided conversations.",
        items=[
            ActionOption(id="start-onboarding", label="Start Onboarding",
                         payload="Start onboarding workflow",
                         description="Collect profile and account goals."),
            ActionOption(id="upgrade-plan", label="Upgrade Plan",
                         payload="Show upgrade plans",
                         description="Compare plans and pricing options."),
            ActionOption(id="talk-to-agent", label="Talk To Agent",
                         payload="Connect me with support",
                         description="Escalate to a human handoff queue."),
        ],
    )


def _try_one_replies() -> QuickRepliesBlock:
    return QuickRepliesBlock(
        title="Try one",
        options=[
            ActionOption(id="open-menu", label="Show menu example",
                         payload="Show me a chatbot menu block"),
            ActionOption(id="open-form", label="Show form example",
                         payload="I need support, open a form"),
            ActionOption(id="pricing", label="Ask pricing",
                         payload="Show pricing options and recommended plan"),
        ],
    )


def mock_reply(user_message: str, reason: str) -> ChatMessage:
    """Canned reply chosen by keyword: support/contact, menu/plan, else quick replies."""
    text = user_message.strip().lower()

    if "support" in text or "contact" in text:
        return ChatMessage(
            role="assistant",
            text=f"Running in mock mode ({reason}). Here is a support intake form you can customize.",
            ui_blocks=(_support_form(),),
        )

    if "menu" in text or "plan" in text:
        return ChatMessage(
            role="assistant",
            text=f"Running in mock mode ({reason}). This menu block demonstrates customizable action cards.",
            ui_blocks=(_workflow_menu(),),
        )

    return ChatMessage(
        role="assistant",
        text=(f"Running in mock mode ({reason}). Use quick replies, menu cards, "
              "and forms to build your final chatbot UX."),
        ui_blocks=(_try_one_replies(),),
    )


# ---------------------------------------------------------------------------
# Completion service
# ---------------------------------------------------------------------------

@dataclass
class TurnResult:
    message: ChatMessage
    source: str  # "remote" or "mock"
    source_detail: str


def reply_from_proxy_payload(payload) -> StructuredReply:
    """Read any accepted proxy envelope into a sanitized StructuredReply."""
    inner = unwrap_reply_envelope(payload)
    reply = structured_reply_from_object(inner) if inner is not None else None
    if reply is None:
        raise CompletionError("Proxy response did not match the reply contract.")
    return reply


class CompletionService:
    """Runs one chat turn in whichever mode the config selects."""

    def __init__(self, config: ClientRuntimeConfig):
        self.config = config

    @property
    def mode(self) -> str:
        return resolve_runtime_mode(self.config)

    async def complete_turn(self, history: list[ChatMessage], user_message: str) -> TurnResult:
        text = user_message.strip()
        if not text:
            raise ValueError("Chat message cannot be empty.")

        mode = self.mode
        if mode == "mock":
            return self._mock_turn(text)
        if mode == "proxy":
            return await self._proxy_turn(history, text)
        return await self._direct_turn(history, text)

    def _mock_turn(self, text: str) -> TurnResult:
        has_key = has_configured_api_key(self.config)
        reason = "direct mode disabled" if has_key else "missing API key"
        if has_key:
            detail = ("Direct model mode is disabled. Set CHATBOT_CLIENT_ALLOW_DIRECT=true to enable "
                      "direct calls, or configure CHATBOT_CLIENT_PROXY_PATH (recommended).")
        else:
            detail = ("Configure CHATBOT_CLIENT_PROXY_PATH (recommended) or set CHATBOT_CLIENT_API_KEY + "
                      "CHATBOT_CLIENT_ALLOW_DIRECT=true for direct live responses.")
        return TurnResult(message=mock_reply(text, reason), source="mock", source_detail=detail)

    async def _proxy_turn(self, history: list[ChatMessage], text: str) -> TurnResult:
        cfg = self.config
        headers = {"Content-Type": "application/json"}
        if cfg.auth_token:
            headers["Authorization"] = f"Bearer {cfg.auth_token}"
        body = {
            "input": text,
            "history": [item.to_dict() for item in to_history_items(history)],
        }

        try:
            async with httpx.AsyncClient(timeout=cfg.timeout_ms / 1000) as client:
                resp = await client.post(cfg.proxy_url, json=body, headers=headers)
            try:
                payload = resp.json()
            except (ValueError, RecursionError):
                payload = None

            if resp.status_code >= 400:
                message = payload.get("message") if isinstance(payload, dict) else None
                code = payload.get("code") if isinstance(payload, dict) else None
                raise CompletionError(
                    f"HTTP {resp.status_code}"
                    + (f" {code}" if code else "")
                    + f": {message or 'Unexpected proxy error.'}"
                )

            reply = reply_from_proxy_payload(payload)
        except (CompletionError, httpx.HTTPError) as e:
            raise CompletionError(f"Chat proxy request failed ({cfg.proxy_path}). {e}") from e

        return TurnResult(
            message=assistant_message(reply),
            source="remote",
            source_detail=f"proxy {cfg.proxy_path}",
        )

    async def _direct_turn(self, history: list[ChatMessage], text: str) -> TurnResult:
        cfg = self.config
        body = {
            "model": cfg.model,
            "input": build_upstream_input(to_history_items(history), text),
        }

        try:
            async with httpx.AsyncClient(timeout=cfg.timeout_ms / 1000) as client:
                resp = await client.post(
                    cfg.endpoint,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {cfg.api_key}",
                        "Content-Type": "application/json",
                    },
                )
            try:
                payload = resp.json()
            except (ValueError, RecursionError):
                payload = None

            if resp.status_code < 200 or resp.status_code >= 300:
                raise CompletionError(f"HTTP {resp.status_code}: {to_upstream_error_message(payload)}")

            output_text = extract_output_text(payload)
            if output_text is None:
                raise CompletionError("Chat provider returned an empty response.")

            reply = parse_structured_reply(output_text)
        except json.JSONDecodeError as e:
            raise CompletionError(f"Direct chat request failed ({cfg.model}). Malformed JSON reply.") from e
        except (CompletionError, httpx.HTTPError) as e:
            raise CompletionError(f"Direct chat request failed ({cfg.model}). {e}") from e

        return TurnResult(
            message=assistant_message(reply),
            source="remote",
            source_detail=f"{cfg.model} via {cfg.endpoint}",
        )
