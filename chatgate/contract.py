"""
Contract: the wire shapes shared by the proxy and its clients.

Everything here is pure: no I/O, no logging. The upstream model is treated
as an untrusted source of free-form JSON, so every parser is an allow-list:
  - malformed elements are dropped, never the whole payload
  - every list is bounded (history, blocks, options, fields)
  - unknown block types vanish instead of raising

The one deliberate exception is parse_structured_reply(): text that *looks*
like JSON but fails to decode raises json.JSONDecodeError so the handler can
surface it as an internal error.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Union

MAX_INPUT_LENGTH = 3000
MAX_HISTORY_ITEMS = 24
MAX_BLOCKS = 6
MAX_OPTIONS = 10
MAX_FIELDS = 8

MESSAGE_ROLES = ("user", "assistant")
FORM_FIELD_KINDS = ("text", "email", "number", "select")

UPSTREAM_ERROR_FALLBACK = "Upstream provider request failed."

SYSTEM_PROMPT = "\n".join([
    "You are a product assistant inside a mobile app.",
    "Always return a single JSON object with this shape:",
    '{"reply":"string","ui":[optional blocks]}',
    "Supported ui block types:",
    '- quick-replies => {"type":"quick-replies","title":"optional","options":[{"id":"string","label":"string","payload":"string"}]}',
    '- menu => {"type":"menu","title":"string","description":"optional","items":[{"id":"string","label":"string","payload":"string","description":"optional"}]}',
    '- form => {"type":"form","id":"string","title":"string","description":"optional","submitLabel":"optional","fields":[{"name":"string","label":"string","kind":"text|email|number|select","required":true|false,"placeholder":"optional","options":[{"label":"string","value":"string"}]}]}',
    "If no special UI is needed, omit the ui property.",
    "Never wrap JSON in markdown.",
])


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------

def _compact(data: dict) -> dict:
    """Drop optional keys that were never set."""
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class ChatHistoryItem:
    role: str
    text: str

    def to_dict(self) -> dict:
        return {"role": self.role, "text": self.text}


@dataclass
class ChatCompleteRequest:
    input: str
    history: list[ChatHistoryItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "input": self.input,
            "history": [item.to_dict() for item in self.history],
        }


@dataclass
class ActionOption:
    id: str
    label: str
    payload: str
    description: str | None = None

    def to_dict(self) -> dict:
        return _compact({
            "id": self.id,
            "label": self.label,
            "payload": self.payload,
            "description": self.description,
        })


@dataclass
class QuickRepliesBlock:
    options: list[ActionOption]
    title: str | None = None
    type: str = "quick-replies"

    def to_dict(self) -> dict:
        return _compact({
            "type": self.type,
            "title": self.title,
            "options": [o.to_dict() for o in self.options],
        })


@dataclass
class MenuBlock:
    title: str
    items: list[ActionOption]
    description: str | None = None
    type: str = "menu"

    def to_dict(self) -> dict:
        return _compact({
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "items": [i.to_dict() for i in self.items],
        })


@dataclass
class FormFieldOption:
    label: str
    value: str

    def to_dict(self) -> dict:
        return {"label": self.label, "value": self.value}


@dataclass
class FormField:
    name: str
    label: str
    kind: str
    required: bool | None = None
    placeholder: str | None = None
    options: list[FormFieldOption] | None = None

    def to_dict(self) -> dict:
        return _compact({
            "name": self.name,
            "label": self.label,
            "kind": self.kind,
            "required": self.required,
            "placeholder": self.placeholder,
            "options": [o.to_dict() for o in self.options] if self.options else None,
        })


@dataclass
class FormBlock:
    id: str
    title: str
    fields: list[FormField]
    description: str | None = None
    submit_label: str | None = None
    type: str = "form"

    def to_dict(self) -> dict:
        return _compact({
            "type": self.type,
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "submitLabel": self.submit_label,
            "fields": [f.to_dict() for f in self.fields],
        })


UiBlock = Union[QuickRepliesBlock, MenuBlock, FormBlock]


@dataclass
class StructuredReply:
    """Canonical {reply, ui?} shape returned to every client."""
    reply: str
    ui: list[UiBlock] | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"reply": self.reply}
        if self.ui:
            data["ui"] = [block.to_dict() for block in self.ui]
        return data


# ---------------------------------------------------------------------------
# Primitive coercions
# ---------------------------------------------------------------------------

def _to_string_value(value: Any) -> str | None:
    """Trimmed non-empty string, or None."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _limit(value: str, max_length: int = MAX_INPUT_LENGTH) -> str:
    return value[:max_length]


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def parse_request_payload(raw: Any) -> ChatCompleteRequest | None:
    """
    Parse an untrusted request body into a ChatCompleteRequest.

    Returns None unless `raw` is an object with a non-empty `input` string.
    History is cut to the last MAX_HISTORY_ITEMS entries *before* filtering,
    and malformed entries are silently skipped.
    """
    if not isinstance(raw, dict):
        return None

    text = _to_string_value(raw.get("input"))
    if not text:
        return None

    history: list[ChatHistoryItem] = []
    raw_history = raw.get("history")
    if isinstance(raw_history, list):
        for item in raw_history[-MAX_HISTORY_ITEMS:]:
            if not isinstance(item, dict):
                continue
            role = item.get("role")
            item_text = _to_string_value(item.get("text"))
            if role not in MESSAGE_ROLES or not item_text:
                continue
            history.append(ChatHistoryItem(role=role, text=_limit(item_text)))

    return ChatCompleteRequest(input=_limit(text), history=history)


def build_upstream_input(history: list[ChatHistoryItem], text: str) -> list[dict]:
    """Messages array for the upstream call: system prompt, history, user turn."""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        *({"role": item.role, "content": item.text} for item in history),
        {"role": "user", "content": text},
    ]


# ---------------------------------------------------------------------------
# UI block normalization
# ---------------------------------------------------------------------------

def _normalize_action_options(value: Any) -> list[ActionOption]:
    if not isinstance(value, list):
        return []

    normalized = []
    # Default ids use the raw position, dropped options included.
    for index, option in enumerate(value[:MAX_OPTIONS]):
        if not isinstance(option, dict):
            continue
        label = _to_string_value(option.get("label"))
        if not label:
            continue
        normalized.append(ActionOption(
            id=_to_string_value(option.get("id")) or f"option-{index + 1}",
            label=label,
            payload=_to_string_value(option.get("payload")) or label,
            description=_to_string_value(option.get("description")),
        ))
    return normalized


def _normalize_field_options(value: Any) -> list[FormFieldOption]:
    if not isinstance(value, list):
        return []

    normalized = []
    for option in value:
        if not isinstance(option, dict):
            continue
        label = _to_string_value(option.get("label"))
        option_value = _to_string_value(option.get("value"))
        if label and option_value:
            normalized.append(FormFieldOption(label=label, value=option_value))
    return normalized


def _normalize_form_fields(value: Any) -> list[FormField]:
    if not isinstance(value, list):
        return []

    normalized = []
    for raw_field in value[:MAX_FIELDS]:
        if not isinstance(raw_field, dict):
            continue

        name = _to_string_value(raw_field.get("name"))
        label = _to_string_value(raw_field.get("label"))
        kind = raw_field.get("kind")
        if not name or not label or kind not in FORM_FIELD_KINDS:
            continue

        options = _normalize_field_options(raw_field.get("options"))
        if kind == "select" and not options:
            continue

        required = raw_field.get("required")
        normalized.append(FormField(
            name=name,
            label=label,
            kind=kind,
            required=required if isinstance(required, bool) else None,
            placeholder=_to_string_value(raw_field.get("placeholder")),
            options=options or None,
        ))
    return normalized


def _quick_replies_block(block: dict) -> QuickRepliesBlock | None:
    options = _normalize_action_options(block.get("options"))
    if not options:
        return None
    return QuickRepliesBlock(options=options, title=_to_string_value(block.get("title")))


def _menu_block(block: dict) -> MenuBlock | None:
    title = _to_string_value(block.get("title"))
    items = _normalize_action_options(block.get("items"))
    if not title or not items:
        return None
    return MenuBlock(
        title=title,
        items=items,
        description=_to_string_value(block.get("description")),
    )


def _form_block(block: dict) -> FormBlock | None:
    block_id = _to_string_value(block.get("id"))
    title = _to_string_value(block.get("title"))
    fields = _normalize_form_fields(block.get("fields"))
    if not block_id or not title or not fields:
        return None
    return FormBlock(
        id=block_id,
        title=title,
        fields=fields,
        description=_to_string_value(block.get("description")),
        submit_label=_to_string_value(block.get("submitLabel")),
    )


_BLOCK_BUILDERS: dict[str, Callable[[dict], UiBlock | None]] = {
    "quick-replies": _quick_replies_block,
    "menu": _menu_block,
    "form": _form_block,
}


def normalize_ui_blocks(value: Any) -> list[UiBlock]:
    """Sanitize an untrusted `ui` array into at most MAX_BLOCKS known blocks."""
    if not isinstance(value, list):
        return []

    normalized = []
    for block in value[:MAX_BLOCKS]:
        if not isinstance(block, dict) or not isinstance(block.get("type"), str):
            continue
        builder = _BLOCK_BUILDERS.get(block["type"])
        if builder is None:
            continue
        built = builder(block)
        if built is not None:
            normalized.append(built)
    return normalized


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

def structured_reply_from_object(parsed: dict) -> StructuredReply | None:
    """Build a reply from an already-decoded {reply|message, ui?} object."""
    reply = _to_string_value(parsed.get("reply")) or _to_string_value(parsed.get("message"))
    if not reply:
        return None
    return StructuredReply(reply=_limit(reply), ui=normalize_ui_blocks(parsed.get("ui")) or None)


def parse_structured_reply(output_text: str) -> StructuredReply:
    """
    Turn raw model output into a StructuredReply.

    Plain text (no leading '{') becomes the reply verbatim. JSON objects are
    read for `reply` / `message` and a sanitized `ui`; when neither text key
    is usable the raw text is the reply. Raises json.JSONDecodeError if the
    output starts with '{' but is not valid JSON.
    """
    trimmed = output_text.strip()
    fallback = StructuredReply(reply=_limit(trimmed))
    if not trimmed.startswith("{"):
        return fallback

    parsed = json.loads(trimmed)
    if not isinstance(parsed, dict):
        return fallback

    return structured_reply_from_object(parsed) or fallback


# ---------------------------------------------------------------------------
# Envelope matchers
# ---------------------------------------------------------------------------

def _match_output_text(payload: dict) -> str | None:
    value = payload.get("output_text")
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _match_chat_choices(payload: dict) -> str | None:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict) or not isinstance(first.get("message"), dict):
        return None
    content = first["message"].get("content")
    if not isinstance(content, str):
        return None
    return content.strip() or None


def _match_output_chunks(payload: dict) -> str | None:
    output = payload.get("output")
    if not isinstance(output, list):
        return None

    chunks = []
    for item in output:
        if not isinstance(item, dict) or not isinstance(item.get("content"), list):
            continue
        for content in item["content"]:
            if not isinstance(content, dict) or not isinstance(content.get("text"), str):
                continue
            if content["text"].strip():
                chunks.append(content["text"])

    return "\n".join(chunks).strip() or None


_OUTPUT_TEXT_MATCHERS = (_match_output_text, _match_chat_choices, _match_output_chunks)


def extract_output_text(payload: Any) -> str | None:
    """Model text from any supported upstream envelope, or None. Never raises."""
    if not isinstance(payload, dict):
        return None
    for matcher in _OUTPUT_TEXT_MATCHERS:
        text = matcher(payload)
        if text is not None:
            return text
    return None


def _match_success_envelope(payload: dict) -> dict | None:
    if payload.get("success") is True and isinstance(payload.get("data"), dict):
        return payload["data"]
    return None


def _match_bare_reply(payload: dict) -> dict | None:
    if "reply" in payload or "message" in payload:
        return payload
    return None


_ENVELOPE_MATCHERS = (_match_success_envelope, _match_bare_reply)


def unwrap_reply_envelope(payload: Any) -> dict | None:
    """Inner {reply|message, ui?} object from a proxy or provider response."""
    if not isinstance(payload, dict):
        return None
    for matcher in _ENVELOPE_MATCHERS:
        inner = matcher(payload)
        if inner is not None:
            return inner
    return None


def to_upstream_error_message(payload: Any) -> str:
    """`payload.error.message` if present, else a fixed safe message."""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return UPSTREAM_ERROR_FALLBACK
