from __future__ import annotations

import json
import re
import uuid
from datetime import datetime, timezone

CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
LONG_WHITESPACE_RE = re.compile(r"\s{10,}")
MAX_PROMPT_CHARS = 10000


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def dumps_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=True)


def loads_json(value: str | None, default: object) -> object:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def sanitize_text_input(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip().replace("\x00", "")
    cleaned = LONG_WHITESPACE_RE.sub("  ", cleaned)
    return CONTROL_CHARS_RE.sub("", cleaned)


def validate_chat_message(value: str | None, *, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Clean a user chat message and reject empty or oversized input."""
    cleaned = sanitize_text_input(value)
    if not cleaned:
        raise ValueError("Message cannot be empty")
    if len(cleaned) > max_chars:
        raise ValueError(f"Message is too long (max {max_chars} characters)")
    return cleaned
