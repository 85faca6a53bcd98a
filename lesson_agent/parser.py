from __future__ import annotations

import json
import logging
import re
from typing import Any

from .types import ParsedReply

logger = logging.getLogger(__name__)

FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", flags=re.IGNORECASE)
TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
DEFAULT_MESSAGE = "Done"
EMPTY_REPLY_MESSAGE = "No response"
REASONING_KEYS = ("reasoning", "thought")
COMMAND_LIST_KEYS = ("commands", "tool_calls")


def find_balanced_json(text: str) -> str | None:
    """Return the first brace-balanced object in ``text``, or None.

    Braces inside double-quoted strings are ignored and a backslash inside a
    string escapes the next character.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for pos in range(start, len(text)):
        char = text[pos]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : pos + 1]
    return None


def repair_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing brace or bracket.

    Text inside double-quoted strings is copied unchanged.
    """
    out: list[str] = []
    in_string = False
    escape_next = False
    pos = 0
    while pos < len(text):
        char = text[pos]
        if escape_next:
            escape_next = False
        elif in_string:
            if char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == ",":
            trailing = TRAILING_COMMA_RE.match(text, pos)
            if trailing:
                pos = trailing.start(1)
                continue
        out.append(char)
        pos += 1
    return "".join(out)


def _load_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _candidates(text: str) -> list[tuple[str, str]]:
    found: list[tuple[str, str]] = []
    fenced = FENCED_BLOCK_RE.search(text)
    if fenced:
        extracted = find_balanced_json(fenced.group(1).strip())
        if extracted:
            found.append(("fenced", extracted))
    extracted = find_balanced_json(text)
    if extracted and all(extracted != existing for _, existing in found):
        found.append(("balanced", extracted))
    return found


def _first_string(payload: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _command_list(payload: dict[str, Any]) -> list[Any]:
    for key in COMMAND_LIST_KEYS:
        if key in payload:
            value = payload[key]
            return list(value) if isinstance(value, list) else []
    return []


def _shape(payload: dict[str, Any], *, raw: str, strategy: str) -> ParsedReply:
    message = payload.get("message")
    return ParsedReply(
        reasoning=_first_string(payload, REASONING_KEYS),
        commands=_command_list(payload),
        message=message if isinstance(message, str) and message.strip() else DEFAULT_MESSAGE,
        raw=raw,
        strategy=strategy,
    )


def parse_agent_reply(text: str | None) -> ParsedReply:
    """Turn a complete model reply into reasoning, commands and a message.

    Strategies run in order and the first success wins: fenced block, the
    first balanced object in the raw text, a trailing-comma repair of either
    candidate, and finally the whole text as a plain message.
    """
    raw = text or ""
    if not raw.strip():
        return ParsedReply(reasoning=None, commands=[], message=EMPTY_REPLY_MESSAGE, raw=raw, strategy="empty")

    candidates = _candidates(raw)
    for strategy, candidate in candidates:
        payload = _load_object(candidate)
        if payload is not None:
            return _shape(payload, raw=raw, strategy=strategy)

    for _strategy, candidate in candidates:
        payload = _load_object(repair_trailing_commas(candidate))
        if payload is not None:
            logger.debug("Reply parsed after trailing comma repair chars=%s", len(raw))
            return _shape(payload, raw=raw, strategy="repaired")

    if candidates:
        logger.warning("Reply contained an unparseable payload; treating as plain message chars=%s", len(raw))
    return ParsedReply(reasoning=None, commands=[], message=raw, raw=raw, strategy="plain")
