"""Recover a JSON document from raw model output.

Synthesis models sometimes wrap JSON in prose or markdown fences, and long
outputs can be cut off at the token limit. ``parse_model_json`` tries, in
order: the text as-is, a fenced ```json block, the span from the first
``{`` to the last ``}``, and finally a structural repair that closes
whatever the truncation left open.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from intelligence.errors import ReportParseError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

_CLOSERS = {"{": "}", "[": "]"}


def repair_truncated_json(text: str) -> str:
    """Close an unterminated string and any open objects/arrays.

    Brackets inside string literals (including escaped quotes) are ignored.
    Closers are appended innermost first. A trailing comma or a key left
    without a value is cleaned up so the result can parse.
    """
    stack: list[str] = []
    in_string = False
    escape = False

    for ch in text:
        if escape:
            escape = False
            continue
        if in_string:
            if ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in ("}", "]") and stack and _CLOSERS[stack[-1]] == ch:
            stack.pop()

    repaired = text
    if in_string:
        if escape:
            repaired = repaired[:-1]
        repaired += '"'
    else:
        repaired = repaired.rstrip()
        while repaired.endswith(","):
            repaired = repaired[:-1].rstrip()
        if repaired.endswith(":"):
            repaired += " null"

    for opener in reversed(stack):
        repaired += _CLOSERS[opener]
    return repaired


def _candidates(text: str) -> list[str]:
    found: list[str] = []
    match = _FENCE_RE.search(text)
    if match:
        found.append(match.group(1))
    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        found.append(text[first:last + 1])
    return found


def _try_load(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


def parse_model_json(text: str) -> Any:
    """Parse JSON out of model output, repairing truncation if needed.

    Raises ``ReportParseError`` when no strategy yields valid JSON.
    """
    raw = (text or "").strip()
    if not raw:
        raise ReportParseError("Synthesis output was empty")

    ok, value = _try_load(raw)
    if ok:
        return value

    candidates = _candidates(raw)
    for candidate in candidates:
        ok, value = _try_load(candidate)
        if ok:
            return value

    # Truncated output: everything from the first brace is the best material.
    repair_inputs: list[str] = []
    fenced_open = re.search(r"```(?:json)?\s*", raw, re.IGNORECASE)
    if fenced_open and not _FENCE_RE.search(raw):
        repair_inputs.append(raw[fenced_open.end():])
    first = raw.find("{")
    if first != -1:
        repair_inputs.append(raw[first:])
    repair_inputs.extend(candidates)

    for candidate in repair_inputs:
        ok, value = _try_load(repair_truncated_json(candidate))
        if ok:
            logger.info("JSON repair successful (%d chars)", len(candidate))
            return value

    logger.warning("JSON repair failed; output tail: %r", raw[-100:])
    raise ReportParseError("Synthesis output is not valid JSON, even after repair")
