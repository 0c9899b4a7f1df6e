from __future__ import annotations

import json
import re
from typing import Any


_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
NO_JUSTIFICATION = "No justification provided."


class JSONExtractionError(ValueError):
    pass


def extract_first_balanced_json(text: str) -> Any:
    """Parse the first balanced `[...]` or `{...}` substring of `text`.

    The scan tracks string literals and escapes, so brackets inside strings do not count.
    """
    start = -1
    stack: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if start == -1:
            if ch in "[{":
                start = i
                stack.append("]" if ch == "[" else "}")
            continue
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "[{":
            stack.append("]" if ch == "[" else "}")
        elif ch in "]}":
            if not stack or stack[-1] != ch:
                raise JSONExtractionError("Unbalanced brackets in response.")
            stack.pop()
            if not stack:
                candidate = text[start : i + 1]
                try:
                    return json.loads(candidate)
                except json.JSONDecodeError as e:
                    raise JSONExtractionError(f"Invalid JSON: {e}") from e
    raise JSONExtractionError("No balanced JSON value found in response.")


def _normalize_suggestions(value: Any) -> list[dict[str, str]] | None:
    if isinstance(value, dict) and isinstance(value.get("suggestions"), list):
        value = value["suggestions"]
    if not isinstance(value, list):
        return None
    out: list[dict[str, str]] = []
    for item in value:
        if isinstance(item, str) and item.strip():
            out.append({"text": item.strip(), "justification": NO_JUSTIFICATION})
        elif isinstance(item, dict):
            text = item.get("text")
            if not isinstance(text, str) or not text.strip():
                continue
            justification = item.get("justification")
            out.append(
                {
                    "text": text.strip(),
                    "justification": justification.strip()
                    if isinstance(justification, str) and justification.strip()
                    else NO_JUSTIFICATION,
                }
            )
    return out


def parse_suggestions(text: str) -> list[dict[str, str]] | None:
    """Parse `[{text, justification}, ...]` from model output; None when nothing parses.

    Tried in order: the whole text, the body of a fenced code block, then the first
    balanced bracketed substring.
    """
    s = (text or "").strip()
    if not s:
        return None

    try:
        parsed = _normalize_suggestions(json.loads(s))
        if parsed is not None:
            return parsed
    except json.JSONDecodeError:
        pass

    m = _FENCED_RE.search(s)
    if m:
        try:
            parsed = _normalize_suggestions(json.loads(m.group(1)))
            if parsed is not None:
                return parsed
        except json.JSONDecodeError:
            pass

    try:
        return _normalize_suggestions(extract_first_balanced_json(s))
    except JSONExtractionError:
        return None
