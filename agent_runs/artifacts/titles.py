from __future__ import annotations

import re


# Lowercased title prefix -> canonical artifact type.
_TYPE_PREFIXES: tuple[tuple[str, str], ...] = (
    ("plan for ticket", "plan"),
    ("worklog for ticket", "worklog"),
    ("changed files for ticket", "changed-files"),
    ("decisions for ticket", "decisions"),
    ("verification for ticket", "verification"),
    ("pm review for ticket", "pm-review"),
    ("image for ticket", "image"),
    ("qa report for ticket", "qa-report"),
)

_CANONICAL_TITLES: dict[str, str] = {
    "plan": "Plan for ticket {display_id}",
    "worklog": "Worklog for ticket {display_id}",
    "changed-files": "Changed Files for ticket {display_id}",
    "decisions": "Decisions for ticket {display_id}",
    "verification": "Verification for ticket {display_id}",
    "pm-review": "PM Review for ticket {display_id}",
    "qa-report": "QA report for ticket {display_id}",
    "image": "Image for ticket {display_id}",
}

_PREFIX_RE = re.compile(r"^[A-Z]+-")
_DIGITS_RE = re.compile(r"\d+")
_TICKET_REF_RE = re.compile(r"for ticket\s+(?P<ref>\S+)", re.IGNORECASE)


def extract_artifact_type(title: str) -> str | None:
    """Return the canonical type for a recognizable title, e.g. "Plan for ticket 0121" -> "plan"."""
    normalized = (title or "").strip().lower()
    for prefix, artifact_type in _TYPE_PREFIXES:
        if normalized.startswith(prefix):
            return artifact_type
    return None


def normalize_ticket_id(ticket_id: str) -> str:
    """Normalize a ticket reference to its zero-padded number ("HAL-0121" -> "0121", "121" -> "0121").

    Strings without digits are returned unchanged.
    """
    without_prefix = _PREFIX_RE.sub("", ticket_id or "")
    m = _DIGITS_RE.search(without_prefix)
    if not m:
        return ticket_id
    return str(int(m.group(0))).zfill(4)


def display_id_from_title(title: str) -> str | None:
    """Best-effort ticket reference from a title like "Plan for ticket HAL-0121"."""
    m = _TICKET_REF_RE.search(title or "")
    if not m:
        return None
    ref = normalize_ticket_id(m.group("ref"))
    return ref if _DIGITS_RE.fullmatch(ref) else None


def canonical_title(artifact_type: str, display_id: str) -> str:
    template = _CANONICAL_TITLES.get(artifact_type, "Artifact for ticket {display_id}")
    return template.format(display_id=display_id)
