from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: str | None = None


_PLACEHOLDER_REASON = "Artifact body appears to contain only placeholder text. Artifacts must include actual content."
_EMPTY_REASON = "Artifact body is empty. Artifacts must contain substantive content, not just a title."

_EXACT_PLACEHOLDER_RE = re.compile(r"^(TODO|TBD|placeholder|coming soon)$", re.IGNORECASE)
_DOMINANT_PLACEHOLDER_RES = (
    re.compile(r"^\(No files changed in this PR\)$", re.IGNORECASE),
    re.compile(r"^\(none\)$", re.IGNORECASE),
    re.compile(r"^##\s+[^\n]+\n+\n*\(No files changed\)\s*$", re.IGNORECASE),
    re.compile(r"^##\s+[^\n]+\n+\n*\(none\)\s*$", re.IGNORECASE),
)
_HEADING_ONLY_RES = (
    re.compile(r"^##\s+Modified\s*$", re.MULTILINE),
    re.compile(r"^##\s+Changed Files\s*$", re.MULTILINE),
)
_HEADING_LINE_RE = re.compile(r"^#{1,6}\s+.*$", re.MULTILINE)
_CHECKBOX_LINE_RE = re.compile(r"^[-*+]\s+\[[ x]\]\s+.*$", re.MULTILINE)


def has_substantive_content(body_md: str | None, title: str, *, min_chars: int = 50) -> ValidationResult:
    """Reject empty, too-short, or placeholder-dominated artifact bodies."""
    trimmed = (body_md or "").strip()
    if not trimmed:
        return ValidationResult(False, _EMPTY_REASON)

    if len(trimmed) < min_chars:
        return ValidationResult(
            False,
            f"Artifact body is too short ({len(trimmed)} characters). "
            f"Artifacts must contain at least {min_chars} characters.",
        )

    if _EXACT_PLACEHOLDER_RE.match(trimmed):
        return ValidationResult(False, _PLACEHOLDER_REASON)

    # Only reject when the placeholder makes up most of the body.
    for pattern in _DOMINANT_PLACEHOLDER_RES:
        m = pattern.match(trimmed)
        if m and len(m.group(0)) > len(trimmed) * 0.5:
            return ValidationResult(False, _PLACEHOLDER_REASON)

    for pattern in _HEADING_ONLY_RES:
        m = pattern.search(trimmed)
        if m and len(trimmed[m.end() :].strip()) < 20:
            return ValidationResult(False, _PLACEHOLDER_REASON)

    lowered_title = (title or "").lower()
    if "changed files" in lowered_title:
        without_headings = _HEADING_LINE_RE.sub("", trimmed).strip()
        if len(without_headings) < 30 or re.match(r"^(\(none\)|\(No files changed)", without_headings, re.IGNORECASE):
            return ValidationResult(False, "Changed Files artifact must list actual file changes, not placeholder text.")

    if "verification" in lowered_title:
        stripped = _HEADING_LINE_RE.sub("", _CHECKBOX_LINE_RE.sub("", trimmed)).strip()
        if len(stripped) < 30 or re.match(r"^(\(none\)|Changed Files \(none\))", stripped, re.IGNORECASE):
            return ValidationResult(
                False,
                "Verification artifact must contain actual verification steps and notes, not placeholder text.",
            )

    return ValidationResult(True)


def has_substantive_qa_content(body_md: str | None, title: str, *, min_chars: int = 100) -> ValidationResult:
    """QA reports: longer minimum, but only obvious placeholders are rejected."""
    trimmed = (body_md or "").strip()
    if not trimmed:
        return ValidationResult(False, _EMPTY_REASON)
    if len(trimmed) < min_chars:
        return ValidationResult(
            False,
            f"Artifact body is too short ({len(trimmed)} characters). "
            f"QA reports must contain at least {min_chars} characters.",
        )
    if _EXACT_PLACEHOLDER_RE.match(trimmed):
        return ValidationResult(False, _PLACEHOLDER_REASON)
    return ValidationResult(True)


def validate_artifact_body(
    body_md: str | None,
    title: str,
    *,
    agent_type: str,
    min_chars: int = 50,
    qa_min_chars: int = 100,
) -> ValidationResult:
    if agent_type == "qa":
        return has_substantive_qa_content(body_md, title, min_chars=qa_min_chars)
    return has_substantive_content(body_md, title, min_chars=min_chars)
