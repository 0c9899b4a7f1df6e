from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from agent_runs.tools.github_prs import PrFile


@dataclass(frozen=True)
class GeneratedArtifact:
    title: str
    body_md: str | None  # None: data unavailable, do not store
    error: str | None = None


def worklog_body_from_progress(
    display_id: str,
    progress: list[dict[str, Any]],
    *,
    status: str,
    summary: str | None = None,
    error: str | None = None,
    pr_url: str | None = None,
) -> str:
    lines = [f"# Worklog: {display_id}", "", "## Progress", ""]
    if progress:
        for entry in progress:
            lines.append(f"- **{entry.get('at', '')}** {entry.get('message', '')}")
    else:
        lines.append("- (no progress recorded yet)")
    lines.extend(["", f"**Current status:** {status}"])
    if summary:
        lines.extend(["", "## Summary", "", summary])
    if error:
        lines.extend(["", "## Error", "", error])
    if pr_url:
        lines.extend(["", f"**Pull request:** {pr_url}"])
    return "\n".join(lines)


def _git_diff(pr_files: list[PrFile]) -> str:
    parts: list[str] = []
    for f in pr_files:
        if not f.patch:
            parts.extend([f"diff --git a/{f.filename} b/{f.filename}", "Binary files differ", ""])
            continue
        if not f.patch.startswith("diff --git"):
            parts.extend([f"diff --git a/{f.filename} b/{f.filename}", f"--- a/{f.filename}", f"+++ b/{f.filename}"])
        parts.extend([f.patch, ""])
    return "\n".join(parts).strip()


def _unavailable_reason(pr_url: str | None, pr_files: list[PrFile] | None, pr_files_error: str | None) -> str | None:
    if not pr_url:
        return "Pull request URL not available."
    if pr_files_error:
        return f"Failed to fetch PR files: {pr_files_error}."
    if pr_files is None:
        return "PR files data not available."
    return None


def generate_implementation_artifacts(
    display_id: str,
    summary: str,
    *,
    pr_url: str | None,
    pr_files: list[PrFile] | None,
    pr_files_error: str | None = None,
    progress: list[dict[str, Any]] | None = None,
    status: str = "completed",
) -> list[GeneratedArtifact]:
    """Build the follow-up documents for a completed implementation run.

    Entries whose source data is missing carry `body_md=None` and an `error`; callers skip them.
    """
    modified = [f for f in (pr_files or []) if f.status in {"modified", "added"}]
    unavailable = _unavailable_reason(pr_url, pr_files, pr_files_error)
    pr_line = f"**Pull request:** {pr_url}" if pr_url else ""

    out: list[GeneratedArtifact] = []

    out.append(
        GeneratedArtifact(
            title=f"Plan for ticket {display_id}",
            body_md="\n".join(
                [
                    f"# Plan: {display_id}",
                    "",
                    "## Summary",
                    summary or "(No summary provided)",
                    "",
                    "## Approach",
                    "Implementation delivered by the coding agent.",
                    "",
                    pr_line,
                ]
            ).strip(),
        )
    )

    out.append(
        GeneratedArtifact(
            title=f"Worklog for ticket {display_id}",
            body_md=worklog_body_from_progress(
                display_id, progress or [], status=status, summary=summary, pr_url=pr_url
            ),
        )
    )

    changed_title = f"Changed Files for ticket {display_id}"
    if unavailable:
        out.append(GeneratedArtifact(title=changed_title, body_md=None, error=f"{unavailable} Cannot determine changed files."))
    elif not modified:
        out.append(GeneratedArtifact(title=changed_title, body_md=None, error="No files changed in this PR."))
    else:
        out.append(
            GeneratedArtifact(
                title=changed_title,
                body_md="\n".join(
                    ["## Modified", ""]
                    + [
                        f"- `{f.filename}`\n  - {'Added' if f.status == 'added' else 'Modified'} (+{f.additions} -{f.deletions})"
                        for f in modified
                    ]
                ),
            )
        )

    out.append(
        GeneratedArtifact(
            title=f"Decisions for ticket {display_id}",
            body_md="\n".join(
                [
                    f"# Decisions: {display_id}",
                    "",
                    "## Implementation",
                    "Implementation delivered by the coding agent. Key decisions are reflected in the code changes.",
                ]
            ),
        )
    )

    verification_title = f"Verification for ticket {display_id}"
    if unavailable:
        out.append(
            GeneratedArtifact(
                title=verification_title, body_md=None, error=f"{unavailable} Cannot generate verification checklist."
            )
        )
    elif not modified:
        out.append(
            GeneratedArtifact(
                title=verification_title,
                body_md=None,
                error="No files changed in this PR. Cannot generate verification checklist.",
            )
        )
    else:
        out.append(
            GeneratedArtifact(
                title=verification_title,
                body_md="\n".join(
                    [
                        f"# Verification: {display_id}",
                        "",
                        "## Code Review",
                        "- [ ] Review changed files",
                        "- [ ] Verify acceptance criteria met",
                        "",
                        "## Changed Files",
                        *[f"- `{f.filename}` (+{f.additions} -{f.deletions})" for f in modified],
                        "",
                        "## Verification Steps",
                        "- [ ] Run automated checks (build, lint)",
                        "- [ ] Verify acceptance criteria are met",
                        "- [ ] Check for regressions in adjacent UI",
                    ]
                ),
            )
        )

    out.append(
        GeneratedArtifact(
            title=f"PM Review for ticket {display_id}",
            body_md="\n".join(
                [f"# PM Review: {display_id}", "", "## Summary", summary or "Implementation completed.", "", pr_line]
            ).strip(),
        )
    )

    diff_title = f"Git diff for ticket {display_id}"
    if unavailable:
        out.append(GeneratedArtifact(title=diff_title, body_md=None, error=f"{unavailable} Cannot generate git diff."))
    elif not pr_files:
        out.append(GeneratedArtifact(title=diff_title, body_md=None, error="No files changed in this PR."))
    else:
        out.append(GeneratedArtifact(title=diff_title, body_md=_git_diff(pr_files)))

    return out
