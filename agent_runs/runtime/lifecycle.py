from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from agent_runs.storage.sqlite_store import RunRecord, SQLiteStore


RUN_STATUSES = ("created", "launching", "polling", "running", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})
ACTIVE_STATUSES = ("created", "launching", "polling", "running")

# polling and running share a rank: a run may move between them freely.
STATUS_RANK: dict[str, int] = {
    "created": 0,
    "launching": 1,
    "polling": 2,
    "running": 2,
    "completed": 3,
    "failed": 3,
}

# Ordered; a slice never moves a run back to an earlier stage.
IN_FLIGHT_STAGES = (
    "preparing",
    "fetching_ticket",
    "resolving_repo",
    "fetching_branch",
    "launching",
    "running",
    "reviewing",
)
CONVERSATIONAL_STAGE = "responding"
RUN_STAGES = IN_FLIGHT_STAGES + (CONVERSATIONAL_STAGE, "completed", "failed")

RUN_CATEGORIES = ("implementation", "qa", "project-manager", "process-review")
LLM_CATEGORIES = frozenset({"project-manager", "process-review"})
# Categories whose completion always reads the agent conversation, even with a real summary.
CONVERSATION_CATEGORIES = frozenset({"implementation", "qa", "project-manager", "process-review"})

FAILURE_SIGNALS = frozenset({"FAILED", "CANCELLED", "ERROR"})
PLACEHOLDER_SUMMARIES = frozenset({"completed.", "done.", "complete.", "finished."})
TRUNCATION_MARKER = "\n\n[truncated]"
DEFAULT_PROGRESS_MAX = 50


def is_terminal(status: str | None) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, new: str) -> bool:
    """Status only moves forward; terminal statuses never change."""
    if current in TERMINAL_STATUSES:
        return False
    if current not in STATUS_RANK or new not in STATUS_RANK:
        return False
    return STATUS_RANK[new] >= STATUS_RANK[current]


def default_working_stage(agent_type: str) -> str:
    return "running" if agent_type == "implementation" else "reviewing"


def determine_next_stage(agent_type: str, current_stage: str | None) -> str | None:
    """Stage for a still-running signal, or None to leave the current stage unchanged."""
    if current_stage in IN_FLIGHT_STAGES:
        return None
    return default_working_stage(agent_type)


def is_placeholder_summary(summary: str | None) -> bool:
    s = (summary or "").strip()
    if not s:
        return True
    return s.lower() in PLACEHOLDER_SUMMARIES


def cap_text(text: str, limit: int) -> str:
    """Cut `text` to at most `limit` characters, ending with the truncation marker when it fits."""
    if len(text) <= limit:
        return text
    if limit <= len(TRUNCATION_MARKER):
        return text[:limit]
    return text[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def append_progress(
    progress: list[dict[str, Any]] | None,
    message: str,
    *,
    max_entries: int = DEFAULT_PROGRESS_MAX,
    at: str | None = None,
) -> list[dict[str, Any]]:
    """Return a new progress list with `message` appended, evicting the oldest entries first."""
    entries = [p for p in (progress or []) if isinstance(p, dict)]
    entries.append({"at": at or utc_iso_now(), "message": message})
    if len(entries) > max_entries:
        entries = entries[len(entries) - max_entries :]
    return entries


def build_pr_url(
    target_url: str | None,
    existing_url: str | None,
    repo_full_name: str | None,
    branch_name: str | None,
) -> str | None:
    if target_url:
        return target_url
    if existing_url:
        return existing_url
    if repo_full_name and branch_name:
        return f"https://github.com/{repo_full_name}/tree/{branch_name}"
    return None


@dataclass(frozen=True)
class SignalTranslation:
    status: str
    stage: str | None  # None: keep the current stage
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def failed(self) -> bool:
        return self.status == "failed"


def translate_signal(
    external_status: str,
    *,
    agent_type: str,
    current_stage: str | None,
    raw_summary: str | None = None,
) -> SignalTranslation:
    """Map a backend-reported status onto (status, stage)."""
    signal = (external_status or "").strip().upper()
    if signal == "FINISHED":
        return SignalTranslation(status="completed", stage="completed")
    if signal in FAILURE_SIGNALS:
        detail = (raw_summary or "").strip()
        return SignalTranslation(
            status="failed",
            stage="failed",
            error=detail or f"Agent ended with status {signal}.",
        )
    return SignalTranslation(status="polling", stage=determine_next_stage(agent_type, current_stage))


def fail_run(
    store: SQLiteStore,
    run: RunRecord,
    message: str,
    *,
    progress_message: str | None = None,
    error_max_chars: int = 500,
    progress_max_entries: int = DEFAULT_PROGRESS_MAX,
) -> bool:
    """Record a terminal failure for `run` and append an `error` event.

    Returns False (and appends nothing) when the run had already reached a terminal status.
    """
    error = cap_text((message or "").strip(), error_max_chars) or "Run failed."
    fields: dict[str, Any] = {
        "status": "failed",
        "current_stage": "failed",
        "error": error,
        "finished_at": time.time(),
    }
    if progress_message:
        fields["progress"] = append_progress(run.progress, progress_message, max_entries=progress_max_entries)
    if not store.update_run(run.run_id, fields):
        return False
    store.append_event(run.run_id, "error", {"message": error})
    logger.bind(run_id=run.run_id).warning("Run {} failed: {}", run.run_id, error)
    return True
