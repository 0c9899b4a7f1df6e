from __future__ import annotations

import time
from dataclasses import dataclass, field

from loguru import logger

from agent_runs.runtime.lifecycle import ACTIVE_STATUSES, append_progress, is_terminal
from agent_runs.storage.sqlite_store import RunRecord, SQLiteStore
from agent_runs.tools.cursor_agents import CursorAgentsClient, CursorAPIError


CANCEL_PROGRESS_MESSAGE = "Cancelled by user (stop usage)."
CANCEL_ERROR = "Cancelled by user."


class RunNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class CancelOutcome:
    run_id: str
    cancelled: bool
    message: str


@dataclass
class BatchCancelOutcome:
    cancelled: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.total == 0:
            return "No active runs to cancel."
        msg = f"Cancelled {self.cancelled} of {self.total} active run(s)."
        if self.errors:
            msg += f" {len(self.errors)} failed."
        return msg

    def to_dict(self) -> dict[str, object]:
        return {"cancelled": self.cancelled, "total": self.total, "errors": list(self.errors), "message": self.message}


def _mark_cancelled(store: SQLiteStore, run: RunRecord, *, progress_max_entries: int) -> bool:
    progress = append_progress(run.progress, CANCEL_PROGRESS_MESSAGE, max_entries=progress_max_entries)
    updated = store.update_run(
        run.run_id,
        {
            "status": "failed",
            "current_stage": "failed",
            "error": CANCEL_ERROR,
            "progress": progress,
            "finished_at": time.time(),
        },
    )
    if updated:
        store.append_event(run.run_id, "progress", {"message": CANCEL_PROGRESS_MESSAGE})
        store.append_event(run.run_id, "error", {"message": CANCEL_ERROR})
    return updated


def cancel_run(
    store: SQLiteStore, client: CursorAgentsClient, run_id: str, *, progress_max_entries: int = 50
) -> CancelOutcome:
    """Stop the external agent for one run and mark the run failed with a cancellation reason.

    Raises RunNotFoundError for unknown runs and CursorAPIError when the backend refuses.
    """
    run = store.get_run(run_id=run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    if is_terminal(run.status):
        return CancelOutcome(run_id=run_id, cancelled=False, message=f"Run already {run.status}.")
    if not run.cursor_agent_id:
        return CancelOutcome(run_id=run_id, cancelled=False, message="Run has no external agent to cancel.")

    client.cancel(run.cursor_agent_id)
    cancelled = _mark_cancelled(store, run, progress_max_entries=progress_max_entries)
    logger.bind(run_id=run_id).info("Cancelled run {} (agent {})", run_id, run.cursor_agent_id)
    return CancelOutcome(run_id=run_id, cancelled=cancelled, message=CANCEL_ERROR if cancelled else "Run already finished.")


def cancel_active_runs(
    store: SQLiteStore, client: CursorAgentsClient, *, progress_max_entries: int = 50
) -> BatchCancelOutcome:
    """Cancel every active run with an external agent; per-run failures are collected, not raised."""
    runs = store.list_runs(statuses=list(ACTIVE_STATUSES), with_agent_id=True)
    outcome = BatchCancelOutcome(total=len(runs))
    for run in runs:
        label = run.display_id or run.run_id
        try:
            client.cancel(str(run.cursor_agent_id))
        except CursorAPIError as e:
            outcome.errors.append(f"{label}: {e.status_code} {e.message[:100]}")
            continue
        if _mark_cancelled(store, run, progress_max_entries=progress_max_entries):
            outcome.cancelled += 1
    logger.info("Batch cancel: {}", outcome.message)
    return outcome
