from __future__ import annotations

from agent_runs.runtime.lifecycle import (
    TRUNCATION_MARKER,
    append_progress,
    build_pr_url,
    can_transition,
    cap_text,
    determine_next_stage,
    fail_run,
    is_placeholder_summary,
    translate_signal,
)
from agent_runs.storage.sqlite_store import SQLiteStore


def test_terminal_status_never_transitions() -> None:
    assert not can_transition("completed", "failed")
    assert not can_transition("failed", "polling")
    assert can_transition("created", "launching")
    assert can_transition("polling", "running")
    assert can_transition("running", "polling")
    assert not can_transition("polling", "created")


def test_translate_finished_is_completed() -> None:
    t = translate_signal("FINISHED", agent_type="implementation", current_stage="running")
    assert t.completed and t.stage == "completed"


def test_translate_failure_without_summary_uses_status_message() -> None:
    t = translate_signal("ERROR", agent_type="qa", current_stage="reviewing", raw_summary=None)
    assert t.failed
    assert t.error == "Agent ended with status ERROR."

    t2 = translate_signal("cancelled", agent_type="qa", current_stage="reviewing", raw_summary="Stopped by owner")
    assert t2.failed
    assert t2.error == "Stopped by owner"


def test_translate_running_keeps_in_flight_stage() -> None:
    t = translate_signal("RUNNING", agent_type="implementation", current_stage="launching")
    assert t.status == "polling"
    assert t.stage is None

    t2 = translate_signal("CREATING", agent_type="qa", current_stage=None)
    assert t2.stage == "reviewing"
    assert determine_next_stage("implementation", "responding") == "running"


def test_progress_evicts_oldest_first() -> None:
    progress: list = []
    for i in range(60):
        progress = append_progress(progress, f"step {i}", max_entries=50, at=f"t{i}")
    assert len(progress) == 50
    assert progress[0]["message"] == "step 10"
    assert progress[-1] == {"at": "t59", "message": "step 59"}


def test_placeholder_summaries_and_caps() -> None:
    assert is_placeholder_summary(None)
    assert is_placeholder_summary("  Completed. ")
    assert is_placeholder_summary("done.")
    assert not is_placeholder_summary("Implemented the settings page.")

    assert cap_text("abc", 5) == "abc"
    assert cap_text("abcdefgh", 5) == "abcde"
    capped = cap_text("x" * 100, 40)
    assert len(capped) == 40
    assert capped == "x" * (40 - len(TRUNCATION_MARKER)) + TRUNCATION_MARKER


def test_build_pr_url_precedence() -> None:
    assert build_pr_url("https://github.com/o/r/pull/1", "x", "o/r", "b") == "https://github.com/o/r/pull/1"
    assert build_pr_url(None, "https://existing", "o/r", "b") == "https://existing"
    assert build_pr_url(None, None, "o/r", "feature") == "https://github.com/o/r/tree/feature"
    assert build_pr_url(None, None, None, "feature") is None


def test_fail_run_is_noop_on_terminal_run(store: SQLiteStore) -> None:
    run = store.create_run(agent_type="qa", status="polling", current_stage="reviewing")
    assert fail_run(store, run, "boom", progress_message="Poll failed: boom")

    after = store.get_run(run_id=run.run_id)
    assert after is not None
    assert after.status == "failed"
    assert after.current_stage == "failed"
    assert after.error == "boom"
    assert after.finished_at is not None
    assert after.progress[-1]["message"] == "Poll failed: boom"

    # A second failure (or any status change) must not touch a terminal run.
    assert not fail_run(store, after, "again")
    assert not store.update_run(run.run_id, {"status": "completed"})
    final = store.get_run(run_id=run.run_id)
    assert final is not None and final.error == "boom"
    errors = [e for e in store.list_events_after(run.run_id, 0) if e.type == "error"]
    assert len(errors) == 1


def test_fail_run_caps_long_errors(store: SQLiteStore) -> None:
    run = store.create_run(agent_type="implementation")
    assert fail_run(store, run, "e" * 900, error_max_chars=100)
    after = store.get_run(run_id=run.run_id)
    assert after is not None
    assert after.error == cap_text("e" * 900, 100)
    assert len(after.error) == 100
    assert after.error.endswith(TRUNCATION_MARKER)
