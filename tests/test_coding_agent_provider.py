from __future__ import annotations

from agent_runs.config.load_config import AppConfig
from agent_runs.providers.coding_agent import SUMMARY_ENRICHMENT_KEY, CursorAgentProvider
from agent_runs.storage.sqlite_store import SQLiteStore
from agent_runs.tools.cursor_agents import CursorAPIError, CursorResponseError
from agent_runs.tools.github_prs import PrFile

from tests.fakes import FakeCursorClient, FakePrFiles


PR_URL = "https://github.com/acme/web/pull/17"
FINAL_MESSAGE = "Implemented the settings page, added preference persistence and covered both with tests."


def _implementation_run(store: SQLiteStore):
    ticket = store.create_ticket(display_id="0121", title="Settings page", repo_full_name="acme/web")
    run = store.create_run(
        agent_type="implementation",
        ticket_pk=ticket.ticket_pk,
        repo_full_name="acme/web",
        display_id="0121",
        status="polling",
        current_stage="running",
    )
    store.update_run(run.run_id, {"cursor_agent_id": "agent-1", "provider": "cursor"})
    return ticket, store.get_run(run_id=run.run_id)


def _advance(provider: CursorAgentProvider, store: SQLiteStore, run_id: str):
    run = store.get_run(run_id=run_id)
    assert run is not None
    return provider.advance(store, run, 12.0)


def test_implementation_run_to_completion(store: SQLiteStore, app_config: AppConfig) -> None:
    ticket, run = _implementation_run(store)
    client = FakeCursorClient(
        [
            {"status": "CREATING"},
            {"status": "RUNNING"},
            {"status": "RUNNING"},
            {"status": "FINISHED", "summary": "Completed.", "target_url": PR_URL},
        ],
        conversation={"messages": [{"role": "user", "content": "go"}, {"role": "assistant", "content": FINAL_MESSAGE}]},
    )
    pr_files = FakePrFiles(
        [PrFile(filename="src/settings/page.tsx", status="modified", additions=12, deletions=3, patch="@@ -1 +1 @@\n-a\n+b")]
    )
    provider = CursorAgentProvider(config=app_config, client=client, pr_files=pr_files)

    results = [_advance(provider, store, run.run_id) for _ in range(4)]
    assert [r.done for r in results] == [False, False, False, True]
    assert all(r.ok for r in results)

    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.status == "completed"
    assert final.current_stage == "completed"
    assert final.summary == FINAL_MESSAGE
    assert final.pr_url == PR_URL
    assert final.cursor_status == "FINISHED"
    assert final.finished_at is not None
    assert [p["message"] for p in final.progress] == [
        "Status: CREATING",
        "Status: RUNNING",
        "Status: RUNNING",
        "Status: FINISHED",
    ]

    events = store.list_events_after(run.run_id, 0)
    types = [e.type for e in events]
    assert types.count("done") == 1
    assert types[-1] == "done"
    assert events[-1].payload == {"summary": FINAL_MESSAGE, "pr_url": PR_URL}
    assert {"type": "stage", "stage": "completed"} in [{"type": e.type, **e.payload} for e in events if e.type == "stage"]
    assert "tool_call" in types and "tool_result" in types

    moved = store.get_ticket(ticket_pk=ticket.ticket_pk)
    assert moved is not None and moved.kanban_column_id == app_config.backends.qa_column_id

    titles = sorted(a.title for a in store.list_artifacts(ticket_pk=ticket.ticket_pk, agent_type="implementation"))
    assert titles == sorted(
        f"{kind} for ticket 0121"
        for kind in ("Plan", "Worklog", "Changed Files", "Decisions", "Verification", "PM Review", "Git diff")
    )
    assert pr_files.requested == [PR_URL]

    # Further slices are no-ops on a terminal run.
    assert _advance(provider, store, run.run_id).done
    assert len(client.polls) == 4


def test_error_without_summary_fails_with_status_message(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="qa", status="polling", current_stage="reviewing")
    store.update_run(run.run_id, {"cursor_agent_id": "agent-2"})
    provider = CursorAgentProvider(config=app_config, client=FakeCursorClient([{"status": "ERROR"}]))

    res = _advance(provider, store, run.run_id)
    assert res.ok and res.done

    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.status == "failed"
    assert final.error == "Agent ended with status ERROR."
    errors = [e for e in store.list_events_after(run.run_id, 0) if e.type == "error"]
    assert [e.payload["message"] for e in errors] == ["Agent ended with status ERROR."]


def test_progress_is_capped(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="qa", status="polling", current_stage="reviewing")
    store.update_run(run.run_id, {"cursor_agent_id": "agent-3"})
    provider = CursorAgentProvider(config=app_config, client=FakeCursorClient([{"status": "RUNNING"}]))

    for _ in range(55):
        assert not _advance(provider, store, run.run_id).done

    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert len(final.progress) == 50
    assert final.status == "polling"
    assert final.current_stage == "reviewing"
    stages = [e for e in store.list_events_after(run.run_id, 0, limit=1000) if e.type == "stage"]
    assert stages == []


class _FailingPollClient(FakeCursorClient):
    def __init__(self, error: CursorAPIError) -> None:
        super().__init__([{"status": "RUNNING"}])
        self.error = error

    def poll(self, agent_id: str):
        raise self.error


def test_poll_transport_error_fails_run(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="qa", status="polling", current_stage="reviewing")
    store.update_run(run.run_id, {"cursor_agent_id": "agent-4"})
    provider = CursorAgentProvider(config=app_config, client=_FailingPollClient(CursorAPIError(500, "upstream down")))

    assert _advance(provider, store, run.run_id).done
    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.status == "failed"
    assert final.error == "upstream down"
    assert final.progress[-1]["message"] == "Poll failed: upstream down"


def test_malformed_poll_response_fails_with_fixed_message(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="qa", status="polling", current_stage="reviewing")
    store.update_run(run.run_id, {"cursor_agent_id": "agent-5"})
    provider = CursorAgentProvider(
        config=app_config, client=_FailingPollClient(CursorResponseError(200, "Invalid JSON from Cursor API"))
    )

    _advance(provider, store, run.run_id)
    final = store.get_run(run_id=run.run_id)
    assert final is not None and final.error == "Invalid response when polling agent status."


def test_missing_credentials_is_a_slice_error(store: SQLiteStore, app_config: AppConfig, monkeypatch) -> None:
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    run = store.create_run(agent_type="qa", status="polling", current_stage="reviewing")
    store.update_run(run.run_id, {"cursor_agent_id": "agent-6"})
    res = _advance(CursorAgentProvider(config=app_config), store, run.run_id)
    assert not res.ok
    assert "CURSOR_API_KEY" in (res.error or "")


def test_run_without_agent_is_done(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="implementation", status="launching", current_stage="launching")
    client = FakeCursorClient([{"status": "RUNNING"}])
    assert _advance(CursorAgentProvider(config=app_config, client=client), store, run.run_id).done
    assert client.polls == []


def test_placeholder_summary_is_enriched_at_most_once(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="qa", status="completed", current_stage="completed")
    store.update_run(run.run_id, {"cursor_agent_id": "agent-7", "summary": "Completed."})
    client = FakeCursorClient([{"status": "FINISHED"}], conversation=None)
    provider = CursorAgentProvider(config=app_config, client=client)

    for _ in range(3):
        assert _advance(provider, store, run.run_id).done

    assert client.conversation_fetches == ["agent-7"]
    assert client.polls == []
    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.summary == "Completed."
    assert final.output[SUMMARY_ENRICHMENT_KEY] is True


def test_placeholder_summary_is_replaced_from_conversation(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="qa", status="completed", current_stage="completed")
    store.update_run(run.run_id, {"cursor_agent_id": "agent-8", "summary": "Done."})
    client = FakeCursorClient(
        [{"status": "FINISHED"}],
        conversation={"messages": [{"role": "assistant", "content": FINAL_MESSAGE}]},
    )
    provider = CursorAgentProvider(config=app_config, client=client)

    assert _advance(provider, store, run.run_id).done
    assert _advance(provider, store, run.run_id).done

    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.summary == FINAL_MESSAGE
    assert client.conversation_fetches == ["agent-8"]
