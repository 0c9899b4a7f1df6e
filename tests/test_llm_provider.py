from __future__ import annotations

import os

from openai import OpenAIError

from agent_runs.config.load_config import AppConfig
from agent_runs.providers.llm_stream import (
    BUDGET_REACHED_MESSAGE,
    CONTINUE_INSTRUCTION,
    OpenAIStreamProvider,
    PromptCache,
)
from agent_runs.storage.sqlite_store import SQLiteStore

from tests.fakes import FakeChatClient


SYSTEM_PROMPT = "You are the project manager."
LONG_REPLY = "Here is the plan for next week. " * 12


def _provider(app_config: AppConfig, client: FakeChatClient) -> OpenAIStreamProvider:
    cache = PromptCache(path="", fallback=SYSTEM_PROMPT)
    return OpenAIStreamProvider(config=app_config, prompt_cache=cache, client=client)


def _advance(provider: OpenAIStreamProvider, store: SQLiteStore, run_id: str, budget_s: float = 45.0):
    run = store.get_run(run_id=run_id)
    assert run is not None
    return provider.advance(store, run, budget_s)


def _text_deltas(store: SQLiteStore, run_id: str) -> str:
    return "".join(e.payload["text"] for e in store.list_events_after(run_id, 0, limit=1000) if e.type == "text_delta")


def test_conversation_reply_streams_and_completes(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(
        agent_type="project-manager",
        input={"message": "What next?", "history": [{"role": "user", "content": "hi"}, {"role": "system", "content": "x"}]},
    )
    fragments = [LONG_REPLY[i : i + 7] for i in range(0, len(LONG_REPLY), 7)]
    client = FakeChatClient(fragments)

    res = _advance(_provider(app_config, client), store, run.run_id)
    assert res.ok and res.done

    sent = client.calls[0]
    assert sent[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert sent[1:] == [{"role": "user", "content": "hi"}, {"role": "user", "content": "What next?"}]

    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.status == "completed"
    assert final.summary == LONG_REPLY.strip()
    assert final.output["reply"] == LONG_REPLY.strip()
    assert _text_deltas(store, run.run_id) == LONG_REPLY

    events = store.list_events_after(run.run_id, 0, limit=1000)
    assert [e.payload["stage"] for e in events if e.type == "stage"] == ["responding", "completed"]
    assert events[-1].type == "done"


def test_budget_exhaustion_keeps_partial_and_resumes(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="project-manager", input={"message": "Summarize"})
    first = FakeChatClient(["Short ", "start"])
    res = _advance(_provider(app_config, first), store, run.run_id, budget_s=0)
    assert res.ok and not res.done

    mid = store.get_run(run_id=run.run_id)
    assert mid is not None
    assert mid.status == "running"
    assert mid.output["partial_text"] == "Short "
    assert mid.progress[-1]["message"] == BUDGET_REACHED_MESSAGE
    assert any(
        e.type == "progress" and e.payload["message"] == BUDGET_REACHED_MESSAGE
        for e in store.list_events_after(run.run_id, 0)
    )

    second = FakeChatClient(["and the rest of it."])
    res2 = _advance(_provider(app_config, second), store, run.run_id)
    assert res2.done
    assert second.calls[0][-2:] == [
        {"role": "assistant", "content": "Short "},
        {"role": "user", "content": CONTINUE_INSTRUCTION},
    ]

    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.summary == "Short and the rest of it."
    assert "partial_text" not in final.output
    stages = [e.payload["stage"] for e in store.list_events_after(run.run_id, 0) if e.type == "stage"]
    assert stages == ["responding", "completed"]


def test_substantive_text_completes_even_when_budget_elapses(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="project-manager", input={"message": "Plan"})
    res = _advance(_provider(app_config, FakeChatClient([LONG_REPLY, "never read"])), store, run.run_id, budget_s=0)
    assert res.done
    final = store.get_run(run_id=run.run_id)
    assert final is not None and final.status == "completed"
    assert final.summary == LONG_REPLY.strip()


def test_process_review_extracts_fenced_suggestions(store: SQLiteStore, app_config: AppConfig) -> None:
    ticket = store.create_ticket(display_id="0121", title="Settings page", body_md="Build it.")
    store.insert_artifact(
        ticket_pk=ticket.ticket_pk, agent_type="implementation", title="Plan for ticket 0121", body_md="The plan body."
    )
    run = store.create_run(agent_type="process-review", ticket_pk=ticket.ticket_pk)
    reply = 'Review done.\n```json\n[{"text": "Write the plan first", "justification": "It was late"}]\n```'
    client = FakeChatClient([reply])

    assert _advance(_provider(app_config, client), store, run.run_id).done
    user_prompt = client.calls[0][1]["content"]
    assert "0121" in user_prompt and "The plan body." in user_prompt

    expected = [{"text": "Write the plan first", "justification": "It was late"}]
    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.output["suggestions"] == expected
    assert store.get_latest_successful_suggestions(ticket_pk=ticket.ticket_pk) == expected
    done = [e for e in store.list_events_after(run.run_id, 0) if e.type == "done"]
    assert done[0].payload["suggestions"] == expected
    stages = [e.payload["stage"] for e in store.list_events_after(run.run_id, 0) if e.type == "stage"]
    assert stages[0] == "reviewing"


def test_process_review_without_ticket_fails(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="process-review")
    client = FakeChatClient(["unused"])
    assert _advance(_provider(app_config, client), store, run.run_id).done
    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.status == "failed"
    assert final.error == "Process review requires a ticket."
    assert client.calls == []


def test_missing_message_fails(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="project-manager", input={})
    _advance(_provider(app_config, FakeChatClient(["x"])), store, run.run_id)
    final = store.get_run(run_id=run.run_id)
    assert final is not None and final.error == "Missing message for project-manager run."


def test_backend_error_fails_run(store: SQLiteStore, app_config: AppConfig) -> None:
    run = store.create_run(agent_type="project-manager", input={"message": "hi"})
    client = FakeChatClient(["partial "], error=OpenAIError("connection reset"))
    assert _advance(_provider(app_config, client), store, run.run_id).done
    final = store.get_run(run_id=run.run_id)
    assert final is not None
    assert final.status == "failed"
    assert final.error == "LLM request failed: connection reset"
    assert _text_deltas(store, run.run_id) == "partial "


def test_prompt_cache_rereads_changed_file(tmp_path) -> None:
    path = tmp_path / "pm.md"
    path.write_text("v1", encoding="utf-8")
    cache = PromptCache(path=str(path), fallback="fallback", refresh_interval_s=15)
    assert cache.get(now=100.0) == "v1"

    path.write_text("v2 longer", encoding="utf-8")
    os.utime(path, (1_000_000, 1_000_000))
    assert cache.get(now=105.0) == "v1"  # within the refresh interval
    assert cache.get(now=116.0) == "v2 longer"

    path.unlink()
    assert cache.get(now=200.0) == "fallback"
