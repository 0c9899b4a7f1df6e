from __future__ import annotations

import dataclasses

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agent_runs.api.app import create_app
from agent_runs.config.load_config import AppConfig
from agent_runs.runtime.dispatcher import build_dispatcher
from agent_runs.tools.github_prs import PrFile

from tests.fakes import FakeChatClient, FakeCursorClient, FakePrFiles


PR_URL = "https://github.com/acme/web/pull/17"
REPLY = "Let's split the work into three tickets and ship the settings page first. " * 5
PLAN_BODY = "Plan: add a settings page, persist preferences through the API, and cover it with tests."


def _app(app_config: AppConfig, cursor: FakeCursorClient | None, chat: FakeChatClient | None = None) -> FastAPI:
    app = create_app()
    cfg = dataclasses.replace(app_config, stream=dataclasses.replace(app_config.stream, poll_delay_s=0.01))
    app.state.app_config = cfg
    if cursor is not None:
        app.state.cursor_client = cursor
    app.state.dispatcher = build_dispatcher(
        cfg,
        cursor_client=cursor,
        llm_client=chat,
        pr_files=FakePrFiles(
            [PrFile(filename="src/settings/page.tsx", status="modified", additions=12, deletions=3, patch="@@ -1 +1 @@\n-a\n+b")]
        ),
    )
    return app


def _create_ticket(client: TestClient, repo: str | None = "acme/web") -> str:
    resp = client.post(
        "/api/v1/tickets",
        json={"display_id": "0121", "title": "Settings page", "body_md": "Add it.", "repo_full_name": repo},
    )
    assert resp.status_code == 200
    return str(resp.json()["ticket"]["ticket_pk"])


def test_health_and_version(db_path: str, app_config: AppConfig) -> None:
    with TestClient(_app(app_config, None)) as client:
        assert client.get("/api/v1/healthz").json() == {"status": "ok"}
        v = client.get("/api/v1/version").json()
        assert v["service"] == "agent-runs"
        assert v["runs_by_status"] == {}


def test_implementation_run_over_work_endpoint(db_path: str, app_config: AppConfig) -> None:
    cursor = FakeCursorClient(
        [{"status": "RUNNING"}, {"status": "FINISHED", "summary": "Shipped the settings page.", "target_url": PR_URL}]
    )
    with TestClient(_app(app_config, cursor)) as client:
        ticket_pk = _create_ticket(client)
        launched = client.post("/api/v1/runs", json={"agent_type": "implementation", "ticket_pk": ticket_pk})
        assert launched.status_code == 200
        run = launched.json()["run"]
        assert run["status"] == "polling" and run["cursor_agent_id"] == "agent-1"
        run_id = run["run_id"]

        w1 = client.post(f"/api/v1/runs/{run_id}/work", params={"budget_ms": 10}).json()
        assert (w1["ok"], w1["done"], w1["budget_ms"]) == (True, False, 1000)
        w2 = client.post(f"/api/v1/runs/{run_id}/work").json()
        assert w2["done"] and w2["budget_ms"] == 25000
        assert w2["run"]["status"] == "completed"
        assert w2["run"]["summary"] == "Shipped the settings page."
        assert w2["run"]["pr_url"] == PR_URL

        events = client.get(f"/api/v1/runs/{run_id}/events", params={"after": 0}).json()
        assert events["items"][-1]["type"] == "done"
        assert events["last_event_id"] == events["items"][-1]["id"]

        arts = client.get(f"/api/v1/tickets/{ticket_pk}/artifacts").json()["items"]
        assert len(arts) == 7

        ticket = client.get(f"/api/v1/tickets/{ticket_pk}").json()["ticket"]
        assert ticket["kanban_column_id"] == "col-qa"


def test_stream_replays_from_last_event_id(db_path: str, app_config: AppConfig) -> None:
    cursor = FakeCursorClient([{"status": "FINISHED", "summary": "Shipped the settings page.", "target_url": PR_URL}])
    with TestClient(_app(app_config, cursor)) as client:
        ticket_pk = _create_ticket(client)
        run_id = client.post("/api/v1/runs", json={"agent_type": "qa", "ticket_pk": ticket_pk}).json()["run"]["run_id"]

        resp = client.get(f"/api/v1/runs/{run_id}/stream")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        body = resp.text
        assert body.startswith(": ok\n\n")
        assert "event: done" in body

        last_id = client.get(f"/api/v1/runs/{run_id}").json()["run"]["last_event_id"]
        resumed = client.get(f"/api/v1/runs/{run_id}/stream", headers={"Last-Event-ID": str(last_id)}).text
        assert resumed == ": ok\n\n"

        unknown = client.get("/api/v1/runs/run_missing/stream").text
        assert unknown == ': ok\n\nevent: error\ndata: {"message": "Unknown runId"}\n\n'


def test_conversation_run_streams_text(db_path: str, app_config: AppConfig, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    chat = FakeChatClient([REPLY[:100], REPLY[100:]])
    with TestClient(_app(app_config, None, chat)) as client:
        resp = client.post("/api/v1/runs", json={"agent_type": "project-manager", "message": "What next?"})
        assert resp.status_code == 200
        run_id = resp.json()["run"]["run_id"]

        body = client.get(f"/api/v1/runs/{run_id}/stream", params={"afterEventId": "0"}).text
        assert "event: text_delta" in body
        assert body.rstrip().split("\n\n")[-1].split("\n")[1] == "event: done"

        run = client.get(f"/api/v1/runs/{run_id}").json()["run"]
        assert run["status"] == "completed"
        assert run["output"]["reply"] == REPLY.strip()


def test_launch_errors(db_path: str, app_config: AppConfig, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with TestClient(_app(app_config, None)) as client:
        ticket_pk = _create_ticket(client)

        r = client.post("/api/v1/runs", json={"agent_type": "implementation", "ticket_pk": ticket_pk})
        assert r.status_code == 503
        assert r.json()["error"]["code"] == "not_configured"

        r = client.post("/api/v1/runs", json={"agent_type": "project-manager", "message": "hi"})
        assert r.status_code == 503

        r = client.post("/api/v1/runs", json={})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "invalid_argument"

        assert client.get("/api/v1/runs/run_missing").status_code == 404
        assert client.post("/api/v1/runs/run_missing/work").status_code == 404


def test_unknown_category_is_rejected(db_path: str, app_config: AppConfig) -> None:
    with TestClient(_app(app_config, FakeCursorClient())) as client:
        r = client.post("/api/v1/runs", json={"agent_type": "deploy"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "invalid_argument"


def test_unusable_provider_is_rejected(db_path: str, app_config: AppConfig) -> None:
    cursor = FakeCursorClient()
    with TestClient(_app(app_config, cursor)) as client:
        ticket_pk = _create_ticket(client)
        for provider in ("curosr", "openai"):
            r = client.post("/api/v1/runs", json={"agent_type": "implementation", "ticket_pk": ticket_pk, "provider": provider})
            assert r.status_code == 400
            assert r.json()["error"]["code"] == "invalid_argument"
            assert repr(provider) in r.json()["error"]["message"]
        assert client.get("/api/v1/runs").json()["items"] == []
    assert cursor.launches == []


def test_artifact_upsert_endpoint(db_path: str, app_config: AppConfig) -> None:
    with TestClient(_app(app_config, None)) as client:
        ticket_pk = _create_ticket(client)
        payload = {"ticket_pk": ticket_pk, "agent_type": "implementation", "title": "Plan for ticket 0121"}

        bad = client.post("/api/v1/artifacts", json={**payload, "body_md": "TODO"})
        assert bad.status_code == 400
        assert bad.json()["error"]["message"].startswith("Artifact validation failed:")

        first = client.post("/api/v1/artifacts", json={**payload, "body_md": PLAN_BODY}).json()
        second = client.post("/api/v1/artifacts", json={**payload, "body_md": PLAN_BODY + " Updated."}).json()
        assert (first["action"], second["action"]) == ("inserted", "updated")
        assert first["artifact_id"] == second["artifact_id"]

        items = client.get(f"/api/v1/tickets/{ticket_pk}/artifacts").json()["items"]
        assert [a["body_md"] for a in items] == [PLAN_BODY + " Updated."]

        missing = client.post("/api/v1/artifacts", json={**payload, "ticket_pk": "ticket_missing", "body_md": PLAN_BODY})
        assert missing.status_code == 404


def test_cancel_endpoints_and_listing(db_path: str, app_config: AppConfig) -> None:
    cursor = FakeCursorClient([{"status": "RUNNING"}])
    with TestClient(_app(app_config, cursor)) as client:
        ticket_pk = _create_ticket(client)
        run_ids = [
            client.post("/api/v1/runs", json={"agent_type": "implementation", "ticket_pk": ticket_pk}).json()["run"]["run_id"]
            for _ in range(3)
        ]

        one = client.post(f"/api/v1/runs/{run_ids[0]}/cancel").json()
        assert one["cancelled"] is True
        again = client.post(f"/api/v1/runs/{run_ids[0]}/cancel").json()
        assert again["cancelled"] is False

        batch = client.post("/api/v1/runs/cancel_active").json()
        assert (batch["cancelled"], batch["total"], batch["errors"]) == (2, 2, [])

        page1 = client.get("/api/v1/runs", params={"limit": 2}).json()
        assert page1["has_more"] is True
        page2 = client.get("/api/v1/runs", params={"limit": 2, "cursor": page1["next_cursor"]}).json()
        listed = [r["run_id"] for r in page1["items"] + page2["items"]]
        assert sorted(listed) == sorted(run_ids)
        assert all(r["status"] == "failed" for r in page1["items"] + page2["items"])

        still_polling = client.get("/api/v1/runs", params={"status": "polling"}).json()
        assert still_polling["items"] == []
        assert client.get("/api/v1/runs", params={"cursor": "garbage!"}).status_code == 400
        assert client.post("/api/v1/runs/run_missing/cancel").status_code == 404
