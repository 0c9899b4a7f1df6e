from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from agent_runs.api.dependencies import get_config, get_cursor_client, get_dispatcher
from agent_runs.api.errors import APIError
from agent_runs.api.pagination import PageCursor, PageCursorError, decode_page_cursor, encode_page_cursor
from agent_runs.config.load_config import AppConfig
from agent_runs.llm.openai_compat import LLMConfigError
from agent_runs.runtime.cancel import RunNotFoundError, cancel_active_runs, cancel_run
from agent_runs.runtime.coordinator import run_slice
from agent_runs.runtime.dispatcher import CODING_AGENT_PROVIDER, ProviderDispatcher
from agent_runs.runtime.launch import LaunchError, LaunchRequest, launch_run, resolve_launch_provider
from agent_runs.storage.sqlite_store import SQLiteStore
from agent_runs.tools.cursor_agents import CursorAgentsClient, CursorAPIError, CursorConfigError


router = APIRouter()


class HistoryTurn(BaseModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str


class LaunchRunRequest(BaseModel):
    agent_type: str = Field(min_length=1)
    ticket_pk: str | None = Field(default=None)
    repo_full_name: str | None = Field(default=None, description="Overrides the ticket's repository.")
    provider: str | None = Field(default=None, description="Defaults to the provider inferred from agent_type.")
    model: str | None = Field(default=None)
    message: str | None = Field(default=None, description="User message for conversational runs.")
    history: list[HistoryTurn] = Field(default_factory=list)
    ref: str = Field(default="main")
    branch_name: str | None = Field(default=None)


def _upstream_error(e: CursorAPIError) -> APIError:
    return APIError(status_code=502, code="upstream_error", message=e.message, details={"status": e.status_code})


@router.post("/runs")
def launch(
    body: LaunchRunRequest,
    request: Request,
    cfg: AppConfig = Depends(get_config),
    dispatcher: ProviderDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    try:
        provider = resolve_launch_provider(body.agent_type, body.provider, dispatcher)
    except LaunchError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    client: CursorAgentsClient | None = None
    if provider == CODING_AGENT_PROVIDER:
        client = get_cursor_client(request)

    store = SQLiteStore()
    try:
        run = launch_run(
            store,
            LaunchRequest(
                agent_type=body.agent_type,
                ticket_pk=body.ticket_pk,
                repo_full_name=body.repo_full_name,
                provider=body.provider,
                model=body.model,
                message=body.message,
                history=[t.model_dump() for t in body.history],
                ref=body.ref,
                branch_name=body.branch_name,
            ),
            config=cfg,
            cursor_client=client,
            dispatcher=dispatcher,
        )
    except (CursorConfigError, LLMConfigError) as e:
        raise APIError.not_configured(e) from e
    except LaunchError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    finally:
        store.close()
    return {"run": run.to_dict()}


@router.get("/runs")
def list_runs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    ticket_pk: str | None = Query(default=None),
) -> dict[str, Any]:
    cursor_obj: PageCursor | None = None
    if cursor:
        try:
            cursor_obj = decode_page_cursor(cursor)
        except PageCursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    store = SQLiteStore()
    try:
        page = store.list_runs_page(
            limit=int(limit),
            cursor=cursor_obj.as_tuple() if cursor_obj is not None else None,
            statuses=status or None,
            ticket_pk=(ticket_pk or "").strip() or None,
        )
    finally:
        store.close()
    next_cursor = page.get("next_cursor")
    if next_cursor is not None:
        page["next_cursor"] = encode_page_cursor(*next_cursor)
    return page


@router.post("/runs/cancel_active")
def cancel_active(
    cfg: AppConfig = Depends(get_config),
    client: CursorAgentsClient = Depends(get_cursor_client),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        outcome = cancel_active_runs(store, client, progress_max_entries=cfg.runs.progress_max_entries)
    finally:
        store.close()
    return outcome.to_dict()


@router.get("/runs/{run_id}")
def get_run(run_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        run = store.get_run(run_id=run_id)
        if run is None:
            raise APIError.not_found("Run")
        return {"run": run.to_dict()}
    finally:
        store.close()


@router.get("/runs/{run_id}/events")
def list_run_events(
    run_id: str,
    after: int = Query(default=0, ge=0),
    limit: int = Query(default=200, ge=1, le=1000),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if store.get_run(run_id=run_id) is None:
            raise APIError.not_found("Run")
        events = store.list_events_after(run_id, after, limit=limit)
        return {
            "items": [e.to_dict() for e in events],
            "last_event_id": events[-1].id if events else after,
        }
    finally:
        store.close()


@router.post("/runs/{run_id}/work")
def work_run(
    run_id: str,
    budget_ms: int | None = Query(default=None),
    cfg: AppConfig = Depends(get_config),
    dispatcher: ProviderDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Advance one run by a single budgeted slice without an open stream."""
    effective_ms = cfg.budgets.clamp_work_ms(budget_ms)
    store = SQLiteStore()
    try:
        result = run_slice(store, dispatcher, run_id, effective_ms / 1000.0, config=cfg)
        if result is None:
            raise APIError.not_found("Run")
        run = store.get_run(run_id=run_id)
    finally:
        store.close()
    return {
        "ok": result.ok,
        "done": result.done,
        "error": result.error,
        "budget_ms": effective_ms,
        "run": run.to_dict() if run is not None else None,
    }


@router.post("/runs/{run_id}/cancel")
def cancel(
    run_id: str,
    cfg: AppConfig = Depends(get_config),
    client: CursorAgentsClient = Depends(get_cursor_client),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        outcome = cancel_run(store, client, run_id, progress_max_entries=cfg.runs.progress_max_entries)
    except RunNotFoundError as e:
        raise APIError.not_found("Run") from e
    except CursorAPIError as e:
        raise _upstream_error(e) from e
    finally:
        store.close()
    return {"run_id": outcome.run_id, "cancelled": outcome.cancelled, "message": outcome.message}
