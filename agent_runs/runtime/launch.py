from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from agent_runs.config.load_config import AppConfig
from agent_runs.llm.openai_compat import LLMConfigError
from agent_runs.runtime.dispatcher import (
    CODING_AGENT_PROVIDER,
    DEFAULT_PROVIDER_CAPABILITIES,
    LLM_PROVIDER,
    ProviderDispatcher,
    ProviderSelectionError,
    resolve_provider_name,
)
from agent_runs.runtime.lifecycle import RUN_CATEGORIES, append_progress, default_working_stage, fail_run
from agent_runs.storage.sqlite_store import RunRecord, SQLiteStore, TicketRecord
from agent_runs.tools.cursor_agents import CursorAgentsClient, CursorAPIError
from agent_runs.utils.template import render_prompt


class LaunchError(ValueError):
    """The launch request itself is invalid (unknown category or ticket, unusable provider)."""


@dataclass(frozen=True)
class LaunchRequest:
    agent_type: str
    ticket_pk: str | None = None
    repo_full_name: str | None = None
    provider: str | None = None
    model: str | None = None
    message: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    ref: str = "main"
    branch_name: str | None = None


def _set_stage(store: SQLiteStore, run_id: str, stage: str, **extra: Any) -> None:
    if store.update_run(run_id, {"current_stage": stage, **extra}):
        store.append_event(run_id, "stage", {"stage": stage})


def _coding_agent_prompt(config: AppConfig, req: LaunchRequest, ticket: TicketRecord | None, repo: str) -> str:
    variables = {
        "display_id": ticket.display_id if ticket else "",
        "title": ticket.title if ticket else "",
        "body_md": ticket.body_md if ticket else "",
        "repo_full_name": repo,
        "branch_name": req.branch_name or req.ref,
    }
    if req.agent_type == "implementation":
        return render_prompt(config.prompts.implementation, variables)
    if req.agent_type == "qa":
        return render_prompt(config.prompts.qa, variables)
    if req.agent_type == "process-review":
        return render_prompt(config.prompts.process_review_user, {**variables, "artifacts": ""})
    return (req.message or "").strip()


def resolve_launch_provider(
    agent_type: str,
    provider: str | None,
    dispatcher: ProviderDispatcher | None = None,
) -> str:
    """Check the category and pick its provider from `dispatcher` (or the default registry)."""
    if agent_type not in RUN_CATEGORIES:
        raise LaunchError(f"Unknown run category: {agent_type!r}")
    capabilities = dispatcher.capabilities if dispatcher is not None else DEFAULT_PROVIDER_CAPABILITIES
    try:
        return resolve_provider_name(agent_type, provider, capabilities)
    except ProviderSelectionError as e:
        raise LaunchError(str(e)) from e


def launch_run(
    store: SQLiteStore,
    req: LaunchRequest,
    *,
    config: AppConfig,
    cursor_client: CursorAgentsClient | None = None,
    dispatcher: ProviderDispatcher | None = None,
) -> RunRecord:
    """Create a run and, for coding-agent runs, start the external agent.

    The provider must be registered (in `dispatcher`, else the default registry) and able to
    handle the category; otherwise LaunchError is raised before anything is launched or written.
    Missing backend credentials raise (CursorConfigError / LLMConfigError) before any row is
    written. Backend failures after the run exists are recorded on the run instead.
    Language-model runs are only created here; their first slice starts generation.
    """
    provider = resolve_launch_provider(req.agent_type, req.provider, dispatcher)

    client: CursorAgentsClient | None = None
    if provider == LLM_PROVIDER:
        if not os.getenv("OPENAI_API_KEY"):
            raise LLMConfigError("Missing OPENAI_API_KEY.")
    elif provider == CODING_AGENT_PROVIDER:
        client = cursor_client or CursorAgentsClient.from_config(config.backends)

    ticket: TicketRecord | None = None
    if req.ticket_pk:
        ticket = store.get_ticket(ticket_pk=req.ticket_pk)
        if ticket is None:
            raise LaunchError(f"Ticket not found: {req.ticket_pk}")
    if req.agent_type == "project-manager" and not (req.message or "").strip():
        raise LaunchError("A message is required for project-manager runs.")
    if req.agent_type in {"implementation", "qa", "process-review"} and ticket is None:
        raise LaunchError(f"A ticket is required for {req.agent_type} runs.")

    repo = req.repo_full_name or (ticket.repo_full_name if ticket else None)
    run = store.create_run(
        agent_type=req.agent_type,
        provider=req.provider or None,
        model=req.model,
        ticket_pk=req.ticket_pk,
        repo_full_name=repo,
        display_id=ticket.display_id if ticket else None,
        input={"message": req.message, "history": req.history, "ref": req.ref, "branch_name": req.branch_name},
    )
    store.append_event(run.run_id, "stage", {"stage": "preparing"})
    log = logger.bind(run_id=run.run_id)

    if client is None:
        log.info("Created {} run {} for {}", req.agent_type, run.run_id, provider)
        return run

    _set_stage(store, run.run_id, "fetching_ticket")
    _set_stage(store, run.run_id, "resolving_repo")
    if not repo:
        fail_run(store, run, "No repository is connected to this ticket.", error_max_chars=config.runs.error_max_chars)
        return store.get_run(run_id=run.run_id) or run

    prompt = _coding_agent_prompt(config, req, ticket, repo)
    branch_name = None
    source_ref = req.ref
    if req.agent_type == "implementation" and ticket is not None:
        branch_name = req.branch_name or f"ticket/{ticket.display_id}-implementation"
    elif req.branch_name:
        source_ref = req.branch_name

    _set_stage(store, run.run_id, "launching", status="launching")
    try:
        agent = client.launch(
            prompt=prompt,
            repo_url=f"https://github.com/{repo}",
            ref=source_ref,
            branch_name=branch_name,
            model=req.model,
        )
    except CursorAPIError as e:
        fail_run(store, run, e.message, error_max_chars=config.runs.error_max_chars)
        return store.get_run(run_id=run.run_id) or run

    stage = default_working_stage(req.agent_type)
    progress = append_progress([], f"Launched agent {agent.agent_id}.", max_entries=config.runs.progress_max_entries)
    _set_stage(
        store,
        run.run_id,
        stage,
        status="polling",
        cursor_agent_id=agent.agent_id,
        cursor_status=agent.status or "CREATING",
        progress=progress,
    )
    log.info("Launched {} agent {} for run {}", req.agent_type, agent.agent_id, run.run_id)
    return store.get_run(run_id=run.run_id) or run
