from __future__ import annotations

import sqlite3
import time
from typing import Any

from loguru import logger

from agent_runs.artifacts.generate import generate_implementation_artifacts, worklog_body_from_progress
from agent_runs.artifacts.upsert import upsert_artifact
from agent_runs.config.load_config import AppConfig
from agent_runs.providers.base import AdvanceResult
from agent_runs.providers.suggestions import record_suggestions
from agent_runs.runtime.lifecycle import (
    CONVERSATION_CATEGORIES,
    RUN_CATEGORIES,
    append_progress,
    build_pr_url,
    cap_text,
    fail_run,
    is_placeholder_summary,
    is_terminal,
    translate_signal,
)
from agent_runs.storage.sqlite_store import RunRecord, SQLiteStore
from agent_runs.tools.cursor_agents import (
    AgentStatus,
    CursorAgentsClient,
    CursorAPIError,
    CursorConfigError,
    CursorResponseError,
    conversation_text,
    last_assistant_message,
)
from agent_runs.tools.github_prs import GitHubError, GitHubPullRequestFiles, PrFile, parse_pr_url


SUMMARY_ENRICHMENT_KEY = "summary_enrichment_attempted"


class CursorAgentProvider:
    """Advances runs delegated to the coding-agent backend by polling it once per slice."""

    name = "cursor"
    capabilities = frozenset(RUN_CATEGORIES)

    def __init__(
        self,
        *,
        config: AppConfig,
        client: CursorAgentsClient | None = None,
        pr_files: GitHubPullRequestFiles | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._pr_files = pr_files

    def _get_client(self) -> CursorAgentsClient:
        if self._client is None:
            self._client = CursorAgentsClient.from_config(self._config.backends)
        return self._client

    def _fail(self, store: SQLiteStore, run: RunRecord, message: str, *, progress_message: str | None = None) -> None:
        fail_run(
            store,
            run,
            message,
            progress_message=progress_message,
            error_max_chars=self._config.runs.error_max_chars,
            progress_max_entries=self._config.runs.progress_max_entries,
        )

    def advance(self, store: SQLiteStore, run: RunRecord, budget_s: float) -> AdvanceResult:
        if is_terminal(run.status):
            self._enrich_terminal_summary(store, run)
            return AdvanceResult.finished()
        if not run.cursor_agent_id:
            # Launch never produced an agent; the launch path already recorded the outcome.
            return AdvanceResult.finished()

        try:
            client = self._get_client()
        except CursorConfigError as e:
            return AdvanceResult.failure(str(e))

        try:
            agent = client.poll(run.cursor_agent_id)
        except CursorResponseError:
            self._fail(store, run, "Invalid response when polling agent status.")
            return AdvanceResult.finished()
        except CursorAPIError as e:
            self._fail(store, run, e.message, progress_message=f"Poll failed: {e.message}")
            return AdvanceResult.finished()

        cursor_status = agent.status or run.cursor_status or "RUNNING"
        progress = append_progress(
            run.progress, f"Status: {cursor_status}", max_entries=self._config.runs.progress_max_entries
        )
        store.update_run(run.run_id, {"cursor_status": cursor_status, "provider": self.name, "progress": progress})
        store.append_event(run.run_id, "progress", {"message": f"Status: {cursor_status}"})

        translation = translate_signal(
            cursor_status,
            agent_type=run.agent_type,
            current_stage=run.current_stage,
            raw_summary=agent.summary,
        )
        if translation.completed:
            self._complete(store, run, agent, client, progress)
        elif translation.failed:
            failed_fields = {
                "status": "failed",
                "current_stage": "failed",
                "error": cap_text(translation.error or "Run failed.", self._config.runs.error_max_chars),
                "finished_at": time.time(),
            }
            if store.update_run(run.run_id, failed_fields):
                store.append_event(run.run_id, "stage", {"stage": "failed"})
                store.append_event(run.run_id, "error", {"message": failed_fields["error"]})
        else:
            polling_fields: dict[str, Any] = {"status": "polling"}
            if translation.stage is not None:
                polling_fields["current_stage"] = translation.stage
            if store.update_run(run.run_id, polling_fields) and translation.stage is not None:
                store.append_event(run.run_id, "stage", {"stage": translation.stage})

        if run.agent_type == "implementation":
            self._write_worklog(store, run.run_id)
        return AdvanceResult(ok=True, done=translation.status in {"completed", "failed"})

    def _fetch_conversation(self, client: CursorAgentsClient, run: RunRecord) -> dict[str, Any] | None:
        try:
            return client.fetch_conversation(str(run.cursor_agent_id))
        except CursorAPIError as e:
            logger.bind(run_id=run.run_id).warning("Conversation fetch failed for {}: {}", run.run_id, e.message)
            return None

    def _complete(
        self,
        store: SQLiteStore,
        run: RunRecord,
        agent: AgentStatus,
        client: CursorAgentsClient,
        progress: list[dict[str, Any]],
    ) -> None:
        summary = agent.summary or run.summary
        pr_url = build_pr_url(agent.target_url, run.pr_url, run.repo_full_name, agent.branch_name)

        conversation: dict[str, Any] | None = None
        if is_placeholder_summary(summary) or run.agent_type in CONVERSATION_CATEGORIES:
            conversation = self._fetch_conversation(client, run)
        if is_placeholder_summary(summary):
            summary = last_assistant_message(conversation) or summary
        if is_placeholder_summary(summary):
            summary = "Completed."
        summary = cap_text(str(summary).strip(), self._config.runs.summary_max_chars)

        output = dict(run.output)
        if run.agent_type == "process-review":
            output["suggestions"] = record_suggestions(
                store,
                ticket_pk=run.ticket_pk,
                run_id=run.run_id,
                text=conversation_text(conversation) or summary,
            )

        fields = {
            "status": "completed",
            "current_stage": "completed",
            "summary": summary,
            "pr_url": pr_url,
            "output": output,
            "finished_at": time.time(),
        }
        if not store.update_run(run.run_id, fields):
            # Another slice already finished this run.
            return
        store.append_event(run.run_id, "stage", {"stage": "completed"})

        if run.agent_type == "implementation":
            self._finish_implementation(store, run, summary=summary, pr_url=pr_url, progress=progress)

        store.append_event(run.run_id, "done", {"summary": summary, "pr_url": pr_url})

    def _display_id(self, store: SQLiteStore, run: RunRecord) -> str | None:
        if run.display_id:
            return run.display_id
        if run.ticket_pk:
            ticket = store.get_ticket(ticket_pk=run.ticket_pk)
            if ticket is not None:
                return ticket.display_id
        return None

    def _list_pr_files(self, pr_url: str | None) -> tuple[list[PrFile] | None, str | None]:
        if not pr_url or self._pr_files is None or parse_pr_url(pr_url) is None:
            return None, None
        try:
            return self._pr_files.list_files(pr_url), None
        except GitHubError as e:
            return None, str(e)

    def _finish_implementation(
        self,
        store: SQLiteStore,
        run: RunRecord,
        *,
        summary: str,
        pr_url: str | None,
        progress: list[dict[str, Any]],
    ) -> None:
        log = logger.bind(run_id=run.run_id)
        if not run.ticket_pk:
            return

        try:
            position = store.move_ticket_to_column(
                ticket_pk=run.ticket_pk, column_id=self._config.backends.qa_column_id
            )
            log.info("Moved ticket {} to {} at position {}", run.ticket_pk, self._config.backends.qa_column_id, position)
        except sqlite3.Error:
            log.exception("Failed to move ticket {} to QA", run.ticket_pk)

        display_id = self._display_id(store, run) or run.ticket_pk
        pr_files, pr_files_error = self._list_pr_files(pr_url)
        generated = generate_implementation_artifacts(
            display_id,
            summary,
            pr_url=pr_url,
            pr_files=pr_files,
            pr_files_error=pr_files_error,
            progress=progress,
        )
        for artifact in generated:
            if artifact.body_md is None:
                log.info("Skipping artifact {!r}: {}", artifact.title, artifact.error)
                continue
            store.append_event(run.run_id, "tool_call", {"tool": "upsert_artifact", "title": artifact.title})
            result = upsert_artifact(
                store,
                ticket_pk=run.ticket_pk,
                agent_type="implementation",
                title=artifact.title,
                body_md=artifact.body_md,
                min_chars=self._config.artifacts.min_chars,
                qa_min_chars=self._config.artifacts.qa_min_chars,
            )
            store.append_event(
                run.run_id,
                "tool_result",
                {"tool": "upsert_artifact", "ok": result.ok, "artifact_id": result.artifact_id, "error": result.error},
            )
            if not result.ok:
                log.warning("Artifact {!r} not stored: {}", artifact.title, result.error)

    def _write_worklog(self, store: SQLiteStore, run_id: str) -> None:
        current = store.get_run(run_id=run_id)
        if current is None or not current.ticket_pk:
            return
        display_id = self._display_id(store, current) or current.ticket_pk
        body = worklog_body_from_progress(
            display_id,
            current.progress,
            status=current.status,
            summary=current.summary,
            error=current.error,
            pr_url=current.pr_url,
        )
        result = upsert_artifact(
            store,
            ticket_pk=current.ticket_pk,
            agent_type="implementation",
            title=f"Worklog for ticket {display_id}",
            body_md=body,
            min_chars=self._config.artifacts.min_chars,
            qa_min_chars=self._config.artifacts.qa_min_chars,
        )
        if not result.ok:
            logger.bind(run_id=run_id).warning("Worklog not stored: {}", result.error)

    def _enrich_terminal_summary(self, store: SQLiteStore, run: RunRecord) -> None:
        """Single permitted post-terminal write: replace a placeholder summary from the conversation."""
        if run.status != "completed" or not run.cursor_agent_id or not is_placeholder_summary(run.summary):
            return
        if run.output.get(SUMMARY_ENRICHMENT_KEY):
            return
        try:
            client = self._get_client()
        except CursorConfigError:
            return
        message = last_assistant_message(self._fetch_conversation(client, run))
        fields: dict[str, Any] = {"output": {**run.output, SUMMARY_ENRICHMENT_KEY: True}}
        if message:
            fields["summary"] = cap_text(message, self._config.runs.summary_max_chars)
        store.update_run(run.run_id, fields)
