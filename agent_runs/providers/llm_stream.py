from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Any

from loguru import logger
from openai import APITimeoutError, OpenAIError

from agent_runs.config.load_config import AppConfig
from agent_runs.llm.openai_compat import LLMConfigError, OpenAICompatibleChatClient
from agent_runs.providers.base import AdvanceResult
from agent_runs.providers.suggestions import record_suggestions
from agent_runs.runtime.lifecycle import (
    CONVERSATIONAL_STAGE,
    LLM_CATEGORIES,
    append_progress,
    cap_text,
    fail_run,
    is_terminal,
)
from agent_runs.storage.sqlite_store import RunRecord, SQLiteStore
from agent_runs.utils.deadline import SliceDeadline
from agent_runs.utils.template import render_prompt


BUDGET_REACHED_MESSAGE = "Time budget reached; continuing in next work slice."
CONTINUE_INSTRUCTION = "Continue exactly where you stopped. Do not repeat text you already wrote."


class PromptInputError(ValueError):
    """The run does not carry what its prompt needs (missing ticket, empty message)."""


class PromptCache:
    """System prompt read from disk, re-checked at most once per `refresh_interval_s`.

    The file is re-read only when its mtime changed; `fallback` is used when no path is
    configured or the file is missing.
    """

    def __init__(self, *, path: str, fallback: str, refresh_interval_s: float = 15.0) -> None:
        self.path = path
        self.fallback = fallback
        self.refresh_interval_s = float(refresh_interval_s)
        self.last_refreshed_at: float | None = None
        self._mtime: float | None = None
        self._text: str | None = None
        self._lock = threading.Lock()

    def get(self, *, now: float | None = None) -> str:
        ts = time.monotonic() if now is None else now
        with self._lock:
            if self.last_refreshed_at is None or ts - self.last_refreshed_at >= self.refresh_interval_s:
                self._refresh()
                self.last_refreshed_at = ts
            return self._text or self.fallback

    def _refresh(self) -> None:
        if not self.path:
            return
        try:
            mtime = os.stat(self.path).st_mtime
        except OSError:
            self._text = None
            self._mtime = None
            return
        if mtime != self._mtime:
            self._text = Path(self.path).read_text(encoding="utf-8").strip() or None
            self._mtime = mtime


class OpenAIStreamProvider:
    """Advances runs whose work is one streamed text generation (replies and suggestion reviews)."""

    name = "openai"
    capabilities = LLM_CATEGORIES

    def __init__(
        self,
        *,
        config: AppConfig,
        prompt_cache: PromptCache,
        client: OpenAICompatibleChatClient | None = None,
    ) -> None:
        self._config = config
        self._prompt_cache = prompt_cache
        self._client = client

    def _get_client(self) -> OpenAICompatibleChatClient:
        if self._client is None:
            self._client = OpenAICompatibleChatClient()
        return self._client

    def _fail(self, store: SQLiteStore, run: RunRecord, message: str) -> None:
        fail_run(
            store,
            run,
            message,
            error_max_chars=self._config.runs.error_max_chars,
            progress_max_entries=self._config.runs.progress_max_entries,
        )

    def _process_review_messages(self, store: SQLiteStore, run: RunRecord) -> list[dict[str, Any]]:
        if not run.ticket_pk:
            raise PromptInputError("Process review requires a ticket.")
        ticket = store.get_ticket(ticket_pk=run.ticket_pk)
        if ticket is None:
            raise PromptInputError(f"Ticket not found: {run.ticket_pk}")
        artifacts = store.list_artifacts(ticket_pk=run.ticket_pk)
        artifacts_md = "\n\n".join(f"### {a.title}\n\n{a.body_md}" for a in artifacts) or "(no artifacts)"
        user = render_prompt(
            self._config.prompts.process_review_user,
            {
                "display_id": ticket.display_id,
                "title": ticket.title,
                "body_md": ticket.body_md,
                "artifacts": artifacts_md,
            },
        )
        return [
            {"role": "system", "content": self._config.prompts.process_review_system},
            {"role": "user", "content": user},
        ]

    def _conversation_messages(self, run: RunRecord) -> list[dict[str, Any]]:
        message = run.input.get("message")
        if not isinstance(message, str) or not message.strip():
            raise PromptInputError("Missing message for project-manager run.")
        messages: list[dict[str, Any]] = [{"role": "system", "content": self._prompt_cache.get()}]
        history = run.input.get("history")
        if isinstance(history, list):
            for turn in history:
                if (
                    isinstance(turn, dict)
                    and turn.get("role") in {"user", "assistant"}
                    and isinstance(turn.get("content"), str)
                ):
                    messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": message.strip()})
        return messages

    def _flush(self, store: SQLiteStore, run_id: str, buffer: list[str]) -> None:
        if buffer:
            store.append_event(run_id, "text_delta", {"text": "".join(buffer)})
            buffer.clear()

    def advance(self, store: SQLiteStore, run: RunRecord, budget_s: float) -> AdvanceResult:
        log = logger.bind(run_id=run.run_id)
        if is_terminal(run.status):
            return AdvanceResult.finished()
        if run.agent_type not in self.capabilities:
            return AdvanceResult.failure(f"Provider {self.name!r} cannot handle category {run.agent_type!r}.")

        try:
            client = self._get_client()
        except LLMConfigError as e:
            return AdvanceResult.failure(str(e))

        stage = "reviewing" if run.agent_type == "process-review" else CONVERSATIONAL_STAGE
        fields: dict[str, Any] = {"status": "running", "provider": self.name}
        if run.current_stage != stage:
            fields["current_stage"] = stage
        if not store.update_run(run.run_id, fields):
            return AdvanceResult.finished()
        if run.current_stage != stage:
            store.append_event(run.run_id, "stage", {"stage": stage})

        try:
            if run.agent_type == "process-review":
                messages = self._process_review_messages(store, run)
            else:
                messages = self._conversation_messages(run)
        except PromptInputError as e:
            if run.agent_type == "process-review" and run.ticket_pk:
                store.record_suggestion_review(
                    ticket_pk=run.ticket_pk, run_id=run.run_id, suggestions=[], status="failed", error_message=str(e)
                )
            self._fail(store, run, str(e))
            return AdvanceResult.finished()

        partial = str(run.output.get("partial_text") or "")
        if partial:
            messages = messages + [
                {"role": "assistant", "content": partial},
                {"role": "user", "content": CONTINUE_INSTRUCTION},
            ]

        llm_cfg = self._config.llm
        deadline = SliceDeadline(budget_s)
        generated: list[str] = []
        buffer: list[str] = []
        buffered_chars = 0
        last_flush = time.monotonic()
        aborted = False

        stream = client.stream_text(
            messages=messages,
            temperature=llm_cfg.temperature,
            max_tokens=llm_cfg.max_tokens,
            model=run.model,
            timeout_s=max(1.0, float(budget_s)),
        )
        try:
            for fragment in stream:
                generated.append(fragment)
                buffer.append(fragment)
                buffered_chars += len(fragment)
                now = time.monotonic()
                if buffered_chars >= llm_cfg.flush_chars or now - last_flush >= llm_cfg.flush_interval_s:
                    self._flush(store, run.run_id, buffer)
                    buffered_chars = 0
                    last_flush = now
                if deadline.expired:
                    aborted = True
                    break
        except APITimeoutError:
            aborted = True
        except OpenAIError as e:
            self._flush(store, run.run_id, buffer)
            self._fail(store, run, f"LLM request failed: {e}")
            return AdvanceResult.finished()
        finally:
            stream.close()
        self._flush(store, run.run_id, buffer)

        text = partial + "".join(generated)
        if aborted and len(text.strip()) < llm_cfg.substantive_reply_chars:
            output = dict(run.output)
            output["partial_text"] = text[: llm_cfg.partial_text_max_chars]
            progress = append_progress(
                run.progress, BUDGET_REACHED_MESSAGE, max_entries=self._config.runs.progress_max_entries
            )
            store.update_run(run.run_id, {"status": "running", "output": output, "progress": progress})
            store.append_event(run.run_id, "progress", {"message": BUDGET_REACHED_MESSAGE})
            log.info("Slice budget reached for {} after {} chars", run.run_id, len(text))
            return AdvanceResult.pending()

        self._complete(store, run, text)
        return AdvanceResult.finished()

    def _complete(self, store: SQLiteStore, run: RunRecord, text: str) -> None:
        final = cap_text(text.strip(), self._config.runs.summary_max_chars)
        output = {k: v for k, v in run.output.items() if k != "partial_text"}
        done_payload: dict[str, Any] = {"summary": final}
        if run.agent_type == "process-review":
            suggestions = record_suggestions(store, ticket_pk=run.ticket_pk, run_id=run.run_id, text=text)
            output["suggestions"] = suggestions
            done_payload["suggestions"] = suggestions
        else:
            output["reply"] = final

        fields = {
            "status": "completed",
            "current_stage": "completed",
            "summary": final,
            "output": output,
            "finished_at": time.time(),
        }
        if store.update_run(run.run_id, fields):
            store.append_event(run.run_id, "stage", {"stage": "completed"})
            store.append_event(run.run_id, "done", done_payload)
