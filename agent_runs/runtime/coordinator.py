from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Callable

from loguru import logger

from agent_runs.config.load_config import AppConfig
from agent_runs.providers.base import AdvanceResult
from agent_runs.runtime.dispatcher import ProviderDispatcher
from agent_runs.runtime.lifecycle import fail_run, is_terminal
from agent_runs.storage.sqlite_store import EventRecord, RunRecord, SQLiteStore


CODING_AGENT_CATEGORIES = frozenset({"implementation", "qa"})
TERMINAL_EVENT_TYPES = ("done", "error")


def encode_sse_comment(text: str) -> str:
    return f": {text}\n\n"


def encode_sse_event(event_id: int | None, event_type: str, data: Any) -> str:
    """Encode one SSE event; `event_id=None` omits the id line so the client's cursor is kept."""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    lines = [] if event_id is None else [f"id: {int(event_id)}"]
    lines.append(f"event: {event_type or 'message'}")
    lines.extend(f"data: {line}" for line in payload.split("\n"))
    return "\n".join(lines) + "\n\n"


def encode_event_record(event: EventRecord) -> str:
    return encode_sse_event(
        event.id,
        event.type,
        {"type": event.type, "payload": event.payload, "created_at": event.created_at},
    )


def parse_resume_cursor(
    after_event_id: str | None = None,
    after: str | None = None,
    last_event_id_header: str | None = None,
) -> int:
    """First non-empty source wins; anything that is not all digits resumes from the start."""
    raw = after_event_id or after or last_event_id_header or ""
    raw = raw.strip()
    return int(raw) if raw.isdigit() else 0


def ensure_terminal_event(store: SQLiteStore, run_id: str) -> int | None:
    """Append a closing `done`/`error` event for a terminal run that never got one."""
    run = store.get_run(run_id=run_id)
    if run is None or not is_terminal(run.status):
        return None
    if store.has_event_of_type(run_id, TERMINAL_EVENT_TYPES):
        return None
    if run.status == "completed":
        return store.append_event(run_id, "done", {"summary": run.summary or "Completed."})
    return store.append_event(run_id, "error", {"message": run.error or "Run failed."})


def run_slice(
    store: SQLiteStore,
    dispatcher: ProviderDispatcher,
    run_id: str,
    budget_s: float,
    *,
    config: AppConfig,
) -> AdvanceResult | None:
    """Advance one run by one slice; a failed slice is recorded on the run. None for unknown runs."""
    run = store.get_run(run_id=run_id)
    if run is None:
        return None
    result = dispatcher.advance(store, run, budget_s)
    if not result.ok:
        current = store.get_run(run_id=run_id) or run
        fail_run(
            store,
            current,
            result.error or "Run failed.",
            error_max_chars=config.runs.error_max_chars,
            progress_max_entries=config.runs.progress_max_entries,
        )
        return AdvanceResult(ok=False, done=True, error=result.error)
    return result


class StreamCoordinator:
    """Drives one observed run: replays its event log as SSE and advances it in budgeted slices.

    Each observed run gets its own `stream()` generator; nothing is shared between runs except
    the database. Event reads and slices run in worker threads, each with its own store connection.
    """

    def __init__(
        self,
        *,
        store_factory: Callable[[], SQLiteStore],
        dispatcher: ProviderDispatcher,
        config: AppConfig,
    ) -> None:
        self._store_factory = store_factory
        self._dispatcher = dispatcher
        self._config = config

    def budget_for(self, agent_type: str) -> float:
        if agent_type in CODING_AGENT_CATEGORIES:
            return self._config.budgets.coding_agent_s
        return self._config.budgets.llm_s

    def advance_once(self, run_id: str, budget_s: float) -> AdvanceResult | None:
        store = self._store_factory()
        try:
            return run_slice(store, self._dispatcher, run_id, budget_s, config=self._config)
        finally:
            store.close()

    def read_batch(self, run_id: str, after_id: int) -> tuple[list[EventRecord], RunRecord | None]:
        """Events past `after_id`, plus the run when there are none.

        A terminal run gets its closing event here, and the log is re-read so an event appended
        between the two reads is not lost.
        """
        limit = self._config.stream.event_batch_limit
        store = self._store_factory()
        try:
            events = store.list_events_after(run_id, after_id, limit=limit)
            if events:
                return events, None
            run = store.get_run(run_id=run_id)
            if run is not None and is_terminal(run.status):
                ensure_terminal_event(store, run_id)
                events = store.list_events_after(run_id, after_id, limit=limit)
            return events, run
        finally:
            store.close()

    async def stream(
        self,
        run_id: str,
        *,
        after_event_id: int = 0,
        is_closed: Callable[[], Any] | None = None,
    ) -> AsyncIterator[str]:
        stream_cfg = self._config.stream
        log = logger.bind(run_id=run_id)
        after_id = max(0, int(after_event_id))
        last_keepalive = time.monotonic()

        async def closed() -> bool:
            if is_closed is None:
                return False
            res = is_closed()
            if asyncio.iscoroutine(res):
                res = await res
            return bool(res)

        yield encode_sse_comment("ok")
        while not await closed():
            events, run = await asyncio.to_thread(self.read_batch, run_id, after_id)
            if events:
                for event in events:
                    if await closed():
                        return
                    after_id = max(after_id, event.id)
                    yield encode_event_record(event)
                continue

            if run is None:
                yield encode_sse_event(None, "error", {"message": "Unknown runId"})
                return

            if is_terminal(run.status):
                log.debug("Stream for {} drained at event {}", run_id, after_id)
                return

            budget_s = self.budget_for(run.agent_type)
            try:
                await asyncio.to_thread(self.advance_once, run_id, budget_s)
            except Exception:
                log.exception("Slice for run {} raised", run_id)

            now = time.monotonic()
            if now - last_keepalive >= stream_cfg.keepalive_interval_s:
                last_keepalive = now
                if await closed():
                    return
                yield encode_sse_comment("keep-alive")

            await asyncio.sleep(stream_cfg.poll_delay_s)
