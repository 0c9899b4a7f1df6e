from __future__ import annotations

from loguru import logger

from agent_runs.storage.sqlite_store import SQLiteStore
from agent_runs.utils.json_extract import parse_suggestions


def record_suggestions(
    store: SQLiteStore, *, ticket_pk: str | None, run_id: str, text: str
) -> list[dict[str, str]]:
    """Parse suggestions from model text and persist the outcome.

    On a parse failure the latest earlier successful result for the ticket is returned instead.
    """
    parsed = parse_suggestions(text)
    if ticket_pk is None:
        return parsed or []

    if parsed is not None:
        store.record_suggestion_review(ticket_pk=ticket_pk, run_id=run_id, suggestions=parsed, status="success")
        return parsed

    store.record_suggestion_review(
        ticket_pk=ticket_pk,
        run_id=run_id,
        suggestions=[],
        status="failed",
        error_message="Could not parse suggestions from model output.",
    )
    fallback = store.get_latest_successful_suggestions(ticket_pk=ticket_pk)
    logger.bind(run_id=run_id).warning(
        "Suggestion parse failed for ticket {}; using {} stored suggestion(s)", ticket_pk, len(fallback or [])
    )
    return fallback or []
