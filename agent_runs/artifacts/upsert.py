from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from agent_runs.artifacts.titles import canonical_title, display_id_from_title, extract_artifact_type
from agent_runs.artifacts.validation import validate_artifact_body
from agent_runs.storage.sqlite_store import ArtifactRecord, DuplicateArtifactError, SQLiteStore


@dataclass(frozen=True)
class ArtifactUpsertResult:
    ok: bool
    artifact_id: str | None = None
    action: str | None = None  # inserted|updated
    title: str | None = None
    cleaned_up: int = 0
    error: str | None = None
    validation_failed: bool = False


def _resolve_display_id(store: SQLiteStore, ticket_pk: str, title: str) -> str | None:
    ticket = store.get_ticket(ticket_pk=ticket_pk)
    if ticket is not None and ticket.display_id:
        return ticket.display_id
    # Heuristic: numeric id from the title text; ambiguous numbering can misclassify.
    return display_id_from_title(title)


def _update_after_race(
    store: SQLiteStore, *, ticket_pk: str, agent_type: str, title: str, body_md: str
) -> ArtifactUpsertResult:
    existing = store.find_artifacts_by_exact_title(ticket_pk=ticket_pk, agent_type=agent_type, title=title)
    if not existing:
        return ArtifactUpsertResult(ok=False, title=title, error="Artifact insert conflicted but no existing row was found.")
    target = existing[0]
    store.update_artifact(target.artifact_id, title=title, body_md=body_md)
    logger.info("Artifact {!r} for ticket {} updated after concurrent insert", title, ticket_pk)
    return ArtifactUpsertResult(ok=True, artifact_id=target.artifact_id, action="updated", title=title)


def upsert_artifact(
    store: SQLiteStore,
    *,
    ticket_pk: str,
    agent_type: str,
    title: str,
    body_md: str,
    min_chars: int = 50,
    qa_min_chars: int = 100,
) -> ArtifactUpsertResult:
    """Create or update the single live artifact for (ticket, category, canonical type).

    Bodies failing the content gate are rejected before any store access. Matching rows
    with placeholder bodies are deleted, the newest remaining row is updated in place (older
    duplicates are deleted), and otherwise a new row is inserted. An insert that loses a
    race against a concurrent writer falls back to updating the row that won.

    Never raises for expected failures; inspect `ok` / `error` on the result.
    """
    check = validate_artifact_body(
        body_md, title, agent_type=agent_type, min_chars=min_chars, qa_min_chars=qa_min_chars
    )
    if not check.valid:
        return ArtifactUpsertResult(
            ok=False,
            title=title,
            error=f"Artifact validation failed: {check.reason}",
            validation_failed=True,
        )

    target_title = title
    try:
        artifact_type = extract_artifact_type(title)
        matches: list[ArtifactRecord]
        if artifact_type is not None:
            display_id = _resolve_display_id(store, ticket_pk, title)
            if display_id:
                target_title = canonical_title(artifact_type, display_id)
            matches = store.find_artifacts_by_canonical_identity(
                ticket_pk=ticket_pk, agent_type=agent_type, artifact_type=artifact_type
            )
        else:
            matches = store.find_artifacts_by_exact_title(ticket_pk=ticket_pk, agent_type=agent_type, title=title)

        placeholders = [
            a
            for a in matches
            if not validate_artifact_body(
                a.body_md, a.title, agent_type=agent_type, min_chars=min_chars, qa_min_chars=qa_min_chars
            ).valid
        ]
        placeholder_ids = {a.artifact_id for a in placeholders}
        cleaned = store.delete_artifacts(placeholder_ids) if placeholder_ids else 0

        live = [a for a in matches if a.artifact_id not in placeholder_ids]
        if live:
            target, older = live[0], live[1:]
            if older:
                cleaned += store.delete_artifacts(a.artifact_id for a in older)
            try:
                store.update_artifact(target.artifact_id, title=target_title, body_md=body_md)
            except DuplicateArtifactError:
                return _update_after_race(
                    store, ticket_pk=ticket_pk, agent_type=agent_type, title=target_title, body_md=body_md
                )
            return ArtifactUpsertResult(
                ok=True, artifact_id=target.artifact_id, action="updated", title=target_title, cleaned_up=cleaned
            )

        try:
            created = store.insert_artifact(
                ticket_pk=ticket_pk, agent_type=agent_type, title=target_title, body_md=body_md
            )
        except DuplicateArtifactError:
            return _update_after_race(
                store, ticket_pk=ticket_pk, agent_type=agent_type, title=target_title, body_md=body_md
            )
        return ArtifactUpsertResult(
            ok=True, artifact_id=created.artifact_id, action="inserted", title=target_title, cleaned_up=cleaned
        )
    except Exception as e:
        logger.exception("Artifact upsert failed for ticket {} ({!r})", ticket_pk, target_title)
        return ArtifactUpsertResult(ok=False, title=target_title, error=f"Artifact upsert failed: {e}")
