from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from agent_runs.api.dependencies import get_config
from agent_runs.api.errors import APIError
from agent_runs.artifacts.upsert import upsert_artifact
from agent_runs.config.load_config import AppConfig
from agent_runs.runtime.lifecycle import RUN_CATEGORIES
from agent_runs.storage.sqlite_store import SQLiteStore


router = APIRouter()


class UpsertArtifactRequest(BaseModel):
    ticket_pk: str = Field(min_length=1)
    agent_type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    body_md: str = Field(default="")


@router.post("/artifacts")
def upsert_ticket_artifact(body: UpsertArtifactRequest, cfg: AppConfig = Depends(get_config)) -> dict[str, Any]:
    if body.agent_type not in RUN_CATEGORIES:
        raise APIError(status_code=400, code="invalid_argument", message=f"Unknown agent_type: {body.agent_type!r}")
    store = SQLiteStore()
    try:
        if store.get_ticket(ticket_pk=body.ticket_pk) is None:
            raise APIError.not_found("Ticket")
        result = upsert_artifact(
            store,
            ticket_pk=body.ticket_pk,
            agent_type=body.agent_type,
            title=body.title,
            body_md=body.body_md,
            min_chars=cfg.artifacts.min_chars,
            qa_min_chars=cfg.artifacts.qa_min_chars,
        )
    finally:
        store.close()

    if result.validation_failed:
        raise APIError(status_code=400, code="invalid_argument", message=result.error or "Artifact rejected.")
    if not result.ok:
        raise APIError(status_code=500, code="internal", message=result.error or "Artifact upsert failed.")
    return {
        "artifact_id": result.artifact_id,
        "action": result.action,
        "title": result.title,
        "cleaned_up": result.cleaned_up,
    }
