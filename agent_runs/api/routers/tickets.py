from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from agent_runs.api.errors import APIError
from agent_runs.storage.sqlite_store import SQLiteStore


router = APIRouter()


class CreateTicketRequest(BaseModel):
    display_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    body_md: str = Field(default="")
    repo_full_name: str | None = Field(default=None, description="owner/repo of the connected repository.")
    kanban_column_id: str | None = Field(default=None)


@router.post("/tickets")
def create_ticket(body: CreateTicketRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        ticket = store.create_ticket(
            display_id=body.display_id.strip(),
            title=body.title.strip(),
            body_md=body.body_md,
            repo_full_name=(body.repo_full_name or "").strip() or None,
            kanban_column_id=body.kanban_column_id,
        )
        return {"ticket": ticket.to_dict()}
    finally:
        store.close()


@router.get("/tickets/{ticket_pk}")
def get_ticket(ticket_pk: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        ticket = store.get_ticket(ticket_pk=ticket_pk)
        if ticket is None:
            raise APIError.not_found("Ticket")
        return {"ticket": ticket.to_dict()}
    finally:
        store.close()


@router.get("/tickets/{ticket_pk}/artifacts")
def list_ticket_artifacts(ticket_pk: str, agent_type: str | None = Query(default=None)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if store.get_ticket(ticket_pk=ticket_pk) is None:
            raise APIError.not_found("Ticket")
        items = store.list_artifacts(ticket_pk=ticket_pk, agent_type=(agent_type or "").strip() or None)
        return {"items": [a.to_dict() for a in items]}
    finally:
        store.close()


@router.get("/tickets/{ticket_pk}/suggestions")
def get_ticket_suggestions(ticket_pk: str) -> dict[str, Any]:
    """Latest successful process-review suggestions for a ticket (empty when none)."""
    store = SQLiteStore()
    try:
        if store.get_ticket(ticket_pk=ticket_pk) is None:
            raise APIError.not_found("Ticket")
        return {"suggestions": store.get_latest_successful_suggestions(ticket_pk=ticket_pk) or []}
    finally:
        store.close()
