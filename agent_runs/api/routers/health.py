from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter

from agent_runs.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    store = SQLiteStore()
    try:
        runs_by_status = store.count_runs_by_status()
    finally:
        store.close()
    return {
        "service": "agent-runs",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "openai": _pkg_version("openai"),
            "loguru": _pkg_version("loguru"),
        },
        "runs_by_status": runs_by_status,
        "ts": time.time(),
    }
