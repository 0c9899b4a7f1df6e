from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from agent_runs.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from agent_runs.storage.sqlite_store import SQLiteStore
from agent_runs.utils.logging import configure_logging

from .routers.artifacts import router as artifacts_router
from .routers.health import router as health_router
from .routers.runs import router as runs_router
from .routers.stream import router as stream_router
from .routers.tickets import router as tickets_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("AGENT_RUNS_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        configure_logging()
        # Opening the store once applies pending schema migrations before the first request.
        store = SQLiteStore()
        try:
            logger.info("Database ready at {}", store.db_path)
        finally:
            store.close()
        yield

    app = FastAPI(title="Agent Runs API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(tickets_router, prefix="/api/v1", tags=["tickets"])
    app.include_router(runs_router, prefix="/api/v1", tags=["runs"])
    app.include_router(stream_router, prefix="/api/v1", tags=["runs"])
    app.include_router(artifacts_router, prefix="/api/v1", tags=["artifacts"])
    return app


app = create_app()
