from __future__ import annotations

import threading

from fastapi import Request

from agent_runs.api.errors import APIError
from agent_runs.config.load_config import AppConfig, ConfigError, load_app_config
from agent_runs.runtime.coordinator import StreamCoordinator
from agent_runs.runtime.dispatcher import ProviderDispatcher, build_dispatcher
from agent_runs.storage.sqlite_store import SQLiteStore
from agent_runs.tools.cursor_agents import CursorAgentsClient, CursorConfigError


_INIT_LOCK = threading.Lock()


def get_config(request: Request) -> AppConfig:
    """FastAPI dependency: the app config, loaded once per process and cached on `app.state`."""
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached
    with _INIT_LOCK:
        cached = getattr(request.app.state, "app_config", None)
        if isinstance(cached, AppConfig):
            return cached
        try:
            cfg = load_app_config()
        except ConfigError as e:
            raise APIError.not_configured(e) from e
        request.app.state.app_config = cfg
        return cfg


def get_dispatcher(request: Request) -> ProviderDispatcher:
    """Provider registry shared by the stream and work endpoints.

    Backend clients inside the providers are created lazily, so building the registry never
    needs credentials; a missing key surfaces as a failed slice on the run that needed it.
    """
    cached = getattr(request.app.state, "dispatcher", None)
    if isinstance(cached, ProviderDispatcher):
        return cached
    cfg = get_config(request)
    with _INIT_LOCK:
        cached = getattr(request.app.state, "dispatcher", None)
        if isinstance(cached, ProviderDispatcher):
            return cached
        dispatcher = build_dispatcher(cfg)
        request.app.state.dispatcher = dispatcher
        return dispatcher


def get_cursor_client(request: Request) -> CursorAgentsClient:
    cached = getattr(request.app.state, "cursor_client", None)
    if cached is not None:
        return cached
    cfg = get_config(request)
    with _INIT_LOCK:
        cached = getattr(request.app.state, "cursor_client", None)
        if cached is not None:
            return cached
        try:
            client = CursorAgentsClient.from_config(cfg.backends)
        except CursorConfigError as e:
            raise APIError.not_configured(e) from e
        request.app.state.cursor_client = client
        return client


def get_coordinator(request: Request) -> StreamCoordinator:
    return StreamCoordinator(
        store_factory=SQLiteStore,
        dispatcher=get_dispatcher(request),
        config=get_config(request),
    )
