from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


# Ensure `import agent_runs...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
os.environ.setdefault("AGENT_RUNS_CONFIG_PATH", str(REPO_ROOT / "config" / "default.toml"))

from agent_runs.config.load_config import AppConfig, load_app_config  # noqa: E402
from agent_runs.storage.sqlite_store import SQLiteStore  # noqa: E402


@pytest.fixture()
def app_config() -> AppConfig:
    return load_app_config(REPO_ROOT / "config" / "default.toml")


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    path = str(tmp_path / "app.db")
    monkeypatch.setenv("AGENT_RUNS_SQLITE_PATH", path)
    return path


@pytest.fixture()
def store(db_path: str):
    s = SQLiteStore(db_path)
    try:
        yield s
    finally:
        s.close()
