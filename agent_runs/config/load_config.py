from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_positive_float(value: Any, *, key: str) -> float:
    f = _as_float(value, key=key)
    if f <= 0:
        raise ConfigError(f"Invalid {key}: must be > 0, got {f!r}")
    return f


@dataclass(frozen=True)
class StreamConfig:
    poll_delay_s: float
    keepalive_interval_s: float
    event_batch_limit: int


@dataclass(frozen=True)
class BudgetConfig:
    coding_agent_s: float
    llm_s: float
    work_default_ms: int
    work_min_ms: int
    work_max_ms: int

    def clamp_work_ms(self, budget_ms: int | None) -> int:
        if budget_ms is None:
            return self.work_default_ms
        return max(self.work_min_ms, min(self.work_max_ms, int(budget_ms)))


@dataclass(frozen=True)
class LLMConfig:
    temperature: float
    max_tokens: int
    flush_chars: int
    flush_interval_s: float
    substantive_reply_chars: int
    partial_text_max_chars: int
    prompt_refresh_interval_s: float


@dataclass(frozen=True)
class RunConfig:
    summary_max_chars: int
    error_max_chars: int
    progress_max_entries: int


@dataclass(frozen=True)
class ArtifactConfig:
    min_chars: int
    qa_min_chars: int


@dataclass(frozen=True)
class BackendConfig:
    cursor_api_base: str
    cursor_timeout_s: float
    github_api_base: str
    github_timeout_s: float
    qa_column_id: str


@dataclass(frozen=True)
class PromptConfig:
    project_manager_system_path: str
    project_manager_system: str
    process_review_system: str
    process_review_user: str
    implementation: str
    qa: str


@dataclass(frozen=True)
class AppConfig:
    stream: StreamConfig
    budgets: BudgetConfig
    llm: LLMConfig
    runs: RunConfig
    artifacts: ArtifactConfig
    backends: BackendConfig
    prompts: PromptConfig


def default_config_path() -> Path:
    return Path(os.getenv("AGENT_RUNS_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))

    stream = raw.get("stream", {})
    budgets = raw.get("budgets", {})
    llm = raw.get("llm", {})
    runs = raw.get("runs", {})
    artifacts = raw.get("artifacts", {})
    backends = raw.get("backends", {})
    prompts = raw.get("prompts", {})

    # Relative prompt paths are resolved against the config file's directory.
    pm_path_raw = str(prompts.get("project_manager_system_path") or "").strip()
    pm_path = ""
    if pm_path_raw:
        p = Path(pm_path_raw).expanduser()
        if not p.is_absolute():
            p = (cfg_path.parent / p).resolve()
        pm_path = str(p)

    budget_cfg = BudgetConfig(
        coding_agent_s=_as_positive_float(budgets.get("coding_agent_s"), key="budgets.coding_agent_s"),
        llm_s=_as_positive_float(budgets.get("llm_s"), key="budgets.llm_s"),
        work_default_ms=_as_int(budgets.get("work_default_ms"), key="budgets.work_default_ms"),
        work_min_ms=_as_int(budgets.get("work_min_ms"), key="budgets.work_min_ms"),
        work_max_ms=_as_int(budgets.get("work_max_ms"), key="budgets.work_max_ms"),
    )
    if budget_cfg.work_min_ms > budget_cfg.work_max_ms:
        raise ConfigError("Invalid budgets: work_min_ms must be <= work_max_ms")

    return AppConfig(
        stream=StreamConfig(
            poll_delay_s=_as_positive_float(stream.get("poll_delay_s"), key="stream.poll_delay_s"),
            keepalive_interval_s=_as_positive_float(
                stream.get("keepalive_interval_s"), key="stream.keepalive_interval_s"
            ),
            event_batch_limit=_as_int(stream.get("event_batch_limit"), key="stream.event_batch_limit"),
        ),
        budgets=budget_cfg,
        llm=LLMConfig(
            temperature=_as_float(llm.get("temperature"), key="llm.temperature"),
            max_tokens=_as_int(llm.get("max_tokens"), key="llm.max_tokens"),
            flush_chars=_as_int(llm.get("flush_chars"), key="llm.flush_chars"),
            flush_interval_s=_as_float(llm.get("flush_interval_s"), key="llm.flush_interval_s"),
            substantive_reply_chars=_as_int(llm.get("substantive_reply_chars"), key="llm.substantive_reply_chars"),
            partial_text_max_chars=_as_int(llm.get("partial_text_max_chars"), key="llm.partial_text_max_chars"),
            prompt_refresh_interval_s=_as_float(
                llm.get("prompt_refresh_interval_s"), key="llm.prompt_refresh_interval_s"
            ),
        ),
        runs=RunConfig(
            summary_max_chars=_as_int(runs.get("summary_max_chars"), key="runs.summary_max_chars"),
            error_max_chars=_as_int(runs.get("error_max_chars"), key="runs.error_max_chars"),
            progress_max_entries=_as_int(runs.get("progress_max_entries"), key="runs.progress_max_entries"),
        ),
        artifacts=ArtifactConfig(
            min_chars=_as_int(artifacts.get("min_chars"), key="artifacts.min_chars"),
            qa_min_chars=_as_int(artifacts.get("qa_min_chars"), key="artifacts.qa_min_chars"),
        ),
        backends=BackendConfig(
            cursor_api_base=_as_str(backends.get("cursor_api_base"), key="backends.cursor_api_base"),
            cursor_timeout_s=_as_positive_float(backends.get("cursor_timeout_s"), key="backends.cursor_timeout_s"),
            github_api_base=_as_str(backends.get("github_api_base"), key="backends.github_api_base"),
            github_timeout_s=_as_positive_float(backends.get("github_timeout_s"), key="backends.github_timeout_s"),
            qa_column_id=_as_str(backends.get("qa_column_id"), key="backends.qa_column_id"),
        ),
        prompts=PromptConfig(
            project_manager_system_path=pm_path,
            project_manager_system=_as_str(
                prompts.get("project_manager_system"), key="prompts.project_manager_system"
            ),
            process_review_system=_as_str(prompts.get("process_review_system"), key="prompts.process_review_system"),
            process_review_user=_as_str(prompts.get("process_review_user"), key="prompts.process_review_user"),
            implementation=_as_str(prompts.get("implementation"), key="prompts.implementation"),
            qa=_as_str(prompts.get("qa"), key="prompts.qa"),
        ),
    )
