from __future__ import annotations

from typing import Iterable, Mapping

from loguru import logger

from agent_runs.config.load_config import AppConfig
from agent_runs.llm.openai_compat import OpenAICompatibleChatClient
from agent_runs.providers.base import AdvanceResult, RunProvider
from agent_runs.providers.coding_agent import CursorAgentProvider
from agent_runs.providers.llm_stream import OpenAIStreamProvider, PromptCache
from agent_runs.runtime.lifecycle import LLM_CATEGORIES
from agent_runs.storage.sqlite_store import RunRecord, SQLiteStore
from agent_runs.tools.cursor_agents import CursorAgentsClient
from agent_runs.tools.github_prs import GitHubPullRequestFiles


CODING_AGENT_PROVIDER = "cursor"
LLM_PROVIDER = "openai"


class ProviderSelectionError(ValueError):
    pass


# Registry of the providers `build_dispatcher` wires, for callers that validate without one.
DEFAULT_PROVIDER_CAPABILITIES: dict[str, frozenset[str]] = {
    CursorAgentProvider.name: CursorAgentProvider.capabilities,
    OpenAIStreamProvider.name: OpenAIStreamProvider.capabilities,
}


def infer_provider_name(agent_type: str) -> str:
    return LLM_PROVIDER if agent_type in LLM_CATEGORIES else CODING_AGENT_PROVIDER


def resolve_provider_name(
    agent_type: str,
    declared: str | None,
    capabilities: Mapping[str, frozenset[str]] = DEFAULT_PROVIDER_CAPABILITIES,
) -> str:
    """Name of the provider for a run; a declared name must be registered and able to handle the category."""
    name = (declared or "").strip() or infer_provider_name(agent_type)
    supported = capabilities.get(name)
    if supported is None:
        raise ProviderSelectionError(f"Unknown provider {name!r}.")
    if agent_type not in supported:
        raise ProviderSelectionError(f"Provider {name!r} cannot handle runs of category {agent_type!r}.")
    return name


class ProviderDispatcher:
    """Routes each slice to exactly one registered provider; never retries."""

    def __init__(self, providers: Iterable[RunProvider]) -> None:
        self._providers: dict[str, RunProvider] = {}
        for p in providers:
            if p.name in self._providers:
                raise ValueError(f"Duplicate provider name: {p.name!r}")
            self._providers[p.name] = p

    @property
    def provider_names(self) -> list[str]:
        return sorted(self._providers)

    @property
    def capabilities(self) -> dict[str, frozenset[str]]:
        return {name: frozenset(p.capabilities) for name, p in self._providers.items()}

    def select(self, run: RunRecord) -> RunProvider:
        """Declared provider names are authoritative; a capability mismatch is an error."""
        try:
            name = resolve_provider_name(run.agent_type, run.provider, self.capabilities)
        except ProviderSelectionError as e:
            raise ProviderSelectionError(f"{e} Run {run.run_id} cannot be advanced.") from e
        return self._providers[name]

    def advance(self, store: SQLiteStore, run: RunRecord, budget_s: float) -> AdvanceResult:
        try:
            provider = self.select(run)
        except ProviderSelectionError as e:
            return AdvanceResult.failure(str(e))
        logger.bind(run_id=run.run_id).debug(
            "Advancing {} via {} (budget {:.1f}s)", run.run_id, provider.name, budget_s
        )
        return provider.advance(store, run, budget_s)


def build_dispatcher(
    config: AppConfig,
    *,
    cursor_client: CursorAgentsClient | None = None,
    llm_client: OpenAICompatibleChatClient | None = None,
    pr_files: GitHubPullRequestFiles | None = None,
    prompt_cache: PromptCache | None = None,
) -> ProviderDispatcher:
    """Wire the two concrete providers. Backend clients are created lazily when not injected."""
    if pr_files is None:
        pr_files = GitHubPullRequestFiles(
            api_base=config.backends.github_api_base, timeout_s=config.backends.github_timeout_s
        )
    if prompt_cache is None:
        prompt_cache = PromptCache(
            path=config.prompts.project_manager_system_path,
            fallback=config.prompts.project_manager_system,
            refresh_interval_s=config.llm.prompt_refresh_interval_s,
        )
    return ProviderDispatcher(
        [
            CursorAgentProvider(config=config, client=cursor_client, pr_files=pr_files),
            OpenAIStreamProvider(config=config, prompt_cache=prompt_cache, client=llm_client),
        ]
    )
