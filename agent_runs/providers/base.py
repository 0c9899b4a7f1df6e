from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from agent_runs.storage.sqlite_store import RunRecord, SQLiteStore


@dataclass(frozen=True)
class AdvanceResult:
    """Outcome of one slice: `done` when the run needs no further slices, or an error."""

    ok: bool
    done: bool = False
    error: str | None = None

    @classmethod
    def finished(cls) -> AdvanceResult:
        return cls(ok=True, done=True)

    @classmethod
    def pending(cls) -> AdvanceResult:
        return cls(ok=True, done=False)

    @classmethod
    def failure(cls, error: str) -> AdvanceResult:
        return cls(ok=False, done=False, error=error)


class RunProvider(Protocol):
    name: str
    capabilities: frozenset[str]

    def advance(self, store: SQLiteStore, run: RunRecord, budget_s: float) -> AdvanceResult: ...
