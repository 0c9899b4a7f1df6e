from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable

from agent_runs.artifacts.titles import extract_artifact_type
from agent_runs.runtime.lifecycle import STATUS_RANK, TERMINAL_STATUSES


SCHEMA_VERSION = 3


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def default_db_path() -> str:
    return os.getenv("AGENT_RUNS_SQLITE_PATH", "data/agent_runs.db")


class DuplicateArtifactError(RuntimeError):
    """Raised when an artifact insert collides with an existing (ticket, category, title) row."""


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    agent_type: str
    provider: str | None
    model: str | None
    ticket_pk: str | None
    repo_full_name: str | None
    display_id: str | None
    cursor_agent_id: str | None
    cursor_status: str | None
    status: str
    current_stage: str | None
    input: dict[str, Any]
    output: dict[str, Any]
    progress: list[dict[str, Any]]
    summary: str | None
    error: str | None
    pr_url: str | None
    last_event_id: int | None
    created_at: float
    updated_at: float
    finished_at: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EventRecord:
    id: int
    run_id: str
    type: str
    payload: dict[str, Any]
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TicketRecord:
    ticket_pk: str
    display_id: str
    title: str
    body_md: str
    repo_full_name: str | None
    kanban_column_id: str | None
    kanban_position: int | None
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ArtifactRecord:
    artifact_id: str
    ticket_pk: str
    agent_type: str
    title: str
    body_md: str
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_RUN_COLUMNS = (
    "run_id, agent_type, provider, model, ticket_pk, repo_full_name, display_id, cursor_agent_id, "
    "cursor_status, status, current_stage, input_json, output_json, progress_json, summary, error, "
    "pr_url, last_event_id, created_at, updated_at, finished_at"
)

# Columns a caller may set through update_run(); JSON payload fields map onto *_json columns.
_RUN_UPDATABLE = {
    "provider",
    "model",
    "cursor_agent_id",
    "cursor_status",
    "status",
    "current_stage",
    "summary",
    "error",
    "pr_url",
    "finished_at",
}
_RUN_JSON_FIELDS = {"input": "input_json", "output": "output_json", "progress": "progress_json"}

_STATUS_RANK_SQL = "CASE status " + " ".join(
    f"WHEN '{status}' THEN {rank}" for status, rank in STATUS_RANK.items()
) + " ELSE 0 END"


def _run_from_row(r: sqlite3.Row) -> RunRecord:
    return RunRecord(
        run_id=r["run_id"],
        agent_type=r["agent_type"],
        provider=r["provider"],
        model=r["model"],
        ticket_pk=r["ticket_pk"],
        repo_full_name=r["repo_full_name"],
        display_id=r["display_id"],
        cursor_agent_id=r["cursor_agent_id"],
        cursor_status=r["cursor_status"],
        status=r["status"],
        current_stage=r["current_stage"],
        input=_json_loads(r["input_json"], {}),
        output=_json_loads(r["output_json"], {}),
        progress=_json_loads(r["progress_json"], []),
        summary=r["summary"],
        error=r["error"],
        pr_url=r["pr_url"],
        last_event_id=int(r["last_event_id"]) if r["last_event_id"] is not None else None,
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
        finished_at=float(r["finished_at"]) if r["finished_at"] is not None else None,
    )


def _ticket_from_row(r: sqlite3.Row) -> TicketRecord:
    return TicketRecord(
        ticket_pk=r["ticket_pk"],
        display_id=r["display_id"],
        title=r["title"],
        body_md=r["body_md"],
        repo_full_name=r["repo_full_name"],
        kanban_column_id=r["kanban_column_id"],
        kanban_position=int(r["kanban_position"]) if r["kanban_position"] is not None else None,
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def _artifact_from_row(r: sqlite3.Row) -> ArtifactRecord:
    return ArtifactRecord(
        artifact_id=r["artifact_id"],
        ticket_pk=r["ticket_pk"],
        agent_type=r["agent_type"],
        title=r["title"],
        body_md=r["body_md"],
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


class SQLiteStore:
    """SQLite-backed store for runs, run events, tickets and generated artifacts.

    Design goals:
    - The event log (`events`) is append-only and authoritative for what happened; the
      `runs` row is a mutable projection optimized for point lookups.
    - Callers never rely on multi-statement transactions: every write here is a single
      statement, and status-changing run updates are conditional so terminal runs
      cannot regress.
    - One connection per thread; open a fresh store for work done in a worker thread.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction (used by schema migrations)."""
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): tickets/runs/events.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tickets (
              ticket_pk TEXT PRIMARY KEY,
              display_id TEXT NOT NULL,
              title TEXT NOT NULL,
              body_md TEXT NOT NULL,
              repo_full_name TEXT,
              kanban_column_id TEXT,
              kanban_position INTEGER,
              kanban_moved_at REAL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              agent_type TEXT NOT NULL,
              provider TEXT,
              model TEXT,
              ticket_pk TEXT,
              repo_full_name TEXT,
              display_id TEXT,
              cursor_agent_id TEXT,
              cursor_status TEXT,
              status TEXT NOT NULL,
              current_stage TEXT,
              input_json TEXT NOT NULL,
              output_json TEXT NOT NULL,
              progress_json TEXT NOT NULL,
              summary TEXT,
              error TEXT,
              pr_url TEXT,
              last_event_id INTEGER,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              finished_at REAL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL,
              type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              created_at REAL NOT NULL,
              FOREIGN KEY(run_id) REFERENCES runs(run_id)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_run_id ON events(run_id, id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_ticket ON runs(ticket_pk, created_at);")

        # Important: initialize new databases at schema_version=1 (base tables),
        # then run explicit migrations up to SCHEMA_VERSION.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        # Apply sequential migrations in a single transaction.
        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                elif current == 2:
                    self._migrate_2_to_3(cur)
                    current = 3
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Generated ticket documents. The unique index is what surfaces concurrent inserts.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS artifacts (
              artifact_id TEXT PRIMARY KEY,
              ticket_pk TEXT NOT NULL,
              agent_type TEXT NOT NULL,
              title TEXT NOT NULL,
              body_md TEXT NOT NULL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_artifacts_identity ON artifacts(ticket_pk, agent_type, title);"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_artifacts_ticket ON artifacts(ticket_pk, created_at);")

    def _migrate_2_to_3(self, cur: sqlite3.Cursor) -> None:
        # Side table for suggestion-extraction results (latest success is the parse-failure fallback).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suggestion_reviews (
              review_id TEXT PRIMARY KEY,
              ticket_pk TEXT NOT NULL,
              run_id TEXT,
              suggestions_json TEXT NOT NULL,
              status TEXT NOT NULL,
              error_message TEXT,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_suggestion_reviews_ticket ON suggestion_reviews(ticket_pk, created_at);"
        )

    # --- Tickets
    def create_ticket(
        self,
        *,
        display_id: str,
        title: str,
        body_md: str = "",
        repo_full_name: str | None = None,
        kanban_column_id: str | None = None,
    ) -> TicketRecord:
        ticket_pk = _new_id("ticket")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO tickets(
              ticket_pk, display_id, title, body_md, repo_full_name,
              kanban_column_id, kanban_position, kanban_moved_at, created_at, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (ticket_pk, display_id, title, body_md, repo_full_name, kanban_column_id, None, None, ts, ts),
        )
        self._conn.commit()
        ticket = self.get_ticket(ticket_pk=ticket_pk)
        assert ticket is not None
        return ticket

    def get_ticket(self, *, ticket_pk: str) -> TicketRecord | None:
        row = self._conn.execute("SELECT * FROM tickets WHERE ticket_pk = ? LIMIT 1;", (ticket_pk,)).fetchone()
        return _ticket_from_row(row) if row is not None else None

    def move_ticket_to_column(self, *, ticket_pk: str, column_id: str) -> int:
        """Move a ticket to the end of a kanban column; returns the new position."""
        row = self._conn.execute(
            "SELECT MAX(kanban_position) AS pos FROM tickets WHERE kanban_column_id = ? AND ticket_pk != ?;",
            (column_id, ticket_pk),
        ).fetchone()
        next_pos = int(row["pos"]) + 1 if row is not None and row["pos"] is not None else 0
        ts = _utc_ts()
        self._conn.execute(
            """
            UPDATE tickets
            SET kanban_column_id = ?, kanban_position = ?, kanban_moved_at = ?, updated_at = ?
            WHERE ticket_pk = ?;
            """,
            (column_id, next_pos, ts, ts, ticket_pk),
        )
        self._conn.commit()
        return next_pos

    # --- Runs
    def create_run(
        self,
        *,
        agent_type: str,
        provider: str | None = None,
        model: str | None = None,
        ticket_pk: str | None = None,
        repo_full_name: str | None = None,
        display_id: str | None = None,
        input: dict[str, Any] | None = None,
        status: str = "created",
        current_stage: str | None = "preparing",
    ) -> RunRecord:
        run_id = _new_id("run")
        ts = _utc_ts()
        self._conn.execute(
            f"""
            INSERT INTO runs({_RUN_COLUMNS})
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run_id,
                agent_type,
                provider,
                model,
                ticket_pk,
                repo_full_name,
                display_id,
                None,
                None,
                status,
                current_stage,
                _json_dumps(input or {}),
                _json_dumps({}),
                _json_dumps([]),
                None,
                None,
                None,
                None,
                ts,
                ts,
                None,
            ),
        )
        self._conn.commit()
        run = self.get_run(run_id=run_id)
        assert run is not None
        return run

    def get_run(self, *, run_id: str) -> RunRecord | None:
        row = self._conn.execute(f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ? LIMIT 1;", (run_id,)).fetchone()
        return _run_from_row(row) if row is not None else None

    def update_run(self, run_id: str, fields: dict[str, Any]) -> bool:
        """Apply a partial update to a run row; returns False when the guard rejected it.

        Updates that touch `status` or `current_stage` only apply to non-terminal runs, and a
        new `status` must not rank below the current one. Other fields (e.g. the summary
        enrichment pass) apply unconditionally.
        """
        sets: list[str] = []
        params: list[Any] = []
        for key, value in fields.items():
            if key in _RUN_JSON_FIELDS:
                sets.append(f"{_RUN_JSON_FIELDS[key]} = ?")
                params.append(_json_dumps(value))
            elif key in _RUN_UPDATABLE:
                sets.append(f"{key} = ?")
                params.append(value)
            else:
                raise ValueError(f"Unknown run field: {key!r}")
        if not sets:
            return False
        sets.append("updated_at = ?")
        params.append(_utc_ts())

        where = ["run_id = ?"]
        params.append(run_id)
        if "status" in fields or "current_stage" in fields:
            where.append("status NOT IN (%s)" % ",".join(["?"] * len(TERMINAL_STATUSES)))
            params.extend(sorted(TERMINAL_STATUSES))
        if "status" in fields:
            new_rank = STATUS_RANK.get(str(fields["status"]))
            if new_rank is None:
                raise ValueError(f"Unknown run status: {fields['status']!r}")
            where.append(f"({_STATUS_RANK_SQL}) <= ?")
            params.append(new_rank)

        cur = self._conn.execute(
            f"UPDATE runs SET {', '.join(sets)} WHERE {' AND '.join(where)};",
            params,
        )
        self._conn.commit()
        return cur.rowcount > 0

    def list_runs(
        self,
        *,
        statuses: list[str] | None = None,
        with_agent_id: bool = False,
        limit: int | None = None,
    ) -> list[RunRecord]:
        where = ["1=1"]
        params: list[Any] = []
        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)
        if with_agent_id:
            where.append("cursor_agent_id IS NOT NULL")
        sql = f"SELECT {_RUN_COLUMNS} FROM runs WHERE {' AND '.join(where)} ORDER BY created_at DESC, run_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self._conn.execute(sql + ";", params).fetchall()
        return [_run_from_row(r) for r in rows]

    def list_runs_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
        ticket_pk: str | None = None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if ticket_pk:
            where.append("ticket_pk = ?")
            params.append(ticket_pk)

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, run_id = cursor
            where.append("(created_at < ? OR (created_at = ? AND run_id < ?))")
            params.extend([float(created_at), float(created_at), str(run_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM runs
            WHERE {where_sql}
            ORDER BY created_at DESC, run_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [_run_from_row(r).to_dict() for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["run_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_runs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM runs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Events (append-only; `id` is the resume cursor)
    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> int:
        created_at = _utc_ts()
        cur = self._conn.execute(
            "INSERT INTO events(run_id, type, payload_json, created_at) VALUES(?, ?, ?, ?);",
            (run_id, event_type, _json_dumps(payload), created_at),
        )
        event_id = int(cur.lastrowid)
        self._conn.execute(
            """
            UPDATE runs
            SET last_event_id = MAX(COALESCE(last_event_id, 0), ?)
            WHERE run_id = ?;
            """,
            (event_id, run_id),
        )
        self._conn.commit()
        return event_id

    def list_events_after(self, run_id: str, after_id: int, limit: int = 200) -> list[EventRecord]:
        rows = self._conn.execute(
            """
            SELECT id, run_id, type, payload_json, created_at
            FROM events
            WHERE run_id = ? AND id > ?
            ORDER BY id ASC
            LIMIT ?;
            """,
            (run_id, int(after_id), int(limit)),
        ).fetchall()
        return [
            EventRecord(
                id=int(r["id"]),
                run_id=r["run_id"],
                type=r["type"],
                payload=_json_loads(r["payload_json"], {}),
                created_at=float(r["created_at"]),
            )
            for r in rows
        ]

    def has_event_of_type(self, run_id: str, event_types: Iterable[str]) -> bool:
        types = list(event_types)
        if not types:
            return False
        row = self._conn.execute(
            "SELECT 1 FROM events WHERE run_id = ? AND type IN (%s) LIMIT 1;" % ",".join(["?"] * len(types)),
            (run_id, *types),
        ).fetchone()
        return row is not None

    # --- Artifacts
    def list_artifacts(self, *, ticket_pk: str, agent_type: str | None = None) -> list[ArtifactRecord]:
        if agent_type is None:
            rows = self._conn.execute(
                "SELECT * FROM artifacts WHERE ticket_pk = ? ORDER BY created_at DESC, rowid DESC;",
                (ticket_pk,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM artifacts
                WHERE ticket_pk = ? AND agent_type = ?
                ORDER BY created_at DESC, rowid DESC;
                """,
                (ticket_pk, agent_type),
            ).fetchall()
        return [_artifact_from_row(r) for r in rows]

    def find_artifacts_by_canonical_identity(
        self, *, ticket_pk: str, agent_type: str, artifact_type: str
    ) -> list[ArtifactRecord]:
        """Rows whose title maps to `artifact_type`, newest first (title format may vary)."""
        return [
            a
            for a in self.list_artifacts(ticket_pk=ticket_pk, agent_type=agent_type)
            if extract_artifact_type(a.title) == artifact_type
        ]

    def find_artifacts_by_exact_title(self, *, ticket_pk: str, agent_type: str, title: str) -> list[ArtifactRecord]:
        rows = self._conn.execute(
            """
            SELECT * FROM artifacts
            WHERE ticket_pk = ? AND agent_type = ? AND title = ?
            ORDER BY created_at DESC, rowid DESC;
            """,
            (ticket_pk, agent_type, title),
        ).fetchall()
        return [_artifact_from_row(r) for r in rows]

    def insert_artifact(self, *, ticket_pk: str, agent_type: str, title: str, body_md: str) -> ArtifactRecord:
        artifact_id = _new_id("art")
        ts = _utc_ts()
        try:
            self._conn.execute(
                """
                INSERT INTO artifacts(artifact_id, ticket_pk, agent_type, title, body_md, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?);
                """,
                (artifact_id, ticket_pk, agent_type, title, body_md, ts, ts),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise DuplicateArtifactError(f"Artifact already exists: {title!r}") from e
        return ArtifactRecord(
            artifact_id=artifact_id,
            ticket_pk=ticket_pk,
            agent_type=agent_type,
            title=title,
            body_md=body_md,
            created_at=ts,
            updated_at=ts,
        )

    def update_artifact(self, artifact_id: str, *, title: str, body_md: str) -> bool:
        try:
            cur = self._conn.execute(
                "UPDATE artifacts SET title = ?, body_md = ?, updated_at = ? WHERE artifact_id = ?;",
                (title, body_md, _utc_ts(), artifact_id),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise DuplicateArtifactError(f"Artifact already exists: {title!r}") from e
        return cur.rowcount > 0

    def delete_artifacts(self, artifact_ids: Iterable[str]) -> int:
        ids = list(artifact_ids)
        if not ids:
            return 0
        cur = self._conn.execute(
            "DELETE FROM artifacts WHERE artifact_id IN (%s);" % ",".join(["?"] * len(ids)),
            ids,
        )
        self._conn.commit()
        return int(cur.rowcount)

    # --- Suggestion reviews (side table for suggestion-extraction runs)
    def record_suggestion_review(
        self,
        *,
        ticket_pk: str,
        run_id: str | None,
        suggestions: list[dict[str, str]],
        status: str,
        error_message: str | None = None,
    ) -> str:
        if status not in {"success", "failed"}:
            raise ValueError(f"Invalid suggestion review status: {status!r}")
        review_id = _new_id("review")
        self._conn.execute(
            """
            INSERT INTO suggestion_reviews(
              review_id, ticket_pk, run_id, suggestions_json, status, error_message, created_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?);
            """,
            (review_id, ticket_pk, run_id, _json_dumps(suggestions), status, error_message, _utc_ts()),
        )
        self._conn.commit()
        return review_id

    def get_latest_successful_suggestions(self, *, ticket_pk: str) -> list[dict[str, str]] | None:
        row = self._conn.execute(
            """
            SELECT suggestions_json FROM suggestion_reviews
            WHERE ticket_pk = ? AND status = 'success'
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1;
            """,
            (ticket_pk,),
        ).fetchone()
        if row is None:
            return None
        suggestions = _json_loads(row["suggestions_json"], [])
        return suggestions if isinstance(suggestions, list) else None
