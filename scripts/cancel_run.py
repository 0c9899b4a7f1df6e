#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from agent_runs.config.load_config import load_app_config  # noqa: E402
from agent_runs.runtime.cancel import RunNotFoundError, cancel_active_runs, cancel_run  # noqa: E402
from agent_runs.storage.sqlite_store import SQLiteStore  # noqa: E402
from agent_runs.tools.cursor_agents import CursorAgentsClient, CursorAPIError, CursorConfigError  # noqa: E402
from agent_runs.utils.logging import configure_logging  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Stop external coding agents and mark their runs as cancelled.")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--run-id", help="Run id to cancel (e.g. run_<uuid>).")
    target.add_argument("--all", action="store_true", help="Cancel every active run that has an external agent.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env AGENT_RUNS_SQLITE_PATH or data/agent_runs.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging()
    cfg = load_app_config()
    try:
        client = CursorAgentsClient.from_config(cfg.backends)
    except CursorConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    store = SQLiteStore(args.db_path or None)
    try:
        if args.all:
            outcome = cancel_active_runs(store, client, progress_max_entries=cfg.runs.progress_max_entries)
            print(outcome.message)
            for err in outcome.errors:
                print(err, file=sys.stderr)
            return 0 if not outcome.errors else 1
        try:
            single = cancel_run(store, client, str(args.run_id), progress_max_entries=cfg.runs.progress_max_entries)
        except RunNotFoundError:
            print(f"Run not found: {args.run_id}", file=sys.stderr)
            return 1
        except CursorAPIError as e:
            print(e.message, file=sys.stderr)
            return 1
        print(single.message)
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
