"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface that clients use to:
- launch, list and inspect agent runs
- observe a run through a resumable event stream
- request cancellation of one run or every active run

The API is intentionally thin: core behavior lives in `agent_runs/runtime` and `agent_runs/storage`.
"""
