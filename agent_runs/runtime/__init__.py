"""Run orchestration (lifecycle, dispatch, streaming, cancellation).

This layer is responsible for:
- translating backend signals into run status/stage transitions
- routing each budgeted slice to the provider that owns the run
- streaming appended events to observers while advancing the run

It should remain independent from the HTTP layer (`agent_runs/api`), so both scripts and
the API can reuse the same execution logic.
"""
