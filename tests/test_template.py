from __future__ import annotations

from agent_runs.utils.deadline import SliceDeadline
from agent_runs.utils.template import render_prompt


def test_render_prompt_substitutes_and_collapses_blank_lines() -> None:
    out = render_prompt("Ticket {{ display_id }}: {{title}}\n\n{{body_md}}\n\n\nDone {{missing}}", {"display_id": "0121", "title": "T", "body_md": None})
    assert out == "Ticket 0121: T\n\nDone"


def test_slice_deadline() -> None:
    assert SliceDeadline(0).expired
    d = SliceDeadline(60)
    assert not d.expired
    assert 0 < d.remaining_s <= 60
