from __future__ import annotations

import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+)\s*\}\}")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def render_prompt(template: str, variables: dict[str, Any]) -> str:
    """Render `{{var}}` placeholders used by the prompt templates in config/default.toml.

    Unknown or None values render as an empty string; runs of blank lines left behind
    by empty sections collapse to a single blank line.
    """

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group("key"))
        return "" if value is None else str(value)

    rendered = _VAR_RE.sub(_replace, template)
    return _BLANK_RUN_RE.sub("\n\n", rendered).strip()
