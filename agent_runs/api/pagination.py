from __future__ import annotations

import base64
import json
from dataclasses import dataclass


class PageCursorError(ValueError):
    pass


@dataclass(frozen=True)
class PageCursor:
    """Keyset position in a `created_at DESC, id DESC` listing."""

    created_at: float
    item_id: str

    def as_tuple(self) -> tuple[float, str]:
        return self.created_at, self.item_id


def encode_page_cursor(created_at: float, item_id: str) -> str:
    raw = json.dumps({"t": float(created_at), "id": str(item_id)}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_page_cursor(value: str) -> PageCursor:
    s = (value or "").strip()
    if not s:
        raise PageCursorError("Empty cursor")

    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        obj = json.loads(base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8"))
        return PageCursor(created_at=float(obj["t"]), item_id=str(obj["id"]))
    except (ValueError, KeyError, TypeError) as e:
        raise PageCursorError("Invalid cursor") from e
