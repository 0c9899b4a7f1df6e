from __future__ import annotations

import base64
import json
import os
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from agent_runs.config.load_config import BackendConfig


DEFAULT_API_BASE = "https://api.cursor.com"


class CursorConfigError(RuntimeError):
    """Missing credentials for the coding-agent backend."""


class CursorAPIError(RuntimeError):
    """A request to the coding-agent backend failed; `str(e)` is safe to show to users."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = int(status_code)
        self.message = message


class CursorResponseError(CursorAPIError):
    """The backend answered 2xx but the body was not the JSON we expected."""


def human_readable_cursor_error(status_code: int, detail: str | None = None) -> str:
    if status_code == 401:
        return "Cursor API authentication failed. Check that CURSOR_API_KEY is valid."
    if status_code == 403:
        return "Cursor API access denied. Your plan may not include Cloud Agents API."
    if status_code == 429:
        return "Cursor API rate limit exceeded. Please try again in a moment."
    if status_code >= 500:
        return f"Cursor API server error ({status_code}). Please try again later."
    suffix = f": {str(detail)[:100]}" if detail else ""
    return f"Cursor API request failed ({status_code}){suffix}"


@dataclass(frozen=True)
class AgentStatus:
    agent_id: str | None
    status: str | None
    summary: str | None
    target_url: str | None
    branch_name: str | None
    raw: dict[str, Any]


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for p in content:
            if isinstance(p, str):
                parts.append(p)
            elif isinstance(p, dict):
                for key in ("text", "content", "value"):
                    if isinstance(p.get(key), str) and p[key]:
                        parts.append(p[key])
                        break
        return "".join(parts)
    if isinstance(content, dict):
        for key in ("text", "content", "value"):
            if isinstance(content.get(key), str):
                return content[key]
    return ""


def conversation_messages(conversation: Any) -> list[dict[str, Any]]:
    if not isinstance(conversation, dict):
        return []
    messages = conversation.get("messages")
    if not isinstance(messages, list):
        inner = conversation.get("conversation")
        messages = inner.get("messages") if isinstance(inner, dict) else None
    if not isinstance(messages, list):
        return []
    return [m for m in messages if isinstance(m, dict)]


def _is_assistant(message: dict[str, Any]) -> bool:
    return message.get("role") == "assistant" or message.get("type") == "assistant_message"


def last_assistant_message(conversation: Any) -> str | None:
    """Text of the last assistant-authored message in a conversation transcript, if any."""
    for message in reversed(conversation_messages(conversation)):
        if not _is_assistant(message):
            continue
        text = _content_text(message.get("content", message.get("text", ""))).strip()
        if text:
            return text
    return None


def conversation_text(conversation: Any) -> str:
    """All assistant text joined in order (used when parsing structured output from a transcript)."""
    chunks = []
    for message in conversation_messages(conversation):
        if _is_assistant(message):
            chunks.append(_content_text(message.get("content", message.get("text", ""))).strip())
    return "\n\n".join(c for c in chunks if c)


class CursorAgentsClient:
    """Minimal client for the Cursor Cloud Agents HTTP API (launch, poll, conversation, cancel)."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.api_key = api_key or os.getenv("CURSOR_API_KEY")
        self.api_base = (api_base or os.getenv("CURSOR_API_BASE") or DEFAULT_API_BASE).rstrip("/")
        self.timeout_s = float(timeout_s)
        if not self.api_key:
            raise CursorConfigError("Missing CURSOR_API_KEY (or provide api_key explicitly).")

    @classmethod
    def from_config(cls, backends: BackendConfig) -> CursorAgentsClient:
        """Env `CURSOR_API_BASE` overrides the configured base URL."""
        return cls(api_base=os.getenv("CURSOR_API_BASE") or backends.cursor_api_base, timeout_s=backends.cursor_timeout_s)

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        url = f"{self.api_base}{path}"
        token = base64.b64encode(f"{self.api_key}:".encode("utf-8")).decode("ascii")
        headers = {"Authorization": f"Basic {token}", "Accept": "application/json"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            detail = ""
            try:
                detail = e.read().decode("utf-8", errors="replace")
            except OSError:
                detail = ""
            raise CursorAPIError(e.code, human_readable_cursor_error(e.code, detail)) from e
        except urllib.error.URLError as e:
            raise CursorAPIError(0, f"Cursor API network error: {e.reason}") from e
        except TimeoutError as e:
            raise CursorAPIError(0, "Cursor API request timed out.") from e

        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise CursorResponseError(200, f"Invalid JSON from Cursor API ({method} {path}).") from e

    def launch(
        self,
        *,
        prompt: str,
        repo_url: str,
        ref: str = "main",
        branch_name: str | None = None,
        model: str | None = None,
    ) -> AgentStatus:
        body: dict[str, Any] = {
            "prompt": {"text": prompt},
            "source": {"repository": repo_url, "ref": ref},
        }
        if branch_name:
            body["target"] = {"branchName": branch_name, "autoCreatePr": True}
        else:
            body["target"] = {"autoCreatePr": True}
        if model:
            body["model"] = model
        data = self._request("POST", "/v0/agents", body)
        if not isinstance(data, dict) or not data.get("id"):
            raise CursorResponseError(200, "Cursor API did not return an agent ID.")
        return self._status_from(data)

    def poll(self, agent_id: str) -> AgentStatus:
        data = self._request("GET", f"/v0/agents/{urllib.parse.quote(agent_id, safe='')}")
        if not isinstance(data, dict):
            raise CursorResponseError(200, "Invalid response when polling agent status.")
        return self._status_from(data)

    def fetch_conversation(self, agent_id: str) -> dict[str, Any] | None:
        data = self._request("GET", f"/v0/agents/{urllib.parse.quote(agent_id, safe='')}/conversation")
        return data if isinstance(data, dict) else None

    def cancel(self, agent_id: str) -> None:
        self._request("DELETE", f"/v0/agents/{urllib.parse.quote(agent_id, safe='')}")

    @staticmethod
    def _status_from(data: dict[str, Any]) -> AgentStatus:
        target = data.get("target") if isinstance(data.get("target"), dict) else {}
        target_url = target.get("prUrl") or target.get("pr_url") or target.get("url")
        return AgentStatus(
            agent_id=str(data["id"]) if data.get("id") else None,
            status=str(data["status"]) if data.get("status") else None,
            summary=data.get("summary") if isinstance(data.get("summary"), str) else None,
            target_url=str(target_url) if target_url else None,
            branch_name=str(target["branchName"]) if target.get("branchName") else None,
            raw=data,
        )
