from __future__ import annotations

import json
import os
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any


_PR_URL_RE = re.compile(r"github\.com/(?P<owner>[^/]+)/(?P<repo>[^/]+)/pull/(?P<number>\d+)")


class GitHubError(RuntimeError):
    pass


@dataclass(frozen=True)
class PrFile:
    filename: str
    status: str  # added|modified|removed|renamed|...
    additions: int
    deletions: int
    patch: str | None = None


def parse_pr_url(pr_url: str) -> tuple[str, str, int] | None:
    m = _PR_URL_RE.search(pr_url or "")
    if not m:
        return None
    return m.group("owner"), m.group("repo"), int(m.group("number"))


class GitHubPullRequestFiles:
    """Lists the files of a pull request through the GitHub REST API (read-only)."""

    def __init__(self, *, api_base: str = "https://api.github.com", token: str | None = None, timeout_s: float = 20.0) -> None:
        self.api_base = api_base.rstrip("/")
        self.token = token if token is not None else os.getenv("GITHUB_TOKEN")
        self.timeout_s = float(timeout_s)

    def _get_json(self, url: str) -> Any:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": "agent-runs"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(url, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            raise GitHubError(f"GitHub API request failed ({e.code}) for {url}") from e
        except urllib.error.URLError as e:
            raise GitHubError(f"Network error for {url}: {e}") from e
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise GitHubError(f"Invalid JSON from {url}") from e

    def list_files(self, pr_url: str) -> list[PrFile]:
        parsed = parse_pr_url(pr_url)
        if parsed is None:
            raise GitHubError(f"Not a pull request URL: {pr_url}")
        owner, repo, number = parsed

        files: list[PrFile] = []
        page = 1
        while True:
            data = self._get_json(f"{self.api_base}/repos/{owner}/{repo}/pulls/{number}/files?per_page=100&page={page}")
            if not isinstance(data, list):
                raise GitHubError("Unexpected response shape when listing pull request files.")
            for item in data:
                if not isinstance(item, dict):
                    continue
                files.append(
                    PrFile(
                        filename=str(item.get("filename") or ""),
                        status=str(item.get("status") or ""),
                        additions=int(item.get("additions") or 0),
                        deletions=int(item.get("deletions") or 0),
                        patch=item.get("patch") if isinstance(item.get("patch"), str) else None,
                    )
                )
            if len(data) < 100:
                return files
            page += 1
