"""GitHub mirror client – batch commits through the Git data API."""

from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import httpx

from .config import GitHubConfig
from .errors import GitHubError

logger = logging.getLogger("pixsync.github")

_NUMBERED_WEBP = re.compile(r"^(\d+)\.webp$")


@dataclass
class CommitResult:
    sha: str
    paths: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class GitHubMirror:
    """Writes many files into one commit: blobs → tree → commit → ref update."""

    def __init__(self, cfg: GitHubConfig | None = None, *, transport: httpx.BaseTransport | None = None) -> None:
        self.cfg = cfg or GitHubConfig.from_env()
        self._client = httpx.Client(
            base_url=f"{self.cfg.api_base}/repos/{self.cfg.owner}/{self.cfg.repo}",
            timeout=self.cfg.timeout,
            headers={
                "Authorization": f"Bearer {self.cfg.token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": "pixsync/0.3",
            },
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return self.cfg.configured

    def _call(self, method: str, path: str, *, json: Any = None, params: dict | None = None) -> Any:
        if not self.cfg.configured:
            raise GitHubError("GitHub token/owner/repo not configured")
        for attempt in range(1, self.cfg.max_retries + 1):
            try:
                resp = self._client.request(method, path, json=json, params=params)
                if resp.status_code == 404 and method == "GET":
                    return None
                if resp.status_code >= 500 or resp.status_code == 429:
                    resp.raise_for_status()
                if resp.status_code >= 400:
                    raise GitHubError(f"{method} {path} -> {resp.status_code}: {resp.text[:200]}", resp.status_code)
                return resp.json() if resp.content else {}
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                logger.warning("Attempt %d/%d failed for %s %s: %s", attempt, self.cfg.max_retries, method, path, exc)
                if attempt == self.cfg.max_retries:
                    raise GitHubError(f"{method} {path} failed: {exc}") from exc
                time.sleep(2 ** attempt)
        return None

    # ── git data primitives ──────────────────────────────────────

    def get_ref_sha(self) -> str:
        data = self._call("GET", f"/git/ref/heads/{self.cfg.branch}")
        if not data:
            raise GitHubError(f"Branch {self.cfg.branch} not found")
        return data["object"]["sha"]

    def get_tree_sha(self, commit_sha: str) -> str:
        data = self._call("GET", f"/git/commits/{commit_sha}")
        if not data:
            raise GitHubError(f"Commit {commit_sha} not found")
        return data["tree"]["sha"]

    def create_blob(self, content: bytes) -> str:
        data = self._call(
            "POST",
            "/git/blobs",
            json={"content": base64.b64encode(content).decode("ascii"), "encoding": "base64"},
        )
        return data["sha"]

    def create_tree(self, base_tree: str, entries: list[dict]) -> str:
        data = self._call("POST", "/git/trees", json={"base_tree": base_tree, "tree": entries})
        return data["sha"]

    def create_commit(self, message: str, tree_sha: str, parent_sha: str) -> str:
        data = self._call(
            "POST", "/git/commits", json={"message": message, "tree": tree_sha, "parents": [parent_sha]}
        )
        return data["sha"]

    def update_ref(self, commit_sha: str) -> None:
        self._call("PATCH", f"/git/refs/heads/{self.cfg.branch}", json={"sha": commit_sha})

    # ── batch commit ─────────────────────────────────────────────

    def batch_commit(
        self,
        files: Mapping[str, bytes],
        message: str,
        *,
        deletes: Iterable[str] = (),
    ) -> CommitResult:
        """Add/replace ``files`` and remove ``deletes`` in a single commit.

        Blob failures drop only the affected path; the commit is created
        from whatever survived.  Raises GitHubError if nothing survived or
        any of the tree/commit/ref steps fail.
        """
        parent = self.get_ref_sha()
        base_tree = self.get_tree_sha(parent)

        entries: list[dict] = []
        added: list[str] = []
        failed: list[str] = []
        for path, content in files.items():
            try:
                blob_sha = self.create_blob(content)
            except GitHubError as exc:
                logger.warning("Failed to create blob for %s: %s", path, exc)
                failed.append(path)
                continue
            entries.append({"path": path, "mode": "100644", "type": "blob", "sha": blob_sha})
            added.append(path)

        deleted = list(deletes)
        for path in deleted:
            entries.append({"path": path, "mode": "100644", "type": "blob", "sha": None})

        if not entries:
            raise GitHubError("Failed to create any blobs")

        tree_sha = self.create_tree(base_tree, entries)
        commit_sha = self.create_commit(message, tree_sha, parent)
        self.update_ref(commit_sha)
        logger.info("Committed %s: +%d -%d (%s)", commit_sha[:7], len(added), len(deleted), message)
        return CommitResult(sha=commit_sha, paths=added, deleted=deleted, failed=failed)

    # ── directory helpers ────────────────────────────────────────

    def list_dir(self, path: str) -> list[dict]:
        data = self._call("GET", f"/contents/{path}", params={"ref": self.cfg.branch})
        return data if isinstance(data, list) else []

    def webp_files(self, path: str) -> list[dict]:
        return [f for f in self.list_dir(path) if str(f.get("name", "")).endswith(".webp")]

    def count_webp(self, path: str) -> int:
        return len(self.webp_files(path))

    def max_number(self, path: str) -> int:
        """Highest N among ``N.webp`` files in ``path`` (0 if none)."""
        highest = 0
        for f in self.list_dir(path):
            m = _NUMBERED_WEBP.match(str(f.get("name", "")))
            if m:
                highest = max(highest, int(m.group(1)))
        return highest

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubMirror:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
