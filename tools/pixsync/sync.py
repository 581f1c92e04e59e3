"""Mirror sync – WebP copies of stored images, batch-committed per category."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any

from PIL import Image

from .activity import ActivityLog
from .config import AppConfig
from .db import Database
from .errors import ConfigError, GitHubError, PixsyncError
from .github import GitHubMirror
from .storage import StorageService

logger = logging.getLogger("pixsync.sync")

MAX_SYNC_LIMIT = 50


@dataclass(frozen=True)
class SyncCategory:
    key: str
    path: str  # directory below the mirror root
    label: str
    source: str | None
    r18: bool
    orient: str

    @property
    def filters(self) -> dict[str, Any]:
        return {"source": self.source, "r18": self.r18, "orient": self.orient}


CATEGORIES: dict[str, SyncCategory] = {
    c.key: c
    for c in (
        SyncCategory("h", "h", "landscape", "ranking", False, "h"),
        SyncCategory("v", "v", "portrait", "ranking", False, "v"),
        SyncCategory("r18h", "r18/h", "R18 landscape", None, True, "h"),
        SyncCategory("r18v", "r18/v", "R18 portrait", None, True, "v"),
        SyncCategory("pidh", "pid/h", "PID landscape", "pid", False, "h"),
        SyncCategory("pidv", "pid/v", "PID portrait", "pid", False, "v"),
        SyncCategory("tagh", "tag/h", "tag landscape", "tag", False, "h"),
        SyncCategory("tagv", "tag/v", "tag portrait", "tag", False, "v"),
    )
}


def get_category(key: str) -> SyncCategory:
    try:
        return CATEGORIES[key]
    except KeyError:
        raise ValueError(f"Unknown category: {key} (expected one of {', '.join(CATEGORIES)})") from None


def to_webp(data: bytes, quality: int = 85) -> bytes:
    """Re-encode image bytes as WebP, flattening palette images first."""
    img = Image.open(io.BytesIO(data))
    if img.mode == "P":
        img = img.convert("RGBA")
    elif img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="WEBP", quality=quality)
    return buf.getvalue()


@dataclass
class SyncResult:
    category: str
    synced: int = 0
    commit: str | None = None
    files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors or self.synced > 0


class MirrorSync:
    """Keeps the GitHub mirror in step with stored images and prunes both sides."""

    def __init__(
        self,
        db: Database,
        storage: StorageService,
        github: GitHubMirror,
        *,
        activity: ActivityLog | None = None,
        cfg: AppConfig | None = None,
    ) -> None:
        self.cfg = cfg or AppConfig()
        self.db = db
        self.storage = storage
        self.github = github
        self.activity = activity or ActivityLog(db, retention=self.cfg.log_retention)

    def _dir(self, category: SyncCategory) -> str:
        root = self.cfg.github.root_dir.strip("/")
        return f"{root}/{category.path}" if root else category.path

    def _require_github(self) -> None:
        if not self.github.configured:
            raise ConfigError("GitHub mirror is not configured (GITHUB_TOKEN, GITHUB_OWNER, GITHUB_REPO)")

    # ── sync ─────────────────────────────────────────────────────

    def sync_category(self, key: str, limit: int = 10) -> SyncResult:
        """Commit up to ``limit`` pending images of a category as ``N.webp`` files."""
        self._require_github()
        category = get_category(key)
        limit = max(1, min(int(limit), MAX_SYNC_LIMIT))
        result = SyncResult(category=key)

        pending = self.db.pending_sync(**category.filters, limit=limit)
        if not pending:
            logger.info("Category %s has nothing to sync", key)
            return result

        directory = self._dir(category)
        next_number = self.github.max_number(directory) + 1
        files: dict[str, bytes] = {}
        ids: list[str] = []
        for row in pending:
            storage_key = row.get("storage_key") or self.storage.key_from_url(row.get("r2_url"))
            if not storage_key:
                result.errors.append(f"{row['pid']}: no storage key")
                continue
            try:
                webp = to_webp(self.storage.fetch(storage_key), self.cfg.webp_quality)
            except (PixsyncError, OSError) as exc:
                logger.warning("Could not prepare %s for the mirror: %s", storage_key, exc)
                result.errors.append(f"{row['pid']}: {exc}")
                continue
            path = f"{directory}/{next_number}.webp"
            files[path] = webp
            ids.append(str(row["id"]))
            next_number += 1

        if not files:
            self.activity.error(f"Mirror sync of {key} failed", "; ".join(result.errors))
            return result

        commit = self.github.batch_commit(files, f"Add {len(files)} {category.label} images")
        committed = set(commit.paths)
        synced_ids = [image_id for path, image_id in zip(files, ids) if path in committed]
        result.errors.extend(f"{path}: blob upload failed" for path in commit.failed)

        self.db.mark_synced(synced_ids)
        result.synced = len(synced_ids)
        result.commit = commit.sha
        result.files = commit.paths
        self.activity.success(
            f"Synced {result.synced} {category.label} images to GitHub",
            f"commit {commit.sha[:7]}" + (f", {len(result.errors)} errors" if result.errors else ""),
        )
        return result

    def status(self) -> dict[str, dict[str, Any]]:
        """Per category: stored total, marked synced, and WebP files in the mirror."""
        out: dict[str, dict[str, Any]] = {}
        for key, category in CATEGORIES.items():
            total, synced = self.db.count_category(**category.filters)
            github = self.github.count_webp(self._dir(category)) if self.github.configured else None
            out[key] = {"label": category.label, "total": total, "synced": synced, "github": github}
        return out

    def fix_sync_state(self) -> dict[str, int]:
        """Mark the oldest N images of each category synced, N being the mirror's file count."""
        self._require_github()
        fixed: dict[str, int] = {}
        for key, category in CATEGORIES.items():
            count = self.github.count_webp(self._dir(category))
            if count <= 0:
                fixed[key] = 0
                continue
            rows = self.db.category_images(**category.filters, limit=count)
            self.db.mark_synced([str(r["id"]) for r in rows])
            fixed[key] = len(rows)
        self.activity.info("Repaired mirror sync state", ", ".join(f"{k}={v}" for k, v in fixed.items()))
        return fixed

    # ── storage cleanup ──────────────────────────────────────────

    def analyze_storage(self) -> dict[str, Any]:
        """Object keys with no metadata row pointing at them."""
        referenced = {
            k for k in (self.storage.key_from_url(u) for u in self.db.storage_urls()) if k
        }
        keys = self.storage.list_keys()
        orphans = sorted(k for k in keys if k not in referenced)
        return {"total": len(keys), "referenced": len(referenced), "orphans": orphans}

    def clean_storage(self, *, dry_run: bool = True) -> dict[str, Any]:
        report = self.analyze_storage()
        report["dry_run"] = dry_run
        if dry_run or not report["orphans"]:
            report["deleted"] = 0
            return report
        deleted, errors = self.storage.delete_keys(report["orphans"])
        report["deleted"] = deleted
        report["errors"] = errors
        self.activity.info(f"Deleted {deleted} orphaned storage objects", f"{len(errors)} errors" if errors else None)
        return report

    # ── mirror cleanup ───────────────────────────────────────────

    def analyze_mirror(self) -> dict[str, int]:
        self._require_github()
        return {key: self.github.count_webp(self._dir(c)) for key, c in CATEGORIES.items()}

    def clean_mirror(self, key: str, *, dry_run: bool = True) -> dict[str, Any]:
        """Remove every WebP file of a category in one commit and reset its sync state."""
        self._require_github()
        category = get_category(key)
        paths = [str(f["path"]) for f in self.github.webp_files(self._dir(category))]
        report: dict[str, Any] = {"category": key, "files": len(paths), "dry_run": dry_run, "deleted": 0}
        if dry_run or not paths:
            return report

        try:
            commit = self.github.batch_commit({}, f"Remove {len(paths)} {category.label} images", deletes=paths)
        except GitHubError as exc:
            self.activity.error(f"Mirror cleanup of {key} failed", str(exc))
            raise
        report["deleted"] = len(commit.deleted)
        report["commit"] = commit.sha
        report["reset"] = self.db.reset_synced(**category.filters)
        self.activity.info(f"Removed {len(paths)} {category.label} images from GitHub", f"commit {commit.sha[:7]}")
        return report
