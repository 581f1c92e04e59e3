"""Shared fixtures: in-memory stand-ins for Postgres, S3, pixiv and GitHub."""

from __future__ import annotations

import io
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from PIL import Image

from pixsync.activity import ActivityLog
from pixsync.api import DownloadedImage, Illust, ImageInfo
from pixsync.config import AppConfig, DatabaseConfig, GitHubConfig, PixivConfig, S3Config
from pixsync.db import DEFAULT_SETTINGS
from pixsync.errors import StorageError
from pixsync.github import CommitResult
from pixsync.services import Services

PUBLIC_BASE = "https://cdn.example.com"


def make_image(width: int, height: int, fmt: str = "PNG", mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color=0).save(buf, format=fmt)
    return buf.getvalue()


class FakeDatabase:
    def __init__(self) -> None:
        self.images: list[dict[str, Any]] = []
        self.settings: dict[str, Any] = dict(DEFAULT_SETTINGS)
        self.logs: list[dict[str, Any]] = []
        self.skip_tags: list[dict[str, Any]] = []
        self.favorites: list[dict[str, Any]] = []
        self.rollbacks = 0
        self._clock = itertools.count()
        self._epoch = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        return self._epoch + timedelta(seconds=next(self._clock))

    def ensure_schema(self) -> None:
        pass

    # images
    def image_exists(self, pid: int) -> bool:
        return any(r["pid"] == pid for r in self.images)

    def upsert_image(self, **kw: Any) -> str:
        for row in self.images:
            if row["pid"] == kw["pid"]:
                row.update(kw)
                return row["id"]
        row = {"id": str(uuid.uuid4()), "created_at": self._now(), "github_synced": None, **kw}
        self.images.append(row)
        return row["id"]

    def add_image(self, pid: int, *, source: str = "ranking", orientation: str = "h", r18: bool = False,
                  synced: bool = False) -> dict[str, Any]:
        prefix = "R18/" if r18 else ("" if source == "ranking" else f"{source}/")
        key = f"{prefix}{orientation}/{pid}.png"
        self.upsert_image(
            pid=pid, title=f"t{pid}", artist="a", tags=[], original_url=f"https://i.pximg.net/{pid}.png",
            r2_url=f"{PUBLIC_BASE}/{key}", storage_key=key, source=source, orientation=orientation, r18=r18,
        )
        row = self.images[-1]
        if synced:
            row["github_synced"] = self._now()
        return row

    def get_image(self, image_id: str) -> dict | None:
        return next((r for r in self.images if r["id"] == image_id), None)

    def delete_image(self, image_id: str) -> bool:
        before = len(self.images)
        self.images = [r for r in self.images if r["id"] != image_id]
        return len(self.images) < before

    def list_images(self, *, source: str = "ranking", search: str = "", page: int = 1, limit: int = 20):
        rows = sorted(self.images, key=lambda r: r["created_at"], reverse=True)
        if source == "r18":
            rows = [r for r in rows if r["r18"]]
        elif source in ("ranking", "tag", "pid"):
            rows = [r for r in rows if r["source"] == source and not r["r18"]]
        elif source != "all":
            rows = [r for r in rows if not r["r18"]]
        if search:
            rows = [r for r in rows if search.lower() in (r["title"] + r["artist"]).lower()]
        start = (page - 1) * limit
        return rows[start:start + limit], len(rows)

    def storage_urls(self) -> set[str]:
        return {r["r2_url"] for r in self.images if r.get("r2_url")}

    def _category(self, source: str | None, r18: bool, orient: str) -> list[dict]:
        rows = [
            r for r in self.images
            if r.get("r2_url") and r["orientation"] == orient and r["r18"] == r18
            and (source is None or r["source"] == source)
        ]
        return sorted(rows, key=lambda r: r["created_at"])

    def pending_sync(self, *, source, r18, orient, limit):
        return [r for r in self._category(source, r18, orient) if r["github_synced"] is None][:limit]

    def category_images(self, *, source, r18, orient, limit):
        return self._category(source, r18, orient)[:limit]

    def count_category(self, *, source, r18, orient):
        rows = self._category(source, r18, orient)
        return len(rows), sum(1 for r in rows if r["github_synced"] is not None)

    def mark_synced(self, image_ids):
        ids = set(image_ids)
        for r in self.images:
            if r["id"] in ids:
                r["github_synced"] = self._now()

    def reset_synced(self, *, source, r18, orient):
        rows = self._category(source, r18, orient)
        for r in rows:
            r["github_synced"] = None
        return len(rows)

    # settings
    def get_settings(self) -> dict[str, Any]:
        return dict(self.settings)

    def save_settings(self, **fields: Any) -> dict[str, Any]:
        self.settings.update({k: v for k, v in fields.items() if k in DEFAULT_SETTINGS and v is not None})
        return self.get_settings()

    # logs
    def insert_log(self, level: str, message: str, details: str | None = None) -> None:
        self.logs.insert(0, {"id": str(uuid.uuid4()), "level": level, "message": message,
                             "details": details, "created_at": self._now()})

    def list_logs(self, *, level: str | None = None, limit: int = 50):
        rows = [r for r in self.logs if not level or level == "all" or r["level"] == level]
        return rows[:limit]

    def clear_logs(self) -> int:
        n = len(self.logs)
        self.logs = []
        return n

    def trim_logs(self, keep: int) -> int:
        removed = max(0, len(self.logs) - keep)
        self.logs = self.logs[:keep]
        return removed

    # skip tags
    def list_skip_tags(self):
        return list(self.skip_tags)

    def skip_tag_values(self):
        return [r["tag"] for r in self.skip_tags]

    def add_skip_tag(self, tag, translation=None, category="other"):
        if any(r["tag"] == tag for r in self.skip_tags):
            return None
        row = {"id": str(uuid.uuid4()), "tag": tag, "translation": translation, "category": category}
        self.skip_tags.append(row)
        return row

    def delete_skip_tag(self, tag_id):
        before = len(self.skip_tags)
        self.skip_tags = [r for r in self.skip_tags if r["id"] != tag_id]
        return len(self.skip_tags) < before

    # favorite tags
    def list_favorite_tags(self):
        return sorted(self.favorites, key=lambda r: -r["weight"])

    def bump_favorite_tag(self, tag, tag_jp=None):
        for r in self.favorites:
            if r["tag"] == tag:
                r["weight"] += 1
                return "incremented", r["weight"]
        self.favorites.append({"id": str(uuid.uuid4()), "tag": tag, "tag_jp": tag_jp or tag, "weight": 1})
        return "created", 1

    def delete_favorite_tag(self, *, tag_id=None, tag=None):
        before = len(self.favorites)
        self.favorites = [
            r for r in self.favorites if not ((tag_id and r["id"] == tag_id) or (tag and r["tag"] == tag))
        ]
        return len(self.favorites) < before

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        pass


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}

    def public_url(self, key: str) -> str:
        return f"{PUBLIC_BASE}/{key}"

    def key_from_url(self, url: str | None) -> str | None:
        if not url or not url.startswith(PUBLIC_BASE + "/"):
            return None
        return url[len(PUBLIC_BASE) + 1:]

    def upload(self, data: bytes, key: str, content_type: str | None = None) -> str:
        self.objects[key] = data
        self.content_types[key] = content_type or ""
        return self.public_url(key)

    def fetch(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageError(f"Fetch of {key} failed: NoSuchKey")
        return self.objects[key]

    def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    def delete_keys(self, keys):
        for k in keys:
            self.objects.pop(k, None)
        return len(keys), []

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def close(self) -> None:
        pass


class FakePixiv:
    authenticated = True

    def __init__(self) -> None:
        self.infos: dict[int, ImageInfo] = {}
        self.files: dict[str, bytes] = {}
        self.ranking: dict[str, list[Illust]] = {}
        self.tags: dict[str, list[Illust]] = {}
        self.related: dict[int, list[Illust]] = {}
        self.downloads: list[str] = []
        self.ranking_error: Exception | None = None

    def add(self, pid: int, width: int = 1600, height: int = 900, tags: list[str] | None = None,
            bookmarks: int | None = 100, fmt: str = "PNG") -> Illust:
        ext = "png" if fmt == "PNG" else "jpg"
        url = f"https://i.pximg.net/img-original/img/{pid}_p0.{ext}"
        self.infos[pid] = ImageInfo(
            pid=pid, title=f"Work {pid}", artist="artist", tags=list(tags or []),
            original_urls=[url], width=width, height=height, bookmark_count=bookmarks,
        )
        self.files[url] = make_image(width or 40, height or 30, fmt)
        return Illust(pid=pid, title=f"Work {pid}", artist="artist", tags=list(tags or []),
                      width=width, height=height, bookmark_count=bookmarks)

    def get_image_info(self, pid: int) -> ImageInfo | None:
        return self.infos.get(pid)

    def download_image(self, url: str) -> DownloadedImage | None:
        self.downloads.append(url)
        data = self.files.get(url)
        if data is None:
            return None
        ext = url.rsplit(".", 1)[-1]
        return DownloadedImage(data=data, content_type=f"image/{'jpeg' if ext == 'jpg' else ext}",
                               extension=ext, url=url)

    def get_ranking(self, mode: str = "daily", page: int = 1, date: str | None = None) -> list[Illust]:
        if self.ranking_error:
            raise self.ranking_error
        return list(self.ranking.get(mode, []))

    def search_by_tag(self, tag: str, page: int = 1) -> list[Illust]:
        return list(self.tags.get(tag, []))

    def get_related_works(self, pid: int, limit: int = 20) -> list[Illust]:
        return list(self.related.get(pid, []))[:limit]

    def close(self) -> None:
        pass


class FakeGitHub:
    configured = True

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.commits: list[dict[str, Any]] = []
        self.fail_blobs: set[str] = set()

    def list_dir(self, path: str) -> list[dict]:
        prefix = path.rstrip("/") + "/"
        return [
            {"name": p[len(prefix):], "path": p, "type": "file"}
            for p in sorted(self.files)
            if p.startswith(prefix) and "/" not in p[len(prefix):]
        ]

    def webp_files(self, path: str) -> list[dict]:
        return [f for f in self.list_dir(path) if f["name"].endswith(".webp")]

    def count_webp(self, path: str) -> int:
        return len(self.webp_files(path))

    def max_number(self, path: str) -> int:
        numbers = [int(f["name"][:-5]) for f in self.webp_files(path) if f["name"][:-5].isdigit()]
        return max(numbers, default=0)

    def batch_commit(self, files, message, *, deletes=()):
        added = [p for p in files if p not in self.fail_blobs]
        failed = [p for p in files if p in self.fail_blobs]
        deleted = list(deletes)
        for p in added:
            self.files[p] = files[p]
        for p in deleted:
            self.files.pop(p, None)
        sha = f"{len(self.commits) + 1:040x}"
        self.commits.append({"sha": sha, "message": message, "added": added, "deleted": deleted})
        return CommitResult(sha=sha, paths=added, deleted=deleted, failed=failed)

    def close(self) -> None:
        pass


@pytest.fixture
def cfg() -> AppConfig:
    return AppConfig(
        db=DatabaseConfig(),
        s3=S3Config(public_url=PUBLIC_BASE),
        pixiv=PixivConfig(phpsessid="session", request_delay=0),
        github=GitHubConfig(token="token", owner="owner", repo="mirror", root_dir="ri"),
        cron_secret="",
        api_key="",
        batch_delay=0,
    )


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def pixiv() -> FakePixiv:
    return FakePixiv()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def services(cfg, db, storage, pixiv, github) -> Services:
    return Services(
        cfg=cfg,
        db=db,  # type: ignore[arg-type]
        api=pixiv,  # type: ignore[arg-type]
        storage=storage,  # type: ignore[arg-type]
        github=github,  # type: ignore[arg-type]
        activity=ActivityLog(db),  # type: ignore[arg-type]
    )
