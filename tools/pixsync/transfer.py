"""Transfer pipeline – orchestrates pixiv → object storage → Postgres."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence

import psycopg
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from .activity import ActivityLog
from .api import Illust, ImageInfo, PixivAPI
from .config import AppConfig
from .db import Database
from .errors import PixivError
from .filters import DEFAULT_SKIP_TAGS, is_r18, passes_quality, select_candidates, should_skip, weighted_choice
from .storage import StorageService, get_dimensions, make_key, orientation

logger = logging.getLogger("pixsync.transfer")


@dataclass
class TransferProgress:
    total: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, other: TransferProgress) -> None:
        self.total += other.total
        self.processed += other.processed
        self.success += other.success
        self.failed += other.failed
        self.skipped += other.skipped


@dataclass
class TransferResult:
    success: bool
    progress: TransferProgress = field(default_factory=TransferProgress)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProcessResult:
    success: bool
    skipped: bool = False
    error: str | None = None
    url: str | None = None


def _as_illust(info: ImageInfo) -> Illust:
    return Illust(
        pid=info.pid,
        title=info.title,
        artist=info.artist,
        tags=info.tags,
        width=info.width,
        height=info.height,
        bookmark_count=info.bookmark_count,
    )


class Transfer:
    """Runs crawls and moves each selected illustration through the pipeline.

    Every step is idempotent per PID: an illustration already present in the
    metadata store is skipped before anything is fetched.
    """

    def __init__(
        self,
        db: Database,
        api: PixivAPI,
        storage: StorageService,
        *,
        activity: ActivityLog | None = None,
        cfg: AppConfig | None = None,
        rng: random.Random | None = None,
        show_progress: bool = False,
    ) -> None:
        self.cfg = cfg or AppConfig()
        self.db = db
        self.api = api
        self.storage = storage
        self.activity = activity or ActivityLog(db, retention=self.cfg.log_retention)
        self.rng = rng or random.Random()
        self.show_progress = show_progress

    # ── settings lookups ─────────────────────────────────────────

    def _settings(self) -> dict[str, Any]:
        try:
            return self.db.get_settings()
        except psycopg.Error as exc:
            logger.warning("Could not load crawler settings, using defaults: %s", exc)
            self.db.rollback()
            return {}

    def skip_tags(self) -> list[str]:
        """Skip tags from the database, or the built-in list when the table is empty."""
        try:
            tags = self.db.skip_tag_values()
        except psycopg.Error as exc:
            logger.warning("Could not load skip tags, using defaults: %s", exc)
            self.db.rollback()
            tags = []
        return tags or list(DEFAULT_SKIP_TAGS)

    # ── single illustration ──────────────────────────────────────

    def process_illustration(
        self,
        pid: int,
        source: str = "ranking",
        *,
        filtered: bool = False,
        r18: bool = False,
        skip_tags: Sequence[str] | None = None,
        quality: dict[str, int] | None = None,
    ) -> ProcessResult:
        """Fetch, filter, upload and record one illustration."""
        if self.db.image_exists(pid):
            logger.debug("Illustration %d already stored, skipping", pid)
            return ProcessResult(success=True, skipped=True)

        info = self.api.get_image_info(pid)
        if info is None or not info.original_urls:
            return ProcessResult(success=False, error=f"Failed to get image info for {pid}")

        if filtered:
            quality = quality or {}
            if not passes_quality(_as_illust(info), **quality):
                logger.info("Illustration %d below quality thresholds, skipping", pid)
                return ProcessResult(success=True, skipped=True, error="quality")
            tags = self.skip_tags() if skip_tags is None else skip_tags
            if should_skip(info.tags, tags):
                logger.info("Illustration %d matches a skip tag, skipping", pid)
                return ProcessResult(success=True, skipped=True, error="skip tag")

        url = info.original_urls[0]
        image = self.api.download_image(url)
        if image is None:
            return ProcessResult(success=False, error=f"Failed to download {url}")

        width, height = info.width, info.height
        if not width or not height:
            dims = get_dimensions(image.data)
            if dims:
                width, height = dims

        r18 = r18 or is_r18(info.tags)
        key = make_key(pid, orientation(width, height), image.extension, source, r18)
        public_url = self.storage.upload(image.data, key, image.content_type)

        self.db.upsert_image(
            pid=pid,
            title=info.title,
            artist=info.artist,
            tags=info.tags,
            original_url=url,
            r2_url=public_url,
            storage_key=key,
            source=source,
            orientation=orientation(width, height),
            r18=r18,
            width=width or None,
            height=height or None,
        )
        self.activity.success(f"Saved {info.title} ({pid})", f"{info.artist} → {key}")
        return ProcessResult(success=True, url=public_url)

    # ── batches ──────────────────────────────────────────────────

    def process_batch(
        self,
        illusts: Sequence[Illust],
        source: str = "ranking",
        *,
        filtered: bool = True,
        r18: bool = False,
    ) -> TransferProgress:
        """Process illustrations one by one; a failing item never stops the batch."""
        progress = TransferProgress(total=len(illusts))
        skip_tags = self.skip_tags() if filtered else []
        settings = self._settings() if filtered else {}
        quality = {
            "min_bookmarks": int(settings.get("min_bookmarks") or 0),
            "min_side": int(settings.get("min_side") or 0),
        }

        bar: Progress | None = None
        task = None
        if self.show_progress:
            bar = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                TimeElapsedColumn(),
            )
            bar.start()
            task = bar.add_task(f"{source} illustrations", total=len(illusts))

        try:
            for index, illust in enumerate(illusts):
                try:
                    result = self.process_illustration(
                        illust.pid, source, filtered=filtered, r18=r18, skip_tags=skip_tags, quality=quality
                    )
                except Exception as exc:
                    logger.error("Error processing illustration %d: %s", illust.pid, exc)
                    self.db.rollback()
                    result = ProcessResult(success=False, error=str(exc))

                progress.processed += 1
                if result.skipped:
                    progress.skipped += 1
                elif result.success:
                    progress.success += 1
                else:
                    progress.failed += 1
                    self.activity.error(f"Failed to transfer {illust.pid}", result.error)

                if bar is not None and task is not None:
                    bar.advance(task)
                if self.cfg.batch_delay > 0 and index < len(illusts) - 1:
                    time.sleep(self.cfg.batch_delay)
        finally:
            if bar is not None:
                bar.stop()

        logger.info(
            "Batch %s: %d ok, %d skipped, %d failed of %d",
            source, progress.success, progress.skipped, progress.failed, progress.total,
        )
        return progress

    def _finish(self, label: str, progress: TransferProgress) -> TransferResult:
        summary = f"{progress.success} saved, {progress.skipped} skipped, {progress.failed} failed"
        if progress.failed:
            self.activity.warning(f"{label} finished with errors", summary)
        else:
            self.activity.success(f"{label} finished", summary)
        if progress.failed:
            return TransferResult(success=False, progress=progress, error=f"{progress.failed} illustration(s) failed")
        return TransferResult(success=True, progress=progress)

    def _fail(self, label: str, exc: Exception | str) -> TransferResult:
        self.activity.error(f"{label} failed", str(exc))
        return TransferResult(success=False, error=str(exc))

    # ── crawls ───────────────────────────────────────────────────

    def crawl_ranking(self, mode: str = "daily", limit: int = 5, *, balance: bool = True) -> TransferResult:
        label = f"Ranking crawl ({mode})"
        self.activity.info(f"{label} started", f"limit={limit}")
        try:
            illusts = self.api.get_ranking(mode)
        except PixivError as exc:
            return self._fail(label, exc)

        settings = self._settings()
        candidates = select_candidates(
            illusts,
            limit,
            skip_tags=self.skip_tags(),
            balance=balance,
            min_bookmarks=int(settings.get("min_bookmarks") or 0),
            min_side=int(settings.get("min_side") or 0),
        )
        logger.info("%s: %d candidates from %d ranked works", label, len(candidates), len(illusts))
        progress = self.process_batch(candidates, "ranking", r18=mode.endswith("_r18"))
        return self._finish(label, progress)

    def crawl_by_tag(self, tag: str, limit: int = 5, *, balance: bool = True) -> TransferResult:
        label = f"Tag crawl ({tag})"
        self.activity.info(f"{label} started", f"limit={limit}")
        try:
            illusts = self.api.search_by_tag(tag)
        except PixivError as exc:
            return self._fail(label, exc)
        if not illusts:
            return self._fail(label, f"No illustrations found for tag {tag}")

        settings = self._settings()
        candidates = select_candidates(
            illusts,
            limit,
            skip_tags=self.skip_tags(),
            balance=balance,
            min_bookmarks=int(settings.get("min_bookmarks") or 0),
            min_side=int(settings.get("min_side") or 0),
        )
        progress = self.process_batch(candidates, "tag")
        return self._finish(label, progress)

    def crawl_related(self, pid: int, limit: int = 5) -> TransferResult:
        """The illustration itself first (unfiltered), then up to ``limit`` related works."""
        label = f"PID fetch ({pid})"
        self.activity.info(f"{label} started", f"related limit={limit}")
        progress = self.process_batch([Illust(pid=pid)], "pid", filtered=False)

        try:
            related = self.api.get_related_works(pid, limit=max(limit * 3, 20))
        except PixivError as exc:
            logger.warning("Could not load related works for %d: %s", pid, exc)
            related = []

        candidates = select_candidates(related, limit, skip_tags=self.skip_tags(), balance=False)
        if candidates:
            progress.add(self.process_batch(candidates, "pid"))
        return self._finish(label, progress)

    def crawl_pid(self, pid: int, *, related: bool = True, limit: int = 5) -> TransferResult:
        if related:
            return self.crawl_related(pid, limit)
        label = f"PID fetch ({pid})"
        self.activity.info(f"{label} started")
        return self._finish(label, self.process_batch([Illust(pid=pid)], "pid", filtered=False))

    def crawl_favorites(self, limit: int = 5) -> TransferResult:
        """Crawl a favorite tag chosen with probability proportional to its weight."""
        tag = weighted_choice(self.db.list_favorite_tags(), self.rng)
        if tag is None:
            return TransferResult(success=False, error="No favorite tags configured")
        logger.info("Picked favorite tag %s", tag)
        return self.crawl_by_tag(tag, limit)

    # ── scheduled run ────────────────────────────────────────────

    def run_scheduled(self) -> dict[str, Any]:
        """One cron tick: ranking, then R-18 ranking, tag search and favorites as enabled."""
        settings = self._settings()
        report: dict[str, Any] = {}
        self.activity.info("Scheduled crawl started")

        report["ranking"] = self.crawl_ranking("daily", int(settings.get("crawl_limit") or 10)).to_dict()

        if settings.get("r18_enabled"):
            report["r18"] = self.crawl_ranking(
                "daily_r18", int(settings.get("r18_crawl_limit") or 10)
            ).to_dict()

        tags = list(settings.get("tags") or [])
        if settings.get("tag_search_enabled") and tags:
            tag = self.rng.choice(tags)
            report["tag"] = {"tag": tag, **self.crawl_by_tag(tag, int(settings.get("tag_search_limit") or 10)).to_dict()}

        if settings.get("favorite_enabled") and self.db.list_favorite_tags():
            report["favorites"] = self.crawl_favorites(int(settings.get("favorite_limit") or 5)).to_dict()

        report["success"] = all(
            part.get("success", False) for part in report.values() if isinstance(part, dict)
        )
        return report
