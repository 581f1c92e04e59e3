"""Database operations – illustration metadata, crawler settings, logs and tag lists."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row

from .config import DatabaseConfig

logger = logging.getLogger("pixsync.db")

DEFAULT_SETTINGS: dict[str, Any] = {
    "cron_expression": "0 0 * * *",
    "tags": ["イラスト", "二次元", "風景"],
    "r18_enabled": False,
    "crawl_limit": 10,
    "r18_crawl_limit": 10,
    "tag_search_enabled": False,
    "tag_search_limit": 10,
    "favorite_enabled": False,
    "favorite_limit": 5,
    "min_bookmarks": 0,
    "min_side": 0,
}

IMAGE_SOURCES = ("ranking", "r18", "tag", "pid", "all")


def _category_clause(source: str | None, r18: bool, orient: str) -> tuple[str, list[Any]]:
    """WHERE fragment selecting stored images of one mirror category."""
    parts = ["r2_url IS NOT NULL", "orientation = %s", "r18 = %s"]
    params: list[Any] = [orient, r18]
    if source:
        parts.append("source = %s")
        params.append(source)
    return " AND ".join(parts), params


def _source_clause(source: str) -> str:
    if source == "all":
        return ""
    if source == "r18":
        return "r18"
    if source in ("ranking", "tag", "pid"):
        return f"source = '{source}' AND NOT r18"
    return "NOT r18"


class Database:
    """Postgres interface for the crawler and dashboard.

    One connection is shared by every caller, including the API server's
    worker threads.  Each public method holds the lock for its whole
    transaction and ends it with a commit, or a rollback if it raised, so
    no caller ever sees another caller's half-finished or aborted
    transaction.
    """

    def __init__(self, cfg: DatabaseConfig | None = None) -> None:
        self.cfg = cfg or DatabaseConfig.from_env()
        self._conn: psycopg.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> psycopg.Connection:
        with self._lock:
            if self._conn is None or self._conn.closed:
                self._conn = psycopg.connect(self.cfg.dsn, row_factory=dict_row, autocommit=False)
            return self._conn

    @contextmanager
    def _tx(self) -> Iterator[psycopg.Connection]:
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                if not conn.closed:
                    conn.rollback()
                raise
            conn.commit()

    def ensure_schema(self) -> None:
        """Create tables if missing and add newer columns."""
        sql = Path(__file__).with_name("schema.sql").read_text(encoding="utf-8")
        with self._tx() as conn:
            conn.execute(sql)
        logger.info("Schema is ready")

    # ── images ───────────────────────────────────────────────────

    def image_exists(self, pid: int) -> bool:
        with self._tx() as conn:
            row = conn.execute("SELECT 1 FROM pixiv_images WHERE pid = %s", (pid,)).fetchone()
        return row is not None

    def upsert_image(
        self,
        *,
        pid: int,
        title: str,
        artist: str,
        tags: list[str],
        original_url: str,
        r2_url: str | None,
        storage_key: str | None = None,
        source: str = "ranking",
        orientation: str = "v",
        r18: bool = False,
        width: int | None = None,
        height: int | None = None,
    ) -> str:
        """Insert or refresh an illustration row keyed by PID. Returns the row id."""
        with self._tx() as conn:
            row = conn.execute(
                """INSERT INTO pixiv_images
                       (pid, title, artist, tags, original_url, r2_url,
                        storage_key, source, orientation, r18, width, height)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (pid) DO UPDATE SET
                       title        = EXCLUDED.title,
                       artist       = EXCLUDED.artist,
                       tags         = EXCLUDED.tags,
                       original_url = EXCLUDED.original_url,
                       r2_url       = COALESCE(EXCLUDED.r2_url, pixiv_images.r2_url),
                       storage_key  = COALESCE(EXCLUDED.storage_key, pixiv_images.storage_key),
                       source       = EXCLUDED.source,
                       orientation  = EXCLUDED.orientation,
                       r18          = EXCLUDED.r18,
                       width        = COALESCE(EXCLUDED.width, pixiv_images.width),
                       height       = COALESCE(EXCLUDED.height, pixiv_images.height)
                   RETURNING id""",
                (pid, title, artist, tags, original_url, r2_url,
                 storage_key, source, orientation, r18, width, height),
            ).fetchone()
        return str(row["id"])

    def get_image(self, image_id: str) -> dict | None:
        with self._tx() as conn:
            return conn.execute("SELECT * FROM pixiv_images WHERE id = %s", (image_id,)).fetchone()

    def delete_image(self, image_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM pixiv_images WHERE id = %s", (image_id,))
        return cur.rowcount > 0

    def list_images(
        self, *, source: str = "ranking", search: str = "", page: int = 1, limit: int = 20
    ) -> tuple[list[dict], int]:
        """Page through stored images, newest first. Returns (rows, total)."""
        where: list[str] = []
        params: list[Any] = []
        clause = _source_clause(source)
        if clause:
            where.append(clause)
        if search:
            where.append("(title ILIKE %s OR artist ILIKE %s)")
            params.extend([f"%{search}%", f"%{search}%"])
        where_sql = ("WHERE " + " AND ".join(where)) if where else ""

        with self._tx() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS c FROM pixiv_images {where_sql}", params
            ).fetchone()["c"]
            rows = conn.execute(
                f"""SELECT * FROM pixiv_images {where_sql}
                    ORDER BY created_at DESC
                    LIMIT %s OFFSET %s""",
                (*params, limit, max(0, page - 1) * limit),
            ).fetchall()
        return rows, int(total)

    def storage_urls(self) -> set[str]:
        with self._tx() as conn:
            rows = conn.execute("SELECT r2_url FROM pixiv_images WHERE r2_url IS NOT NULL").fetchall()
        return {r["r2_url"] for r in rows}

    # ── mirror sync state ────────────────────────────────────────

    def pending_sync(self, *, source: str | None, r18: bool, orient: str, limit: int) -> list[dict]:
        clause, params = _category_clause(source, r18, orient)
        with self._tx() as conn:
            return conn.execute(
                f"""SELECT * FROM pixiv_images
                    WHERE {clause} AND github_synced IS NULL
                    ORDER BY created_at ASC
                    LIMIT %s""",
                (*params, limit),
            ).fetchall()

    def category_images(self, *, source: str | None, r18: bool, orient: str, limit: int) -> list[dict]:
        clause, params = _category_clause(source, r18, orient)
        with self._tx() as conn:
            return conn.execute(
                f"SELECT id, pid, r2_url FROM pixiv_images WHERE {clause} ORDER BY created_at ASC LIMIT %s",
                (*params, limit),
            ).fetchall()

    def count_category(self, *, source: str | None, r18: bool, orient: str) -> tuple[int, int]:
        """Return (total, synced) for a mirror category."""
        clause, params = _category_clause(source, r18, orient)
        with self._tx() as conn:
            row = conn.execute(
                f"""SELECT COUNT(*) AS total,
                           COUNT(github_synced) AS synced
                    FROM pixiv_images WHERE {clause}""",
                params,
            ).fetchone()
        return int(row["total"]), int(row["synced"])

    def mark_synced(self, image_ids: list[str]) -> None:
        if not image_ids:
            return
        with self._tx() as conn:
            conn.execute(
                "UPDATE pixiv_images SET github_synced = NOW() WHERE id = ANY(%s::uuid[])",
                (list(image_ids),),
            )

    def reset_synced(self, *, source: str | None, r18: bool, orient: str) -> int:
        clause, params = _category_clause(source, r18, orient)
        with self._tx() as conn:
            cur = conn.execute(f"UPDATE pixiv_images SET github_synced = NULL WHERE {clause}", params)
        return cur.rowcount

    # ── settings ─────────────────────────────────────────────────

    def get_settings(self) -> dict[str, Any]:
        """The single settings row merged over the defaults."""
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM crawler_settings ORDER BY updated_at ASC LIMIT 1").fetchone()
        settings = dict(DEFAULT_SETTINGS)
        if row:
            settings.update({k: v for k, v in row.items() if v is not None})
        return settings

    def save_settings(self, **fields: Any) -> dict[str, Any]:
        values = {k: v for k, v in fields.items() if k in DEFAULT_SETTINGS and v is not None}
        with self._tx() as conn:
            existing = conn.execute("SELECT id FROM crawler_settings ORDER BY updated_at ASC LIMIT 1").fetchone()
            if existing and values:
                assignments = ", ".join(f"{k} = %s" for k in values)
                conn.execute(
                    f"UPDATE crawler_settings SET {assignments}, updated_at = NOW() WHERE id = %s",
                    (*values.values(), existing["id"]),
                )
            elif not existing:
                merged = {**DEFAULT_SETTINGS, **values}
                cols = ", ".join(merged)
                marks = ", ".join(["%s"] * len(merged))
                conn.execute(f"INSERT INTO crawler_settings ({cols}) VALUES ({marks})", tuple(merged.values()))
        return self.get_settings()

    # ── activity logs ────────────────────────────────────────────

    def insert_log(self, level: str, message: str, details: str | None = None) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO crawler_logs (level, message, details) VALUES (%s, %s, %s)",
                (level, message, details),
            )

    def list_logs(self, *, level: str | None = None, limit: int = 50) -> list[dict]:
        with self._tx() as conn:
            if level and level != "all":
                return conn.execute(
                    "SELECT * FROM crawler_logs WHERE level = %s ORDER BY created_at DESC LIMIT %s",
                    (level, limit),
                ).fetchall()
            return conn.execute(
                "SELECT * FROM crawler_logs ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()

    def clear_logs(self) -> int:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM crawler_logs")
        return cur.rowcount

    def trim_logs(self, keep: int) -> int:
        """Delete everything but the ``keep`` newest log rows."""
        with self._tx() as conn:
            cur = conn.execute(
                """DELETE FROM crawler_logs WHERE id IN (
                       SELECT id FROM crawler_logs ORDER BY created_at DESC OFFSET %s
                   )""",
                (keep,),
            )
        return cur.rowcount

    # ── skip tags ────────────────────────────────────────────────

    def list_skip_tags(self) -> list[dict]:
        with self._tx() as conn:
            return conn.execute("SELECT * FROM skip_tags ORDER BY category ASC, tag ASC").fetchall()

    def skip_tag_values(self) -> list[str]:
        with self._tx() as conn:
            return [r["tag"] for r in conn.execute("SELECT tag FROM skip_tags").fetchall()]

    def add_skip_tag(self, tag: str, translation: str | None = None, category: str = "other") -> dict | None:
        """Insert a skip tag; None if it already exists."""
        with self._tx() as conn:
            return conn.execute(
                """INSERT INTO skip_tags (tag, translation, category)
                   VALUES (%s, %s, %s)
                   ON CONFLICT (tag) DO NOTHING
                   RETURNING *""",
                (tag, translation, category or "other"),
            ).fetchone()

    def delete_skip_tag(self, tag_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM skip_tags WHERE id = %s", (tag_id,))
        return cur.rowcount > 0

    # ── favorite tags ────────────────────────────────────────────

    def list_favorite_tags(self) -> list[dict]:
        with self._tx() as conn:
            return conn.execute("SELECT * FROM favorite_tags ORDER BY weight DESC, tag ASC").fetchall()

    def bump_favorite_tag(self, tag: str, tag_jp: str | None = None) -> tuple[str, int]:
        """Create a favorite tag with weight 1 or increment it. Returns (action, weight)."""
        with self._tx() as conn:
            row = conn.execute(
                """INSERT INTO favorite_tags (tag, tag_jp, weight)
                   VALUES (%s, %s, 1)
                   ON CONFLICT (tag) DO UPDATE SET
                       weight = favorite_tags.weight + 1,
                       updated_at = NOW()
                   RETURNING weight, (xmax = 0) AS inserted""",
                (tag, tag_jp or tag),
            ).fetchone()
        return ("created" if row["inserted"] else "incremented"), int(row["weight"])

    def delete_favorite_tag(self, *, tag_id: str | None = None, tag: str | None = None) -> bool:
        if not tag_id and not tag:
            return False
        with self._tx() as conn:
            if tag_id:
                cur = conn.execute("DELETE FROM favorite_tags WHERE id = %s", (tag_id,))
            else:
                cur = conn.execute("DELETE FROM favorite_tags WHERE tag = %s", (tag,))
        return cur.rowcount > 0

    # ── transaction helpers ──────────────────────────────────────

    def commit(self) -> None:
        with self._lock:
            self.conn.commit()

    def rollback(self) -> None:
        """Discard a transaction left open by raw ``conn`` use; the methods above never leave one."""
        with self._lock:
            if self._conn is not None and not self._conn.closed:
                self._conn.rollback()

    def close(self) -> None:
        with self._lock:
            if self._conn and not self._conn.closed:
                self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
