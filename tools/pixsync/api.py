"""pixiv web API client – rate-limited, retrying HTTP fetcher and image downloader."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from .config import PixivConfig
from .errors import PixivAuthError, PixivError

logger = logging.getLogger("pixsync.api")

_EXT_RE = re.compile(r"\.([a-zA-Z0-9]+)(?:\?|$)")
_SIZE_SEGMENT_RE = re.compile(r"/c/[^/]+/")
_RETRY_STATUSES = {429, 500, 502, 503, 504}


@dataclass
class Illust:
    """A listing entry (ranking row, search hit, recommendation)."""
    pid: int
    title: str = ""
    artist: str = ""
    user_id: str = ""
    tags: list[str] = field(default_factory=list)
    width: int = 0
    height: int = 0
    page_count: int = 1
    url: str = ""
    bookmark_count: int | None = None
    like_count: int | None = None
    view_count: int | None = None


@dataclass
class ImageInfo:
    pid: int
    title: str
    artist: str
    tags: list[str]
    original_urls: list[str]
    width: int = 0
    height: int = 0
    bookmark_count: int | None = None


@dataclass
class DownloadedImage:
    data: bytes
    content_type: str
    extension: str
    url: str


def extension_from_url(url: str) -> str:
    m = _EXT_RE.search(url)
    return m.group(1).lower() if m else "jpg"


def regular_to_original(url: str) -> str:
    """Rewrite an ``img-master`` (regular/thumbnail) URL into its ``img-original`` form."""
    url = _SIZE_SEGMENT_RE.sub("/", url)
    url = url.replace("/img-master/", "/img-original/")
    return url.replace("_master1200", "").replace("_square1200", "")


def normalize_tags(raw: Any) -> list[str]:
    """Accept ``["a", ...]``, ``[{"tag": "a"}, ...]`` or ``{"tags": [...]}``."""
    if isinstance(raw, dict):
        raw = raw.get("tags", [])
    if not isinstance(raw, list):
        return []
    tags: list[str] = []
    for t in raw:
        if isinstance(t, str):
            value = t
        elif isinstance(t, dict):
            value = str(t.get("tag") or "")
        else:
            value = ""
        if value:
            tags.append(value)
    return tags


def _int_or_none(v: Any) -> int | None:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _illust_from_ranking(item: dict) -> Illust:
    return Illust(
        pid=int(item["illust_id"]),
        title=str(item.get("title") or ""),
        artist=str(item.get("user_name") or ""),
        user_id=str(item.get("user_id") or ""),
        tags=normalize_tags(item.get("tags") or []),
        width=int(item.get("width") or 0),
        height=int(item.get("height") or 0),
        page_count=int(item.get("illust_page_count") or 1),
        url=str(item.get("url") or ""),
        view_count=_int_or_none(item.get("view_count")),
    )


def _illust_from_ajax(item: dict) -> Illust:
    urls = item.get("urls") or {}
    url = item.get("url") or (urls.get("regular") if isinstance(urls, dict) else "") or ""
    return Illust(
        pid=int(item["id"]),
        title=str(item.get("title") or ""),
        artist=str(item.get("userName") or ""),
        user_id=str(item.get("userId") or ""),
        tags=normalize_tags(item.get("tags") or []),
        width=int(item.get("width") or 0),
        height=int(item.get("height") or 0),
        page_count=int(item.get("pageCount") or 1),
        url=str(url),
        bookmark_count=_int_or_none(item.get("bookmarkCount")),
        like_count=_int_or_none(item.get("likeCount")),
        view_count=_int_or_none(item.get("viewCount")),
    )


class PixivAPI:
    """Thin wrapper around pixiv's internal ajax API with rate limiting."""

    def __init__(self, cfg: PixivConfig | None = None, *, transport: httpx.BaseTransport | None = None) -> None:
        self.cfg = cfg or PixivConfig.from_env()
        self._last_request: float = 0.0
        self._client = httpx.Client(
            timeout=self.cfg.timeout,
            headers={
                "User-Agent": self.cfg.user_agent,
                "Referer": f"{self.cfg.web_base}/",
                "Accept-Language": "ja,en-US;q=0.9,en;q=0.8,zh-CN;q=0.7,zh;q=0.6",
            },
            follow_redirects=True,
            transport=transport,
        )

    @property
    def authenticated(self) -> bool:
        return self.cfg.authenticated

    # ── rate limiting ────────────────────────────────────────────
    def _throttle(self) -> None:
        elapsed = time.monotonic() - self._last_request
        if elapsed < self.cfg.request_delay:
            time.sleep(self.cfg.request_delay - elapsed)
        self._last_request = time.monotonic()

    def _auth_headers(self) -> dict[str, str]:
        if not self.cfg.authenticated:
            raise PixivAuthError("PIXIV_PHPSESSID is not configured")
        return {
            "Cookie": f"PHPSESSID={self.cfg.phpsessid}",
            "Accept": "application/json, text/plain, */*",
        }

    def _request(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        auth: bool = True,
    ) -> httpx.Response | None:
        for attempt in range(1, self.cfg.max_retries + 1):
            self._throttle()
            try:
                resp = self._client.get(
                    url, params=params, headers=headers, timeout=timeout or self.cfg.timeout
                )
                if resp.status_code == 404:
                    logger.warning("404: %s", url)
                    return None
                if resp.status_code in (401, 403) and auth:
                    raise PixivAuthError(f"pixiv rejected the session ({resp.status_code}) for {url}")
                if resp.status_code in _RETRY_STATUSES:
                    resp.raise_for_status()
                return resp
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, self.cfg.max_retries, url, exc)
                if attempt == self.cfg.max_retries:
                    raise PixivError(f"Request failed for {url}: {exc}") from exc
                time.sleep(2 ** attempt)
        return None

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        resp = self._request(url, params=params, headers=self._auth_headers())
        if resp is None:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            if "login" in str(resp.url):
                raise PixivAuthError("PHPSESSID expired or invalid - please update your pixiv session") from exc
            raise PixivError(f"Non-JSON response from {url} ({resp.status_code})") from exc

    def _get_body(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """Unwrap the ``{"error": bool, "message": str, "body": ...}`` ajax envelope."""
        data = self._get_json(url, params)
        if data is None:
            return None
        if data.get("error"):
            raise PixivError(data.get("message") or f"pixiv error for {url}")
        return data.get("body")

    # ── illustration detail ──────────────────────────────────────

    def get_illust_detail(self, pid: int | str) -> dict | None:
        """Fetch the raw detail body for a PID, or None if it does not exist."""
        data = self._get_json(f"{self.cfg.ajax_base}/illust/{pid}")
        if not data or data.get("error"):
            if data:
                logger.warning("pixiv error for PID %s: %s", pid, data.get("message"))
            return None
        return data.get("body")

    def get_illust_pages(self, pid: int | str) -> list[str]:
        """Original URLs of every page of a multi-page work."""
        data = self._get_json(f"{self.cfg.ajax_base}/illust/{pid}/pages")
        if not data or data.get("error"):
            return []
        return [p["urls"]["original"] for p in data.get("body") or [] if p.get("urls", {}).get("original")]

    def get_image_info(self, pid: int | str) -> ImageInfo | None:
        detail = self.get_illust_detail(pid)
        if not detail:
            return None

        urls = detail.get("urls") or {}
        original_urls: list[str] = []
        if int(detail.get("pageCount") or 1) > 1:
            original_urls = self.get_illust_pages(pid)
        if not original_urls:
            if urls.get("original"):
                original_urls = [urls["original"]]
            elif urls.get("regular"):
                original_urls = [regular_to_original(urls["regular"])]

        return ImageInfo(
            pid=int(pid),
            title=detail.get("title") or "Untitled",
            artist=detail.get("userName") or "Unknown",
            tags=normalize_tags(detail.get("tags")),
            original_urls=original_urls,
            width=int(detail.get("width") or 0),
            height=int(detail.get("height") or 0),
            bookmark_count=_int_or_none(detail.get("bookmarkCount")),
        )

    # ── listings ─────────────────────────────────────────────────

    def get_ranking(self, mode: str = "daily", page: int = 1, date: str | None = None) -> list[Illust]:
        """Fetch one page of a ranking (``daily``, ``weekly``, ``daily_r18``, ...)."""
        params: dict[str, Any] = {"mode": mode, "p": page, "format": "json"}
        if date:
            params["date"] = date
        url = f"{self.cfg.web_base}/ranking.php"
        resp = self._request(url, params=params, headers=self._auth_headers())
        if resp is None:
            raise PixivError(f"Ranking {mode} not found")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        contents = data.get("contents")
        if not contents:
            if data.get("error") or "mode" not in data or "login" in str(resp.url):
                raise PixivAuthError("PHPSESSID expired or invalid - please update your pixiv session")
            raise PixivError("No contents in response")
        logger.debug("Ranking %s page %d: %d entries", mode, page, len(contents))
        return [_illust_from_ranking(item) for item in contents]

    def search_by_tag(self, tag: str, page: int = 1) -> list[Illust]:
        """Search artworks by tag, most popular first."""
        body = self._get_body(
            f"{self.cfg.ajax_base}/search/artworks/{quote(tag, safe='')}",
            params={
                "word": tag,
                "order": "popular_d",
                "mode": "all",
                "p": page,
                "s_mode": "s_tag",
                "type": "all",
            },
        )
        data = ((body or {}).get("illustManga") or {}).get("data") or []
        return [_illust_from_ajax(item) for item in data if item.get("id")]

    def get_related_works(self, pid: int | str, limit: int = 20) -> list[Illust]:
        """Fetch recommendations seeded by a PID."""
        body = self._get_body(f"{self.cfg.ajax_base}/illust/{pid}/recommend/init", params={"limit": limit})
        illusts = (body or {}).get("illusts") or []
        return [_illust_from_ajax(item) for item in illusts if item.get("id")][:limit]

    def get_artist_works(self, user_id: int | str, limit: int = 30) -> list[Illust]:
        """Fetch an artist's most recent works, one detail request per work."""
        body = self._get_body(f"{self.cfg.ajax_base}/user/{user_id}/profile/all")
        ids = sorted((int(k) for k in ((body or {}).get("illusts") or {})), reverse=True)[:limit]
        results: list[Illust] = []
        for pid in ids:
            detail = self.get_illust_detail(pid)
            if not detail:
                continue
            detail = {**detail, "id": detail.get("id") or pid, "tags": normalize_tags(detail.get("tags"))}
            results.append(_illust_from_ajax(detail))
        return results

    # ── downloads ────────────────────────────────────────────────

    def download_image(self, url: str) -> DownloadedImage | None:
        """Download an original image from i.pximg.net using anti-hotlink headers."""
        headers = {
            "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
            "Referer": f"{self.cfg.web_base}/",
        }
        resp = self._request(url, headers=headers, timeout=self.cfg.download_timeout, auth=False)
        if resp is None:
            return None
        if resp.status_code >= 400:
            raise PixivError(f"Download failed for {url} ({resp.status_code})")
        content_type = resp.headers.get("content-type", "image/jpeg").split(";")[0].strip() or "image/jpeg"
        return DownloadedImage(
            data=resp.content,
            content_type=content_type,
            extension=extension_from_url(url),
            url=url,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> PixivAPI:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
