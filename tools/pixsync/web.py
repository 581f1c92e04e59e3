"""Dashboard API – FastAPI app exposing crawl triggers, listings and maintenance."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

import psycopg
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .db import IMAGE_SOURCES
from .errors import ConfigError, PixivAuthError, PixsyncError
from .services import Services
from .sync import CATEGORIES

logger = logging.getLogger("pixsync.web")

MAX_CRAWL_LIMIT = 10


# ── request schemas ──────────────────────────────────────────────


class CrawlRequest(BaseModel):
    mode: Literal["ranking", "tag"] = "ranking"
    tag: Optional[str] = None
    limit: int = Field(5, ge=1)


class FetchPidRequest(BaseModel):
    pid: int = Field(..., gt=0)
    fetch_related: bool = True
    limit: int = Field(5, ge=1)


class DeleteImageRequest(BaseModel):
    id: str


class SettingsRequest(BaseModel):
    cron_expression: Optional[str] = None
    tags: Optional[List[str]] = None
    r18_enabled: Optional[bool] = None
    crawl_limit: Optional[int] = Field(None, ge=1, le=50)
    r18_crawl_limit: Optional[int] = Field(None, ge=1, le=50)
    tag_search_enabled: Optional[bool] = None
    tag_search_limit: Optional[int] = Field(None, ge=1, le=50)
    favorite_enabled: Optional[bool] = None
    favorite_limit: Optional[int] = Field(None, ge=1, le=50)
    min_bookmarks: Optional[int] = Field(None, ge=0)
    min_side: Optional[int] = Field(None, ge=0)


class SkipTagRequest(BaseModel):
    tag: str
    translation: Optional[str] = None
    category: str = "other"


class FavoriteTagRequest(BaseModel):
    tag: str
    tag_jp: Optional[str] = None


class SyncRequest(BaseModel):
    category: str
    limit: int = Field(10, ge=1)


class CleanupRequest(BaseModel):
    action: Literal["clean-storage", "clean-github"]
    category: Optional[str] = None
    dry_run: bool = True


# ── guards ───────────────────────────────────────────────────────


def _services(request: Request) -> Services:
    return request.app.state.services


def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        return ""
    parts = authorization.split(None, 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return ""


def require_api_key(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> None:
    """Optional API-key guard; a no-op unless API_KEY is configured."""
    expected = _services(request).cfg.api_key.strip()
    if not expected:
        return
    if x_api_key and x_api_key.strip() == expected:
        return
    if _bearer(authorization) == expected:
        return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized (missing/invalid API key)")


def require_cron_secret(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    expected = _services(request).cfg.cron_secret.strip()
    if expected and _bearer(authorization) != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _require_pixiv(svc: Services) -> None:
    if not svc.api.authenticated:
        raise PixivAuthError("Pixiv authentication not configured (PIXIV_PHPSESSID)")


# ── app factory ──────────────────────────────────────────────────


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        app.state.services.close()

    app = FastAPI(title="pixsync API", version=__version__, lifespan=lifespan)
    app.state.services = services or Services.from_config()

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(PixsyncError)
    async def pixsync_error(request: Request, exc: PixsyncError) -> JSONResponse:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        code = 400 if isinstance(exc, ConfigError) else 500
        return JSONResponse(status_code=code, content={"error": str(exc)})

    @app.exception_handler(psycopg.Error)
    async def database_error(request: Request, exc: psycopg.Error) -> JSONResponse:
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        _services(request).db.rollback()
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    # cron has its own bearer check
    @app.get("/api/cron")
    def cron(request: Request, _: None = Depends(require_cron_secret)) -> Dict[str, Any]:
        svc = _services(request)
        _require_pixiv(svc)
        report = svc.transfer.run_scheduled()
        return {"timestamp": datetime.now(timezone.utc).isoformat(), **report}

    router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

    # --- crawling ---

    @router.post("/crawl")
    def crawl(request: Request, body: CrawlRequest) -> Dict[str, Any]:
        svc = _services(request)
        _require_pixiv(svc)
        limit = min(body.limit, MAX_CRAWL_LIMIT)
        if body.mode == "tag":
            if not body.tag or not body.tag.strip():
                raise HTTPException(status_code=400, detail="Tag is required for tag search")
            result = svc.transfer.crawl_by_tag(body.tag.strip(), limit)
        else:
            result = svc.transfer.crawl_ranking("daily", limit)
        return {"mode": body.mode, **result.to_dict()}

    @router.get("/cron-test")
    def cron_test(request: Request) -> Dict[str, Any]:
        cfg = _services(request).cfg
        checks = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pixiv_authenticated": cfg.pixiv.authenticated,
            "cron_secret": bool(cfg.cron_secret),
            "s3_credentials": bool(cfg.s3.access_key and cfg.s3.secret_key),
            "s3_bucket": cfg.s3.bucket or None,
            "s3_public_url": cfg.s3.public_base,
            "database": bool(cfg.db.url or cfg.db.host),
            "github": cfg.github.configured,
        }
        required = ("pixiv_authenticated", "cron_secret", "s3_credentials", "s3_bucket", "database")
        return {"ok": all(checks[k] for k in required), "checks": checks}

    @router.post("/fetch-pid")
    def fetch_pid(request: Request, body: FetchPidRequest) -> Dict[str, Any]:
        svc = _services(request)
        _require_pixiv(svc)
        result = svc.transfer.crawl_pid(
            body.pid, related=body.fetch_related, limit=min(body.limit, MAX_CRAWL_LIMIT)
        )
        return {"pid": body.pid, **result.to_dict()}

    # --- images ---

    @router.get("/images")
    def list_images(
        request: Request,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        search: str = Query(default=""),
        source: str = Query(default="ranking"),
    ) -> Dict[str, Any]:
        if source not in IMAGE_SOURCES:
            raise HTTPException(status_code=400, detail=f"Unknown source: {source}")
        rows, total = _services(request).db.list_images(source=source, search=search, page=page, limit=limit)
        return {
            "images": rows,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        }

    @router.delete("/images")
    def delete_image(request: Request, body: DeleteImageRequest) -> Dict[str, Any]:
        svc = _services(request)
        image = svc.db.get_image(body.id)
        if image is None:
            raise HTTPException(status_code=404, detail="Image not found")
        storage_deleted = False
        key = image.get("storage_key") or svc.storage.key_from_url(image.get("r2_url"))
        if key:
            try:
                svc.storage.delete(key)
                storage_deleted = True
            except PixsyncError as exc:
                logger.warning("Could not delete %s from storage: %s", key, exc)
        svc.db.delete_image(body.id)
        return {"success": True, "storage_deleted": storage_deleted}

    # --- settings ---

    @router.get("/settings")
    def get_settings(request: Request) -> Dict[str, Any]:
        return _services(request).db.get_settings()

    @router.post("/settings")
    def save_settings(request: Request, body: SettingsRequest) -> Dict[str, Any]:
        svc = _services(request)
        settings = svc.db.save_settings(**body.model_dump(exclude_none=True))
        svc.activity.info("Settings updated")
        return {"success": True, "settings": settings}

    # --- logs ---

    @router.get("/logs")
    def list_logs(
        request: Request,
        limit: int = Query(default=50, ge=1, le=200),
        level: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        return {"logs": _services(request).db.list_logs(level=level, limit=limit)}

    @router.delete("/logs")
    def clear_logs(request: Request) -> Dict[str, Any]:
        return {"success": True, "deleted": _services(request).db.clear_logs()}

    # --- skip tags ---

    @router.get("/skip-tags")
    def list_skip_tags(request: Request) -> Dict[str, Any]:
        return {"tags": _services(request).db.list_skip_tags()}

    @router.post("/skip-tags")
    def add_skip_tag(request: Request, body: SkipTagRequest) -> Dict[str, Any]:
        tag = body.tag.strip()
        if not tag:
            raise HTTPException(status_code=400, detail="Tag must not be empty")
        row = _services(request).db.add_skip_tag(tag, body.translation, body.category)
        if row is None:
            raise HTTPException(status_code=409, detail="Tag already exists")
        return {"success": True, "tag": row}

    @router.delete("/skip-tags")
    def delete_skip_tag(request: Request, id: str = Query(...)) -> Dict[str, Any]:
        if not _services(request).db.delete_skip_tag(id):
            raise HTTPException(status_code=404, detail="Tag not found")
        return {"success": True}

    # --- favorite tags ---

    @router.get("/favorite-tags")
    def list_favorite_tags(request: Request) -> Dict[str, Any]:
        return {"tags": _services(request).db.list_favorite_tags()}

    @router.post("/favorite-tags")
    def bump_favorite_tag(request: Request, body: FavoriteTagRequest) -> Dict[str, Any]:
        tag = body.tag.strip()
        if not tag:
            raise HTTPException(status_code=400, detail="Tag is required")
        action, weight = _services(request).db.bump_favorite_tag(tag, body.tag_jp)
        return {"success": True, "action": action, "weight": weight}

    @router.delete("/favorite-tags")
    def delete_favorite_tag(
        request: Request, id: Optional[str] = Query(default=None), tag: Optional[str] = Query(default=None)
    ) -> Dict[str, Any]:
        if not id and not tag:
            raise HTTPException(status_code=400, detail="Tag id or name required")
        if not _services(request).db.delete_favorite_tag(tag_id=id, tag=tag):
            raise HTTPException(status_code=404, detail="Tag not found")
        return {"success": True}

    # --- GitHub mirror ---

    @router.get("/github-sync")
    def github_status(request: Request) -> Dict[str, Any]:
        svc = _services(request)
        return {"configured": svc.github.configured, "categories": svc.sync.status()}

    @router.post("/github-sync")
    def github_sync(request: Request, body: SyncRequest) -> Dict[str, Any]:
        result = _services(request).sync.sync_category(body.category, body.limit)
        return {"success": result.success, **asdict(result)}

    @router.post("/github-sync-fix")
    def github_sync_fix(request: Request) -> Dict[str, Any]:
        return {"success": True, "fixed": _services(request).sync.fix_sync_state()}

    # --- cleanup ---

    @router.get("/cleanup")
    def cleanup_report(
        request: Request, target: Literal["storage", "github"] = Query(default="storage")
    ) -> Dict[str, Any]:
        sync = _services(request).sync
        if target == "github":
            return {"target": target, "categories": sync.analyze_mirror()}
        return {"target": target, **sync.analyze_storage()}

    @router.post("/cleanup")
    def cleanup(request: Request, body: CleanupRequest) -> Dict[str, Any]:
        sync = _services(request).sync
        if body.action == "clean-github":
            if not body.category or body.category not in CATEGORIES:
                raise HTTPException(status_code=400, detail="A valid category is required")
            return {"action": body.action, **sync.clean_mirror(body.category, dry_run=body.dry_run)}
        return {"action": body.action, **sync.clean_storage(dry_run=body.dry_run)}

    app.include_router(router)
    return app
