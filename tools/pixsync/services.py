"""Wiring of clients and pipelines shared by the CLI and the API server."""

from __future__ import annotations

from dataclasses import dataclass, field

from .activity import ActivityLog
from .api import PixivAPI
from .config import AppConfig
from .db import Database
from .github import GitHubMirror
from .storage import StorageService
from .sync import MirrorSync
from .transfer import Transfer


@dataclass
class Services:
    cfg: AppConfig
    db: Database
    api: PixivAPI
    storage: StorageService
    github: GitHubMirror
    activity: ActivityLog
    show_progress: bool = False
    transfer: Transfer = field(init=False)
    sync: MirrorSync = field(init=False)

    def __post_init__(self) -> None:
        self.transfer = Transfer(
            self.db, self.api, self.storage,
            activity=self.activity, cfg=self.cfg, show_progress=self.show_progress,
        )
        self.sync = MirrorSync(self.db, self.storage, self.github, activity=self.activity, cfg=self.cfg)

    @classmethod
    def from_config(cls, cfg: AppConfig | None = None, *, show_progress: bool = False) -> Services:
        cfg = cfg or AppConfig()
        db = Database(cfg.db)
        return cls(
            cfg=cfg,
            db=db,
            api=PixivAPI(cfg.pixiv),
            storage=StorageService(cfg.s3),
            github=GitHubMirror(cfg.github),
            activity=ActivityLog(db, retention=cfg.log_retention),
            show_progress=show_progress,
        )

    def close(self) -> None:
        self.api.close()
        self.github.close()
        self.storage.close()
        self.db.close()

    def __enter__(self) -> Services:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
