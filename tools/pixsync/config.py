"""Configuration and environment settings for pixsync."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        return default


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "pixsync"
    user: str = "pixsync"
    password: str = "pixsync"
    url: str = ""  # full DSN, takes precedence over the parts

    @property
    def dsn(self) -> str:
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}"

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            dbname=os.getenv("DB_NAME", "pixsync"),
            user=os.getenv("DB_USER", "pixsync"),
            password=os.getenv("DB_PASSWORD", "pixsync"),
            url=os.getenv("DATABASE_URL", ""),
        )


@dataclass(frozen=True)
class S3Config:
    endpoint: str = "http://localhost:9000"
    access_key: str = "minioadmin"
    secret_key: str = "minioadmin"
    bucket: str = "pixsync"
    region: str = "auto"
    public_url: str = ""

    @property
    def public_base(self) -> str:
        """Base URL that object keys are appended to for public access."""
        if self.public_url:
            return self.public_url.rstrip("/")
        return f"{self.endpoint.rstrip('/')}/{self.bucket}"

    @classmethod
    def from_env(cls) -> S3Config:
        return cls(
            endpoint=os.getenv("S3_ENDPOINT", "http://localhost:9000"),
            access_key=os.getenv("S3_ACCESS_KEY", "minioadmin"),
            secret_key=os.getenv("S3_SECRET_KEY", "minioadmin"),
            bucket=os.getenv("S3_BUCKET", "pixsync"),
            region=os.getenv("S3_REGION", "auto"),
            public_url=os.getenv("S3_PUBLIC_URL", ""),
        )


@dataclass(frozen=True)
class PixivConfig:
    """pixiv web API configuration.  The ajax endpoints need a logged-in PHPSESSID."""
    phpsessid: str = ""
    web_base: str = "https://www.pixiv.net"
    ajax_base: str = "https://www.pixiv.net/ajax"
    user_agent: str = BROWSER_UA
    request_delay: float = 0.5  # seconds between API requests
    max_retries: int = 3
    timeout: float = 30.0
    download_timeout: float = 60.0

    @property
    def authenticated(self) -> bool:
        return bool(self.phpsessid.strip())

    @classmethod
    def from_env(cls) -> PixivConfig:
        return cls(
            phpsessid=os.getenv("PIXIV_PHPSESSID", ""),
            request_delay=_env_float("PIXIV_REQUEST_DELAY", 0.5),
        )


@dataclass(frozen=True)
class GitHubConfig:
    token: str = ""
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    root_dir: str = "ri"
    api_base: str = "https://api.github.com"
    max_retries: int = 3
    timeout: float = 30.0

    @property
    def configured(self) -> bool:
        return bool(self.token and self.owner and self.repo)

    @classmethod
    def from_env(cls) -> GitHubConfig:
        return cls(
            token=os.getenv("GITHUB_TOKEN", ""),
            owner=os.getenv("GITHUB_OWNER", ""),
            repo=os.getenv("GITHUB_REPO", ""),
            branch=os.getenv("GITHUB_BRANCH", "main"),
            root_dir=os.getenv("GITHUB_ROOT_DIR", "ri").strip("/"),
        )


@dataclass
class AppConfig:
    db: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    s3: S3Config = field(default_factory=S3Config.from_env)
    pixiv: PixivConfig = field(default_factory=PixivConfig.from_env)
    github: GitHubConfig = field(default_factory=GitHubConfig.from_env)
    cron_secret: str = field(default_factory=lambda: os.getenv("CRON_SECRET", ""))
    api_key: str = field(default_factory=lambda: os.getenv("API_KEY", ""))
    batch_delay: float = field(default_factory=lambda: _env_float("BATCH_DELAY", 0.5))
    webp_quality: int = 85
    log_retention: int = 50
