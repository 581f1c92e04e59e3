"""Exception hierarchy shared by the clients and the orchestrator."""

from __future__ import annotations


class PixsyncError(Exception):
    """Base class for every error raised by pixsync."""


class ConfigError(PixsyncError):
    """A required setting is missing or malformed."""


class PixivError(PixsyncError):
    """pixiv returned an error body or could not be reached."""


class PixivAuthError(PixivError):
    """The PHPSESSID is missing, expired or rejected."""


class StorageError(PixsyncError):
    """An object storage call failed."""


class GitHubError(PixsyncError):
    """A GitHub API call failed or a batch commit could not be completed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
