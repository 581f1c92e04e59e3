"""S3/R2 storage layer – upload originals, derive public URLs, list and prune keys."""

from __future__ import annotations

import io
import logging
from typing import Iterator

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image

from .config import S3Config
from .errors import StorageError

logger = logging.getLogger("pixsync.storage")

# Map file extension → MIME type
MIME_MAP: dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

SOURCES = ("ranking", "tag", "pid")
DELETE_BATCH = 1000


def orientation(width: int | None, height: int | None) -> str:
    """``"h"`` for landscape, ``"v"`` for portrait, square or unknown."""
    if width and height and width > height:
        return "h"
    return "v"


def make_key(pid: int, orient: str, extension: str, source: str = "ranking", r18: bool = False) -> str:
    """Object key for an illustration.

    ``R18/{o}/`` wins over the source prefix; ranking images sit directly
    under ``{o}/``; tag and PID fetches get a ``tag/`` or ``pid/`` prefix.
    """
    ext = extension.lower().lstrip(".") or "jpg"
    if r18:
        prefix = "R18/"
    elif source in ("tag", "pid"):
        prefix = f"{source}/"
    else:
        prefix = ""
    return f"{prefix}{orient}/{pid}.{ext}"


def get_dimensions(data: bytes) -> tuple[int, int] | None:
    try:
        img = Image.open(io.BytesIO(data))
        return img.width, img.height
    except Exception:
        return None


class StorageService:
    """Upload, fetch, list and delete objects in an S3-compatible bucket."""

    def __init__(self, cfg: S3Config | None = None, *, client: object | None = None) -> None:
        self.cfg = cfg or S3Config.from_env()
        self._s3 = client or boto3.client(
            "s3",
            endpoint_url=self.cfg.endpoint,
            aws_access_key_id=self.cfg.access_key,
            aws_secret_access_key=self.cfg.secret_key,
            region_name=self.cfg.region,
            config=BotoConfig(signature_version="s3v4"),
        )

    # ── helpers ──────────────────────────────────────────────────

    @staticmethod
    def guess_mime(extension: str) -> str:
        return MIME_MAP.get(extension.lower().lstrip("."), "application/octet-stream")

    def public_url(self, key: str) -> str:
        return f"{self.cfg.public_base}/{key}"

    def key_from_url(self, url: str | None) -> str | None:
        """Inverse of :meth:`public_url`; None for URLs outside this bucket."""
        if not url:
            return None
        base = self.cfg.public_base + "/"
        if not url.startswith(base):
            return None
        return url[len(base):] or None

    # ── upload / fetch ──────────────────────────────────────────

    def upload(self, data: bytes, key: str, content_type: str | None = None) -> str:
        """Store bytes under ``key`` and return the public URL."""
        try:
            self._s3.put_object(
                Bucket=self.cfg.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or self.guess_mime(key.rsplit(".", 1)[-1]),
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload of {key} failed: {exc}") from exc
        logger.debug("Uploaded %s (%d bytes)", key, len(data))
        return self.public_url(key)

    def fetch(self, key: str) -> bytes:
        try:
            obj = self._s3.get_object(Bucket=self.cfg.bucket, Key=key)
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Fetch of {key} failed: {exc}") from exc

    # ── listing / deletion ──────────────────────────────────────

    def iter_keys(self, prefix: str = "") -> Iterator[str]:
        token: str | None = None
        while True:
            kwargs: dict = {"Bucket": self.cfg.bucket}
            if prefix:
                kwargs["Prefix"] = prefix
            if token:
                kwargs["ContinuationToken"] = token
            try:
                resp = self._s3.list_objects_v2(**kwargs)
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"Listing bucket {self.cfg.bucket} failed: {exc}") from exc
            for obj in resp.get("Contents", []):
                if obj.get("Key"):
                    yield obj["Key"]
            if not resp.get("IsTruncated"):
                break
            token = resp.get("NextContinuationToken")

    def list_keys(self, prefix: str = "") -> list[str]:
        return list(self.iter_keys(prefix))

    def delete_keys(self, keys: list[str]) -> tuple[int, list[str]]:
        """Delete keys in batches; returns (deleted, errors)."""
        deleted = 0
        errors: list[str] = []
        for i in range(0, len(keys), DELETE_BATCH):
            batch = keys[i:i + DELETE_BATCH]
            try:
                if len(batch) == 1:
                    self._s3.delete_object(Bucket=self.cfg.bucket, Key=batch[0])
                    deleted += 1
                    continue
                resp = self._s3.delete_objects(
                    Bucket=self.cfg.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
                failed = resp.get("Errors", [])
                for err in failed:
                    errors.append(f"{err.get('Key')}: {err.get('Message')}")
                deleted += len(batch) - len(failed)
            except (BotoCoreError, ClientError) as exc:
                logger.warning("Delete batch starting at %d failed: %s", i, exc)
                errors.append(f"Batch {i}: {exc}")
        return deleted, errors

    def delete(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.cfg.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Delete of {key} failed: {exc}") from exc

    def close(self) -> None:
        self._s3.close()
