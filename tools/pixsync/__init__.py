"""
pixsync – mirror pixiv illustrations into object storage and a Git repo.

Supports:
  • Crawling the daily / R-18 rankings, tag searches and related works
  • Skip-tag, quality and orientation-balanced filtering
  • Uploading originals to S3-compatible storage (R2, MinIO, ...)
  • Recording metadata, settings and activity logs in Postgres
  • Batch-committing WebP copies into a GitHub repository
  • A small FastAPI dashboard API and a click CLI
"""

__version__ = "0.3.0"
