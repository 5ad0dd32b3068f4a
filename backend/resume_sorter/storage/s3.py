"""
Object Storage — Cloudflare R2 over the S3 API

All inbound documents are stored in one bucket under:

    inbound/<ISO-8601 timestamp, ':' and '.' → '-'>__<sanitized filename>

e.g.  inbound/2025-03-01T14-02-11-512Z__Jane_Doe_Resume.pdf

The timestamp prefix keeps keys unique per upload. The original filename is
recovered from the key with filename_from_key(), which is how storage-pointer
webhooks (/webhooks/inbound-r2) learn the extension for the allowlist.

R2 specifics: region "auto", account-scoped endpoint_url, path-style
addressing. Credentials are static access keys (R2 has no IAM roles).
"""

from __future__ import annotations

import logging
import mimetypes
import re
from dataclasses import dataclass
from datetime import datetime, timezone

import aioboto3
from botocore.config import Config
from botocore.exceptions import ClientError

from resume_sorter.core.config import settings

logger = logging.getLogger(__name__)

INBOUND_PREFIX = "inbound/"
_KEY_SEPARATOR = "__"


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------

def sanitize_filename(filename: str | None) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with key-safe characters.
    """
    basename = (filename or "upload.bin").strip().replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]+", "_", basename)
    return safe[:200] or "upload.bin"


def build_inbound_key(filename: str | None, now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    stamp = moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    stamp = stamp.replace(":", "-").replace(".", "-")
    return f"{INBOUND_PREFIX}{stamp}{_KEY_SEPARATOR}{sanitize_filename(filename)}"


def filename_from_key(key: str) -> str:
    """Basename of the key with any '<timestamp>__' prefix removed."""
    base = key.rsplit("/", 1)[-1] or "file.bin"
    if _KEY_SEPARATOR in base:
        base = base.split(_KEY_SEPARATOR, 1)[1] or base
    return base


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredObject:
    """Represents a stored object — returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


# ---------------------------------------------------------------------------
# Storage service
# ---------------------------------------------------------------------------

class ObjectStorageService:
    """Async put/get by key against the inbound bucket."""

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket = bucket or settings.cloudflare_r2_bucket
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name="auto",
            endpoint_url=settings.r2_endpoint_url,
            aws_access_key_id=settings.cloudflare_r2_access_key_id or None,
            aws_secret_access_key=settings.cloudflare_r2_secret_access_key or None,
            config=Config(s3={"addressing_style": "path"}, retries={"max_attempts": 3}),
        )

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=ct,
                Metadata=metadata or {},
            )

        logger.info("R2 upload ok | bucket=%s key=%s size=%d", self._bucket, key, len(body))

        return StoredObject(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_object(self, key: str) -> bytes:
        """Download an object. Raises FileNotFoundError if the key is absent."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise
