"""
S3 Blob Storage — path-addressed document objects

Object layout:
    s3://<BUCKET>/<user_id>/<epoch_ms>.<ext>

The path is always constructed server-side (build_storage_path) from the
authenticated owner id and an upload timestamp — never accepted from the
client — so one owner can never address another owner's objects.

Operations mirror what the ingestion pipeline needs and nothing more:
  upload             — store raw bytes at a path
  download           — fetch bytes; missing or empty object → FileNotFoundError
  create_signed_url  — time-limited presigned GET (handed to the OCR provider)
  remove             — hard delete
"""

from __future__ import annotations

import logging
import mimetypes
import os
import time
from dataclasses import dataclass
from uuid import UUID

import aioboto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredObject:
    """Returned by upload()."""
    path:         str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


@dataclass(frozen=True)
class SignedUrl:
    url:        str
    expires_in: int   # seconds


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

def build_storage_path(owner_id: UUID, original_filename: str, now_ms: int | None = None) -> str:
    """
    <owner_id>/<epoch_ms>.<ext>

    Only the extension of the client filename is kept; directory components
    and the base name never reach the object key.
    """
    ext = file_extension(original_filename) or "bin"
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{owner_id}/{stamp}.{ext}"


def file_extension(filename: str) -> str:
    """Lower-case extension without the dot; '' when there is none."""
    base = os.path.basename(filename.replace("\\", "/"))
    _, ext = os.path.splitext(base)
    return ext.lstrip(".").lower()


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3BlobStorage:
    """
    Async S3 operations against a single bucket.

    Cheap to construct — one aioboto3 Session per instance; each call opens
    its own short-lived client context.
    """

    def __init__(
        self,
        bucket:            str,
        region:            str = "us-east-1",
        endpoint_url:      str | None = None,
        access_key_id:     str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url or None
        # Empty keys fall through to the default credential chain (task role)
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    @classmethod
    def from_settings(cls) -> "S3BlobStorage":
        from docvault.core.config import settings
        return cls(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upload(
        self,
        path:         str,
        data:         bytes,
        content_type: str | None = None,
    ) -> StoredObject:
        ct = content_type or mimetypes.guess_type(path)[0] or "application/octet-stream"

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=path,
                Body=data,
                ContentType=ct,
            )

        logger.info("S3 upload ok | key=%s size=%d", path, len(data))

        return StoredObject(
            path=path,
            bucket=self._bucket,
            size_bytes=len(data),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def download(self, path: str) -> bytes:
        """Fetch an object's bytes. Missing and zero-byte objects both raise FileNotFoundError."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                if code in _NOT_FOUND_CODES:
                    raise FileNotFoundError(f"Object not found: {path}") from exc
                raise

        if not data:
            raise FileNotFoundError(f"Object is empty: {path}")
        return data

    async def create_signed_url(self, path: str, ttl_seconds: int = 3600) -> SignedUrl:
        """Presigned GET scoped to the exact key."""
        async with self._client() as s3:
            url = await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": path},
                ExpiresIn=ttl_seconds,
            )
        if not url:
            raise RuntimeError(f"Failed to generate signed URL for {path}")
        return SignedUrl(url=url, expires_in=ttl_seconds)

    async def remove(self, path: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=path)
        logger.info("S3 delete | key=%s", path)
