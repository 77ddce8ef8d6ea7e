"""
Blob Storage Service — S3 via aioboto3

The pipeline treats storage as an opaque byte store:

    upload(path, data, content_type)  → StoredObject
    download(path)                    → bytes            (FileNotFoundError if missing)
    get_public_url(path)              → presigned GET URL (short TTL)
    delete(path)                      → hard delete, used for best-effort cleanup

Key layout:
    documents/<document_id>/<sanitized filename>

Keys are always built server-side by `document_key()`; a client never
supplies a raw key.
"""

from __future__ import annotations

import logging
import mimetypes
import re
from dataclasses import dataclass
from uuid import UUID

import aioboto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class StoredObject:
    """Returned by upload()."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


def document_key(document_id: UUID, filename: str) -> str:
    """
    Pattern:  documents/<document_id>/<filename>

    The filename is reduced to a safe character set so it can never escape
    the document prefix.
    """
    safe_name = _UNSAFE_KEY_CHARS.sub("_", filename.replace("..", "_")) or "file"
    return f"documents/{document_id}/{safe_name}"


class BlobStorage:
    """
    Async S3 operations against a single bucket.

    One instance per process is fine: aioboto3 clients are opened per call,
    so the object holds no connection state.
    """

    def __init__(
        self,
        bucket:                str,
        region:                str,
        endpoint_url:          str | None = None,
        access_key_id:         str | None = None,
        secret_access_key:     str | None = None,
        presigned_ttl_seconds: int = 900,
    ) -> None:
        self._bucket        = bucket
        self._region        = region
        self._endpoint_url  = endpoint_url or None
        self._presigned_ttl = presigned_ttl_seconds
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

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

        logger.info("S3 upload ok | key=%s size=%d content_type=%s", path, len(data), ct)
        return StoredObject(
            key=path,
            bucket=self._bucket,
            size_bytes=len(data),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def download(self, path: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {path}") from exc
                raise

        logger.debug("S3 download ok | key=%s size=%d", path, len(data))
        return data

    async def get_public_url(self, path: str, expires_in: int | None = None) -> str:
        """Short-lived presigned GET URL scoped to the exact object key."""
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": path},
                ExpiresIn=expires_in or self._presigned_ttl,
            )

    async def delete(self, path: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=path)
        logger.info("S3 delete | key=%s", path)


def build_blob_storage() -> BlobStorage:
    from docpipe.core.config import settings

    return BlobStorage(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        endpoint_url=settings.s3_endpoint_url,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
        presigned_ttl_seconds=settings.presigned_url_ttl_seconds,
    )
