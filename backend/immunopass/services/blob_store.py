"""Addressable storage for validated voucher order CSVs (local disk or S3)."""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import settings

logger = logging.getLogger(__name__)

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,254}$")
_S3_REFERENCE_RE = re.compile(r"^s3://(?P<bucket>[^/]+)/(?P<key>.+)$")


class BlobStoreError(Exception):
    """Raised when an object cannot be stored or read back."""


class BlobStore(Protocol):
    def put(self, data: bytes, content_type: str, key: str) -> str: ...

    def get_lines(self, reference: str) -> list[str]: ...


def _validate_key(key: str) -> str:
    # Reject traversal and path separators regardless of backend.
    if not key or "/" in key or "\\" in key or ".." in key or not _SAFE_KEY_RE.match(key):
        raise BlobStoreError(f"Invalid object key: {key!r}")
    return key


class LocalBlobStore:
    """Stores objects as files under UPLOAD_DIR; the reference is the file path."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or settings.UPLOAD_DIR) / "voucher_orders"

    def put(self, data: bytes, content_type: str, key: str) -> str:
        key = _validate_key(key)
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / key
        try:
            with path.open("xb") as out:
                out.write(data)
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise BlobStoreError(f"Failed to store {key}: {exc}") from exc
        logger.info("Stored %s (%s, %d bytes)", key, content_type, len(data))
        return str(path)

    def get_lines(self, reference: str) -> list[str]:
        path = Path(reference)
        if path.parent.resolve() != self.root.resolve():
            raise BlobStoreError(f"Reference outside blob root: {reference}")
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise BlobStoreError(f"Failed to read {reference}: {exc}") from exc


class S3BlobStore:
    """Stores objects in an S3 bucket; the reference is an s3:// URL."""

    def __init__(self, *, bucket_name: str | None = None, s3_client=None) -> None:
        self.bucket_name = bucket_name or settings.S3_BUCKET_NAME
        if not self.bucket_name:
            raise ValueError("S3_BUCKET_NAME must be configured for the s3 blob backend")
        self.s3_client = s3_client or boto3.client(
            "s3",
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            region_name=settings.S3_REGION_NAME,
        )

    def put(self, data: bytes, content_type: str, key: str) -> str:
        key = _validate_key(key)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed for {key}: {exc}")
            raise BlobStoreError(f"Failed to upload {key}") from exc
        logger.info(f"Uploaded {key} to bucket {self.bucket_name}")
        return f"s3://{self.bucket_name}/{key}"

    def get_lines(self, reference: str) -> list[str]:
        match = _S3_REFERENCE_RE.match(reference)
        if not match:
            raise BlobStoreError(f"Not an S3 reference: {reference}")
        try:
            response = self.s3_client.get_object(Bucket=match["bucket"], Key=match["key"])
            body = response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 download failed for {reference}: {exc}")
            raise BlobStoreError(f"Failed to read {reference}") from exc
        return body.decode("utf-8").splitlines()


@lru_cache()
def get_blob_store() -> BlobStore:
    """Configured blob store (FastAPI dependency and worker tasks)."""
    backend = settings.BLOB_BACKEND.lower()
    if backend == "s3":
        return S3BlobStore()
    if backend == "local":
        return LocalBlobStore()
    raise ValueError(f"Unknown BLOB_BACKEND: {settings.BLOB_BACKEND}")
