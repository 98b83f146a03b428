"""
Content-addressed storage for original and converted documents.

Keys have the form ``<prefix>/<sha256>.pdf``; identical uploads share a key.
Two backends are provided:

- ``LocalStorage``: files under a root directory (default)
- ``S3Storage``: objects in an S3 bucket, selected with ``storage.backend: s3``
  and configured via ``storage.s3_bucket`` or the ``S3_BUCKET_NAME``
  environment variable
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from omegaconf import DictConfig

from .interfaces import Storage
from .utils import ensure_directory, sanitize_label

logger = logging.getLogger(__name__)


def content_key(data: bytes, prefix: str) -> str:
    digest = hashlib.sha256(data).hexdigest()
    return f"{sanitize_label(prefix, fallback='files')}/{digest}.pdf"


class LocalStorage:
    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root)).resolve()

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Invalid storage key: {key}")
        return path

    def put(self, data: bytes, prefix: str) -> str:
        key = content_key(data, prefix)
        path = self.path_for(key)
        if not path.exists():
            ensure_directory(path.parent)
            tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        return key

    def read(self, key: str) -> bytes:
        return self.path_for(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink()
        return True


class S3Storage:
    """
    S3 object storage.

    Note:
        Credentials are not checked up front; they surface on the first
        actual upload as a ``ClientError``.
    """

    def __init__(self, bucket: str, client=None) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is not configured")
        self.bucket = bucket
        self._client = client or boto3.client("s3")

    def put(self, data: bytes, prefix: str) -> str:
        key = content_key(data, prefix)
        logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{key}")
        self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType="application/pdf")
        return key

    def read(self, key: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise
        return True

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        self._client.delete_object(Bucket=self.bucket, Key=key)
        return True


def build_storage(settings: DictConfig) -> Storage:
    backend = settings.storage.backend
    if backend == "s3":
        return S3Storage(bucket=settings.storage.s3_bucket)
    if backend == "local":
        return LocalStorage(Path(settings.storage.root))
    raise ValueError(f"Unknown storage backend: {backend}")
