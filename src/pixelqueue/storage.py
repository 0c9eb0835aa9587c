"""Object store adapters.

Keys are opaque strings chosen by the planner. Two backends are provided:
- LocalObjectStore: a directory tree, for development and tests
- S3ObjectStore: any S3-compatible service through boto3

Every backend error is raised as StorageError so the worker can treat the
object store uniformly.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError
from .models import StorageConfig

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Blob storage addressed by key."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Write (or overwrite) an object. Overwrites at the same key are idempotent."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read an object. Raises StorageError if missing or unreadable."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def presign(self, key: str, ttl_s: int = 3600) -> str:
        """Time-limited URL for reading an object."""


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store rooted at a directory.

    Writes go to a temp file in the target directory and are renamed into
    place, so readers never see a half-written object.
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not key or key.startswith("/") or any(p in ("..", ".") for p in parts):
            raise StorageError("invalid object key", key=key)
        return self.root.joinpath(*parts)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_path, path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"write failed: {e}", key=key) from e
        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StorageError("object not found", key=key) from e
        except OSError as e:
            raise StorageError(f"read failed: {e}", key=key) from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"delete failed: {e}", key=key) from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def presign(self, key: str, ttl_s: int = 3600) -> str:
        # Local files have no expiry; the URI is enough for development
        return self._path(key).as_uri()


class S3ObjectStore(ObjectStore):
    """S3-compatible store (AWS S3, MinIO, R2...) through boto3."""

    def __init__(
        self,
        bucket: str,
        client=None,
        endpoint_url: Optional[str] = None,
        region: str = "us-east-1",
    ):
        if not bucket:
            raise ValueError("S3ObjectStore needs a bucket name")
        self.bucket = bucket
        self.client = client or boto3.client(
            service_name="s3", endpoint_url=endpoint_url, region_name=region
        )

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed: {e}", key=key) from e

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404"):
                raise StorageError("object not found", key=key) from e
            raise StorageError(f"S3 download failed: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}", key=key) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete failed: {e}", key=key) from e

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                return False
            raise StorageError(f"S3 head failed: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}", key=key) from e

    def presign(self, key: str, ttl_s: int = 3600) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_s,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"presign failed: {e}", key=key) from e


def build_object_store(config: StorageConfig) -> ObjectStore:
    """Create the object store selected by configuration."""
    if config.backend == "s3":
        return S3ObjectStore(
            bucket=config.bucket, endpoint_url=config.endpoint_url, region=config.region
        )
    return LocalObjectStore(config.local_root)
