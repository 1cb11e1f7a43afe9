"""Object store clients.

Two backends implement `ObjectStore`:

- S3ObjectStore: any S3-compatible service through boto3 (path-style
  addressing so MinIO/R2 endpoints work). Tenants listed in
  `storage.buckets` are real buckets; every other tenant lives under
  `workspaces/<tenant>/` inside the first (main) bucket.
- LocalObjectStore: a directory tree, `<root>/<tenant>/<key>`.

RetryingObjectStore wraps either one with the bounded exponential backoff
policy and converts backend errors into TransientStorageError.
"""

import logging
import os
import re
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterator, List, Optional, Tuple, TypeVar, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotFound, TransientStorageError
from .models import StorageConfig
from .queue.backends import ObjectStore

logger = logging.getLogger(__name__)

ENV_S3_ACCESS_KEY = "HLS_INGEST_S3_ACCESS_KEY"
ENV_S3_SECRET_KEY = "HLS_INGEST_S3_SECRET_KEY"

CHUNK_SIZE = 1024 * 1024

# A tenant names one bucket or one workspace prefix, never a path
TENANT_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".jpg": "image/jpeg",
    ".mp4": "video/mp4",
}

T = TypeVar("T")


def guess_content_type(key: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(key).suffix.lower(), "application/octet-stream")


def local_path_from_uri(location: str) -> Optional[Path]:
    """Local path of a file:// source location, or None for object keys."""
    if not location.startswith("file://"):
        return None
    return Path(url2pathname(urlparse(location).path))


def safe_filename(name: str) -> str:
    """Strip directories and characters that do not belong in an object key."""
    base = os.path.basename(name.replace("\\", "/")) or "upload"
    cleaned = "".join(c if c.isalnum() or c in "._-" else "_" for c in base)
    return cleaned.lstrip(".") or "upload"


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store used for development and tests."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, bucket: str, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if (
            not re.match(TENANT_PATTERN, bucket or "")
            or ".." in parts
            or key.startswith("/")
            or "\\" in key
        ):
            raise ValueError(f"Invalid object address: {bucket}/{key}")
        path = self.root / bucket / Path(*parts)
        if not path.resolve().is_relative_to(self.root.resolve()):
            raise ValueError(f"Object address escapes the store root: {bucket}/{key}")
        return path

    def put(self, bucket, key, body, content_type=None):
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        if isinstance(body, (bytes, bytearray)):
            tmp.write_bytes(body)
        elif isinstance(body, (str, Path)):
            shutil.copyfile(body, tmp)
        else:
            with open(tmp, "wb") as f:
                shutil.copyfileobj(body, f, CHUNK_SIZE)
        os.replace(tmp, path)

    def get(self, bucket, key, range_start=None, range_end=None):
        path = self._path(bucket, key)
        if not path.is_file():
            raise FileNotFoundError(f"No such object: {bucket}/{key}")
        f = open(path, "rb")

        def _stream() -> Iterator[bytes]:
            with f:
                start = range_start or 0
                f.seek(start)
                remaining = None if range_end is None else range_end - start + 1
                while remaining is None or remaining > 0:
                    size = CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining)
                    chunk = f.read(size)
                    if not chunk:
                        break
                    if remaining is not None:
                        remaining -= len(chunk)
                    yield chunk

        return _stream()

    def delete(self, bucket, key):
        path = self._path(bucket, key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        # Prune empty directories up to the bucket root
        parent = path.parent
        bucket_root = self.root / bucket
        while parent != bucket_root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    def list(self, bucket, prefix):
        bucket_root = self.root / bucket
        if not bucket_root.is_dir():
            return []
        keys = []
        for path in bucket_root.rglob("*"):
            if path.is_file() and not path.name.endswith(".part"):
                key = path.relative_to(bucket_root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def describe(self) -> Dict[str, str]:
        return {"backend": "local", "root": str(self.root)}


class S3ObjectStore(ObjectStore):
    """S3-compatible object store (AWS, MinIO, Cloudflare R2)."""

    def __init__(
        self,
        buckets: List[str],
        endpoint_url: Optional[str] = None,
        region: str = "us-east-1",
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        client=None,
    ):
        if not buckets:
            raise ValueError("storage.buckets must name at least one bucket for the s3 backend")
        self.buckets = list(buckets)
        self.main_bucket = self.buckets[0]
        self.client = client or boto3.client(
            service_name="s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            region_name=region,
        )

    def resolve_bucket(self, tenant: str) -> Tuple[str, str]:
        """Map a tenant to (real bucket, key prefix)."""
        if tenant in self.buckets:
            return tenant, ""
        return self.main_bucket, f"workspaces/{tenant}/"

    def put(self, bucket, key, body, content_type=None):
        real_bucket, prefix = self.resolve_bucket(bucket)
        extra = {"ContentType": content_type or guess_content_type(key)}
        if isinstance(body, (bytes, bytearray)):
            self.client.put_object(Bucket=real_bucket, Key=prefix + key, Body=bytes(body), **extra)
        elif isinstance(body, (str, Path)):
            self.client.upload_file(str(body), real_bucket, prefix + key, ExtraArgs=extra)
        else:
            self.client.upload_fileobj(body, real_bucket, prefix + key, ExtraArgs=extra)

    def get(self, bucket, key, range_start=None, range_end=None):
        real_bucket, prefix = self.resolve_bucket(bucket)
        params = {"Bucket": real_bucket, "Key": prefix + key}
        if range_start is not None or range_end is not None:
            params["Range"] = "bytes=%s-%s" % (
                range_start or 0, "" if range_end is None else range_end
            )
        try:
            response = self.client.get_object(**params)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"No such object: {bucket}/{key}") from e
            raise
        return response["Body"].iter_chunks(CHUNK_SIZE)

    def download_to(self, bucket, key, path):
        real_bucket, prefix = self.resolve_bucket(bucket)
        try:
            self.client.download_file(real_bucket, prefix + key, str(path))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"No such object: {bucket}/{key}") from e
            raise
        return os.path.getsize(path)

    def delete(self, bucket, key):
        real_bucket, prefix = self.resolve_bucket(bucket)
        self.client.delete_object(Bucket=real_bucket, Key=prefix + key)

    def list(self, bucket, prefix):
        real_bucket, tenant_prefix = self.resolve_bucket(bucket)
        paginator = self.client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=real_bucket, Prefix=tenant_prefix + prefix):
            for item in page.get("Contents", []):
                keys.append(item["Key"][len(tenant_prefix):])
        return keys

    def describe(self) -> Dict[str, str]:
        return {"backend": "s3", "main_bucket": self.main_bucket}


class RetryingObjectStore(ObjectStore):
    """Applies the bounded retry policy to every call of the wrapped store.

    Delays are base, 2*base, 4*base, ... for `max_retries` retries after the
    first attempt (defaults: 2s, 4s, 8s). Missing objects are not retried and
    surface as NotFound.
    """

    RETRYABLE = (ClientError, BotoCoreError, OSError)

    def __init__(
        self,
        inner: ObjectStore,
        max_retries: int = 3,
        base_delay_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inner = inner
        self.max_retries = max_retries
        self.base_delay_s = base_delay_s
        self._sleep = sleep

    def _call(self, operation: str, bucket: str, key: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except FileNotFoundError as e:
                raise NotFound(str(e)) from e
            except self.RETRYABLE as e:
                if attempt >= self.max_retries:
                    raise TransientStorageError(
                        f"Storage {operation} failed for {bucket}/{key} after "
                        f"{attempt + 1} attempts: {e}",
                        operation=operation,
                        key=key,
                    ) from e
                delay = self.base_delay_s * (2 ** attempt)
                logger.warning(
                    "Storage %s %s/%s failed (%s); retry %d/%d in %.1fs",
                    operation, bucket, key, e, attempt + 1, self.max_retries, delay,
                )
                self._sleep(delay)
                attempt += 1

    def put(self, bucket, key, body, content_type=None):
        def _put():
            if hasattr(body, "seek"):
                body.seek(0)
            return self.inner.put(bucket, key, body, content_type)

        self._call("put", bucket, key, _put)

    def get(self, bucket, key, range_start=None, range_end=None):
        return self._call(
            "get", bucket, key, lambda: self.inner.get(bucket, key, range_start, range_end)
        )

    def download_to(self, bucket, key, path):
        return self._call("download", bucket, key, lambda: self.inner.download_to(bucket, key, path))

    def delete(self, bucket, key):
        self._call("delete", bucket, key, lambda: self.inner.delete(bucket, key))

    def list(self, bucket, prefix):
        return self._call("list", bucket, prefix, lambda: self.inner.list(bucket, prefix))

    def describe(self) -> Dict[str, str]:
        info = dict(self.inner.describe())
        info["max_retries"] = str(self.max_retries)
        return info


def build_object_store(config: StorageConfig) -> ObjectStore:
    """Construct the configured backend wrapped in the retry policy."""
    if config.backend == "s3":
        inner: ObjectStore = S3ObjectStore(
            buckets=config.buckets,
            endpoint_url=config.endpoint_url,
            region=config.region,
            access_key=os.getenv(ENV_S3_ACCESS_KEY),
            secret_key=os.getenv(ENV_S3_SECRET_KEY),
        )
    else:
        inner = LocalObjectStore(config.local_root)
    return RetryingObjectStore(
        inner, max_retries=config.max_retries, base_delay_s=config.retry_base_delay_s
    )
