"""Blob-store utilities for converter inputs and outputs (local + S3-compatible)."""

from __future__ import annotations

import fnmatch
import io
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, BinaryIO, List, Protocol, Tuple
from urllib.parse import urlparse

from telemetry_batch_view.converter.partitioning import ObjectDescriptor

logger = logging.getLogger(__name__)


class ObjectNotFoundError(FileNotFoundError):
    """Raised when a listed or requested object has no content in the store."""


class BlobStore(Protocol):
    def list_objects(self, prefix: str) -> List[ObjectDescriptor]:
        ...

    def open(self, key: str) -> BinaryIO:
        ...

    def read_json(self, key: str) -> Any:
        ...

    def is_prefix_empty(self, prefix: str) -> bool:
        ...

    def upload_file(self, path: Path, key: str) -> str:
        ...


def split_glob(prefix: str) -> Tuple[str, str]:
    """
    Split a listing prefix at its first wildcard segment.

    Returns the literal part to list under and the full pattern the listed keys
    must match (empty when the prefix has no wildcard).
    """
    if not any(ch in prefix for ch in "*?["):
        return prefix, ""
    literal = []
    for segment in prefix.split("/"):
        if any(ch in segment for ch in "*?["):
            break
        literal.append(segment)
    literal_prefix = "/".join(literal)
    if literal_prefix:
        literal_prefix += "/"
    # keys only have to start with the pattern, as with a plain prefix
    return literal_prefix, prefix + "*"


class LocalBlobStore:
    """Blob store over a local directory; keys are relative POSIX paths."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _full_path(self, key: str) -> Path:
        return self.root / key.lstrip("/")

    def list_objects(self, prefix: str) -> List[ObjectDescriptor]:
        literal, pattern = split_glob(prefix)
        if not self.root.exists():
            return []
        descriptors = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if not key.startswith(literal):
                continue
            if pattern and not fnmatch.fnmatchcase(key, pattern):
                continue
            descriptors.append(ObjectDescriptor(key=key, size=path.stat().st_size))
        return descriptors

    def open(self, key: str) -> BinaryIO:
        path = self._full_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object missing from store: {key}")
        return path.open("rb")

    def read_json(self, key: str) -> Any:
        with self.open(key) as handle:
            return json.loads(handle.read().decode("utf-8"))

    def is_prefix_empty(self, prefix: str) -> bool:
        return not self.list_objects(prefix.rstrip("/") + "/")

    def upload_file(self, path: Path, key: str) -> str:
        target = self._full_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, target)
        os.remove(path)
        return str(target)


class S3BlobStore:
    def __init__(self, bucket: str, prefix: str = "", client: Any = None) -> None:
        import boto3

        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client if client is not None else boto3.client("s3")

    def _key(self, key: str) -> str:
        relative = key.lstrip("/")
        if not self.prefix:
            return relative
        return f"{self.prefix}/{relative}"

    def _relative(self, key: str) -> str:
        if not self.prefix:
            return key
        return key[len(self.prefix) + 1:]

    def list_objects(self, prefix: str) -> List[ObjectDescriptor]:
        literal, pattern = split_glob(prefix)
        paginator = self._client.get_paginator("list_objects_v2")
        descriptors: List[ObjectDescriptor] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(literal)):
            for item in page.get("Contents", []):
                key = self._relative(item["Key"])
                if pattern and not fnmatch.fnmatchcase(key, pattern):
                    continue
                descriptors.append(ObjectDescriptor(key=key, size=int(item["Size"])))
        return descriptors

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code")
            if error_code in {"404", "NoSuchKey", "NotFound"}:
                raise ObjectNotFoundError(f"Object missing from s3://{self.bucket}/{self._key(key)}") from exc
            raise
        # Buffer the body so decoding does not hold a network stream open
        return io.BytesIO(response["Body"].read())

    def read_json(self, key: str) -> Any:
        return json.loads(self.open(key).read().decode("utf-8"))

    def is_prefix_empty(self, prefix: str) -> bool:
        response = self._client.list_objects_v2(
            Bucket=self.bucket, Prefix=self._key(prefix).rstrip("/") + "/", MaxKeys=1
        )
        return not response.get("Contents")

    def upload_file(self, path: Path, key: str) -> str:
        full_key = self._key(key)
        logger.info("Uploading Parquet file to s3://%s/%s", self.bucket, full_key)
        self._client.upload_file(str(path), self.bucket, full_key)
        os.remove(path)
        return f"s3://{self.bucket}/{full_key}"


def build_blob_store(root: str) -> BlobStore:
    if root.startswith("s3://"):
        parsed = urlparse(root)
        bucket = parsed.netloc
        prefix = parsed.path.lstrip("/")
        if not bucket:
            raise ValueError("S3 store root missing bucket")
        return S3BlobStore(bucket=bucket, prefix=prefix)
    return LocalBlobStore(Path(root))
