"""Blob storage for uploaded supplier feeds."""

from __future__ import annotations

import logging
import os
import pathlib
from dataclasses import dataclass
from typing import Iterable, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "supplier-files"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class BlobStoreError(RuntimeError):
    pass


@dataclass(slots=True)
class BlobObject:
    data: bytes
    content_type: str | None = None


class BlobStore(Protocol):
    def download(self, path: str) -> BlobObject: ...

    def upload(self, path: str, data: bytes, *, content_type: str | None = None, upsert: bool = True) -> None: ...

    def remove(self, paths: Iterable[str]) -> None: ...


class S3BlobStore:
    def __init__(self, bucket: str, client=None) -> None:
        self.bucket = bucket
        self._client = client or _s3_client()

    def download(self, path: str) -> BlobObject:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
            data = response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Failed to download {path}: {exc}") from exc
        return BlobObject(data=data, content_type=response.get("ContentType"))

    def upload(self, path: str, data: bytes, *, content_type: str | None = None, upsert: bool = True) -> None:
        if not upsert and self._exists(path):
            raise BlobStoreError(f"Object already exists: {path}")
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type or DEFAULT_CONTENT_TYPE,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Failed to upload {path}: {exc}") from exc

    def remove(self, paths: Iterable[str]) -> None:
        keys = [{"Key": path} for path in paths]
        if not keys:
            return
        try:
            self._client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys})
        except (BotoCoreError, ClientError) as exc:
            raise BlobStoreError(f"Failed to remove {len(keys)} objects: {exc}") from exc

    def _exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise BlobStoreError(f"Failed to stat {path}: {exc}") from exc
        return True


class LocalBlobStore:
    """Filesystem-backed store used in development and tests."""

    def __init__(self, root: pathlib.Path | str) -> None:
        self.root = pathlib.Path(root)

    def _resolve(self, path: str) -> pathlib.Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise BlobStoreError(f"Path escapes blob root: {path}")
        return target

    def download(self, path: str) -> BlobObject:
        target = self._resolve(path)
        try:
            data = target.read_bytes()
        except OSError as exc:
            raise BlobStoreError(f"Failed to download {path}: {exc}") from exc
        return BlobObject(data=data)

    def upload(self, path: str, data: bytes, *, content_type: str | None = None, upsert: bool = True) -> None:
        target = self._resolve(path)
        if target.exists() and not upsert:
            raise BlobStoreError(f"Object already exists: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def remove(self, paths: Iterable[str]) -> None:
        for path in paths:
            target = self._resolve(path)
            try:
                target.unlink(missing_ok=True)
            except OSError as exc:
                raise BlobStoreError(f"Failed to remove {path}: {exc}") from exc


def _s3_client():
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=os.environ.get("AWS_S3_ENDPOINT"),
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
    )


def blob_store_from_env() -> BlobStore:
    backend = os.environ.get("BLOB_STORE", "s3")
    if backend == "local":
        root = os.environ.get("LOCAL_BLOB_ROOT", "artifacts/blobs")
        logger.info("Using local blob store at %s", root)
        return LocalBlobStore(root)
    return S3BlobStore(os.environ.get("BLOB_BUCKET", DEFAULT_BUCKET))
