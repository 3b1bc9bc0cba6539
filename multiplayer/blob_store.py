"""
Blob storage backends for session progress files.

LocalBlobStore keeps objects on the filesystem behind a public base URL;
S3BlobStore keeps them in a bucket and hands out presigned download URLs.
Both raise BlobNotFound for missing keys and let backend errors propagate.
"""
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List

import boto3
from botocore.exceptions import ClientError


class BlobNotFound(Exception):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Blob not found: {path}")


@dataclass
class BlobInfo:
    path: str
    size: int
    last_modified: datetime


class BlobStore(ABC):

    @abstractmethod
    def put(self, path: str, data: bytes) -> str:
        """Write data at path, replacing any existing object. Returns the stored path."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Read an object. Raises BlobNotFound if it does not exist."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Whether an object exists at path."""

    @abstractmethod
    def list(self, prefix: str, recursive: bool = False) -> List[BlobInfo]:
        """Objects under prefix; only its direct children unless recursive."""

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Delete one object. Returns False if it did not exist."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix. Returns the number deleted."""

    @abstractmethod
    def url(self, path: str) -> str:
        """Retrievable URL for an object."""


class LocalBlobStore(BlobStore):

    def __init__(self, root: str, base_url: str):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip('/')

    def _full_path(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if full != self.root and not full.startswith(self.root + os.sep):
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    def put(self, path: str, data: bytes) -> str:
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, 'wb') as f:
            f.write(data)
        return path

    def get(self, path: str) -> bytes:
        full = self._full_path(path)
        if not os.path.isfile(full):
            raise BlobNotFound(path)
        with open(full, 'rb') as f:
            return f.read()

    def exists(self, path: str) -> bool:
        return os.path.isfile(self._full_path(path))

    def list(self, prefix: str, recursive: bool = False) -> List[BlobInfo]:
        directory = self._full_path(prefix)
        if not os.path.isdir(directory):
            return []

        blobs = []
        for dirpath, dirnames, filenames in os.walk(directory):
            for name in sorted(filenames):
                full = os.path.join(dirpath, name)
                stat = os.stat(full)
                blobs.append(BlobInfo(
                    path=os.path.relpath(full, self.root).replace(os.sep, '/'),
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
            if not recursive:
                break
        return blobs

    def delete(self, path: str) -> bool:
        full = self._full_path(path)
        if not os.path.isfile(full):
            return False
        os.remove(full)
        return True

    def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        for blob in self.list(prefix, recursive=True):
            if self.delete(blob.path):
                deleted += 1
        return deleted

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path}"


class S3BlobStore(BlobStore):

    def __init__(self, bucket: str, region: str = "us-east-1", presign_expires_in: int = 3600, client=None):
        self._bucket = bucket
        self._presign_expires_in = presign_expires_in
        self._s3_client = client or boto3.client("s3", region_name=region)

    def put(self, path: str, data: bytes) -> str:
        self._s3_client.put_object(Bucket=self._bucket, Key=path, Body=data)
        return path

    def get(self, path: str) -> bytes:
        try:
            response = self._s3_client.get_object(Bucket=self._bucket, Key=path)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise BlobNotFound(path) from e
            raise
        return response["Body"].read()

    def exists(self, path: str) -> bool:
        try:
            self._s3_client.head_object(Bucket=self._bucket, Key=path)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "404":
                return False
            raise

    def list(self, prefix: str, recursive: bool = False) -> List[BlobInfo]:
        params = {"Bucket": self._bucket, "Prefix": prefix.rstrip("/") + "/"}
        if not recursive:
            params["Delimiter"] = "/"

        blobs = []
        paginator = self._s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(**params):
            for obj in page.get("Contents", []):
                blobs.append(BlobInfo(
                    path=obj["Key"],
                    size=obj["Size"],
                    last_modified=obj["LastModified"],
                ))
        return blobs

    def delete(self, path: str) -> bool:
        if not self.exists(path):
            return False
        self._s3_client.delete_object(Bucket=self._bucket, Key=path)
        return True

    def delete_prefix(self, prefix: str) -> int:
        keys = [blob.path for blob in self.list(prefix, recursive=True)]
        # delete_objects accepts at most 1000 keys per call
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            self._s3_client.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
        return len(keys)

    def url(self, path: str) -> str:
        return self._s3_client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self._bucket, "Key": path},
            ExpiresIn=self._presign_expires_in,
        )


def create_blob_store(config) -> BlobStore:
    backend = config.get('STORAGE_BACKEND', 'local')

    if backend == 's3':
        return S3BlobStore(
            bucket=config['S3_BUCKET'],
            region=config['AWS_REGION'],
            presign_expires_in=config['S3_PRESIGN_EXPIRES_SECONDS'],
        )
    elif backend == 'local':
        return LocalBlobStore(
            root=config['LOCAL_STORAGE_ROOT'],
            base_url=config['LOCAL_STORAGE_BASE_URL'],
        )

    raise ValueError(f"Unknown storage backend: {backend}")
