# storage.py — Attachment blob storage
# Local filesystem in development, S3-compatible object storage (AWS/MinIO/R2) in production.
import os
import asyncio
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger("itsm.storage")

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "s3" if ENVIRONMENT == "production" else "local").lower()
FILE_UPLOAD_PATH = os.getenv("FILE_UPLOAD_PATH", "./public/uploads")
PUBLIC_UPLOAD_PREFIX = "/uploads"
AWS_BUCKET_NAME = os.getenv("AWS_BUCKET_NAME", "")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
AWS_ENDPOINT_URL = os.getenv("AWS_ENDPOINT_URL") or None


class StorageError(Exception):
    pass


class LocalFileStorage:
    """Writes under FILE_UPLOAD_PATH and returns the public /uploads/<folder>/<name> path."""

    def __init__(self, root: str = FILE_UPLOAD_PATH, public_prefix: str = PUBLIC_UPLOAD_PREFIX):
        self.root = Path(root)
        self.public_prefix = public_prefix.rstrip("/")

    def _write(self, data: bytes, folder: str, filename: str) -> None:
        target_dir = self.root / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / filename).write_bytes(data)

    def public_path(self, folder: str, filename: str) -> str:
        return f"{self.public_prefix}/{folder}/{filename}"

    async def store(self, data: bytes, folder: str, filename: str, content_type: Optional[str] = None) -> str:
        try:
            await asyncio.to_thread(self._write, data, folder, filename)
        except OSError as e:
            raise StorageError(f"Could not write {folder}/{filename}: {e}") from e
        return self.public_path(folder, filename)

    def _local_path(self, public_path: str) -> Path:
        rel = public_path
        if rel.startswith(self.public_prefix + "/"):
            rel = rel[len(self.public_prefix) + 1:]
        return self.root / rel.lstrip("/")

    async def delete(self, public_path: str) -> bool:
        path = self._local_path(public_path)
        if not path.is_file():
            return False
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as e:
            raise StorageError(f"Could not delete {public_path}: {e}") from e
        return True


class S3FileStorage:
    """Uploads to an S3 bucket and returns the object URL."""

    def __init__(self, bucket: str = AWS_BUCKET_NAME, region: str = AWS_REGION, endpoint_url: Optional[str] = AWS_ENDPOINT_URL):
        if not bucket:
            raise StorageError("AWS_BUCKET_NAME is not configured")
        import boto3

        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def _url_for(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _key_from_url(self, url: str) -> str:
        if self.endpoint_url and url.startswith(self.endpoint_url.rstrip("/") + f"/{self.bucket}/"):
            return url[len(self.endpoint_url.rstrip("/")) + len(self.bucket) + 2:]
        # https://<bucket>.s3.<region>.amazonaws.com/<key>
        return "/".join(url.split("/")[3:])

    def public_path(self, folder: str, filename: str) -> str:
        return self._url_for(f"{folder}/{filename}")

    async def store(self, data: bytes, folder: str, filename: str, content_type: Optional[str] = None) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        key = f"{folder}/{filename}"
        extra = {"ContentType": content_type} if content_type else {}
        try:
            await asyncio.to_thread(
                self._client.put_object, Bucket=self.bucket, Key=key, Body=data, **extra
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload of {key} failed: {e}") from e
        return self.public_path(folder, filename)

    async def delete(self, url: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        key = self._key_from_url(url)
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete of {key} failed: {e}") from e
        return True


_storage = None


def get_storage():
    global _storage
    if _storage is None:
        if STORAGE_BACKEND == "s3":
            _storage = S3FileStorage()
        else:
            _storage = LocalFileStorage()
        logger.info(f"File storage backend: {STORAGE_BACKEND}")
    return _storage
