"""
Blob storage for product images.

The inventory core only needs three operations: store bytes and get a
URL back, read bytes for a URL, and delete a URL. ``build_blob_storage()``
picks the backend once at startup; nothing probes for S3 per call.
"""

import os
import uuid
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.environ.get("UPLOAD_DIR", "./uploads")

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


def _new_name(suffix: str) -> str:
    return f"{uuid.uuid4().hex}{suffix.lower()}"


class BlobStorage:
    """Interface for image blob backends."""

    def store(self, data: bytes, folder: str = "stock", suffix: str = ".png") -> str:
        raise NotImplementedError

    def read(self, url: str) -> bytes:
        raise NotImplementedError

    def delete(self, url: str) -> bool:
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    """
    Stores blobs under a local directory and serves them as
    ``{url_prefix}/{folder}/{name}`` URLs.
    """

    def __init__(self, root: str = UPLOAD_DIR, url_prefix: str = "/uploads"):
        self.root = root
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(os.path.join(self.root, "stock"), exist_ok=True)

    def _path_for(self, url: str) -> str:
        if not url.startswith(self.url_prefix + "/"):
            raise ValueError(f"URL {url} is not served by this storage")
        relative = url[len(self.url_prefix) + 1:]
        path = os.path.normpath(os.path.join(self.root, relative))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            raise ValueError(f"URL {url} escapes the storage root")
        return path

    def store(self, data: bytes, folder: str = "stock", suffix: str = ".png") -> str:
        directory = os.path.join(self.root, folder)
        os.makedirs(directory, exist_ok=True)
        name = _new_name(suffix)
        with open(os.path.join(directory, name), "wb") as f:
            f.write(data)
        url = f"{self.url_prefix}/{folder}/{name}"
        logger.info(f"Stored {len(data)} bytes at {url}")
        return url

    def read(self, url: str) -> bytes:
        with open(self._path_for(url), "rb") as f:
            return f.read()

    def delete(self, url: str) -> bool:
        try:
            os.remove(self._path_for(url))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to delete {url}: {e}")
            return False
        logger.info(f"Deleted {url}")
        return True


class S3BlobStorage(BlobStorage):
    """Stores blobs in an S3 bucket and returns virtual-hosted object URLs."""

    def __init__(self, bucket: str, client, region: str = "us-east-1"):
        self.bucket = bucket
        self.client = client
        self.region = region
        self.base_url = f"https://{bucket}.s3.{region}.amazonaws.com/"

    def _key_for(self, url: str) -> str:
        if not url.startswith(self.base_url):
            raise ValueError(f"URL {url} is not in bucket {self.bucket}")
        return url[len(self.base_url):]

    def store(self, data: bytes, folder: str = "stock", suffix: str = ".png") -> str:
        key = f"{folder}/{_new_name(suffix)}"
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=CONTENT_TYPES.get(suffix.lower(), "application/octet-stream"),
        )
        url = self.base_url + key
        logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return url

    def read(self, url: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=self._key_for(url))
        return response["Body"].read()

    def delete(self, url: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key_for(url))
        except (BotoCoreError, ClientError, ValueError) as e:
            logger.warning(f"Failed to delete {url}: {e}")
            return False
        logger.info(f"Deleted {url}")
        return True


def build_blob_storage(upload_dir: Optional[str] = None) -> BlobStorage:
    """
    Choose the blob backend from environment variables.

    S3 is used when DISABLE_S3 is not "true" and the AWS credentials and
    region are all set; otherwise images go to the local upload directory.
    """
    upload_dir = upload_dir or UPLOAD_DIR

    if os.environ.get("DISABLE_S3", "false").lower() == "true":
        logger.info("S3 disabled by configuration (DISABLE_S3=true), using local storage")
        return LocalBlobStorage(upload_dir)

    access_key = os.environ.get("AWS_ACCESS_KEY_ID")
    secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY")
    region = os.environ.get("AWS_REGION")

    if not access_key or not secret_key or not region:
        logger.warning("Missing AWS credentials or region, using local storage")
        return LocalBlobStorage(upload_dir)

    bucket = os.environ.get("S3_BUCKET_NAME", "fashion-house-images")
    client = boto3.client(
        "s3",
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name=region,
    )
    logger.info(f"S3 storage initialised (bucket={bucket}, region={region})")
    return S3BlobStorage(bucket, client, region)
