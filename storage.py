"""
Object storage for uploaded property photos and stitched videos.

Objects are written to an S3-compatible bucket (AWS S3, Cloudflare R2, MinIO)
and served from a public base URL:
  {S3_PUBLIC_URL}/{key}
"""

import logging

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config import (
    DOWNLOAD_TIMEOUT,
    S3_ACCESS_KEY_ID,
    S3_BUCKET,
    S3_ENDPOINT_URL,
    S3_PUBLIC_URL,
    S3_REGION,
    S3_SECRET_ACCESS_KEY,
)
from errors import StorageError, UploadFailure


class ObjectStore:
    """Durable blob storage with public-URL retrieval."""

    def put(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    def get(self, url: str) -> bytes:
        raise NotImplementedError


class S3ObjectStore(ObjectStore):
    def __init__(self, bucket: str = S3_BUCKET, public_url: str = S3_PUBLIC_URL, client=None, http=None):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._client = client
        self._http = http or requests.Session()

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=S3_ENDPOINT_URL or None,
                aws_access_key_id=S3_ACCESS_KEY_ID or None,
                aws_secret_access_key=S3_SECRET_ACCESS_KEY or None,
                region_name=S3_REGION,
                config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3}),
            )
        return self._client

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Upload failed for key={key}: {e}")
            raise UploadFailure(f"Failed to upload {key}: {e}") from e

        url = self.url_for(key)
        logging.info(f"Uploaded {len(data)} bytes to {url}")
        return url

    def get(self, url: str) -> bytes:
        """Download any public URL, whether it lives in our bucket or at the provider."""
        try:
            response = self._http.get(url, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise StorageError(f"Failed to download {url}: {e}") from e
        return response.content
