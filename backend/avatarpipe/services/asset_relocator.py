"""S3-compatible asset relocation.

Uploads local files to the configured bucket so providers that fetch
inputs by URL (Ark image-to-video) can reach them. Works with AWS S3 and
S3-compatible stores (MinIO, OSS) through ``endpoint_url``.
"""

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from avatarpipe.config import RelocationConfig, settings
from avatarpipe.errors import ConfigurationError, ProviderRejection, TransientNetworkError
from avatarpipe.services.base import AssetRelocator, PassthroughRelocator, is_public_url

logger = logging.getLogger(__name__)


def get_s3_client(cfg: RelocationConfig):
    """Build a boto3 S3 client from relocation settings."""
    client_kwargs = {
        "aws_access_key_id": cfg.access_key or None,
        "aws_secret_access_key": cfg.secret_key or None,
        "region_name": cfg.region,
    }
    # Custom endpoint for S3-compatible stores
    if cfg.endpoint_url:
        client_kwargs["endpoint_url"] = cfg.endpoint_url
    return boto3.client("s3", **client_kwargs)


class S3Relocator(AssetRelocator):
    """Copies local assets into a public bucket and returns their URL."""

    def __init__(self, cfg: RelocationConfig, client=None):
        if not cfg.bucket:
            raise ConfigurationError("Relocation bucket not configured (relocation.bucket)")
        self.cfg = cfg
        self._client = client
        # local path -> public URL, so retries do not re-upload
        self._uploaded: dict[str, str] = {}

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client(self.cfg)
        return self._client

    def public_url(self, key: str) -> str:
        if self.cfg.public_base_url:
            return f"{self.cfg.public_base_url.rstrip('/')}/{key}"
        if self.cfg.endpoint_url:
            return f"{self.cfg.endpoint_url.rstrip('/')}/{self.cfg.bucket}/{key}"
        return f"https://{self.cfg.bucket}.s3.{self.cfg.region}.amazonaws.com/{key}"

    async def ensure_publicly_reachable(self, local_ref: str) -> str:
        if is_public_url(local_ref):
            return local_ref
        if local_ref in self._uploaded:
            return self._uploaded[local_ref]

        path = Path(local_ref)
        if not path.exists() and local_ref.startswith("/"):
            # Web-root relative reference such as /images/photo.png
            path = Path(local_ref.lstrip("/"))
        if not path.exists():
            raise ProviderRejection(f"Asset file not found: {local_ref}")

        key = f"{self.cfg.key_prefix.strip('/')}/{uuid.uuid4().hex[:12]}-{path.name}"
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        logger.info(f"[S3] Uploading {path} to s3://{self.cfg.bucket}/{key}")

        try:
            await asyncio.to_thread(self._put, path, key, content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"[S3] Failed to upload file: {e}")
            raise TransientNetworkError(f"Relocating {local_ref} failed: {e}") from e

        url = self.public_url(key)
        self._uploaded[local_ref] = url
        logger.info(f"[S3] File uploaded successfully: {url}")
        return url

    def _put(self, path: Path, key: str, content_type: str) -> None:
        with open(path, "rb") as f:
            self.client.put_object(Bucket=self.cfg.bucket, Key=key, Body=f, ContentType=content_type)


def build_relocator(cfg: Optional[RelocationConfig] = None) -> AssetRelocator:
    """Return an S3Relocator when a bucket is configured, else a passthrough."""
    cfg = cfg or settings.relocation
    if cfg.bucket:
        return S3Relocator(cfg)
    return PassthroughRelocator()
