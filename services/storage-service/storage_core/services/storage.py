# services/storage-service/storage_core/services/storage.py
"""S3-compatible object store adapter (legacy S3 and current R2 share this contract)"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Union
import aiohttp
import boto3
from botocore.config import Config as BotoConfig
from ..config import settings
from ..exceptions import (
    BackendUnavailable, ConfigurationError, UploadFailed,
    DeleteFailed, MetadataUnavailable,
)
from ..monitoring.metrics import objects_put, objects_deleted, bytes_uploaded
from .cost import calculate_cost, format_cost

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
CONNECTION_SENTINEL_KEY = ".test-connection"
META_COST = "X-Amz-Meta-Upload-Cost"
META_DATE = "X-Amz-Meta-Upload-Date"


def normalize_key(key: str) -> str:
    """Strip every leading slash"""
    return key.lstrip("/")


@dataclass(frozen=True)
class BackendConfig:
    name: str
    endpoint: str
    bucket: str
    public_domain: str
    access_key_id: str
    secret_access_key: str
    region: str = "auto"

    @property
    def configured(self) -> bool:
        return all((self.endpoint, self.bucket, self.access_key_id, self.secret_access_key))

    @property
    def public_base(self) -> str:
        return f"https://{self.bucket}.{self.public_domain}"

    @classmethod
    def current(cls) -> "BackendConfig":
        return cls(
            name="r2",
            endpoint=settings.r2_endpoint if settings.R2_ACCOUNT_ID or settings.R2_ENDPOINT else "",
            bucket=settings.R2_BUCKET_NAME,
            public_domain=settings.R2_PUBLIC_DOMAIN,
            access_key_id=settings.R2_ACCESS_KEY_ID,
            secret_access_key=settings.R2_SECRET_ACCESS_KEY,
        )

    @classmethod
    def legacy(cls) -> "BackendConfig":
        return cls(
            name="s3",
            endpoint=settings.S3_ENDPOINT,
            bucket=settings.S3_BUCKET_NAME,
            public_domain=settings.S3_PUBLIC_DOMAIN,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            region="us-east-1",
        )


class ObjectStore:
    """The only code path that talks to a backing object store"""

    def __init__(self, config: BackendConfig, timeout: Optional[float] = None):
        self.config = config
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.HTTP_TIMEOUT)
        self.s3_client = None  # lazy init, only used for presigning

    # =============================
    # Helpers
    # =============================
    def _require_config(self):
        if not self.config.configured:
            raise ConfigurationError(
                f"{self.config.name} credentials not configured "
                f"(endpoint, bucket, access key and secret are required)"
            )

    def _object_url(self, key: str) -> str:
        return f"{self.config.endpoint.rstrip('/')}/{self.config.bucket}/{key}"

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.access_key_id}:{self.config.secret_access_key}"
        }

    def _get_s3_client(self):
        self._require_config()
        if not self.s3_client:
            self.s3_client = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint,
                region_name=self.config.region,
                aws_access_key_id=self.config.access_key_id,
                aws_secret_access_key=self.config.secret_access_key,
                config=BotoConfig(signature_version="s3v4"),
            )
        return self.s3_client

    async def _head(self, key: str) -> aiohttp.ClientResponse:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.head(self._object_url(key), headers=self._auth_headers()) as response:
                await response.release()
                return response

    def public_url(self, key: str) -> str:
        return f"{self.config.public_base}/{normalize_key(key)}"

    def owns_url(self, url: str) -> bool:
        return bool(url) and url.startswith(f"{self.config.public_base}/")

    # =============================
    # Operations
    # =============================
    async def put(
        self, key: str, data: Union[bytes, bytearray, str], mime_type: Optional[str] = None
    ) -> dict:
        """Upload bytes and tag them with their monthly cost"""
        self._require_config()
        key = normalize_key(key)
        body = data.encode() if isinstance(data, str) else bytes(data)
        cost = calculate_cost(len(body))

        headers = self._auth_headers()
        headers.update({
            "Content-Type": mime_type or DEFAULT_CONTENT_TYPE,
            META_COST: format_cost(cost),
            META_DATE: datetime.utcnow().isoformat(),
        })

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.put(self._object_url(key), data=body, headers=headers) as response:
                    if response.status < 200 or response.status >= 300:
                        objects_put.labels(backend=self.config.name, status="failed").inc()
                        raise UploadFailed(key, response.status, response.reason or "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            objects_put.labels(backend=self.config.name, status="unavailable").inc()
            raise BackendUnavailable(f"{self.config.name} unreachable during upload of {key}: {e}") from e

        objects_put.labels(backend=self.config.name, status="success").inc()
        bytes_uploaded.labels(backend=self.config.name).inc(len(body))
        logger.info(
            f"[Storage] Uploaded {key} to {self.config.name} "
            f"({len(body) / 1024:.2f}KB) - Cost: £{format_cost(cost)}"
        )

        return {"key": key, "url": self.public_url(key), "cost": cost}

    async def get(self, key: str) -> dict:
        """Public URL for a key. No network call."""
        self._require_config()
        key = normalize_key(key)
        return {"key": key, "url": self.public_url(key)}

    async def presigned_url(self, key: str, expires_in: Optional[int] = None) -> dict:
        """Short-lived signed GET URL for private buckets"""
        key = normalize_key(key)
        client = self._get_s3_client()
        url = client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.bucket, "Key": key},
            ExpiresIn=expires_in or settings.PRESIGNED_URL_TTL,
        )
        return {"key": key, "url": url}

    async def delete(self, key: str) -> None:
        """Idempotent delete: an already-absent object counts as deleted"""
        self._require_config()
        key = normalize_key(key)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.delete(self._object_url(key), headers=self._auth_headers()) as response:
                    if response.status == 404:
                        logger.info(f"[Storage] {key} already absent from {self.config.name}")
                    elif response.status < 200 or response.status >= 300:
                        objects_deleted.labels(backend=self.config.name, status="failed").inc()
                        raise DeleteFailed(key, response.status, response.reason or "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendUnavailable(f"{self.config.name} unreachable during delete of {key}: {e}") from e

        objects_deleted.labels(backend=self.config.name, status="success").inc()
        logger.info(f"[Storage] Deleted {key} from {self.config.name}")

    async def exists(self, key: str) -> bool:
        """Metadata-only probe. Never raises."""
        key = normalize_key(key)
        try:
            self._require_config()
            response = await self._head(key)
        except (BackendUnavailable, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[Storage] Existence check failed for {key}: {e}")
            return False

        if 200 <= response.status < 300:
            return True
        if response.status != 404:
            logger.error(f"[Storage] Existence check for {key} returned {response.status}")
        return False

    async def head_metadata(self, key: str) -> dict:
        self._require_config()
        key = normalize_key(key)
        try:
            response = await self._head(key)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MetadataUnavailable(key, None, str(e) or type(e).__name__) from e

        if response.status < 200 or response.status >= 300:
            raise MetadataUnavailable(key, response.status, response.reason or "")

        headers = response.headers
        try:
            cost = Decimal(headers.get(META_COST, "0.00"))
        except InvalidOperation:
            cost = Decimal("0.00")

        return {
            "key": key,
            "size": int(headers.get("Content-Length", 0)),
            "content_type": headers.get("Content-Type", DEFAULT_CONTENT_TYPE),
            "upload_date": headers.get(META_DATE) or headers.get("Last-Modified"),
            "cost": cost,
        }

    async def verify_connection(self) -> bool:
        """Bucket reachable with these credentials? A 404 on the sentinel is fine."""
        if not self.config.configured:
            logger.error(f"[Storage] {self.config.name} credentials not configured")
            return False
        try:
            response = await self._head(CONNECTION_SENTINEL_KEY)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[Storage] {self.config.name} connection verification failed: {e}")
            return False

        if 200 <= response.status < 300 or response.status == 404:
            logger.info(f"[Storage] {self.config.name} connection verified")
            return True

        logger.error(f"[Storage] {self.config.name} connection verification failed: {response.status}")
        return False


storage_service = ObjectStore(BackendConfig.current())
legacy_storage = ObjectStore(BackendConfig.legacy())
