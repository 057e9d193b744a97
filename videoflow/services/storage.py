import asyncio
from dataclasses import asdict, dataclass

import boto3
import structlog
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from videoflow.core.cache import Cache, object_head_key
from videoflow.core.config import Settings, settings
from videoflow.core.errors import NotConfiguredError, ObjectNotFoundError, UpstreamError

logger = structlog.get_logger()

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class ObjectMetadata:
    size: int
    content_type: str | None = None


def _normalize_endpoint(endpoint: str | None) -> str | None:
    if endpoint and not endpoint.startswith(("http://", "https://")):
        return f"http://{endpoint}"
    return endpoint


def _is_missing(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _MISSING_CODES


class StorageService:
    """S3-compatible object store (AWS S3 or MinIO).

    Uploads and downloads never pass through this service: it only signs
    URLs, checks for objects and deletes them. boto3 is blocking, so every
    call is pushed to a worker thread. Successful HEAD lookups are cached
    when a cache is given.
    """

    def __init__(
        self,
        config: Settings | None = None,
        client=None,
        presign_client=None,
        cache: Cache | None = None,
    ) -> None:
        config = config or settings
        self.cache = cache or Cache(None)
        self.metadata_ttl = config.object_head_cache_ttl_seconds
        self.bucket = config.s3_bucket
        self.upload_expiry = config.upload_url_expiry_seconds
        self.download_expiry = config.download_url_expiry_seconds

        if client is None and self.bucket:
            client = self._build_client(config, _normalize_endpoint(config.s3_endpoint))
        if presign_client is None and self.bucket:
            # Presigned URLs must carry the host the browser can reach
            external = _normalize_endpoint(config.s3_external_endpoint or config.s3_endpoint)
            presign_client = self._build_client(config, external)

        self.client = client
        self.presign_client = presign_client or client

    @staticmethod
    def _build_client(config: Settings, endpoint: str | None):
        return boto3.client(
            "s3",
            endpoint_url=endpoint,
            region_name=config.s3_region,
            aws_access_key_id=config.s3_access_key,
            aws_secret_access_key=config.s3_secret_key,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": config.s3_max_attempts, "mode": "standard"},
            ),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket) and self.client is not None

    def ensure_configured(self) -> None:
        if not self.is_configured:
            raise NotConfiguredError(
                "Object store",
                "Set S3_BUCKET and S3 credentials to enable uploads.",
            )

    async def put_signed_url(self, key: str, content_type: str, expires_in: int | None = None) -> str:
        self.ensure_configured()
        params = {"Bucket": self.bucket, "Key": key, "ContentType": content_type}
        expires_in = expires_in or self.upload_expiry
        try:
            url = await asyncio.to_thread(
                self.presign_client.generate_presigned_url,
                "put_object",
                Params=params,
                ExpiresIn=expires_in,
                HttpMethod="PUT",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("upload_url_failed", key=key, error=str(e))
            raise UpstreamError("Object store", f"could not sign upload URL: {e}") from e

        logger.info("upload_url_generated", key=key, expires_in=expires_in)
        return url

    async def get_signed_url(self, key: str, expires_in: int | None = None, filename: str | None = None) -> str:
        self.ensure_configured()
        params = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        try:
            return await asyncio.to_thread(
                self.presign_client.generate_presigned_url,
                "get_object",
                Params=params,
                ExpiresIn=expires_in or self.download_expiry,
            )
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError("Object store", f"could not sign download URL: {e}") from e

    async def upload_file(self, local_path: str, key: str, content_type: str | None = None) -> str:
        """Upload a local file (transcoder output) to the bucket."""
        self.ensure_configured()
        extra_args = {"ContentType": content_type} if content_type else None
        try:
            await asyncio.to_thread(self.client.upload_file, local_path, self.bucket, key, ExtraArgs=extra_args)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError("Object store", f"upload failed for '{key}': {e}") from e
        await self.cache.delete(object_head_key(key))
        logger.info("file_uploaded", bucket=self.bucket, key=key)
        return key

    async def exists(self, key: str) -> bool:
        try:
            await self.metadata(key)
        except ObjectNotFoundError:
            return False
        return True

    async def metadata(self, key: str) -> ObjectMetadata:
        self.ensure_configured()
        cached = await self.cache.get(object_head_key(key))
        if cached is not None:
            return ObjectMetadata(**cached)

        try:
            head = await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                raise ObjectNotFoundError(key) from e
            raise UpstreamError("Object store", f"metadata lookup failed: {e}") from e
        except BotoCoreError as e:
            raise UpstreamError("Object store", f"metadata lookup failed: {e}") from e

        meta = ObjectMetadata(size=int(head.get("ContentLength", 0)), content_type=head.get("ContentType"))
        await self.cache.set(object_head_key(key), asdict(meta), self.metadata_ttl)
        return meta

    async def delete(self, key: str) -> None:
        self.ensure_configured()
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError("Object store", f"delete failed for '{key}': {e}") from e
        await self.cache.delete(object_head_key(key))
        logger.info("object_deleted", bucket=self.bucket, key=key)

    async def ensure_bucket_exists(self) -> None:
        if not self.is_configured:
            logger.warning("object_store_not_configured")
            return
        try:
            await asyncio.to_thread(self._ensure_bucket_exists)
        except (BotoCoreError, ClientError) as e:
            logger.warning("bucket_check_failed", bucket=self.bucket, error=str(e))

    def _ensure_bucket_exists(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError:
            self.client.create_bucket(Bucket=self.bucket)
            logger.info("bucket_created", bucket=self.bucket)

    async def ping(self) -> bool:
        if not self.is_configured:
            return False
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
            return True
        except (BotoCoreError, ClientError):
            return False
