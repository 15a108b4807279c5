import asyncio
import io
from datetime import timedelta

import structlog
from minio import Minio
from minio.error import MinioException, S3Error
from urllib3.exceptions import HTTPError

from image_service.config import settings
from image_service.errors import ObjectNotFound, StorageUnavailable

logger = structlog.get_logger(__name__)

MISSING_OBJECT_CODES = ("NoSuchKey", "NoSuchObject")


class StorageGateway:
    """Thin async facade over a MinIO/S3 bucket.

    The MinIO client is blocking, so every round trip runs in a worker
    thread. Nothing here retries; failures surface as ``StorageUnavailable``
    (or ``ObjectNotFound`` for a missing key).
    """

    def __init__(self, client: Minio, bucket_name: str, upload_url_expiry: int = 180):
        self.client = client
        self.bucket_name = bucket_name
        self.upload_url_expiry = upload_url_expiry

    @classmethod
    def from_settings(cls, config=settings) -> "StorageGateway":
        client = Minio(
            config.minio_endpoint,
            access_key=config.minio_access_key,
            secret_key=config.minio_secret_key,
            secure=config.minio_secure,
            region=config.minio_region,
        )
        return cls(client, config.minio_bucket_name, config.upload_url_expiry_seconds)

    def ensure_bucket(self):
        """Ensure the bucket exists, create if not"""
        try:
            if not self.client.bucket_exists(bucket_name=self.bucket_name):
                self.client.make_bucket(bucket_name=self.bucket_name)
                logger.info("Created bucket", bucket=self.bucket_name)
        except (MinioException, HTTPError) as e:
            logger.error("Error creating bucket", bucket=self.bucket_name, error=str(e))
            raise StorageUnavailable("Object storage is unreachable") from e

    def check_connection(self) -> bool:
        """Check MinIO connection and that the bucket exists, without creating it"""
        try:
            exists = self.client.bucket_exists(bucket_name=self.bucket_name)
        except (MinioException, HTTPError) as e:
            logger.error("Object storage unreachable", bucket=self.bucket_name, error=str(e))
            raise StorageUnavailable("Object storage is unreachable") from e

        if not exists:
            raise StorageUnavailable(f"Bucket {self.bucket_name} does not exist")
        return True

    async def issue_write_credential(self, key: str, content_type: str) -> str:
        """Return a presigned PUT url scoped to a single key"""
        try:
            url = await asyncio.to_thread(
                self.client.presigned_put_object,
                bucket_name=self.bucket_name,
                object_name=key,
                expires=timedelta(seconds=self.upload_url_expiry),
            )
        except (MinioException, HTTPError, ValueError) as e:
            logger.error("Failed to generate presigned upload url", key=key, error=str(e))
            raise StorageUnavailable("Failed to generate pre-signed url") from e

        logger.debug(
            "Presigned upload url issued",
            key=key,
            content_type=content_type,
            expires_in=self.upload_url_expiry
        )
        return url

    async def put_object(self, key: str, data: bytes, content_type: str):
        """Upload bytes under key"""
        try:
            await asyncio.to_thread(
                self.client.put_object,
                bucket_name=self.bucket_name,
                object_name=key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except (MinioException, HTTPError, ValueError) as e:
            logger.error("Failed to store object", key=key, error=str(e))
            raise StorageUnavailable("Failed to upload object to storage") from e

        logger.info("Object stored successfully", key=key, size=len(data))

    async def get_object(self, key: str) -> bytes:
        """Retrieve object bytes"""
        try:
            return await asyncio.to_thread(self._read_object, key)
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                logger.warning("Object missing from storage", key=key)
                raise ObjectNotFound() from e
            logger.error("Failed to retrieve object", key=key, error=str(e))
            raise StorageUnavailable("Failed to fetch object from storage") from e
        except (MinioException, HTTPError) as e:
            logger.error("Failed to retrieve object", key=key, error=str(e))
            raise StorageUnavailable("Failed to fetch object from storage") from e

    def _read_object(self, key: str) -> bytes:
        response = self.client.get_object(bucket_name=self.bucket_name, object_name=key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()
