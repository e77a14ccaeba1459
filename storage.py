"""MinIO client configuration and the blob store used by the ingest pipeline"""
import logging
from io import BytesIO
from typing import Iterable, Optional

from minio import Minio
from minio.deleteobjects import DeleteObject
from minio.error import S3Error

from config import settings

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Raised when an object store call fails."""


class BlobExistsError(BlobStoreError):
    """Raised when a non-overwriting upload targets an existing object."""


def get_minio_client() -> Minio:
    """Create and return a MinIO client instance"""
    return Minio(
        settings.MINIO_ENDPOINT,
        access_key=settings.MINIO_ACCESS_KEY,
        secret_key=settings.MINIO_SECRET_KEY,
        secure=settings.MINIO_SECURE
    )


def ensure_bucket_exists(client: Minio, bucket_name: str):
    """Create bucket if it doesn't exist"""
    try:
        if not client.bucket_exists(bucket_name):
            client.make_bucket(bucket_name)
            logger.info(f"Created MinIO bucket: {bucket_name}")
        else:
            logger.info(f"MinIO bucket exists: {bucket_name}")
    except S3Error as e:
        logger.error(f"Error ensuring bucket exists: {e}")
        raise


class BlobStore:
    """Put/get/delete-by-path over a MinIO client.

    All methods are blocking; async callers wrap them in asyncio.to_thread.
    """

    def __init__(self, client: Minio):
        self.client = client

    def exists(self, bucket: str, path: str) -> bool:
        for obj in self.client.list_objects(bucket, prefix=path):
            if obj.object_name == path:
                return True
        return False

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str,
        overwrite: bool = True,
        cache_control: Optional[str] = "no-store",
    ) -> None:
        """Store ``data`` at ``bucket/path``.

        With ``overwrite=False`` an existing object is left untouched and
        BlobExistsError is raised instead.
        """
        try:
            if not overwrite and self.exists(bucket, path):
                raise BlobExistsError(f"Object already exists: {bucket}/{path}")
            metadata = {"Cache-Control": cache_control} if cache_control else None
            self.client.put_object(
                bucket_name=bucket,
                object_name=path,
                data=BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata=metadata,
            )
        except BlobStoreError:
            raise
        except Exception as e:
            raise BlobStoreError(f"Upload to {bucket}/{path} failed: {e}") from e

    def download(self, bucket: str, path: str) -> bytes:
        try:
            response = self.client.get_object(bucket, path)
        except Exception as e:
            raise BlobStoreError(f"Download of {bucket}/{path} failed: {e}") from e
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete(self, bucket: str, paths: Iterable[str]) -> None:
        objects = [DeleteObject(p) for p in paths]
        if not objects:
            return
        try:
            # remove_objects is lazy; iterating drives the request
            errors = list(self.client.remove_objects(bucket, objects))
        except Exception as e:
            raise BlobStoreError(f"Delete in {bucket} failed: {e}") from e
        if errors:
            raise BlobStoreError(
                f"Delete in {bucket} failed for {len(errors)} object(s): {errors[0]}"
            )
