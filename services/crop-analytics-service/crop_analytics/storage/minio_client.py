import logging
from datetime import timedelta
from typing import List, Optional
from minio import Minio
from minio.error import S3Error
from crop_analytics.config.settings import get_settings

logger = logging.getLogger(__name__)


class MinIOClient:
    """MinIO client for capture archives and rendered imagery."""

    def __init__(self, client: Optional[Minio] = None, bucket_name: Optional[str] = None):
        settings = get_settings()
        self.client = client or Minio(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        self.bucket_name = bucket_name or settings.minio_bucket_name
        self._bucket_checked = False

    def ensure_bucket_exists(self):
        """Ensure the bucket exists, create if it doesn't."""
        if self._bucket_checked:
            return
        try:
            if not self.client.bucket_exists(self.bucket_name):
                self.client.make_bucket(self.bucket_name)
                logger.info(f"Created MinIO bucket: {self.bucket_name}")
            self._bucket_checked = True
        except S3Error as e:
            logger.error(f"Error ensuring bucket exists: {e}")
            raise

    def download_file(self, file_path: str) -> Optional[bytes]:
        """
        Download an object from MinIO.

        Args:
            file_path: Path within the bucket

        Returns:
            Object content as bytes, or None when the object does not exist

        Raises:
            S3Error: For storage failures other than a missing object
        """
        response = None
        try:
            response = self.client.get_object(self.bucket_name, file_path)
            return response.read()
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                logger.info(f"Object not found: {file_path}")
                return None
            logger.error(f"Error downloading file {file_path}: {e}")
            raise
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def list_files(self, prefix: str = "") -> List[str]:
        """
        List object names in the bucket under a prefix.

        Args:
            prefix: Prefix to filter objects

        Returns:
            List of object paths
        """
        try:
            objects = self.client.list_objects(
                bucket_name=self.bucket_name, prefix=prefix, recursive=True
            )
            return [obj.object_name for obj in objects]
        except S3Error as e:
            logger.error(f"Error listing files with prefix {prefix}: {e}")
            raise

    def get_presigned_url(
        self, file_path: str, expires: timedelta = timedelta(hours=1)
    ) -> Optional[str]:
        """
        Generate a presigned URL for object access.

        Args:
            file_path: Path within the bucket
            expires: URL expiration time

        Returns:
            Presigned URL string, or None if error
        """
        try:
            return self.client.presigned_get_object(
                bucket_name=self.bucket_name, object_name=file_path, expires=expires
            )
        except S3Error as e:
            logger.error(f"Error generating presigned URL for {file_path}: {e}")
            return None


_minio_client: Optional[MinIOClient] = None


def get_minio_client() -> MinIOClient:
    """Get or create the shared MinIO client."""
    global _minio_client
    if _minio_client is None:
        _minio_client = MinIOClient()
    return _minio_client
