# commons/services/minio_client.py
import io
import logging
import mimetypes
import uuid
from datetime import timedelta

from fastapi.concurrency import run_in_threadpool
from minio import Minio
from minio.error import S3Error

from commons.config import settings
from commons.errors import UploadError

logger = logging.getLogger(__name__)


def build_object_name(folder: str, file_name: str, mime_type: str) -> str:
    """Random object key under ``folder`` keeping the upload's extension"""
    extension = ""
    if file_name and "." in file_name:
        extension = file_name.rsplit(".", 1)[-1].lower()
    if not extension:
        guessed = mimetypes.guess_extension(mime_type or "") or ".bin"
        extension = guessed.lstrip(".")
    return f"{folder.strip('/')}/{uuid.uuid4()}.{extension}"


class MinioClient:
    """MinIO-backed upload storage"""

    def __init__(self, client=None, bucket_name=None, public_url=None):
        self.client = client if client is not None else Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        self.bucket_name = bucket_name or settings.minio_bucket
        self.public_url = public_url if public_url is not None else settings.storage_public_url
        self._bucket_ready = False

    def _ensure_bucket_exists(self):
        """Create the bucket on first use"""
        if self._bucket_ready:
            return
        try:
            if not self.client.bucket_exists(self.bucket_name):
                self.client.make_bucket(self.bucket_name)
                logger.info(f"Created bucket: {self.bucket_name}")
            self._bucket_ready = True
        except S3Error as e:
            logger.error(f"Bucket setup failed: {e}")
            raise

    def _put(self, data: bytes, object_name: str, mime_type: str) -> str:
        self._ensure_bucket_exists()
        self.client.put_object(
            self.bucket_name,
            object_name,
            io.BytesIO(data),
            length=len(data),
            content_type=mime_type or "application/octet-stream",
        )
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{object_name}"
        return self.client.presigned_get_object(self.bucket_name, object_name, expires=timedelta(days=7))

    async def upload(self, data: bytes, file_name: str, mime_type: str, folder: str) -> str:
        """Store ``data`` under ``folder`` and return a URL for it"""
        object_name = build_object_name(folder, file_name, mime_type)
        try:
            url = await run_in_threadpool(self._put, data, object_name, mime_type)
        except Exception as e:
            logger.error(f"Upload failed: {object_name}: {e}")
            raise UploadError(f"Upload failed: {e}", folder=folder) from e

        logger.info(f"Upload succeeded: {object_name}")
        return url

    async def check_health(self) -> bool:
        try:
            await run_in_threadpool(self.client.list_buckets)
            return True
        except Exception as e:
            logger.error(f"Storage health check failed: {e}")
            return False
