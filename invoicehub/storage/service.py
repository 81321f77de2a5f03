"""S3-compatible object storage for invoice documents using MinIO.

Objects are keyed ``{user_id}/{invoice_id}/{timestamp_ms}.{ext}`` inside a
single bucket. Uploads are validated (size and MIME type) before any network
call is made.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
import threading
import time
from datetime import timedelta

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoicehub.shared.config import Settings
from invoicehub.shared.errors import (
    EmptyFileError,
    FileTooLargeError,
    UnsupportedFileTypeError,
)
from invoicehub.shared.progress import PercentReporter, ProgressCallback

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024

EXTENSIONS = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
}
ALLOWED_CONTENT_TYPES = frozenset(EXTENSIONS)


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


def validate_document(size: int, content_type: str | None) -> None:
    """Reject documents the platform does not accept.

    Args:
        size: Document size in bytes
        content_type: Declared MIME type

    Raises:
        UnsupportedFileTypeError: MIME type is not PDF, JPEG or PNG
        EmptyFileError: Document has no content
        FileTooLargeError: Document exceeds 10 MiB
    """
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise UnsupportedFileTypeError(content_type)
    if size <= 0:
        raise EmptyFileError()
    if size > MAX_FILE_SIZE:
        raise FileTooLargeError(size, MAX_FILE_SIZE)


def build_object_name(
    user_id: str,
    invoice_id: str,
    content_type: str,
    timestamp_ms: int | None = None,
) -> str:
    """Build the storage key for an invoice document.

    Args:
        user_id: Owner of the invoice
        invoice_id: Invoice identifier
        content_type: Accepted MIME type, used for the extension
        timestamp_ms: Upload time in milliseconds (defaults to now)

    Returns:
        Object name like ``user/invoice/1718000000000.pdf``
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    ext = EXTENSIONS.get(content_type, "bin")
    return f"{user_id}/{invoice_id}/{timestamp_ms}.{ext}"


class UploadProgress(threading.Thread):
    """Progress object for the MinIO ``progress`` hook.

    MinIO calls ``set_meta`` once and ``update`` for every chunk read from the
    stream; the thread itself is never started.
    """

    def __init__(self, callback: ProgressCallback) -> None:
        super().__init__(daemon=True)
        self._reporter = PercentReporter(callback)
        self.total_length = 0
        self.current_size = 0

    def set_meta(self, object_name: str, total_length: int) -> None:
        self.total_length = total_length

    def update(self, size: int) -> None:
        self.current_size += size
        self._reporter.report_fraction(self.current_size, self.total_length)


class StorageService:
    """S3-compatible object storage for invoice documents."""

    def __init__(self, settings: Settings) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
        """
        self.settings = settings
        self._client: Minio | None = None
        self._bucket_exists_cache: set[str] = set()

    @property
    def bucket(self) -> str:
        return self.settings.storage_bucket

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Returns:
            Configured Minio client instance

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key:
                raise ValueError(
                    "Storage access key not configured. "
                    "Set APP_STORAGE_ACCESS_KEY environment variable."
                )
            if not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage secret key not configured. "
                    "Set APP_STORAGE_SECRET_KEY environment variable."
                )

            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")

        return self._client

    def is_available(self) -> bool:
        """Check if storage service is enabled and configured.

        Returns:
            True if storage is enabled and credentials are set
        """
        if not self.settings.storage_enabled:
            return False

        return bool(self.settings.storage_access_key and self.settings.storage_secret_key)

    def health_check(self) -> bool:
        """Check if storage backend is reachable.

        Returns:
            True if MinIO server responds to list_buckets
        """
        if not self.is_available():
            return False

        try:
            client = self._get_client()
            client.list_buckets()
            return True
        except Exception as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self) -> None:
        if self.bucket in self._bucket_exists_cache:
            return

        client = self._get_client()
        if not client.bucket_exists(self.bucket):
            client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")

        self._bucket_exists_cache.add(self.bucket)

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put(
        self,
        data: bytes,
        object_name: str,
        content_type: str,
        progress: UploadProgress | None,
    ):
        client = self._get_client()
        self._ensure_bucket()
        kwargs = {}
        if progress is not None:
            progress.current_size = 0
            kwargs["progress"] = progress
        return client.put_object(
            bucket_name=self.bucket,
            object_name=object_name,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
            **kwargs,
        )

    def upload_document(
        self,
        data: bytes,
        object_name: str,
        content_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> StorageResult:
        """Upload an invoice document.

        Args:
            data: Document bytes
            object_name: Target key (see build_object_name)
            content_type: MIME type of the document
            on_progress: Optional callback receiving 0-100 as bytes are sent

        Returns:
            StorageResult with upload details

        Raises:
            InvalidRequestError: Document rejected before any network call
        """
        validate_document(len(data), content_type)

        if not self.settings.storage_enabled:
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=self.bucket,
                error="Storage is disabled",
            )

        progress = UploadProgress(on_progress) if on_progress is not None else None

        try:
            result = self._put(data, object_name, content_type, progress)
        except S3Error as e:
            logger.error(f"S3 error uploading {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=self.bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except Exception as e:
            logger.error(f"Error uploading {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=self.bucket,
                error=str(e),
            )

        logger.info(f"Uploaded {object_name} to {self.bucket} ({len(data)} bytes)")
        return StorageResult(
            success=True,
            object_name=object_name,
            bucket=self.bucket,
            etag=result.etag,
            size=len(data),
        )

    def get_public_url(self, object_name: str) -> str | None:
        """Return a URL the extraction provider can read the document from.

        Uses the configured public base URL when set, otherwise a presigned GET.

        Args:
            object_name: Object key in the invoices bucket

        Returns:
            URL string, or None if it could not be produced
        """
        base_url = self.settings.storage_public_base_url
        if base_url:
            return f"{base_url.rstrip('/')}/{self.bucket}/{object_name}"

        try:
            client = self._get_client()
            return client.presigned_get_object(
                bucket_name=self.bucket,
                object_name=object_name,
                expires=timedelta(seconds=self.settings.storage_url_expiry_seconds),
            )
        except S3Error as e:
            logger.error(f"S3 error generating presigned URL for {object_name}: {e}")
            return None
        except Exception as e:
            logger.error(f"Error generating presigned URL for {object_name}: {e}")
            return None

    def exists(self, object_name: str) -> bool:
        """Check whether an object exists.

        Lists the parent prefix and looks for an exact name match.

        Args:
            object_name: Object key to check

        Returns:
            True if the object is present
        """
        prefix, _, _ = object_name.rpartition("/")
        try:
            client = self._get_client()
            objects = client.list_objects(
                self.bucket,
                prefix=f"{prefix}/" if prefix else None,
            )
            return any(obj.object_name == object_name for obj in objects)
        except S3Error as e:
            logger.warning(f"S3 error checking {object_name}: {e}")
            return False
        except Exception as e:
            logger.warning(f"Error checking {object_name}: {e}")
            return False

    def delete_object(self, object_name: str) -> StorageResult:
        """Delete object from storage.

        Args:
            object_name: Object name to delete

        Returns:
            StorageResult indicating success or failure
        """
        try:
            client = self._get_client()
            client.remove_object(bucket_name=self.bucket, object_name=object_name)

            logger.info(f"Deleted {object_name} from {self.bucket}")

            return StorageResult(
                success=True,
                object_name=object_name,
                bucket=self.bucket,
            )

        except S3Error as e:
            logger.error(f"S3 error deleting {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=self.bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except Exception as e:
            logger.error(f"Error deleting {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=self.bucket,
                error=str(e),
            )
