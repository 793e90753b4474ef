"""Azure Blob Storage driver.

A container has no account quota of its own, so the driver reports a
configured virtual capacity and counts the container's blob sizes against it.
There is no interactive sign-in either: the connection string is the
credential, and a marker in the credential store remembers that the user
connected so the next session reconnects on startup.
"""

import logging
import os
from typing import TYPE_CHECKING, Iterator, List, Optional

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings

from .base import (
    FileInfo,
    ProgressReporter,
    ProviderId,
    Quota,
    StorageDriver,
    StorageError,
    UploadSource,
)
from .credentials import CredentialStore
from utils.retry import retry_on_transient_error, TRANSIENT_HTTP_STATUS_CODES

if TYPE_CHECKING:
    from cloudunify.config import AzureConfig

logger = logging.getLogger(__name__)

MARKER_KEY = "azure_connected"
SEARCH_SCAN_LIMIT = 1000


def _is_retryable_azure_error(exc: Exception) -> bool:
    """Determine if an Azure SDK error should be retried."""
    if isinstance(exc, ClientAuthenticationError):
        return False
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return True
    if isinstance(exc, HttpResponseError):
        return exc.status_code in TRANSIENT_HTTP_STATUS_CODES
    return False


def _with_retry(func):
    """Decorator to add retry logic and error translation to Azure SDK calls."""
    retrying = retry_on_transient_error(
        is_retryable=_is_retryable_azure_error,
        max_retries=5,
        base_delay=1.0,
        max_delay=60.0,
    )(func)

    def wrapper(*args, **kwargs):
        try:
            return retrying(*args, **kwargs)
        except ClientAuthenticationError as e:
            raise StorageError(f"Azure rejected the storage credential: {e.message}",
                               auth_failed=True)
        except ResourceNotFoundError as e:
            raise StorageError(f"Azure resource not found: {e.message}")
        except HttpResponseError as e:
            raise StorageError(f"Azure Storage error {e.status_code}: {e.message}")
    return wrapper


class AzureBlobDriver(StorageDriver):
    """Storage driver for one Azure Blob Storage container."""

    provider_id = ProviderId.AZURE.value
    MAX_UPLOAD_SIZE = 50_000 * 4000 * 1024 * 1024  # 50,000 blocks of 4000 MiB

    def __init__(self, config: "AzureConfig", store: CredentialStore,
                 download_dir: str = "downloads",
                 service: Optional[BlobServiceClient] = None) -> None:
        super().__init__(download_dir=download_dir)
        self.config = config
        self.store = store
        self._service = service
        self.container: Optional[ContainerClient] = None

    def missing_configuration(self) -> List[str]:
        return self.config.missing_fields()

    def _service_client(self) -> BlobServiceClient:
        if self._service is None:
            self._service = BlobServiceClient.from_connection_string(
                self.config.connection_string
            )
        return self._service

    @_with_retry
    def _open_container(self) -> None:
        container = self._service_client().get_container_client(self.config.container_name)
        try:
            container.create_container()
            logger.info(f"Azure: created container {self.config.container_name}")
        except ResourceExistsError:
            pass
        self.container = container

    # =========================================================================
    # Session
    # =========================================================================

    def _restore(self) -> bool:
        if not self.store.get(MARKER_KEY):
            return False
        self._open_container()
        return True

    def _authorize(self) -> None:
        try:
            self._open_container()
        except ValueError as e:
            # from_connection_string rejects malformed strings with ValueError
            raise StorageError(f"Invalid Azure connection string: {e}")
        self.store.set(MARKER_KEY, "1")

    def _revoke(self) -> None:
        # Shared keys cannot be revoked per client
        logger.debug("Azure: nothing to revoke for a connection string")

    def _forget(self) -> None:
        self.container = None
        self.store.remove(MARKER_KEY)

    # =========================================================================
    # Operations
    # =========================================================================

    def _blobs(self) -> Iterator:
        return iter(self.container.list_blobs())

    @_with_retry
    def _fetch_quota(self) -> Quota:
        used = sum(blob.size or 0 for blob in self._blobs())
        return Quota.from_usage(self.config.quota_bytes, used)

    def _to_file_info(self, blob) -> FileInfo:
        settings = blob.content_settings
        return self._file_info(
            id=blob.name,
            name=blob.name,
            size=blob.size,
            modified=blob.last_modified,
            mime_type=settings.content_type if settings else None,
            web_link=f"{self.container.url}/{blob.name}",
        )

    @_with_retry
    def _list(self, max_results: int) -> List[FileInfo]:
        results: List[FileInfo] = []
        for blob in self._blobs():
            if len(results) >= max_results:
                break
            results.append(self._to_file_info(blob))
        return results

    def _search(self, query: str) -> List[FileInfo]:
        # Blob storage has no name search; filter a bounded listing
        needle = query.lower()
        return [f for f in self._list(SEARCH_SCAN_LIMIT) if needle in f.name.lower()]

    @_with_retry
    def _free_blob_name(self, name: str) -> str:
        stem, ext = os.path.splitext(name)
        candidate = name
        counter = 1
        while self.container.get_blob_client(candidate).exists():
            candidate = f"{stem} ({counter}){ext}"
            counter += 1
        return candidate

    def _upload(self, source: UploadSource, progress: ProgressReporter) -> str:
        blob_name = self._free_blob_name(source.name)
        self._upload_blob(source, blob_name, progress)
        return blob_name

    @_with_retry
    def _upload_blob(self, source: UploadSource, blob_name: str,
                     progress: ProgressReporter) -> None:
        with open(source.path, 'rb') as data:
            self.container.upload_blob(
                name=blob_name,
                data=data,
                length=source.size,
                overwrite=False,
                content_settings=ContentSettings(
                    content_type=source.mime_type or 'application/octet-stream'
                ),
                progress_hook=progress.bytes_sent,
            )

    @_with_retry
    def _download(self, file_id: str, local_path: str) -> None:
        with open(local_path, 'wb') as f:
            self.container.download_blob(file_id).readinto(f)
