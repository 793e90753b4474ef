"""Base classes for storage drivers.

This module defines the provider-normalized data model (files, quotas,
operation results) and the abstract interface that every cloud backend
implements.

Drivers implement a small set of *blocking* provider hooks (``_authorize``,
``_list``, ``_upload`` ...). ``StorageDriver`` turns them into the public
async contract: it runs each hook in a worker thread, enforces the
connected/disconnected rules, and converts provider failures into
``OperationResult`` values so nothing escapes the driver boundary except
configuration errors from ``init()``.
"""

import asyncio
import logging
import mimetypes
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

ProgressCallback = Callable[[float], None]


class ProviderId(str, Enum):
    """Identifiers of the supported backends."""
    GOOGLE = "google"
    ONEDRIVE = "onedrive"
    AZURE = "azure"
    DROPBOX = "dropbox"


PROVIDER_NAMES: Dict[str, str] = {
    ProviderId.GOOGLE.value: "Google Drive",
    ProviderId.ONEDRIVE.value: "OneDrive",
    ProviderId.AZURE.value: "Azure Storage",
    ProviderId.DROPBOX.value: "Dropbox",
}


class ErrorKind(str, Enum):
    """Inspectable failure categories carried by ``OperationResult``."""
    CONFIGURATION_MISSING = "configuration_missing"
    PROVIDER_NOT_FOUND = "provider_not_found"
    PROVIDER_NOT_CONNECTED = "provider_not_connected"
    INSUFFICIENT_QUOTA = "insufficient_quota"
    UNSUPPORTED_FILE_SIZE = "unsupported_file_size"
    REMOTE_CALL_FAILED = "remote_call_failed"
    NO_PROVIDER_AVAILABLE = "no_provider_available"


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        kind: ErrorKind used when the error is turned into an OperationResult
        auth_failed: True when the provider rejected the credential; the
            driver drops to disconnected when it sees one of these
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.REMOTE_CALL_FAILED,
                 auth_failed: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.auth_failed = auth_failed


class ConfigurationError(StorageError):
    """Required configuration for a provider is absent or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.CONFIGURATION_MISSING)


# =========================================================================
# Data model
# =========================================================================

@dataclass(frozen=True)
class FileInfo:
    """A file as reported by one provider.

    Attributes:
        id: Provider-scoped identifier; unique only together with ``provider``
        name: Display name as supplied by the provider
        size: Size in bytes, 0 if unknown
        modified: Last modification time (UTC, epoch if unknown)
        provider: ProviderId value of the owning backend
        provider_name: Human-readable provider label
        mime_type: Content type, when the provider reports or implies one
        web_link: Browser link or provider path, best effort
    """
    id: str
    name: str
    size: int
    modified: datetime
    provider: str
    provider_name: str
    mime_type: Optional[str] = None
    web_link: Optional[str] = None

    @property
    def key(self) -> str:
        """Composite identity across providers."""
        return f"{self.provider}:{self.id}"


@dataclass(frozen=True)
class Quota:
    """Storage quota snapshot in bytes. ``free`` is always ``total - used``."""
    total: int = 0
    used: int = 0
    free: int = 0

    def __post_init__(self) -> None:
        if self.total < 0 or self.used < 0 or self.free != self.total - self.used:
            raise ValueError(
                f"Inconsistent quota: total={self.total} used={self.used} free={self.free}"
            )

    @classmethod
    def from_usage(cls, total: Any, used: Any) -> "Quota":
        """Build a quota from provider-reported totals.

        Accepts ints or numeric strings (Drive returns strings). Missing or
        invalid values count as 0, and usage above the limit is capped so the
        quota never reports negative free space.
        """
        total = max(_to_int(total), 0)
        used = min(max(_to_int(used), 0), total)
        return cls(total=total, used=used, free=total - used)


@dataclass(frozen=True)
class QuotaSummary:
    """Quota summed over several providers."""
    total: int = 0
    used: int = 0
    free: int = 0
    percentage: float = 0.0


@dataclass(frozen=True)
class ProviderStatus:
    """Display snapshot of one provider."""
    name: str
    connected: bool
    quota: Quota


@dataclass(frozen=True)
class UploadSource:
    """A local file to be uploaded."""
    path: str
    name: str
    size: int
    mime_type: Optional[str] = None

    @classmethod
    def from_path(cls, path: str, name: Optional[str] = None) -> "UploadSource":
        """Describe a local file, guessing its content type from the name."""
        name = name or os.path.basename(path)
        mime_type, _ = mimetypes.guess_type(name)
        return cls(path=path, name=name, size=os.path.getsize(path),
                   mime_type=mime_type)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a connect/disconnect/upload/download operation."""
    success: bool
    message: str
    error: Optional[ErrorKind] = None
    provider: Optional[str] = None
    file_id: Optional[str] = None
    local_path: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, message: str, **kwargs: Any) -> "OperationResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **kwargs: Any) -> "OperationResult":
        return cls(success=False, message=message, error=kind, **kwargs)


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_timestamp(value: Any) -> datetime:
    """Normalize a provider timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC, which is what the Dropbox
    and Azure SDKs return) and RFC 3339 strings such as
    ``2024-03-01T10:00:00.000Z``. Anything else maps to the epoch.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError:
            # Graph may send 7 fractional digits, more than fromisoformat takes
            if "." in text:
                head, _, tail = text.partition(".")
                digits = "".join(c for c in tail if c.isdigit())
                offset = tail[len(digits):]
                try:
                    return parse_timestamp(datetime.fromisoformat(f"{head}.{digits[:6]}{offset}"))
                except ValueError:
                    pass
    return EPOCH


def guess_mime_type(name: str) -> Optional[str]:
    """Content type from a file name, for providers that do not report one."""
    mime_type, _ = mimetypes.guess_type(name)
    return mime_type or "application/octet-stream"


def unique_destination(directory: str, file_name: str) -> str:
    """Path in ``directory`` for ``file_name`` that does not overwrite anything."""
    safe_name = os.path.basename(file_name.replace("\\", "/")) or "download"
    stem, ext = os.path.splitext(safe_name)
    candidate = os.path.join(directory, safe_name)
    counter = 1
    while os.path.exists(candidate):
        candidate = os.path.join(directory, f"{stem} ({counter}){ext}")
        counter += 1
    return candidate


class ProgressReporter:
    """Wraps an optional progress callback.

    Values are clamped to 0-100 and never go backwards. The callback runs on
    a single notifier thread in reporting order, so a slow observer holds up
    neither the transfer nor the event loop. A failing callback is logged and
    otherwise ignored; the upload result does not depend on it.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._callback = callback
        self._last = 0.0
        self._executor: Optional[ThreadPoolExecutor] = None
        if callback is not None:
            self._executor = ThreadPoolExecutor(max_workers=1,
                                                thread_name_prefix="progress")

    def __call__(self, percent: float) -> None:
        if self._executor is None:
            return
        percent = min(max(float(percent), 0.0), 100.0)
        if percent < self._last:
            return
        self._last = percent
        try:
            self._executor.submit(self._notify, percent)
        except RuntimeError:
            # Reporter closed; late reports are dropped
            pass

    def _notify(self, percent: float) -> None:
        try:
            self._callback(percent)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def close(self, wait: bool = False) -> None:
        """Stop accepting reports. Queued ones are still delivered."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def bytes_sent(self, current: int, total: Optional[int]) -> None:
        """Report progress from a byte count."""
        if total:
            self(current * 100.0 / total)

    def done(self) -> None:
        self(100.0)


def default_prompt(url: str, instructions: str) -> str:
    """Open an authorization URL in the browser and read the pasted code."""
    import webbrowser

    print(f"\n{instructions}")
    print(f"   URL: {url}")
    webbrowser.open(url)
    return input("Enter the authorization code here: ").strip()


AuthPrompt = Callable[[str, str], str]


# =========================================================================
# Driver contract
# =========================================================================

class StorageDriver(ABC):
    """Abstract base class for cloud storage backends.

    Subclasses set ``provider_id`` and ``MAX_UPLOAD_SIZE`` and implement the
    blocking hooks below. All hooks run in a worker thread; they may raise
    freely and should raise ``StorageError(auth_failed=True)`` when the
    provider rejects the credential.
    """

    provider_id: str = ""
    MAX_UPLOAD_SIZE: Optional[int] = None
    DEFAULT_LIST_SIZE = 100
    SEARCH_LIMIT = 50

    def __init__(self, download_dir: str = "downloads") -> None:
        self.download_dir = download_dir
        self._initialized = False
        self._connected = False
        self._quota = Quota()
        self._state_lock: Optional[asyncio.Lock] = None

    @property
    def display_name(self) -> str:
        return PROVIDER_NAMES.get(self.provider_id, self.provider_id)

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Provider hooks (blocking, run in a worker thread)
    # =========================================================================

    @abstractmethod
    def missing_configuration(self) -> List[str]:
        """Names of required configuration fields that are not set."""

    @abstractmethod
    def _restore(self) -> bool:
        """Rebuild the client from a stored credential.

        Returns:
            True if a stored credential was found and is usable
        """

    @abstractmethod
    def _authorize(self) -> None:
        """Run the provider's authorization flow and store the credential."""

    @abstractmethod
    def _revoke(self) -> None:
        """Revoke the remote credential (best effort)."""

    @abstractmethod
    def _forget(self) -> None:
        """Drop the client and the stored credential."""

    @abstractmethod
    def _fetch_quota(self) -> Quota:
        """Fetch the current quota from the provider."""

    @abstractmethod
    def _list(self, max_results: int) -> List[FileInfo]:
        """List up to ``max_results`` files."""

    @abstractmethod
    def _search(self, query: str) -> List[FileInfo]:
        """Provider-native file name search."""

    @abstractmethod
    def _upload(self, source: UploadSource, progress: ProgressReporter) -> str:
        """Upload a file and return its new provider id."""

    @abstractmethod
    def _download(self, file_id: str, local_path: str) -> None:
        """Write the remote file's content to ``local_path``."""

    # =========================================================================
    # Public contract
    # =========================================================================

    async def init(self) -> None:
        """Validate configuration and restore a stored credential if present.

        Raises:
            ConfigurationError: If required configuration is missing
        """
        if self._initialized:
            return

        missing = self.missing_configuration()
        if missing:
            raise ConfigurationError(
                f"{self.display_name} configuration missing: {', '.join(missing)}"
            )

        self._initialized = True

        try:
            restored = await asyncio.to_thread(self._restore)
        except Exception as e:
            if isinstance(e, StorageError) and e.auth_failed:
                logger.warning(f"{self.display_name}: discarding stored credential: {e}")
                await asyncio.to_thread(self._forget)
            else:
                logger.warning(f"{self.display_name}: could not restore session: {e}")
            return

        if restored:
            self._connected = True
            logger.info(f"{self.display_name}: restored previous session")
            await self.update_quota()

    async def connect(self) -> OperationResult:
        """Authorize with the provider and load its quota."""
        if not self._initialized:
            return OperationResult.failure(
                ErrorKind.CONFIGURATION_MISSING,
                f"{self.display_name} is not configured",
                provider=self.provider_id,
            )

        async with self._lock():
            if self._connected:
                return OperationResult.ok(f"{self.display_name} is already connected",
                                          provider=self.provider_id)
            try:
                await asyncio.to_thread(self._authorize)
            except Exception as e:
                self._connected = False
                logger.error(f"{self.display_name}: connection failed: {e}")
                return OperationResult.failure(
                    ErrorKind.REMOTE_CALL_FAILED,
                    f"Connection to {self.display_name} failed: {_message(e)}",
                    provider=self.provider_id,
                )

            self._connected = True
            logger.info(f"{self.display_name}: connected")

        await self.update_quota()
        if not self._connected:
            # The quota call rejected the fresh credential
            return OperationResult.failure(
                ErrorKind.REMOTE_CALL_FAILED,
                f"Connection to {self.display_name} failed: credential was rejected",
                provider=self.provider_id,
            )
        return OperationResult.ok(f"Connected to {self.display_name}",
                                  provider=self.provider_id)

    async def disconnect(self) -> OperationResult:
        """Revoke the credential and always clear local connection state."""
        async with self._lock():
            revoke_error = None
            if self._connected:
                try:
                    await asyncio.to_thread(self._revoke)
                except Exception as e:
                    revoke_error = e
                    logger.warning(f"{self.display_name}: revoke failed: {e}")

            await self._clear_connection()
            logger.info(f"{self.display_name}: disconnected")

        if revoke_error is not None:
            return OperationResult.ok(
                f"Disconnected from {self.display_name} "
                f"(remote revoke failed: {_message(revoke_error)})",
                provider=self.provider_id,
            )
        return OperationResult.ok(f"Disconnected from {self.display_name}",
                                  provider=self.provider_id)

    async def list_files(self, max_results: int = DEFAULT_LIST_SIZE) -> List[FileInfo]:
        """List files; empty when disconnected or on failure."""
        if not self._connected:
            return []
        try:
            files = await asyncio.to_thread(self._list, max_results)
        except Exception as e:
            await self._handle_remote_error(e, "list files")
            return []
        return files[:max_results]

    async def search_files(self, query: str) -> List[FileInfo]:
        """Search files by name; empty for a blank query or when disconnected."""
        if not self._connected or not query or not query.strip():
            return []
        try:
            return await asyncio.to_thread(self._search, query.strip())
        except Exception as e:
            await self._handle_remote_error(e, "search")
            return []

    async def upload_file(self, source: UploadSource,
                          on_progress: Optional[ProgressCallback] = None) -> OperationResult:
        """Upload a local file, then refresh the quota."""
        if not self._connected:
            return OperationResult.failure(
                ErrorKind.PROVIDER_NOT_CONNECTED,
                f"Not connected to {self.display_name}",
                provider=self.provider_id,
            )

        if self.MAX_UPLOAD_SIZE is not None and source.size > self.MAX_UPLOAD_SIZE:
            return OperationResult.failure(
                ErrorKind.UNSUPPORTED_FILE_SIZE,
                f"{self.display_name} does not support uploads larger than "
                f"{self.MAX_UPLOAD_SIZE} bytes ({source.name} is {source.size} bytes)",
                provider=self.provider_id,
            )

        progress = ProgressReporter(on_progress)
        try:
            file_id = await asyncio.to_thread(self._upload, source, progress)
        except Exception as e:
            progress.close()
            await self._handle_remote_error(e, f"upload {source.name}")
            return OperationResult.failure(
                _kind(e),
                f"Upload of {source.name} to {self.display_name} failed: {_message(e)}",
                provider=self.provider_id,
            )

        progress.done()
        progress.close()
        logger.info(f"{self.display_name}: uploaded {source.name}")
        await self.update_quota()
        return OperationResult.ok(f"{source.name} uploaded to {self.display_name}",
                                  provider=self.provider_id, file_id=file_id)

    async def download_file(self, file_id: str, file_name: str,
                            destination: Optional[str] = None) -> OperationResult:
        """Save a remote file under ``destination`` (default: download_dir)."""
        if not self._connected:
            return OperationResult.failure(
                ErrorKind.PROVIDER_NOT_CONNECTED,
                f"Not connected to {self.display_name}",
                provider=self.provider_id,
            )

        directory = destination or self.download_dir
        try:
            local_path = await asyncio.to_thread(self._download_to_dir, file_id,
                                                 file_name, directory)
        except Exception as e:
            await self._handle_remote_error(e, f"download {file_name}")
            return OperationResult.failure(
                _kind(e),
                f"Download of {file_name} from {self.display_name} failed: {_message(e)}",
                provider=self.provider_id,
            )

        return OperationResult.ok(f"{file_name} saved to {local_path}",
                                  provider=self.provider_id, file_id=file_id,
                                  local_path=local_path)

    def get_quota(self) -> Quota:
        """Last fetched quota; zeroed when disconnected."""
        if not self._connected:
            return Quota()
        return self._quota

    async def update_quota(self) -> None:
        """Refresh the quota snapshot; no-op when disconnected."""
        if not self._connected:
            return
        try:
            self._quota = await asyncio.to_thread(self._fetch_quota)
        except Exception as e:
            await self._handle_remote_error(e, "fetch quota")

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock(self) -> asyncio.Lock:
        # Created lazily so the lock binds to the running event loop
        if self._state_lock is None:
            self._state_lock = asyncio.Lock()
        return self._state_lock

    async def _clear_connection(self) -> None:
        self._connected = False
        self._quota = Quota()
        try:
            await asyncio.to_thread(self._forget)
        except Exception as e:
            logger.error(f"{self.display_name}: failed to clear stored credential: {e}")

    async def _handle_remote_error(self, exc: Exception, action: str) -> None:
        logger.error(f"{self.display_name}: failed to {action}: {exc}")
        if isinstance(exc, StorageError) and exc.auth_failed and self._connected:
            logger.warning(f"{self.display_name}: credential rejected, disconnecting")
            await self._clear_connection()

    def _download_to_dir(self, file_id: str, file_name: str, directory: str) -> str:
        os.makedirs(directory, exist_ok=True)
        local_path = unique_destination(directory, file_name)
        try:
            self._download(file_id, local_path)
        except BaseException:
            if os.path.exists(local_path):
                os.unlink(local_path)
            raise
        return local_path

    def _file_info(self, **fields: Any) -> FileInfo:
        """Build a FileInfo stamped with this driver's provider identity."""
        fields["size"] = max(_to_int(fields.get("size")), 0)
        fields["modified"] = parse_timestamp(fields.get("modified"))
        return FileInfo(provider=self.provider_id, provider_name=self.display_name,
                        **fields)


def _message(exc: Exception) -> str:
    if isinstance(exc, StorageError):
        return exc.message
    return str(exc) or type(exc).__name__


def _kind(exc: Exception) -> ErrorKind:
    if isinstance(exc, StorageError):
        return exc.kind
    return ErrorKind.REMOTE_CALL_FAILED
