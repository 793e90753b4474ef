"""Storage coordinator: aggregates the provider drivers behind one API."""

import asyncio
import logging
from types import MappingProxyType
from typing import Any, Awaitable, Dict, List, Mapping, Optional

from storage.base import (
    ErrorKind,
    FileInfo,
    OperationResult,
    ProgressCallback,
    ProviderStatus,
    Quota,
    QuotaSummary,
    StorageDriver,
    UploadSource,
)

logger = logging.getLogger(__name__)

AUTO = "auto"


class StorageManager:
    """Coordinates a fixed set of storage drivers.

    The registry is frozen at construction; its order is the display order
    and the tie-break order for upload target selection.
    """

    def __init__(self, drivers: Mapping[str, StorageDriver]) -> None:
        self._drivers = MappingProxyType(dict(drivers))
        self._files: List[FileInfo] = []

    @property
    def drivers(self) -> Mapping[str, StorageDriver]:
        return self._drivers

    @property
    def files(self) -> List[FileInfo]:
        """Snapshot from the last ``get_all_files`` call."""
        return list(self._files)

    def get_driver(self, provider_id: str) -> Optional[StorageDriver]:
        return self._drivers.get(provider_id)

    def _connected(self) -> List[StorageDriver]:
        return [d for d in self._drivers.values() if d.is_connected]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> Dict[str, bool]:
        """Initialize every driver; one failure does not stop the others."""
        ids = list(self._drivers)
        results = await asyncio.gather(
            *(self._drivers[i].init() for i in ids), return_exceptions=True
        )

        status: Dict[str, bool] = {}
        for provider_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"{self._drivers[provider_id].display_name} "
                               f"not available: {result}")
                status[provider_id] = False
            else:
                status[provider_id] = True
        return status

    async def connect_provider(self, provider_id: str) -> OperationResult:
        driver = self._drivers.get(provider_id)
        if driver is None:
            return _not_found(provider_id)
        return await driver.connect()

    async def disconnect_provider(self, provider_id: str) -> OperationResult:
        driver = self._drivers.get(provider_id)
        if driver is None:
            return _not_found(provider_id)
        return await driver.disconnect()

    def is_provider_connected(self, provider_id: str) -> bool:
        driver = self._drivers.get(provider_id)
        return driver is not None and driver.is_connected

    # =========================================================================
    # Files
    # =========================================================================

    async def get_all_files(self) -> List[FileInfo]:
        """List files of all connected providers, newest first."""
        drivers = self._connected()
        lists = await _gather_or(
            [d.list_files() for d in drivers], [], drivers, "list files"
        )

        files = [f for chunk in lists for f in chunk]
        files.sort(key=lambda f: f.modified, reverse=True)
        self._files = files
        return list(files)

    async def search_files(self, query: str) -> List[FileInfo]:
        """Native search on each provider merged with a filter of the cache.

        Results are deduplicated by provider and id.
        """
        if not query or not query.strip():
            return self.files

        drivers = self._connected()
        lists = await _gather_or(
            [d.search_files(query) for d in drivers], [], drivers, "search"
        )

        needle = query.strip().lower()
        cached = [f for f in self._files if needle in f.name.lower()]

        merged: Dict[str, FileInfo] = {}
        for f in [f for chunk in lists for f in chunk] + cached:
            merged[f.key] = f
        return list(merged.values())

    # =========================================================================
    # Upload / download
    # =========================================================================

    def get_best_provider_for_upload(self) -> Optional[str]:
        """Connected provider with the most free space, or None."""
        best_id, best_free = None, -1
        for provider_id, driver in self._drivers.items():
            if not driver.is_connected:
                continue
            free = driver.get_quota().free
            if best_id is None or free > best_free:
                best_id, best_free = provider_id, free
        return best_id

    async def upload_file(self, source: UploadSource, target_provider_id: str = AUTO,
                          on_progress: Optional[ProgressCallback] = None) -> OperationResult:
        provider_id = target_provider_id
        if provider_id == AUTO:
            provider_id = self.get_best_provider_for_upload()
            if provider_id is None:
                return OperationResult.failure(
                    ErrorKind.NO_PROVIDER_AVAILABLE,
                    "No connected provider available for upload",
                )
            logger.info(f"Auto-selected {provider_id} for {source.name}")

        driver = self._drivers.get(provider_id)
        if driver is None:
            return _not_found(provider_id)
        if not driver.is_connected:
            return _not_connected(driver)

        free = driver.get_quota().free
        if source.size > free:
            return OperationResult.failure(
                ErrorKind.INSUFFICIENT_QUOTA,
                f"Not enough space on {driver.display_name}: {source.name} needs "
                f"{source.size} bytes, {free} free",
                provider=provider_id,
            )

        return await driver.upload_file(source, on_progress)

    async def download_file(self, provider_id: str, file_id: str, file_name: str,
                            destination: Optional[str] = None) -> OperationResult:
        driver = self._drivers.get(provider_id)
        if driver is None:
            return _not_found(provider_id)
        if not driver.is_connected:
            return _not_connected(driver)
        return await driver.download_file(file_id, file_name, destination)

    # =========================================================================
    # Quota
    # =========================================================================

    def get_total_quota(self) -> QuotaSummary:
        total = used = 0
        for driver in self._connected():
            quota = driver.get_quota()
            total += quota.total
            used += quota.used
        percentage = (used / total * 100) if total else 0.0
        return QuotaSummary(total=total, used=used, free=total - used,
                            percentage=percentage)

    def get_provider_quota(self, provider_id: str) -> Quota:
        driver = self._drivers.get(provider_id)
        if driver is None:
            return Quota()
        return driver.get_quota()

    def get_providers_status(self) -> Dict[str, ProviderStatus]:
        return {
            provider_id: ProviderStatus(
                name=driver.display_name,
                connected=driver.is_connected,
                quota=driver.get_quota(),
            )
            for provider_id, driver in self._drivers.items()
        }

    async def refresh_all_quotas(self) -> None:
        drivers = self._connected()
        await _gather_or([d.update_quota() for d in drivers], None, drivers,
                         "refresh quota")


async def _gather_or(calls: List[Awaitable], fallback: Any,
                     drivers: List[StorageDriver], action: str) -> List[Any]:
    """Run calls concurrently; a failed call is logged and yields ``fallback``."""
    results = await asyncio.gather(*calls, return_exceptions=True)
    out = []
    for driver, result in zip(drivers, results):
        if isinstance(result, BaseException):
            logger.error(f"{driver.display_name}: failed to {action}: {result}")
            out.append(fallback)
        else:
            out.append(result)
    return out


def _not_found(provider_id: Optional[str]) -> OperationResult:
    return OperationResult.failure(ErrorKind.PROVIDER_NOT_FOUND,
                                   f"Unknown provider: {provider_id}",
                                   provider=provider_id)


def _not_connected(driver: StorageDriver) -> OperationResult:
    return OperationResult.failure(ErrorKind.PROVIDER_NOT_CONNECTED,
                                   f"Not connected to {driver.display_name}",
                                   provider=driver.provider_id)
