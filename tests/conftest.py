"""Shared fixtures: an in-memory driver and helpers to build files."""

import asyncio
import os
import threading
import time
from datetime import datetime, timezone
from typing import List, Optional

import pytest

from storage.base import (
    FileInfo,
    PROVIDER_NAMES,
    ProgressReporter,
    Quota,
    StorageDriver,
    StorageError,
    UploadSource,
)
from storage.credentials import MemoryCredentialStore


def make_file(provider: str, file_id: str, name: str, day: int = 1, size: int = 10) -> FileInfo:
    """FileInfo modified on the given day of March 2024."""
    return FileInfo(
        id=file_id,
        name=name,
        size=size,
        modified=datetime(2024, 3, day, tzinfo=timezone.utc),
        provider=provider,
        provider_name=PROVIDER_NAMES.get(provider, provider),
    )


class FakeDriver(StorageDriver):
    """Driver backed by plain attributes; counts every remote hook call."""

    def __init__(self, provider_id: str = "google", files: Optional[List[FileInfo]] = None,
                 total: int = 0, used: int = 0, stored: bool = True,
                 configured: bool = True, download_dir: str = "downloads") -> None:
        super().__init__(download_dir=download_dir)
        self.provider_id = provider_id
        self.files = list(files or [])
        self.total = total
        self.used = used
        self.stored = stored
        self.configured = configured
        self.content = b"fake content"

        self.restore_error: Optional[Exception] = None
        self.authorize_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.search_error: Optional[Exception] = None
        self.upload_error: Optional[Exception] = None
        self.download_error: Optional[Exception] = None
        self.quota_error: Optional[Exception] = None

        self.uploads: List[UploadSource] = []
        self.authorize_calls = 0
        self.revoke_calls = 0
        self.forget_calls = 0
        self.list_calls = 0

    def missing_configuration(self) -> List[str]:
        return [] if self.configured else ["client_id"]

    def _restore(self) -> bool:
        if self.restore_error:
            raise self.restore_error
        return self.stored

    def _authorize(self) -> None:
        self.authorize_calls += 1
        if self.authorize_error:
            raise self.authorize_error
        self.stored = True

    def _revoke(self) -> None:
        self.revoke_calls += 1
        if self.revoke_error:
            raise self.revoke_error

    def _forget(self) -> None:
        self.forget_calls += 1
        self.stored = False

    def _fetch_quota(self) -> Quota:
        if self.quota_error:
            raise self.quota_error
        return Quota.from_usage(self.total, self.used)

    def _list(self, max_results: int) -> List[FileInfo]:
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return self.files[:max_results]

    def _search(self, query: str) -> List[FileInfo]:
        if self.search_error:
            raise self.search_error
        return [f for f in self.files if query.lower() in f.name.lower()]

    def _upload(self, source: UploadSource, progress: ProgressReporter) -> str:
        if self.upload_error:
            raise self.upload_error
        self.uploads.append(source)
        progress(50)
        self.used += source.size
        return f"{self.provider_id}-{len(self.uploads)}"

    def _download(self, file_id: str, local_path: str) -> None:
        with open(local_path, "wb") as f:
            f.write(self.content[:4])
            if self.download_error:
                raise self.download_error
            f.write(self.content[4:])


def run(coro):
    return asyncio.run(coro)


class ProgressRecorder:
    """Progress callback that records values; reports arrive on another thread."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.values: List[float] = []
        self._finished = threading.Event()

    def __call__(self, percent: float) -> None:
        if self.delay:
            time.sleep(self.delay)
        self.values.append(percent)
        if percent >= 100.0:
            self._finished.set()

    def wait(self, timeout: float = 5.0) -> List[float]:
        """Block until 100% was reported, then return everything seen."""
        assert self._finished.wait(timeout), f"progress stalled at {self.values}"
        return self.values


def connected(driver: FakeDriver) -> FakeDriver:
    """Initialize a driver whose stored credential restores a session."""
    driver.stored = True
    run(driver.init())
    assert driver.is_connected
    return driver


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def auth_error():
    return StorageError("token rejected", auth_failed=True)


@pytest.fixture
def upload_source(tmp_path):
    def _make(size: int = 100, name: str = "report.pdf") -> UploadSource:
        path = tmp_path / name
        path.write_bytes(b"x" * size)
        return UploadSource.from_path(str(path))
    return _make


CONFIG_ENV_PREFIXES = ("GOOGLE_", "DROPBOX_", "ONEDRIVE_", "AZURE_", "CLOUDUNIFY_")
CONFIG_ENV_NAMES = ("LOG_LEVEL", "CONNECTION_STRING", "CREDENTIALS_FILE", "DOWNLOAD_DIR",
                    "GOOGLE", "DROPBOX", "ONEDRIVE", "AZURE")


@pytest.fixture(autouse=True)
def clean_config_env(monkeypatch):
    """Keep the developer's environment out of config-driven tests."""
    for name in list(os.environ):
        upper = name.upper()
        if upper.startswith(CONFIG_ENV_PREFIXES) or upper in CONFIG_ENV_NAMES:
            monkeypatch.delenv(name)
