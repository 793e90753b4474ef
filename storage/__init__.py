"""Storage driver abstraction for CloudUnify.

Provides a uniform interface for file operations across cloud backends:
- GDriveDriver: Google Drive
- OneDriveDriver: Microsoft OneDrive (Graph API)
- AzureBlobDriver: Azure Blob Storage container
- DropboxDriver: Dropbox

Usage:
    from storage import create_drivers, JsonFileCredentialStore

    drivers = create_drivers(config, JsonFileCredentialStore("tokens.json"))
    await drivers["google"].init()
"""

from typing import TYPE_CHECKING, Dict

from .base import (
    AuthPrompt,
    ConfigurationError,
    ErrorKind,
    FileInfo,
    OperationResult,
    PROVIDER_NAMES,
    ProgressCallback,
    ProviderId,
    ProviderStatus,
    Quota,
    QuotaSummary,
    StorageDriver,
    StorageError,
    UploadSource,
    default_prompt,
)
from .credentials import CredentialStore, JsonFileCredentialStore, MemoryCredentialStore
from .gdrive import GDriveDriver
from .onedrive import OneDriveDriver
from .azure import AzureBlobDriver
from .dbx import DropboxDriver

if TYPE_CHECKING:
    from cloudunify.config import AppConfig


def create_drivers(config: "AppConfig", store: CredentialStore,
                   prompt: AuthPrompt = default_prompt) -> Dict[str, StorageDriver]:
    """Create one driver per supported provider.

    Args:
        config: Application configuration
        store: Credential store shared by all drivers
        prompt: Callable used by drivers whose sign-in needs a pasted code

    Returns:
        Dict of provider id -> driver, in display order
    """
    download_dir = config.download_dir
    return {
        ProviderId.GOOGLE.value: GDriveDriver(config.google, store, download_dir),
        ProviderId.ONEDRIVE.value: OneDriveDriver(config.onedrive, store, download_dir,
                                                  prompt=prompt),
        ProviderId.AZURE.value: AzureBlobDriver(config.azure, store, download_dir),
        ProviderId.DROPBOX.value: DropboxDriver(config.dropbox, store, download_dir,
                                                prompt=prompt),
    }


__all__ = [
    'AuthPrompt',
    'AzureBlobDriver',
    'ConfigurationError',
    'CredentialStore',
    'DropboxDriver',
    'ErrorKind',
    'FileInfo',
    'GDriveDriver',
    'JsonFileCredentialStore',
    'MemoryCredentialStore',
    'OneDriveDriver',
    'OperationResult',
    'PROVIDER_NAMES',
    'ProgressCallback',
    'ProviderId',
    'ProviderStatus',
    'Quota',
    'QuotaSummary',
    'StorageDriver',
    'StorageError',
    'UploadSource',
    'create_drivers',
    'default_prompt',
]
