"""CloudUnify - Application context."""

import logging
from typing import Optional

from storage import (
    AuthPrompt,
    CredentialStore,
    JsonFileCredentialStore,
    create_drivers,
    default_prompt,
)

from .config import AppConfig, load_config
from .manager import StorageManager

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


class CloudUnify:
    """Configuration, credential store and coordinator for one session.

    Built once by the entry point and passed to the CLI or the dashboard.
    """

    def __init__(self, config: AppConfig, store: CredentialStore,
                 manager: StorageManager) -> None:
        self.config = config
        self.store = store
        self.manager = manager

    async def start(self) -> None:
        """Initialize all providers and load the file list."""
        status = await self.manager.init()
        available = [pid for pid, ok in status.items() if ok]
        logger.info(f"Providers available: {', '.join(available) or 'none'}")
        if any(self.manager.is_provider_connected(pid) for pid in available):
            await self.manager.get_all_files()


def create_app(config: Optional[AppConfig] = None,
               store: Optional[CredentialStore] = None,
               prompt: AuthPrompt = default_prompt) -> CloudUnify:
    """Wire configuration, credential store and drivers into a CloudUnify.

    Args:
        config: Loaded configuration (default: ``load_config()``)
        store: Credential store (default: JSON file from the configuration)
        prompt: Sign-in prompt handed to drivers that need one
    """
    config = config or load_config()
    store = store or JsonFileCredentialStore(config.credentials_file)
    manager = StorageManager(create_drivers(config, store, prompt=prompt))
    return CloudUnify(config, store, manager)


__all__ = ['CloudUnify', 'StorageManager', 'create_app', '__version__']
