"""Configuration for CloudUnify.

Settings come from an optional JSON file (sections ``google``, ``dropbox``,
``onedrive``, ``azure`` and ``app``) overlaid with environment variables, so a
deployment can keep secrets out of the file:

    {
        "google":   {"client_id": "...", "client_secret": "..."},
        "dropbox":  {"app_key": "..."},
        "onedrive": {"client_id": "...", "tenant": "consumers"},
        "azure":    {"connection_string": "...", "container_name": "files"},
        "app":      {"download_dir": "downloads"}
    }

Each section is a ``BaseSettings`` model that reads its own prefixed
environment variables (``GOOGLE_CLIENT_ID``, ``DROPBOX_APP_KEY``,
``AZURE_QUOTA_BYTES`` ...). Environment values win over constructor values,
which is how the file is layered underneath.

A provider with incomplete settings is not an error here; its driver refuses
to initialize and the other providers carry on.
"""

import json
import os
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from storage.base import ConfigurationError

GOOGLE_DEFAULT_SCOPES = (
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
)
ONEDRIVE_DEFAULT_SCOPES = ("Files.ReadWrite", "User.Read", "offline_access")
DEFAULT_REDIRECT_URI = "http://localhost:8000/callback"
AZURE_DEFAULT_QUOTA = 100 * 1024 ** 3  # 100 GiB virtual capacity

CONFIG_PATH_VAR = "CLOUDUNIFY_CONFIG"


class EnvFirstSettings(BaseSettings):
    """Settings where the environment overrides constructor values."""

    model_config = SettingsConfigDict(frozen=True, extra="ignore", env_ignore_empty=True)

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        return env_settings, init_settings


class ProviderSettings(EnvFirstSettings):
    REQUIRED: ClassVar[Tuple[str, ...]] = ()

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]

    @field_validator("scopes", mode="before", check_fields=False)
    @classmethod
    def split_scopes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(value.split())
        return value


class GoogleConfig(ProviderSettings):
    model_config = SettingsConfigDict(env_prefix="GOOGLE_")
    REQUIRED: ClassVar[Tuple[str, ...]] = ("client_id", "client_secret")

    client_id: str = ""
    client_secret: str = ""
    scopes: Tuple[str, ...] = GOOGLE_DEFAULT_SCOPES


class DropboxConfig(ProviderSettings):
    model_config = SettingsConfigDict(env_prefix="DROPBOX_")
    REQUIRED: ClassVar[Tuple[str, ...]] = ("app_key",)

    app_key: str = ""
    app_secret: str = ""


class OneDriveConfig(ProviderSettings):
    model_config = SettingsConfigDict(env_prefix="ONEDRIVE_")
    REQUIRED: ClassVar[Tuple[str, ...]] = ("client_id",)

    client_id: str = ""
    client_secret: str = ""
    tenant: str = "common"
    scopes: Tuple[str, ...] = ONEDRIVE_DEFAULT_SCOPES
    redirect_uri: str = DEFAULT_REDIRECT_URI


class AzureConfig(ProviderSettings):
    model_config = SettingsConfigDict(env_prefix="AZURE_")
    REQUIRED: ClassVar[Tuple[str, ...]] = ("connection_string", "container_name")

    connection_string: str = Field(
        "", validation_alias=AliasChoices("connection_string", "AZURE_STORAGE_CONNECTION_STRING")
    )
    container_name: str = ""
    quota_bytes: int = AZURE_DEFAULT_QUOTA


class AppConfig(EnvFirstSettings):
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    dropbox: DropboxConfig = Field(default_factory=DropboxConfig)
    onedrive: OneDriveConfig = Field(default_factory=OneDriveConfig)
    azure: AzureConfig = Field(default_factory=AzureConfig)

    credentials_file: str = Field(
        "cloudunify_tokens.json",
        validation_alias=AliasChoices("credentials_file", "CLOUDUNIFY_TOKENS"),
    )
    download_dir: str = Field(
        "downloads", validation_alias=AliasChoices("download_dir", "CLOUDUNIFY_DOWNLOAD_DIR")
    )
    log_level: str = "INFO"


SECTIONS = {
    "google": GoogleConfig,
    "dropbox": DropboxConfig,
    "onedrive": OneDriveConfig,
    "azure": AzureConfig,
}


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from a JSON file and the environment.

    Args:
        path: JSON config file; defaults to $CLOUDUNIFY_CONFIG if set

    Returns:
        AppConfig with environment values taking precedence over the file

    Raises:
        ConfigurationError: If the file is missing or not valid JSON, or a
            value has the wrong type
    """
    path = path or os.environ.get(CONFIG_PATH_VAR)
    raw = _read_config_file(path) if path else {}

    app_values = {k: v for k, v in raw.get("app", {}).items() if k not in SECTIONS}
    try:
        sections = {name: cls(**raw.get(name, {})) for name, cls in SECTIONS.items()}
        return AppConfig(**app_values, **sections)
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")


def _read_config_file(path: str) -> Dict[str, Dict[str, Any]]:
    if not os.path.exists(path):
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid config file {path}: expected a JSON object")
    return {k: dict(v) for k, v in data.items() if isinstance(v, dict)}
