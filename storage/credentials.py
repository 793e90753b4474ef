"""Credential persistence for storage drivers.

Drivers keep their tokens in a small key/value store so a session survives a
restart. The store only sees opaque strings; what a value means is up to the
driver that wrote it.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent."""

    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    def remove(self, key: str) -> None:
        """Delete a key; absent keys are ignored."""


class MemoryCredentialStore:
    """In-process store, used in tests and for throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class JsonFileCredentialStore:
    """Store backed by a single JSON file, readable only by its owner.

    A missing file is an empty store. A corrupt file is logged and treated
    as empty; the next write replaces it.
    """

    def __init__(self, path: str = "cloudunify_tokens.json") -> None:
        self.path = path
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable credential file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring credential file {self.path}: not a JSON object")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        # mkstemp creates the file with mode 0600
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tokens-", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
