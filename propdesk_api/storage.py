"""
PropDesk API Client Token Storage Implementations

Key/value backends for persisting credentials between runs.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from .types import REFRESH_TOKEN_KEY, TOKEN_KEY


logger = logging.getLogger("propdesk_api")


class MemoryStorage:
    """In-memory storage (default, non-persistent)."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        """Get a stored value."""
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        """Store a value."""
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        """Remove a stored value."""
        with self._lock:
            self._items.pop(key, None)


class FileStorage:
    """File-based storage (persistent across restarts)."""

    def __init__(self, file_path: Optional[str] = None) -> None:
        """
        Initialize file storage.

        Args:
            file_path: Path to token file. Defaults to ~/.propdesk/tokens.json
        """
        if file_path:
            self._file_path = Path(file_path)
        else:
            self._file_path = Path.home() / ".propdesk" / "tokens.json"

        self._lock = threading.Lock()
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the storage directory exists."""
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    def _read_data(self) -> Dict[str, str]:
        """Read stored data from file."""
        try:
            if self._file_path.exists():
                with open(self._file_path, "r") as f:
                    data = json.load(f)
                    return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Ignoring unreadable token file %s: %s", self._file_path, e)
        return {}

    def _write_data(self, data: Dict[str, str]) -> None:
        """Write data to file, or delete the file when nothing is left."""
        if not data:
            if self._file_path.exists():
                self._file_path.unlink()
            return
        with open(self._file_path, "w") as f:
            json.dump(data, f)
        # Owner read/write only
        os.chmod(self._file_path, 0o600)

    def get_item(self, key: str) -> Optional[str]:
        """Get a stored value."""
        with self._lock:
            return self._read_data().get(key)

    def set_item(self, key: str, value: str) -> None:
        """Store a value."""
        with self._lock:
            data = self._read_data()
            data[key] = value
            self._write_data(data)

    def remove_item(self, key: str) -> None:
        """Remove a stored value."""
        with self._lock:
            data = self._read_data()
            if key in data:
                del data[key]
                self._write_data(data)


class EnvironmentStorage:
    """Environment variable based storage (for serverless/containers)."""

    def __init__(
        self,
        token_var: str = "PROPDESK_TOKEN",
        refresh_token_var: str = "PROPDESK_REFRESH_TOKEN",
    ) -> None:
        self._variables = {
            TOKEN_KEY: token_var,
            REFRESH_TOKEN_KEY: refresh_token_var,
        }
        self._lock = threading.Lock()

    def _variable(self, key: str) -> str:
        return self._variables.get(key, f"PROPDESK_{key.upper()}")

    def get_item(self, key: str) -> Optional[str]:
        """Get a stored value from the environment."""
        return os.environ.get(self._variable(key))

    def set_item(self, key: str, value: str) -> None:
        """Store a value in the environment."""
        with self._lock:
            os.environ[self._variable(key)] = value

    def remove_item(self, key: str) -> None:
        """Remove a value from the environment."""
        with self._lock:
            os.environ.pop(self._variable(key), None)
