"""Durable key/value storage for tokens and cached endpoints."""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from const import CredentialKeys

_LOG = logging.getLogger(__name__)

CREDENTIALS_FILE = "credentials.json"


class CredentialStore(ABC):
    """Key/value store for credentials. Missing keys read as None."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value stored under key."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key."""

    @abstractmethod
    def clear(self, key: str) -> None:
        """Remove key. Removing an unknown key is a no-op."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Return all stored keys."""


class MemoryCredentialStore(CredentialStore):
    """Credential store living in memory only."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def clear(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonCredentialStore(CredentialStore):
    """
    Credential store backed by a JSON file.

    The whole file is rewritten on every change. A missing or unreadable file
    starts an empty store.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self._path = Path(path)
        self._data: dict[str, str] = self._load()

    @property
    def path(self) -> Path:
        """Return the backing file."""
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            _LOG.debug("No credential file at %s", self._path)
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as file:
                data = json.load(file)
        except (OSError, ValueError) as err:
            _LOG.error("Cannot read credential file %s: %s", self._path, err)
            return {}
        if not isinstance(data, dict):
            _LOG.error("Ignoring credential file %s: not a JSON object", self._path)
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def _save(self) -> None:
        # The in-memory value stays authoritative when the file cannot be written.
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as file:
                json.dump(self._data, file, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except OSError as err:
            _LOG.error("Cannot write credential file %s: %s", self._path, err)

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._data.get(key) == value:
            return
        self._data[key] = value
        self._save()

    def clear(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._save()

    def keys(self) -> list[str]:
        return list(self._data)


@dataclass
class CredentialRecord:
    """Snapshot of the persisted credentials, read once at start-up."""

    cloud_token: str | None = None
    """SmartThings personal access token."""
    endpoint: str | None = None
    """Last IP address entered without a device."""
    endpoints: dict[str, str] = field(default_factory=dict)
    """Cached IP address per device id."""
    local_token: str | None = None
    """Token issued by the TV after pairing."""
    last_device_id: str | None = None
    """Device selected in the previous run."""

    @classmethod
    def load(cls, store: CredentialStore) -> "CredentialRecord":
        """Read the record from a store."""
        prefix = f"{CredentialKeys.ENDPOINT}_"
        endpoints = {
            key.removeprefix(prefix): store.get(key)
            for key in store.keys()
            if key.startswith(prefix)
        }
        return cls(
            cloud_token=store.get(CredentialKeys.CLOUD_TOKEN),
            endpoint=store.get(CredentialKeys.ENDPOINT),
            endpoints=endpoints,
            local_token=store.get(CredentialKeys.LOCAL_TOKEN),
            last_device_id=store.get(CredentialKeys.LAST_DEVICE_ID),
        )
