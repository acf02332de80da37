"""
Key-Value Slots

The flat backend, the migration flag/backup and the last-sync timestamp all
live in named string slots. KeyValueStore is that slot contract; the two
implementations keep everything in memory or in one file per key.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote, unquote

import structlog

from fintrack.services.storage.interface import (
    BackendUnavailableError,
    QuotaExceededError,
    StorageError,
)


logger = structlog.get_logger(__name__)


class KeyValueStore(ABC):
    """Named UTF-8 string slots."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Slot content, or None if the slot was never written."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Write a slot.

        Raises:
            QuotaExceededError: If the store is full
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete a slot; missing slots are ignored."""
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed slots, for tests and ephemeral sessions."""

    def __init__(
        self,
        initial: Optional[dict[str, str]] = None,
        quota_bytes: Optional[int] = None,
    ):
        self._data: dict[str, str] = dict(initial or {})
        self._quota_bytes = quota_bytes

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._quota_bytes is not None:
            used = sum(
                len(v.encode("utf-8")) for k, v in self._data.items() if k != key
            )
            if used + len(value.encode("utf-8")) > self._quota_bytes:
                raise QuotaExceededError(
                    f"Writing {key} would exceed quota of {self._quota_bytes} bytes"
                )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileKeyValueStore(KeyValueStore):
    """
    One UTF-8 file per slot inside a directory.

    Writes go to a temporary file that replaces the target, so a crash
    never leaves a half-written slot behind.
    """

    SUFFIX = ".json"

    def __init__(
        self,
        directory: Union[str, Path],
        quota_bytes: Optional[int] = None,
    ):
        self._dir = Path(directory)
        self._quota_bytes = quota_bytes
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendUnavailableError(
                f"Cannot create key-value directory {self._dir}: {e}"
            ) from e

    def _path(self, key: str) -> Path:
        return self._dir / f"{quote(key, safe='')}{self.SUFFIX}"

    def _used_bytes(self, excluding: Path) -> int:
        return sum(
            p.stat().st_size
            for p in self._dir.glob(f"*{self.SUFFIX}")
            if p != excluding
        )

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read slot {key}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        payload = value.encode("utf-8")

        if self._quota_bytes is not None:
            if self._used_bytes(path) + len(payload) > self._quota_bytes:
                logger.warning(
                    "kv_quota_exceeded",
                    key=key,
                    size=len(payload),
                    quota=self._quota_bytes,
                )
                raise QuotaExceededError(
                    f"Writing {key} would exceed quota of {self._quota_bytes} bytes"
                )

        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StorageError(f"Failed to write slot {key}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove slot {key}: {e}") from e

    def keys(self) -> list[str]:
        return sorted(
            unquote(p.name[: -len(self.SUFFIX)])
            for p in self._dir.glob(f"*{self.SUFFIX}")
        )
