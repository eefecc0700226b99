from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Mapping, Protocol

from neurox.core.errors import StorageUnavailableError


logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    # String-to-string storage with the semantics of browser local storage.
    def get(self, key: str) -> str | None: ...

    def set_many(self, values: Mapping[str, str]) -> None: ...

    def remove_many(self, keys: list[str]) -> None: ...


class MemoryStorage:
    """Process-local storage; the default when no session file is configured."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set_many(self, values: Mapping[str, str]) -> None:
        self._data.update(values)

    def remove_many(self, keys: list[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class UnavailableStorage:
    """Storage for contexts without persistent client storage; every call fails."""

    def get(self, key: str) -> str | None:
        raise StorageUnavailableError("client storage is not available")

    def set_many(self, values: Mapping[str, str]) -> None:
        raise StorageUnavailableError("client storage is not available")

    def remove_many(self, keys: list[str]) -> None:
        raise StorageUnavailableError("client storage is not available")


class JsonFileStorage:
    """Durable storage kept as one JSON object on disk.

    Every write replaces the whole file through a temporary file and
    ``os.replace`` so readers never observe a half-written document.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self, *, strict: bool = True) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StorageUnavailableError(f"cannot read {self._path}") from exc
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            if not strict:
                logger.warning("session_storage_corrupt path=%s action=overwrite", self._path)
                return {}
            raise StorageUnavailableError(f"corrupt storage file {self._path}") from exc
        if not isinstance(data, dict):
            if not strict:
                return {}
            raise StorageUnavailableError(f"corrupt storage file {self._path}")
        return {str(key): value for key, value in data.items() if isinstance(value, str)}

    def _write(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".neurox-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, ensure_ascii=False)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageUnavailableError(f"cannot write {self._path}") from exc

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._read().get(key)

    def set_many(self, values: Mapping[str, str]) -> None:
        with self._lock:
            data = self._read(strict=False)
            data.update(values)
            self._write(data)

    def remove_many(self, keys: list[str]) -> None:
        with self._lock:
            data = self._read(strict=False)
            if not any(key in data for key in keys):
                return
            for key in keys:
                data.pop(key, None)
            self._write(data)


def storage_from_settings(session_file: str) -> KeyValueStorage:
    # An empty path keeps the session in memory for the lifetime of the process.
    if not session_file:
        return MemoryStorage()
    logger.debug("session_storage_file path=%s", session_file)
    return JsonFileStorage(os.path.expanduser(session_file))
