"""Durable key-value persistence used by the offline queue and message cache."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable

__all__ = ["KeyValueStore", "JsonFileStore", "MemoryStore", "default_data_dir"]

LOGGER = logging.getLogger(__name__)
_DATA_DIR = Path.home() / ".notechat" / "data"
_STORE_VERSION = 1
_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]+")


def default_data_dir() -> Path:
    return _DATA_DIR


@runtime_checkable
class KeyValueStore(Protocol):
    """Get/set/delete by key; only single-key atomicity is assumed."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> Iterator[str]:
        ...


class MemoryStore:
    """In-process store; values are JSON round-tripped so callers never share state."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self.writes = 0

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, sort_keys=True)
        self.writes += 1

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(sorted(self._data))


class JsonFileStore:
    """Persistence adapter writing one JSON document per key.

    Writes go to a temporary sibling file which then replaces the target, so a
    crash mid-write never leaves a truncated value behind.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self._directory = directory or default_data_dir()

    @property
    def directory(self) -> Path:
        return self._directory

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path_for(key)
        if not path.exists():
            return default
        try:
            text = path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return default
        except json.JSONDecodeError as exc:
            LOGGER.warning("Store entry %s is not valid JSON: %s", path, exc)
            return default
        if isinstance(data, dict) and "value" in data:
            return data["value"]
        return default

    def set(self, key: str, value: Any) -> None:
        payload = {"version": _STORE_VERSION, "key": key, "value": value}
        body = json.dumps(payload, indent=2, sort_keys=True)
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(path)

    def delete(self, key: str) -> None:
        try:
            self._path_for(key).unlink()
        except FileNotFoundError:
            return

    def keys(self) -> Iterator[str]:
        if not self._directory.exists():
            return iter(())
        found: list[str] = []
        for path in sorted(self._directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            if isinstance(data, dict) and isinstance(data.get("key"), str):
                found.append(data["key"])
        return iter(found)

    def _path_for(self, key: str) -> Path:
        if not key:
            raise ValueError("key is required")
        return self._directory / f"{_SAFE_KEY.sub('_', key)}.json"
