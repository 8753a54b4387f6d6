"""Persistent description of the tree's levels, current log file and last checkpoint."""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

NUM_LEVELS = 7


def _int_field(obj: dict, name: str) -> int:
    value = obj.get(name)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name} is not an integer")
    return value


def _str_field(obj: dict, name: str) -> str:
    value = obj.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {name} is not a string")
    return value


def _object(obj: object, what: str) -> dict:
    if not isinstance(obj, dict):
        raise ValueError(f"{what} is not a JSON object")
    return obj


def _list_field(obj: dict, name: str) -> list:
    value = obj.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field {name} is not a list")
    return value


@dataclass(frozen=True)
class FileData:
    """One data file recorded in a level."""

    path: str = ""
    size: int = 0
    timestamp: int = 0
    min_key: str = ""
    max_key: str = ""
    entry_count: int = 0

    def _to_json(self) -> dict:
        return {
            "path": self.path,
            "size": self.size,
            "timestamp": self.timestamp,
            "min_key": self.min_key,
            "max_key": self.max_key,
            "entry_count": self.entry_count,
        }

    @classmethod
    def _from_json(cls, obj: object) -> FileData:
        obj = _object(obj, "file")
        return cls(
            path=_str_field(obj, "path"),
            size=_int_field(obj, "size"),
            timestamp=_int_field(obj, "timestamp"),
            min_key=_str_field(obj, "min_key"),
            max_key=_str_field(obj, "max_key"),
            entry_count=_int_field(obj, "entry_count"),
        )


@dataclass
class LevelData:
    """The files recorded for one level."""

    level: int = 0
    files: list[FileData] = field(default_factory=list)

    def _to_json(self) -> dict:
        return {"level": self.level, "files": [item._to_json() for item in self.files]}

    @classmethod
    def _from_json(cls, obj: object) -> LevelData:
        obj = _object(obj, "level")
        return cls(
            level=_int_field(obj, "level"),
            files=[FileData._from_json(item) for item in _list_field(obj, "files")],
        )


@dataclass
class ManifestData:
    """Contents of the manifest file."""

    timestamp: int = 0
    levels: list[LevelData] = field(default_factory=list)
    current_wal: str = ""
    last_checkpoint: int = 0

    def _to_json(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "levels": [level._to_json() for level in self.levels],
            "current_wal": self.current_wal,
            "last_checkpoint": self.last_checkpoint,
        }

    @classmethod
    def _from_json(cls, obj: object) -> ManifestData:
        obj = _object(obj, "manifest")
        return cls(
            timestamp=_int_field(obj, "timestamp"),
            levels=[LevelData._from_json(item) for item in _list_field(obj, "levels")],
            current_wal=_str_field(obj, "current_wal"),
            last_checkpoint=_int_field(obj, "last_checkpoint"),
        )


class Manifest:
    """State of the tree kept in ``<base_dir>/manifest/manifest.json``."""

    def __init__(self, base_dir: str | os.PathLike) -> None:
        directory = Path(base_dir) / "manifest"
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / "manifest.json"
        self._lock = threading.Lock()
        self.data = ManifestData(
            timestamp=time.time_ns(),
            levels=[LevelData(level=i) for i in range(NUM_LEVELS)],
        )
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        with self._lock:
            with open(self.path, "rb") as handle:
                raw = handle.read()
            try:
                text = raw.decode("utf-8").lstrip()
                obj, _ = json.JSONDecoder().raw_decode(text)
                data = ManifestData._from_json(obj)
            except ValueError as exc:
                raise ValueError(f"failed to load manifest: {exc}") from exc
            self.data = data

    def save(self) -> None:
        """Stamp the manifest with the current time and atomically write it to disk."""
        with self._lock:
            self.data.timestamp = time.time_ns()
            text = json.dumps(self.data._to_json()) + "\n"
            temp_path = self.path.with_name(self.path.name + ".tmp")
            with open(temp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)

    def _check_level(self, level: int) -> None:
        if not 0 <= level < len(self.data.levels):
            raise ValueError(f"invalid level: {level}")

    def update_level(self, level: int, files: list[FileData]) -> None:
        """Replace the files recorded for ``level``."""
        with self._lock:
            self._check_level(level)
            self.data.levels[level].files = list(files)

    def update_current_wal(self, wal_file: str) -> None:
        """Record the name of the log file in use."""
        with self._lock:
            self.data.current_wal = wal_file

    def update_last_checkpoint(self, timestamp: int) -> None:
        """Record the time of the latest checkpoint."""
        with self._lock:
            self.data.last_checkpoint = timestamp

    def get_level_files(self, level: int) -> list[FileData]:
        """A copy of the files recorded for ``level``."""
        with self._lock:
            self._check_level(level)
            return list(self.data.levels[level].files)

    def current_wal(self) -> str:
        """Name of the log file in use."""
        with self._lock:
            return self.data.current_wal

    def last_checkpoint(self) -> int:
        """Time of the latest checkpoint."""
        with self._lock:
            return self.data.last_checkpoint