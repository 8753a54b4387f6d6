"""Snapshots of the memory table stored as JSON."""

from __future__ import annotations

import base64
import binascii
import json
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path


def _key_to_text(key: bytes | str) -> str:
    if isinstance(key, str):
        return key
    return bytes(key).decode("utf-8", "surrogateescape")


def _text_to_key(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _int_field(obj: dict, name: str) -> int:
    value = obj.get(name, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name} is not an integer")
    return value


@dataclass
class CheckpointData:
    """Contents of a checkpoint file."""

    timestamp: int = 0
    last_wal_timestamp: int = 0
    mem_table: dict[bytes, bytes] = field(default_factory=dict)
    mem_table_size: int = 0

    def _to_json(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "last_wal_timestamp": self.last_wal_timestamp,
            "mem_table": {
                _key_to_text(key): base64.b64encode(bytes(value)).decode("ascii")
                for key, value in self.mem_table.items()
            },
            "mem_table_size": self.mem_table_size,
        }

    @classmethod
    def _from_json(cls, obj: object) -> CheckpointData:
        if not isinstance(obj, dict):
            raise ValueError("checkpoint is not a JSON object")
        table = obj.get("mem_table") or {}
        if not isinstance(table, dict):
            raise ValueError("mem_table is not an object")
        mem_table = {}
        for key, value in table.items():
            if value is None:
                mem_table[_text_to_key(key)] = b""
            elif isinstance(value, str):
                mem_table[_text_to_key(key)] = base64.b64decode(value, validate=True)
            else:
                raise ValueError("mem_table value is not a string")
        return cls(
            timestamp=_int_field(obj, "timestamp"),
            last_wal_timestamp=_int_field(obj, "last_wal_timestamp"),
            mem_table=mem_table,
            mem_table_size=_int_field(obj, "mem_table_size"),
        )


class Checkpoint:
    """Saves and loads the memory table in ``<base_dir>/checkpoint/checkpoint.json``."""

    def __init__(self, base_dir: str | os.PathLike) -> None:
        directory = Path(base_dir) / "checkpoint"
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / "checkpoint.json"
        self._lock = threading.Lock()
        self._last_wal_timestamp = 0

    def save(
        self, mem_table: dict[bytes, bytes], mem_table_size: int, last_wal_timestamp: int
    ) -> None:
        """Atomically replace the checkpoint file with the given table."""
        with self._lock:
            data = CheckpointData(
                timestamp=time.time_ns(),
                last_wal_timestamp=last_wal_timestamp,
                mem_table=dict(mem_table),
                mem_table_size=mem_table_size,
            )
            text = json.dumps(data._to_json()) + "\n"
            temp_path = self.path.with_name(self.path.name + ".tmp")
            with open(temp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
            self._last_wal_timestamp = last_wal_timestamp

    def load(self) -> CheckpointData:
        """Read the checkpoint; a missing or unreadable one gives an empty table."""
        with self._lock:
            try:
                with open(self.path, "rb") as handle:
                    raw = handle.read()
            except FileNotFoundError:
                return CheckpointData()
            try:
                text = raw.decode("utf-8").lstrip()
                obj, _ = json.JSONDecoder().raw_decode(text)
                data = CheckpointData._from_json(obj)
            except (ValueError, TypeError, binascii.Error):
                return CheckpointData()
            self._last_wal_timestamp = data.last_wal_timestamp
            return data

    def last_wal_timestamp(self) -> int:
        """Last log timestamp covered by the most recent save or load."""
        with self._lock:
            return self._last_wal_timestamp