"""Write-ahead log of put and delete operations with CRC-32C checked records."""

from __future__ import annotations

import enum
import os
import re
import struct
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

DEFAULT_MAX_SIZE = 64 * 1024 * 1024

_U32 = struct.Struct("<I")
_ENTRY_PREFIX = struct.Struct("<qBI")  # timestamp, operation, key length
_WAL_NAME = re.compile(r"([+-]?\d+)\.wal")


def _make_crc32c_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC32C_TABLE = _make_crc32c_table()


def _crc32c(data: bytes) -> int:
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC32C_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


class OpType(enum.IntEnum):
    """Kind of operation recorded in the log."""

    PUT = 1
    DELETE = 2


class WALError(Exception):
    """Raised when the log cannot be written or read."""


@dataclass(frozen=True)
class WALEntry:
    """One logged operation."""

    timestamp: int
    op_type: int
    key: bytes
    value: bytes | None = None


def _wal_files(directory: Path) -> list[tuple[int, Path]]:
    """Log files in ``directory`` as (timestamp, path), oldest first."""
    found = []
    for path in directory.iterdir():
        if path.is_dir():
            continue
        match = _WAL_NAME.fullmatch(path.name)
        if match:
            found.append((int(match.group(1)), path))
    found.sort(key=lambda item: item[0])
    return found


def _parse_entry(data: bytes) -> WALEntry:
    if len(data) < _ENTRY_PREFIX.size + _U32.size:
        raise WALError("WAL entry malformed: too short")
    timestamp, op_type, key_len = _ENTRY_PREFIX.unpack_from(data, 0)
    offset = _ENTRY_PREFIX.size
    if offset + key_len + _U32.size > len(data):
        raise WALError("WAL entry malformed: key exceeds entry")
    key = data[offset : offset + key_len]
    offset += key_len
    (value_len,) = _U32.unpack_from(data, offset)
    offset += _U32.size
    if offset + value_len > len(data):
        raise WALError("WAL entry malformed: value exceeds entry")
    try:
        op: int = OpType(op_type)
    except ValueError:
        op = op_type
    if op == OpType.PUT:
        value: bytes | None = data[offset : offset + value_len]
    else:
        value = data[offset : offset + value_len] if value_len else None
    return WALEntry(timestamp=timestamp, op_type=op, key=key, value=value)


def _read_file(path: Path, from_timestamp: int) -> Iterator[WALEntry]:
    try:
        handle = open(path, "rb")
    except OSError as exc:
        raise WALError(f"failed to open WAL file: {exc}") from exc
    with handle:
        while True:
            header = handle.read(8)
            if not header:
                return
            if len(header) < 8:
                raise WALError("failed to read WAL entry header: unexpected end of file")
            crc, size = struct.unpack("<II", header)
            data = handle.read(size)
            if len(data) < size:
                raise WALError("failed to read WAL entry data: unexpected end of file")
            if _crc32c(header[4:] + data) != crc:
                raise WALError("WAL entry corrupted: CRC mismatch")
            entry = _parse_entry(data)
            if entry.timestamp <= from_timestamp:
                continue
            yield entry


class WAL:
    """Append-only log in a directory of ``<timestamp>.wal`` files."""

    def __init__(self, wal_dir: str | os.PathLike, max_size: int = DEFAULT_MAX_SIZE) -> None:
        self.wal_dir = Path(wal_dir)
        self.max_size = max_size
        self._lock = threading.Lock()
        self._last_timestamp = 0
        try:
            self.wal_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WALError(f"failed to create WAL directory: {exc}") from exc
        self._file = None
        self.path: Path
        self._size = 0
        self._open_current_file()

    def _latest_timestamp(self) -> int:
        try:
            files = _wal_files(self.wal_dir)
        except OSError as exc:
            raise WALError(f"failed to read WAL directory: {exc}") from exc
        stamps = [stamp for stamp, _ in files if stamp > 0]
        return max(stamps, default=0)

    def _open(self, path: Path) -> None:
        try:
            self._file = open(path, "ab")
            self._size = path.stat().st_size
        except OSError as exc:
            raise WALError(f"failed to open WAL file: {exc}") from exc
        self.path = path

    def _open_current_file(self) -> None:
        latest = self._latest_timestamp()
        if latest:
            self._open(self.wal_dir / f"{latest}.wal")
        else:
            self._open(self.wal_dir / f"{time.time_ns()}.wal")

    def _rotate(self) -> None:
        latest = self._latest_timestamp()
        try:
            self._file.flush()
            self._file.close()
        except OSError as exc:
            raise WALError(f"failed to close WAL file: {exc}") from exc
        self._file = None
        stamp = max(time.time_ns(), latest + 1)
        self._open(self.wal_dir / f"{stamp}.wal")

    def _next_timestamp(self) -> int:
        stamp = max(time.time_ns(), self._last_timestamp + 1)
        self._last_timestamp = stamp
        return stamp

    def _append(self, op_type: OpType, key: bytes, value: bytes | None) -> None:
        key = bytes(key)
        value = bytes(value) if value is not None and op_type is OpType.PUT else b""
        with self._lock:
            if self._file is None:
                raise WALError("WAL is closed")
            if self._size >= self.max_size:
                self._rotate()
            body = (
                _ENTRY_PREFIX.pack(self._next_timestamp(), op_type, len(key))
                + key
                + _U32.pack(len(value))
                + value
            )
            sized = _U32.pack(len(body)) + body
            record = _U32.pack(_crc32c(sized)) + sized
            try:
                self._file.write(record)
                self._file.flush()
                os.fsync(self._file.fileno())
            except OSError as exc:
                raise WALError(f"failed to write WAL entry: {exc}") from exc
            self._size += len(record)

    def append_put(self, key: bytes, value: bytes) -> None:
        """Log that ``key`` was set to ``value``."""
        self._append(OpType.PUT, key, value)

    def append_delete(self, key: bytes) -> None:
        """Log that ``key`` was deleted."""
        self._append(OpType.DELETE, key, None)

    def replay(self, from_timestamp: int = 0) -> Iterator[WALEntry]:
        """Yield logged entries newer than ``from_timestamp``, oldest first."""
        with self._lock:
            if self._file is not None:
                try:
                    self._file.flush()
                except OSError as exc:
                    raise WALError(f"failed to flush WAL: {exc}") from exc
            try:
                files = _wal_files(self.wal_dir)
            except OSError as exc:
                raise WALError(f"failed to read WAL directory: {exc}") from exc
        for _, path in files:
            yield from _read_file(path, from_timestamp)

    def close(self) -> None:
        """Flush and close the current log file."""
        with self._lock:
            if self._file is None:
                return
            try:
                self._file.flush()
                self._file.close()
            except OSError as exc:
                raise WALError(f"failed to close WAL file: {exc}") from exc
            finally:
                self._file = None

    def __enter__(self) -> WAL:
        return self

    def __exit__(self, *args) -> None:
        self.close()