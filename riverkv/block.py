"""Key-value block with a fixed binary header, key statistics and a data section."""

from __future__ import annotations

import enum
import hashlib
import io
import struct
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO

_HEADER = struct.Struct("<BBIIIq32s")
_STATS = struct.Struct("<QQ")
_U32 = struct.Struct("<I")


class DataType(enum.IntEnum):
    """Type of the values stored in a column block."""

    INT32 = 0
    INT64 = 1
    FLOAT32 = 2
    FLOAT64 = 3
    STRING = 4
    BOOL = 5


class CompressionType(enum.IntEnum):
    """Compression algorithm applied to a block's data."""

    NONE = 0
    LZ4 = 1


class KeyNotFoundError(KeyError):
    """Raised when a key is not present in a block."""


class BlockFormatError(ValueError):
    """Raised when encoded block data cannot be read."""


def _as_enum(enum_cls: type[enum.IntEnum], value: int) -> int:
    try:
        return enum_cls(value)
    except ValueError:
        return value


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    data = b"".join(chunks)
    if len(data) != size:
        raise BlockFormatError(f"failed to read {what}: unexpected end of data")
    return data


@dataclass
class Header:
    """Fixed-size block metadata."""

    data_type: int = DataType.INT32
    compression_type: int = CompressionType.NONE
    count: int = 0
    raw_size_bytes: int = 0
    stored_size_bytes: int = 0
    created_at: int = 0
    block_id: bytes = bytes(32)

    def _pack(self) -> bytes:
        return _HEADER.pack(
            int(self.data_type),
            int(self.compression_type),
            self.count,
            self.raw_size_bytes,
            self.stored_size_bytes,
            self.created_at,
            self.block_id,
        )

    @classmethod
    def _unpack(cls, raw: bytes) -> Header:
        data_type, compression, count, raw_size, stored_size, created_at, block_id = (
            _HEADER.unpack(raw)
        )
        return cls(
            data_type=_as_enum(DataType, data_type),
            compression_type=_as_enum(CompressionType, compression),
            count=count,
            raw_size_bytes=raw_size,
            stored_size_bytes=stored_size,
            created_at=created_at,
            block_id=block_id,
        )


@dataclass
class BlockStats:
    """Summary statistics used to skip blocks during lookups."""

    min: int = 0
    max: int = 0
    min_key: bytes = b""
    max_key: bytes = b""


class Block:
    """A block of key-value pairs that can be written to and read from a stream."""

    def __init__(self) -> None:
        self.header = Header(created_at=int(time.time()))
        self.stats = BlockStats()
        self.data = b""
        self._pairs: list[tuple[bytes, bytes]] = []
        self._lock = threading.RLock()

    def add(self, key: bytes, value: bytes) -> None:
        """Add a key-value pair and update the key range."""
        key = bytes(key)
        value = bytes(value)
        with self._lock:
            self._pairs.append((key, value))
            if not self.stats.min_key or key < self.stats.min_key:
                self.stats.min_key = key
            if not self.stats.max_key or key > self.stats.max_key:
                self.stats.max_key = key

    def get(self, key: bytes) -> bytes:
        """Return the value stored for ``key``."""
        key = bytes(key)
        with self._lock:
            for pair_key, value in self._pairs:
                if pair_key == key:
                    return value
        raise KeyNotFoundError(key)

    def finalize(self) -> None:
        """Sort the pairs and serialise them into the data section."""
        with self._lock:
            self._pairs.sort(key=lambda pair: pair[0])
            buffer = io.BytesIO()
            buffer.write(_U32.pack(len(self._pairs)))
            for key, value in self._pairs:
                buffer.write(_U32.pack(len(key)))
                buffer.write(key)
                buffer.write(_U32.pack(len(value)))
                buffer.write(value)
            self.data = buffer.getvalue()
            self.header.count = len(self._pairs)
            self.header.raw_size_bytes = len(self.data)
            self.header.stored_size_bytes = self.header.raw_size_bytes
            self.header.block_id = hashlib.sha256(self.data).digest()

    def encode(self, stream: BinaryIO) -> None:
        """Write the block to a binary stream, finalising it first if needed."""
        if not self.data:
            self.finalize()
        stream.write(self.header._pack())
        stream.write(_STATS.pack(self.stats.min, self.stats.max))
        stream.write(_U32.pack(len(self.stats.min_key)))
        stream.write(self.stats.min_key)
        stream.write(_U32.pack(len(self.stats.max_key)))
        stream.write(self.stats.max_key)
        stream.write(self.data)

    def decode(self, stream: BinaryIO) -> None:
        """Replace this block's contents with a block read from a binary stream."""
        header = Header._unpack(_read_exact(stream, _HEADER.size, "block header"))
        stat_min, stat_max = _STATS.unpack(_read_exact(stream, _STATS.size, "block stats"))
        (min_len,) = _U32.unpack(_read_exact(stream, _U32.size, "min key length"))
        min_key = _read_exact(stream, min_len, "min key")
        (max_len,) = _U32.unpack(_read_exact(stream, _U32.size, "max key length"))
        max_key = _read_exact(stream, max_len, "max key")
        data = _read_exact(stream, header.stored_size_bytes, "block data")

        body = io.BytesIO(data)
        (count,) = _U32.unpack(_read_exact(body, _U32.size, "pair count"))
        pairs = []
        for _ in range(count):
            (key_len,) = _U32.unpack(_read_exact(body, _U32.size, "key length"))
            key = _read_exact(body, key_len, "key")
            (value_len,) = _U32.unpack(_read_exact(body, _U32.size, "value length"))
            value = _read_exact(body, value_len, "value")
            pairs.append((key, value))

        with self._lock:
            self.header = header
            self.stats = BlockStats(min=stat_min, max=stat_max, min_key=min_key, max_key=max_key)
            self.data = data
            self._pairs = pairs

    def id(self) -> str:
        """Hex form of the block's SHA-256 identifier."""
        return self.header.block_id.hex()

    def min_key(self) -> bytes:
        return self.stats.min_key

    def max_key(self) -> bytes:
        return self.stats.max_key

    def count(self) -> int:
        """Number of key-value pairs held in the block."""
        with self._lock:
            return len(self._pairs)

    def size(self) -> int:
        """Stored size of the data section in bytes."""
        return self.header.stored_size_bytes

    def reader(self) -> io.BytesIO:
        """A fresh reader over the data section."""
        return io.BytesIO(self.data)

    def __str__(self) -> str:
        created = datetime.fromtimestamp(self.header.created_at, timezone.utc).astimezone()
        stamp = created.isoformat(timespec="seconds")
        if stamp.endswith("+00:00"):
            stamp = stamp[: -len("+00:00")] + "Z"
        return (
            f"Block ID: {self.id()}\n"
            f"Created: {stamp}\n"
            f"Count: {self.header.count}\n"
            f"Size: {self.header.stored_size_bytes} bytes\n"
            f"Min Key: {self.min_key().decode('utf-8', 'replace')}\n"
            f"Max Key: {self.max_key().decode('utf-8', 'replace')}\n"
        )