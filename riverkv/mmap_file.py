"""Read-only memory-mapped files and a simple indexed block format on top of them."""

from __future__ import annotations

import mmap
import os
import struct
import threading
from pathlib import Path

from .block import KeyNotFoundError

_U32 = struct.Struct("<I")
_HEADER_SIZE = 8


class MmapFile:
    """A file mapped into memory for reading."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._file = open(self.path, "rb")
        try:
            self._size = os.fstat(self._file.fileno()).st_size
            self._map = (
                mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
                if self._size
                else None
            )
        except Exception:
            self._file.close()
            raise
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("file is closed")

    def read(self, offset: int, length: int) -> bytes:
        """Up to ``length`` bytes starting at ``offset``, cut short at the end of the file."""
        with self._lock:
            self._check_open()
            if offset < 0 or offset >= self._size:
                raise IndexError("offset out of bounds")
            if length < 0:
                raise ValueError("length must not be negative")
            end = min(offset + length, self._size)
            return self._map[offset:end]

    def data(self) -> bytes:
        """The whole contents of the file."""
        with self._lock:
            self._check_open()
            return self._map[:] if self._map is not None else b""

    def size(self) -> int:
        """Size of the file in bytes."""
        return self._size

    def close(self) -> None:
        """Unmap and close the file; further reads raise ValueError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                if self._map is not None:
                    self._map.close()
            finally:
                self._file.close()

    def __enter__(self) -> MmapFile:
        return self

    def __exit__(self, *args) -> None:
        self.close()


class MmapBlock:
    """A mapped file holding an 8-byte header followed by length-prefixed entries.

    Each entry is a little-endian uint32 key length, the key, a uint32 value
    length and the value. Entries are indexed by key when the block is opened.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self._file = MmapFile(path)
        self._lock = threading.RLock()
        self._index: dict[bytes, int] = {}
        try:
            self._load_header()
        except Exception:
            self._file.close()
            raise

    def _load_header(self) -> None:
        data = self._file.data()
        size = len(data)
        if size < _HEADER_SIZE:
            raise ValueError("file too small to contain header")
        offset = _HEADER_SIZE
        while offset + _U32.size <= size:
            (key_len,) = _U32.unpack_from(data, offset)
            offset += _U32.size
            if offset + key_len > size:
                break
            key = data[offset : offset + key_len]
            offset += key_len
            self._index[key] = offset
            if offset + _U32.size > size:
                break
            (value_len,) = _U32.unpack_from(data, offset)
            offset += _U32.size + value_len

    def get(self, key: bytes) -> bytes:
        """The value stored for ``key``; raises KeyNotFoundError if it is not indexed."""
        with self._lock:
            offset = self._index.get(bytes(key))
        if offset is None:
            raise KeyNotFoundError(key)
        try:
            length_bytes = self._file.read(offset, _U32.size)
        except IndexError as exc:
            raise ValueError(f"failed to read value length: {exc}") from exc
        if len(length_bytes) < _U32.size:
            raise ValueError("failed to read value length: unexpected end of file")
        (value_len,) = _U32.unpack(length_bytes)
        if value_len == 0:
            return b""
        try:
            return self._file.read(offset + _U32.size, value_len)
        except IndexError as exc:
            raise ValueError(f"failed to read value: {exc}") from exc

    def close(self) -> None:
        """Release the mapped file."""
        self._file.close()

    def min_key(self) -> bytes:
        """Smallest indexed key, or empty bytes for a block without entries."""
        with self._lock:
            return min(self._index, default=b"")

    def max_key(self) -> bytes:
        """Largest indexed key, or empty bytes for a block without entries."""
        with self._lock:
            return max(self._index, default=b"")

    def size(self) -> int:
        """Size of the block file in bytes."""
        return self._file.size()

    def __enter__(self) -> MmapBlock:
        return self

    def __exit__(self, *args) -> None:
        self.close()