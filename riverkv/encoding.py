"""Column encoders for fixed-width numbers and strings."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterable


class EncodingError(ValueError):
    """Raised when values cannot be encoded or decoded."""


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
        raise EncodingError(f"failed to read {what}: unexpected end of data")
    return data


def _check_count(count: int) -> None:
    if count < 0:
        raise ValueError(f"count must not be negative: {count}")


class FixedKind(enum.Enum):
    """Fixed-width value types, mapped to their little-endian struct codes."""

    INT32 = "i"
    INT64 = "q"
    FLOAT32 = "f"
    FLOAT64 = "d"
    BOOL = "?"


@dataclass(frozen=True)
class Fixed:
    """Little-endian encoder/decoder for sequences of one fixed-width type."""

    kind: FixedKind

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", FixedKind(self.kind))

    def _format(self, count: int) -> str:
        return f"<{count}{self.kind.value}"

    def encode(self, stream: BinaryIO, values: Iterable) -> None:
        """Write the values to the stream."""
        values = list(values)
        if self.kind is FixedKind.BOOL and not all(isinstance(v, bool) for v in values):
            raise EncodingError(f"unsupported value for fixed {self.kind.name} encoding")
        try:
            packed = struct.pack(self._format(len(values)), *values)
        except struct.error as exc:
            raise EncodingError(
                f"unsupported value for fixed {self.kind.name} encoding: {exc}"
            ) from exc
        stream.write(packed)

    def decode(self, stream: BinaryIO, count: int) -> list:
        """Read ``count`` values from the stream."""
        _check_count(count)
        fmt = self._format(count)
        raw = _read_exact(stream, struct.calcsize(fmt), f"fixed {self.kind.name} values")
        return list(struct.unpack(fmt, raw))


class StringCodec:
    """Encodes strings as cumulative uint32 end offsets followed by the UTF-8 bytes."""

    def encode(self, stream: BinaryIO, values: Iterable[str]) -> None:
        """Write the strings to the stream."""
        values = list(values)
        if not all(isinstance(v, str) for v in values):
            raise EncodingError("unsupported value for string encoding")
        encoded = [v.encode("utf-8", "surrogateescape") for v in values]
        offsets = []
        total = 0
        for item in encoded:
            total += len(item)
            offsets.append(total & 0xFFFFFFFF)
        stream.write(struct.pack(f"<{len(offsets)}I", *offsets))
        stream.write(b"".join(encoded))

    def decode(self, stream: BinaryIO, count: int) -> list[str]:
        """Read ``count`` strings from the stream."""
        _check_count(count)
        if count == 0:
            return []
        offsets = struct.unpack(
            f"<{count}I", _read_exact(stream, 4 * count, "string offsets")
        )
        data = _read_exact(stream, offsets[-1], "string data")
        values = []
        start = 0
        for end in offsets:
            if end < start:
                raise EncodingError("string offsets are not in ascending order")
            values.append(data[start:end].decode("utf-8", "surrogateescape"))
            start = end
        return values