"""Byte-string compressors."""

from __future__ import annotations

import abc

import lz4.block


class Compressor(abc.ABC):
    """Compresses and decompresses byte strings."""

    @abc.abstractmethod
    def compress(self, data: bytes) -> bytes:
        """Return the compressed form of ``data``."""

    @abc.abstractmethod
    def decompress(self, data: bytes) -> bytes:
        """Return the original bytes of compressed ``data``."""


class LZ4Compressor(Compressor):
    """Raw LZ4 block compression without a stored size.

    Incompressible input is returned unchanged. Decompression allows the
    output to be at most ten times the size of the input.
    """

    def compress(self, data: bytes) -> bytes:
        data = bytes(data)
        if not data:
            return data
        compressed = lz4.block.compress(data, store_size=False)
        if len(compressed) >= len(data):
            return data
        return compressed

    def decompress(self, data: bytes) -> bytes:
        data = bytes(data)
        if not data:
            return b""
        try:
            return lz4.block.decompress(data, uncompressed_size=10 * len(data))
        except lz4.block.LZ4BlockError as exc:
            raise ValueError(f"lz4 decompression failed: {exc}") from exc