import os

import pytest

from riverkv.compress import Compressor, LZ4Compressor


def test_round_trip_compressible_data():
    compressor = LZ4Compressor()
    data = b"river storage engine " * 20
    compressed = compressor.compress(data)
    assert len(compressed) < len(data)
    assert compressor.decompress(compressed) == data


def test_incompressible_data_returned_unchanged():
    data = os.urandom(256)
    assert LZ4Compressor().compress(data) == data


def test_empty_input():
    compressor = LZ4Compressor()
    assert compressor.compress(b"") == b""
    assert compressor.decompress(b"") == b""


def test_corrupt_input_raises():
    with pytest.raises(ValueError):
        LZ4Compressor().decompress(b"\xf0")


def test_output_limited_to_ten_times_input():
    compressor = LZ4Compressor()
    compressed = compressor.compress(b"a" * 10000)
    assert 10 * len(compressed) < 10000
    with pytest.raises(ValueError):
        compressor.decompress(compressed)


def test_is_a_compressor():
    assert isinstance(LZ4Compressor(), Compressor)
    with pytest.raises(TypeError):
        Compressor()