import struct
import zlib

import pytest

from fusedb.block import Block, BlockEntry
from fusedb.bloom import (
    BloomFilter,
    build_bloom_filter,
    build_bloom_filter_for_block,
    decode_bloom_filter,
    encode_bloom_filter,
)
from fusedb.header import SegmentError


def test_bloom_filter_membership():
    keys = [b"alpha", b"beta", b"delta"]
    bloom = build_bloom_filter(keys, 0.01)
    for key in keys:
        assert bloom.may_contain(key)


def test_bloom_filter_round_trip():
    keys = [b"k1", b"k2", b"k3"]
    bloom = build_bloom_filter(keys, 0.01)
    decoded = decode_bloom_filter(encode_bloom_filter(bloom))
    for key in keys:
        assert decoded.may_contain(key)
    assert decoded == bloom


def test_build_bloom_filter_for_block():
    block = Block(
        [BlockEntry(b"a", b"1"), BlockEntry(b"b", b"2"), BlockEntry(b"z", b"3")]
    )
    bloom = build_bloom_filter_for_block(block, 0.01)
    for key in (b"a", b"b", b"z"):
        assert bloom.may_contain(key)
        assert key in bloom


def test_zero_keys_uses_minimum_size():
    bloom = BloomFilter(0, 0.01)
    assert bloom.num_bits == 64
    assert bloom.num_hashes == 1
    assert len(bloom.to_bytes()) == 20 + 8 + 4
    assert not bloom.may_contain(b"anything")


def test_small_key_count_clamped_to_minimum_bits():
    bloom = BloomFilter(3, 0.01)
    assert bloom.num_bits == 64
    assert 1 <= bloom.num_hashes <= 30


def test_large_key_count_bits_are_byte_aligned():
    bloom = BloomFilter(1000, 0.01)
    assert bloom.num_bits % 8 == 0
    assert bloom.num_bits >= 1000
    assert 1 <= bloom.num_hashes <= 30


def test_many_keys_have_no_false_negatives():
    keys = [f"key:{i:05d}".encode() for i in range(500)]
    bloom = build_bloom_filter(keys)
    assert all(bloom.may_contain(key) for key in keys)


@pytest.mark.parametrize("rate", [-0.1, 1.0, 1.5])
def test_invalid_rate_rejected(rate):
    with pytest.raises(SegmentError, match="false positive rate"):
        BloomFilter(10, rate)


def test_negative_key_count_rejected():
    with pytest.raises(SegmentError, match="too many bloom filter keys"):
        BloomFilter(-1, 0.01)


def test_encoding_header_fields():
    bloom = BloomFilter(0, 0.01)
    data = bloom.to_bytes()
    assert data[:4] == b"FBLM"
    assert struct.unpack_from("<IIII", data, 4) == (1, 64, 1, 8)
    assert data[-4:] == struct.pack("<I", zlib.crc32(data[:-4]))


def test_decode_rejects_short_buffer():
    with pytest.raises(SegmentError, match="short bloom filter buffer"):
        decode_bloom_filter(b"FBLM")


def test_decode_rejects_bad_magic():
    data = bytearray(build_bloom_filter([b"x"]).to_bytes())
    data[:4] = b"NOPE"
    with pytest.raises(SegmentError, match="magic mismatch"):
        decode_bloom_filter(bytes(data))


def test_decode_rejects_unsupported_version():
    data = bytearray(build_bloom_filter([b"x"]).to_bytes())
    data[4:8] = struct.pack("<I", 2)
    with pytest.raises(SegmentError, match="unsupported bloom filter version"):
        decode_bloom_filter(bytes(data))


def test_decode_rejects_trailing_bytes():
    data = build_bloom_filter([b"x"]).to_bytes() + b"\x00"
    with pytest.raises(SegmentError, match="trailing bloom filter bytes"):
        decode_bloom_filter(data)


def test_decode_rejects_checksum_mismatch():
    data = bytearray(build_bloom_filter([b"x"]).to_bytes())
    data[20] ^= 0xFF
    with pytest.raises(SegmentError, match="checksum mismatch"):
        decode_bloom_filter(bytes(data))


def test_decode_rejects_zero_hashes():
    body = bytearray(b"FBLM" + struct.pack("<IIII", 1, 64, 0, 8) + bytes(8))
    body += struct.pack("<I", zlib.crc32(body))
    with pytest.raises(SegmentError, match="corrupt bloom filter data"):
        decode_bloom_filter(bytes(body))


def test_decode_rejects_bit_count_mismatch():
    body = bytearray(b"FBLM" + struct.pack("<IIII", 1, 63, 1, 8) + bytes(8))
    body += struct.pack("<I", zlib.crc32(body))
    with pytest.raises(SegmentError, match="corrupt bloom filter data"):
        decode_bloom_filter(bytes(body))