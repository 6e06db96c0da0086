"""Serializable bloom filter used for negative lookup filtering."""

from __future__ import annotations

import math
import struct
import zlib
from collections.abc import Iterable

from fusedb.block import Block
from fusedb.hashing import bloom_hashes
from fusedb.header import SegmentError

BLOOM_MAGIC = b"FBLM"
BLOOM_FORMAT_VERSION = 1
MIN_BLOOM_FILTER_BITS = 64
MAX_BLOOM_FILTER_HASHES = 30
DEFAULT_FALSE_POSITIVE_RATE = 0.01

_HEADER = struct.Struct("<4sIIII")
BLOOM_HEADER_SIZE = _HEADER.size
BLOOM_CHECKSUM_SIZE = 4

_U32 = struct.Struct("<I")
_MAX_U32 = 0xFFFFFFFF
_MAX_I32 = 0x7FFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF


class BloomFilter:
    """Probabilistic membership filter sized for an expected key count."""

    def __init__(
        self,
        expected_keys: int = 0,
        false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
    ) -> None:
        if not 0 < false_positive_rate < 1:
            raise SegmentError("invalid bloom filter false positive rate")
        if not 0 <= expected_keys <= _MAX_I32:
            raise SegmentError("too many bloom filter keys")

        if expected_keys == 0:
            self._init(MIN_BLOOM_FILTER_BITS, 1, bytearray(MIN_BLOOM_FILTER_BITS // 8))
            return

        n = float(expected_keys)
        m = -n * math.log(false_positive_rate) / (math.log(2) ** 2)
        m = max(m, float(MIN_BLOOM_FILTER_BITS))
        byte_len = (math.ceil(m) + 7) // 8
        k = math.floor((m / n) * math.log(2) + 0.5)
        k = min(max(k, 1), MAX_BLOOM_FILTER_HASHES)
        self._init(byte_len * 8, k, bytearray(byte_len))

    def _init(self, num_bits: int, num_hashes: int, bits: bytearray) -> None:
        self._num_bits = num_bits
        self._num_hashes = num_hashes
        self._bits = bits

    @classmethod
    def _from_parts(cls, num_bits: int, num_hashes: int, bits: bytes) -> BloomFilter:
        bloom = cls.__new__(cls)
        bloom._init(num_bits, num_hashes, bytearray(bits))
        return bloom

    @property
    def num_bits(self) -> int:
        """Total number of addressable bits."""
        return self._num_bits

    @property
    def num_hashes(self) -> int:
        """Number of hash rounds."""
        return self._num_hashes

    @property
    def empty(self) -> bool:
        """Whether the filter has no bitset."""
        return not self._bits

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BloomFilter):
            return NotImplemented
        return (
            self._num_bits == other._num_bits
            and self._num_hashes == other._num_hashes
            and self._bits == other._bits
        )

    def __repr__(self) -> str:
        return f"BloomFilter(num_bits={self._num_bits}, num_hashes={self._num_hashes})"

    def _positions(self, key: bytes) -> Iterable[tuple[int, int]]:
        h1, h2 = bloom_hashes(bytes(key))
        for i in range(self._num_hashes):
            bit = ((h1 + i * h2) & _MASK64) % self._num_bits
            yield bit >> 3, 1 << (bit & 7)

    def add(self, key: bytes) -> None:
        """Insert one key."""
        if self._num_bits == 0 or self._num_hashes == 0:
            return
        for index, mask in self._positions(key):
            self._bits[index] |= mask

    def may_contain(self, key: bytes) -> bool:
        """Report whether ``key`` may be present; False means definitely absent."""
        if self._num_bits == 0 or self._num_hashes == 0:
            return False
        return all(self._bits[index] & mask for index, mask in self._positions(key))

    def __contains__(self, key: object) -> bool:
        return isinstance(key, (bytes, bytearray, memoryview)) and self.may_contain(key)

    def to_bytes(self) -> bytes:
        """Encode the filter into its stable on-disk form."""
        if len(self._bits) > _MAX_U32 or self._num_bits != len(self._bits) * 8:
            raise SegmentError("corrupt bloom filter data")
        out = bytearray(
            _HEADER.pack(
                BLOOM_MAGIC,
                BLOOM_FORMAT_VERSION,
                self._num_bits,
                self._num_hashes,
                len(self._bits),
            )
        )
        out += self._bits
        out += _U32.pack(zlib.crc32(out))
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> BloomFilter:
        """Decode a filter from its stable on-disk form."""
        data = bytes(data)
        if len(data) < BLOOM_HEADER_SIZE + BLOOM_CHECKSUM_SIZE:
            raise SegmentError("short bloom filter buffer")
        magic, version, num_bits, num_hashes, bitset_len = _HEADER.unpack_from(data)
        if magic != BLOOM_MAGIC:
            raise SegmentError("bloom filter magic mismatch")
        if version != BLOOM_FORMAT_VERSION:
            raise SegmentError(f"unsupported bloom filter version: {version}")

        num_hashes &= 0xFF
        if bitset_len <= 0:
            raise SegmentError("corrupt bloom filter data")
        expected = BLOOM_HEADER_SIZE + bitset_len + BLOOM_CHECKSUM_SIZE
        if len(data) < expected:
            raise SegmentError("short bloom filter buffer")
        if len(data) != expected:
            raise SegmentError("trailing bloom filter bytes")
        if num_bits != (bitset_len * 8) & _MAX_U32 or num_hashes == 0:
            raise SegmentError("corrupt bloom filter data")

        checksum_pos = BLOOM_HEADER_SIZE + bitset_len
        (want,) = _U32.unpack_from(data, checksum_pos)
        if zlib.crc32(data[:checksum_pos]) != want:
            raise SegmentError("bloom filter checksum mismatch")
        return cls._from_parts(num_bits, num_hashes, data[BLOOM_HEADER_SIZE:checksum_pos])


def build_bloom_filter(keys: Iterable[bytes], false_positive_rate: float = 0.0) -> BloomFilter:
    """Build a filter holding ``keys``; a zero rate selects the default rate."""
    if false_positive_rate == 0:
        false_positive_rate = DEFAULT_FALSE_POSITIVE_RATE
    keys = list(keys)
    bloom = BloomFilter(len(keys), false_positive_rate)
    for key in keys:
        bloom.add(key)
    return bloom


def build_bloom_filter_for_block(block: Block, false_positive_rate: float = 0.0) -> BloomFilter:
    """Build a filter over the keys of ``block``."""
    return build_bloom_filter((entry.key for entry in block), false_positive_rate)


def encode_bloom_filter(bloom: BloomFilter) -> bytes:
    """Encode a bloom filter into bytes."""
    return bloom.to_bytes()


def decode_bloom_filter(data: bytes) -> BloomFilter:
    """Decode a bloom filter from bytes."""
    return BloomFilter.from_bytes(data)