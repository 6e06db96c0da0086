"""64-bit hashing helpers: XXH64, splitmix64 and the bloom-filter hash pair."""

from __future__ import annotations

import struct

_MASK = 0xFFFFFFFFFFFFFFFF

_P1 = 11400714785074694791
_P2 = 14029467366897019727
_P3 = 1609587929392839161
_P4 = 9650029242287828579
_P5 = 2870177450012600261

GOLDEN_GAMMA = 0x9E3779B97F4A7C15


def _rotl(x: int, r: int) -> int:
    return ((x << r) | (x >> (64 - r))) & _MASK


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK
    return (_rotl(acc, 31) * _P1) & _MASK


def _merge(acc: int, value: int) -> int:
    acc ^= _round(0, value)
    return (acc * _P1 + _P4) & _MASK


def xxhash64(data: bytes, seed: int = 0) -> int:
    """Return the XXH64 digest of ``data`` as an unsigned 64-bit integer."""
    data = bytes(data)
    length = len(data)
    seed &= _MASK
    pos = 0

    if length >= 32:
        v1 = (seed + _P1 + _P2) & _MASK
        v2 = (seed + _P2) & _MASK
        v3 = seed
        v4 = (seed - _P1) & _MASK
        stripes_end = length - length % 32
        for a, b, c, d in struct.iter_unpack("<4Q", data[:stripes_end]):
            v1 = _round(v1, a)
            v2 = _round(v2, b)
            v3 = _round(v3, c)
            v4 = _round(v4, d)
        h = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & _MASK
        for v in (v1, v2, v3, v4):
            h = _merge(h, v)
        pos = stripes_end
    else:
        h = (seed + _P5) & _MASK

    h = (h + length) & _MASK

    while length - pos >= 8:
        (lane,) = struct.unpack_from("<Q", data, pos)
        h ^= _round(0, lane)
        h = (_rotl(h, 27) * _P1 + _P4) & _MASK
        pos += 8

    if length - pos >= 4:
        (word,) = struct.unpack_from("<I", data, pos)
        h ^= (word * _P1) & _MASK
        h = (_rotl(h, 23) * _P2 + _P3) & _MASK
        pos += 4

    for byte in data[pos:]:
        h ^= (byte * _P5) & _MASK
        h = (_rotl(h, 11) * _P1) & _MASK

    h ^= h >> 33
    h = (h * _P2) & _MASK
    h ^= h >> 29
    h = (h * _P3) & _MASK
    h ^= h >> 32
    return h


def splitmix64(x: int) -> int:
    """Return the splitmix64 mix of ``x`` (one generator step from state ``x``)."""
    x = (x + GOLDEN_GAMMA) & _MASK
    x = ((x ^ (x >> 30)) * 0xBF58476D1CE4E5B9) & _MASK
    x = ((x ^ (x >> 27)) * 0x94D049BB133111EB) & _MASK
    return x ^ (x >> 31)


def bloom_hashes(key: bytes) -> tuple[int, int]:
    """Return the two base hashes used for double hashing in bloom filters."""
    h1 = xxhash64(key)
    h2 = splitmix64(h1 ^ GOLDEN_GAMMA)
    if h2 == 0:
        h2 = GOLDEN_GAMMA
    return h1, h2