"""Sorted key/value blocks and their raw on-disk encoding."""

from __future__ import annotations

import bisect
import struct
import zlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from fusedb.header import SegmentError
from fusedb.index import BlockIndexEntry, Index

BLOCK_MAGIC = b"FBLK"
BLOCK_FORMAT_VERSION = 1

_HEADER = struct.Struct("<4sII")
BLOCK_HEADER_SIZE = _HEADER.size
BLOCK_ENTRY_HEADER_SIZE = 4 + 4
BLOCK_CHECKSUM_SIZE = 4

_ENTRY_HEADER = struct.Struct("<II")
_U32 = struct.Struct("<I")
_MAX_U32 = 0xFFFFFFFF


@dataclass(frozen=True)
class BlockEntry:
    """One materialized key/value pair inside a segment block."""

    key: bytes
    value: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", bytes(self.key))
        object.__setattr__(self, "value", bytes(self.value))


class Block:
    """A sorted collection of materialized entries with strictly increasing keys."""

    def __init__(self, entries: Iterable[BlockEntry] = ()) -> None:
        self._entries: list[BlockEntry] = []
        for entry in entries:
            self.add(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BlockEntry]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Block):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Block({self._entries!r})"

    @property
    def empty(self) -> bool:
        """Whether the block has no entries."""
        return not self._entries

    @property
    def entries(self) -> tuple[BlockEntry, ...]:
        """Read-only view of the entries."""
        return tuple(self._entries)

    @property
    def separator(self) -> bytes | None:
        """Inclusive upper bound key of the block, or None when empty."""
        return self._entries[-1].key if self._entries else None

    def entry(self, i: int) -> BlockEntry | None:
        """Return the entry at position ``i``, or None when out of range."""
        if 0 <= i < len(self._entries):
            return self._entries[i]
        return None

    def add(self, entry: BlockEntry) -> None:
        """Append one validated entry."""
        if not entry.key:
            raise SegmentError("empty block key")
        if self._entries and self._entries[-1].key >= entry.key:
            raise SegmentError("block entries out of order")
        self._entries.append(entry)

    def add_kv(self, key: bytes, value: bytes) -> None:
        """Append one validated key/value pair."""
        self.add(BlockEntry(key, value))

    def lower_bound(self, key: bytes) -> int:
        """Return the position of the first entry whose key is >= ``key``."""
        return bisect.bisect_left(self._entries, bytes(key), key=lambda e: e.key)

    def find(self, key: bytes) -> bytes | None:
        """Return the value stored for ``key`` exactly, or None."""
        key = bytes(key)
        pos = self.lower_bound(key)
        if pos < len(self._entries) and self._entries[pos].key == key:
            return self._entries[pos].value
        return None

    def encoded_len(self) -> int:
        """Return the size of the raw encoding in bytes."""
        if len(self._entries) > _MAX_U32:
            raise SegmentError("too many block entries")
        total = BLOCK_HEADER_SIZE + BLOCK_CHECKSUM_SIZE + 4 * len(self._entries)
        for entry in self._entries:
            if len(entry.key) > _MAX_U32 or len(entry.value) > _MAX_U32:
                raise SegmentError("block too large")
            total += BLOCK_ENTRY_HEADER_SIZE + len(entry.key) + len(entry.value)
        return total

    def to_bytes(self) -> bytes:
        """Encode the block into its raw on-disk form."""
        self.encoded_len()
        out = bytearray(_HEADER.pack(BLOCK_MAGIC, BLOCK_FORMAT_VERSION, len(self._entries)))
        offsets = []
        for entry in self._entries:
            offsets.append(len(out))
            out += _ENTRY_HEADER.pack(len(entry.key), len(entry.value))
            out += entry.key
            out += entry.value
        out += struct.pack(f"<{len(offsets)}I", *offsets)
        out += _U32.pack(zlib.crc32(out))
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> Block:
        """Decode a block from its raw on-disk form."""
        data = bytes(data)
        if len(data) < BLOCK_HEADER_SIZE + BLOCK_CHECKSUM_SIZE:
            raise SegmentError("short block buffer")
        magic, version, count = _HEADER.unpack_from(data)
        if magic != BLOCK_MAGIC:
            raise SegmentError("block magic mismatch")
        if version != BLOCK_FORMAT_VERSION:
            raise SegmentError(f"unsupported block version: {version}")

        offsets_size = count * 4
        if len(data) < BLOCK_HEADER_SIZE + offsets_size + BLOCK_CHECKSUM_SIZE:
            raise SegmentError("short block buffer")

        checksum_pos = len(data) - BLOCK_CHECKSUM_SIZE
        offsets_pos = checksum_pos - offsets_size
        if offsets_pos < BLOCK_HEADER_SIZE:
            raise SegmentError("corrupt block offsets")

        (want,) = _U32.unpack_from(data, checksum_pos)
        if zlib.crc32(data[:checksum_pos]) != want:
            raise SegmentError("block checksum mismatch")

        offsets = list(struct.unpack_from(f"<{count}I", data, offsets_pos))
        bounds = offsets[1:] + [offsets_pos]
        block = cls()
        for offset, nxt in zip(offsets, bounds):
            if (
                offset < BLOCK_HEADER_SIZE
                or offset >= offsets_pos
                or nxt <= offset
                or nxt > offsets_pos
            ):
                raise SegmentError("corrupt block offsets")
            if nxt - offset < BLOCK_ENTRY_HEADER_SIZE:
                raise SegmentError("short block buffer")
            key_len, value_len = _ENTRY_HEADER.unpack_from(data, offset)
            pos = offset + BLOCK_ENTRY_HEADER_SIZE
            if pos + key_len + value_len != nxt:
                raise SegmentError("short block buffer")
            key = data[pos:pos + key_len]
            value = data[pos + key_len:nxt]
            block.add(BlockEntry(key, value))
        return block


def encode_block(block: Block) -> bytes:
    """Encode one raw block."""
    return block.to_bytes()


def decode_block(data: bytes) -> Block:
    """Decode one raw block."""
    return Block.from_bytes(data)


def encode_blocks(blocks: Iterable[Block]) -> tuple[bytes, Index]:
    """Pack blocks into one blob and return it with an index keyed by separator."""
    index = Index()
    out = bytearray()
    for block in blocks:
        if block.empty:
            raise SegmentError("empty block separator")
        encoded = block.to_bytes()
        offset = len(out)
        out += encoded
        index.add_block(block.separator, offset, len(encoded))
    return bytes(out), index


def decode_indexed_block(data: bytes, entry: BlockIndexEntry) -> Block:
    """Decode the block slice that ``entry`` points at inside ``data``."""
    start = entry.offset
    end = start + entry.length
    if start < 0 or end > len(data) or start > end:
        raise SegmentError("block range out of bounds")
    return decode_block(data[start:end])