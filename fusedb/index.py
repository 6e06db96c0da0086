"""Block index of one immutable segment and its on-disk encoding."""

from __future__ import annotations

import bisect
import struct
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from fusedb.header import SegmentError

_MAX_U32 = 0xFFFFFFFF
_MAX_U64 = 0xFFFFFFFFFFFFFFFF
_COUNT = struct.Struct("<I")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_ENTRY_OVERHEAD = 4 + 8 + 4


@dataclass(frozen=True)
class BlockIndexEntry:
    """Maps a key range to a block inside a segment file.

    The separator is an inclusive upper bound for the block's keys.
    """

    separator: bytes
    offset: int
    length: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "separator", bytes(self.separator))

    def end_offset(self) -> int:
        """Return the first byte after the block payload."""
        return self.offset + self.length


class Index:
    """In-memory block index for a single immutable segment."""

    def __init__(self, entries: Iterable[BlockIndexEntry] = ()) -> None:
        self._entries: list[BlockIndexEntry] = []
        for entry in entries:
            self.add(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BlockIndexEntry]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Index):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Index({self._entries!r})"

    @property
    def entries(self) -> tuple[BlockIndexEntry, ...]:
        """Read-only view of the entries."""
        return tuple(self._entries)

    def entry(self, i: int) -> BlockIndexEntry | None:
        """Return the entry at position ``i``, or None when out of range."""
        if 0 <= i < len(self._entries):
            return self._entries[i]
        return None

    def add(self, entry: BlockIndexEntry) -> None:
        """Append a validated block entry."""
        if not entry.separator:
            raise SegmentError("empty block separator")
        if entry.length == 0:
            raise SegmentError("zero block length")
        if not 0 < entry.length <= _MAX_U32:
            raise SegmentError(f"block length {entry.length} out of range")
        if not 0 <= entry.offset <= _MAX_U64:
            raise SegmentError(f"block offset {entry.offset} out of range")
        if self._entries:
            prev = self._entries[-1]
            if prev.separator > entry.separator:
                raise SegmentError("block index out of order")
            if prev.end_offset() > entry.offset:
                raise SegmentError("block index has overlapping blocks")
        self._entries.append(entry)

    def add_block(self, separator: bytes, offset: int, length: int) -> None:
        """Append block metadata."""
        self.add(BlockIndexEntry(separator, offset, length))

    def reset(self) -> None:
        """Remove all entries."""
        self._entries.clear()

    def find_block_index(self, key: bytes) -> int:
        """Return the position of the first block whose separator is >= ``key``, or -1."""
        pos = bisect.bisect_left(self._entries, bytes(key), key=lambda e: e.separator)
        return pos if pos < len(self._entries) else -1

    def find_block(self, key: bytes) -> tuple[BlockIndexEntry, int] | None:
        """Return ``(entry, position)`` of the block that may hold ``key``, or None."""
        pos = self.find_block_index(key)
        if pos == -1:
            return None
        return self._entries[pos], pos

    def encoded_len(self) -> int:
        """Return the encoded size of the index in bytes."""
        if len(self._entries) > _MAX_U32:
            raise SegmentError("index too large")
        total = _COUNT.size
        for entry in self._entries:
            if len(entry.separator) > _MAX_U32:
                raise SegmentError("separator too large")
            total += _ENTRY_OVERHEAD + len(entry.separator)
        return total

    def to_bytes(self) -> bytes:
        """Encode the index into its stable on-disk form."""
        self.encoded_len()
        out = bytearray(_COUNT.pack(len(self._entries)))
        for entry in self._entries:
            out += _U32.pack(len(entry.separator))
            out += entry.separator
            out += _U64.pack(entry.offset)
            out += _U32.pack(entry.length)
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> Index:
        """Decode on-disk bytes into a validated index."""
        data = bytes(data)
        if len(data) < _COUNT.size:
            raise SegmentError("short index buffer: missing entry count")
        (count,) = _COUNT.unpack_from(data)
        pos = _COUNT.size
        entries: list[BlockIndexEntry] = []

        for i in range(count):
            if len(data) - pos < 4:
                raise SegmentError(f"short index buffer: entry {i} missing separator length")
            (sep_len,) = _U32.unpack_from(data, pos)
            pos += 4
            if len(data) - pos < sep_len:
                raise SegmentError(f"short index buffer: entry {i} truncated separator")
            separator = data[pos:pos + sep_len]
            pos += sep_len
            if len(data) - pos < 8:
                raise SegmentError(f"short index buffer: entry {i} missing offset")
            (offset,) = _U64.unpack_from(data, pos)
            pos += 8
            if len(data) - pos < 4:
                raise SegmentError(f"short index buffer: entry {i} missing length")
            (length,) = _U32.unpack_from(data, pos)
            pos += 4
            entries.append(BlockIndexEntry(separator, offset, length))

        if pos != len(data):
            raise SegmentError(f"trailing index bytes: {len(data) - pos} extra bytes")

        try:
            return cls(entries)
        except SegmentError as exc:
            raise SegmentError(f"corrupt index: {exc}") from exc


def encode_index(index: Index) -> bytes:
    """Encode an index into bytes."""
    return index.to_bytes()


def decode_index(data: bytes) -> Index:
    """Decode an index from bytes."""
    return Index.from_bytes(data)