"""Segment footer: section layout appended after all payload sections."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, field

from fusedb.header import SegmentError

FOOTER_MAGIC = b"FFTR"
FOOTER_FORMAT_VERSION = 1

_FOOTER = struct.Struct("<4sIIQQQQQQI")
FOOTER_SIZE = _FOOTER.size

_MAX_U32 = 0xFFFFFFFF
_MAX_U64 = 0xFFFFFFFFFFFFFFFF


@dataclass(frozen=True)
class Section:
    """One contiguous byte range in a segment file."""

    offset: int = 0
    length: int = 0

    @property
    def empty(self) -> bool:
        """Whether the section is absent."""
        return self.offset == 0 and self.length == 0

    def end_offset(self) -> int:
        """Return the first byte after the section payload."""
        if self.offset < 0 or self.length < 0 or self.offset > _MAX_U64 - self.length:
            raise SegmentError("section offset overflow")
        return self.offset + self.length

    def __str__(self) -> str:
        return f"{{Offset:{self.offset} Length:{self.length}}}"


@dataclass(frozen=True)
class Footer:
    """Final segment metadata describing where each section lives."""

    block_count: int = 0
    data: Section = field(default_factory=Section)
    bloom: Section = field(default_factory=Section)
    index: Section = field(default_factory=Section)

    def validate(self) -> None:
        """Check footer invariants, raising SegmentError when one is broken."""
        for section in (self.data, self.bloom, self.index):
            section.end_offset()

    def to_bytes(self) -> bytes:
        """Encode the footer into its stable on-disk form."""
        self.validate()
        if not 0 <= self.block_count <= _MAX_U32:
            raise SegmentError(f"block count {self.block_count} out of range")
        body = _FOOTER.pack(
            FOOTER_MAGIC,
            FOOTER_FORMAT_VERSION,
            self.block_count,
            self.data.offset,
            self.data.length,
            self.bloom.offset,
            self.bloom.length,
            self.index.offset,
            self.index.length,
            0,
        )[:-4]
        return body + struct.pack("<I", zlib.crc32(body))

    @classmethod
    def from_bytes(cls, data: bytes) -> Footer:
        """Decode a footer from its stable on-disk form."""
        data = bytes(data)
        if len(data) < FOOTER_SIZE:
            raise SegmentError("short footer buffer")
        (
            magic,
            version,
            block_count,
            data_offset,
            data_length,
            bloom_offset,
            bloom_length,
            index_offset,
            index_length,
            checksum,
        ) = _FOOTER.unpack_from(data)
        if magic != FOOTER_MAGIC:
            raise SegmentError("footer magic mismatch")
        if version != FOOTER_FORMAT_VERSION:
            raise SegmentError(f"unsupported footer version: {version}")
        if zlib.crc32(data[:FOOTER_SIZE - 4]) != checksum:
            raise SegmentError("footer checksum mismatch")
        footer = cls(
            block_count=block_count,
            data=Section(data_offset, data_length),
            bloom=Section(bloom_offset, bloom_length),
            index=Section(index_offset, index_length),
        )
        footer.validate()
        return footer

    def __str__(self) -> str:
        return f"blocks={self.block_count} data={self.data} bloom={self.bloom} index={self.index}"


def encode_footer(footer: Footer) -> bytes:
    """Encode a footer into bytes."""
    return footer.to_bytes()


def decode_footer(data: bytes) -> Footer:
    """Decode a footer from bytes."""
    return Footer.from_bytes(data)