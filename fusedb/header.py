"""Segment header: creation-time metadata stored at the start of a segment file."""

from __future__ import annotations

import enum
import struct
import zlib
from dataclasses import dataclass

HEADER_MAGIC = b"FHDR"
HEADER_FORMAT_VERSION = 3

_HEADER = struct.Struct("<4sIQIII")
HEADER_SIZE = _HEADER.size

_MAX_U32 = 0xFFFFFFFF
_MAX_U64 = 0xFFFFFFFFFFFFFFFF


class SegmentError(Exception):
    """Error raised by the segment layer for invalid or corrupt segment data."""


class CompressionKind(enum.IntEnum):
    """How all blocks inside one segment are stored.

    Compression is segment-wide: either every block is raw or every block is
    compressed with the same strategy.
    """

    NONE = 0
    ZSTD_DICT = 1


@dataclass(frozen=True)
class Header:
    """Segment metadata known before any block is written.

    Section offsets live in the footer.
    """

    version: int = 0
    compression: CompressionKind | int = CompressionKind.NONE
    dictionary_id: int = 0

    def __post_init__(self) -> None:
        try:
            kind = CompressionKind(self.compression)
        except ValueError:
            return
        object.__setattr__(self, "compression", kind)

    @property
    def compressed(self) -> bool:
        """Whether the segment stores compressed blocks."""
        return self.compression != CompressionKind.NONE

    def validate(self) -> None:
        """Check header invariants, raising SegmentError when one is broken."""
        if self.compression == CompressionKind.NONE:
            if self.dictionary_id != 0:
                raise SegmentError("unexpected dictionary id for raw segment")
        elif self.compression == CompressionKind.ZSTD_DICT:
            if self.dictionary_id == 0:
                raise SegmentError("missing dictionary id for compressed segment")
        else:
            raise SegmentError(f"invalid compression kind: {int(self.compression)}")

    def to_bytes(self) -> bytes:
        """Encode the header into its stable on-disk form."""
        self.validate()
        if not 0 <= self.version <= _MAX_U64:
            raise SegmentError(f"segment version {self.version} out of range")
        if not 0 <= self.dictionary_id <= _MAX_U32:
            raise SegmentError(f"dictionary id {self.dictionary_id} out of range")
        body = _HEADER.pack(
            HEADER_MAGIC,
            HEADER_FORMAT_VERSION,
            self.version,
            int(self.compression),
            self.dictionary_id,
            0,
        )[:-4]
        return body + struct.pack("<I", zlib.crc32(body))

    @classmethod
    def from_bytes(cls, data: bytes) -> Header:
        """Decode a header from its stable on-disk form."""
        data = bytes(data)
        if len(data) < HEADER_SIZE:
            raise SegmentError("short header buffer")
        magic, fmt_version, version, kind, dict_id, checksum = _HEADER.unpack_from(data)
        if magic != HEADER_MAGIC:
            raise SegmentError("header magic mismatch")
        if fmt_version != HEADER_FORMAT_VERSION:
            raise SegmentError(f"unsupported header version: {fmt_version}")
        if zlib.crc32(data[:HEADER_SIZE - 4]) != checksum:
            raise SegmentError("header checksum mismatch")
        header = cls(version=version, compression=kind, dictionary_id=dict_id)
        header.validate()
        return header


def encode_header(header: Header) -> bytes:
    """Encode a header into bytes."""
    return header.to_bytes()


def decode_header(data: bytes) -> Header:
    """Decode a header from bytes."""
    return Header.from_bytes(data)