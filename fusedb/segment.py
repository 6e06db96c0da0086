"""Immutable on-disk segments: writing, freezing and opening segment files."""

from __future__ import annotations

import os
import sys

from fusedb.block import BLOCK_CHECKSUM_SIZE, BLOCK_ENTRY_HEADER_SIZE, BLOCK_HEADER_SIZE, Block, BlockEntry
from fusedb.bloom import DEFAULT_FALSE_POSITIVE_RATE, BloomFilter, decode_bloom_filter
from fusedb.compression import CompressionError, Dictionary
from fusedb.disk import File, FileSystem
from fusedb.footer import FOOTER_SIZE, Footer, Section, decode_footer
from fusedb.header import HEADER_SIZE, CompressionKind, Header, SegmentError, decode_header
from fusedb.index import BlockIndexEntry, Index, decode_index

SEGMENT_FILE_EXT = ".seg"
SEGMENT_TMP_EXT = ".tmp"

DEFAULT_TARGET_BLOCK_SIZE = 4 << 10
DEFAULT_BLOOM_FALSE_POSITIVE_RATE = DEFAULT_FALSE_POSITIVE_RATE
MIN_TARGET_BLOCK_SIZE = BLOCK_HEADER_SIZE + BLOCK_CHECKSUM_SIZE + 4

_EMPTY_BLOCK_SIZE = BLOCK_HEADER_SIZE + BLOCK_CHECKSUM_SIZE
_MAX_U32 = 0xFFFFFFFF
_MAX_I64 = (1 << 63) - 1


def segment_file_name(directory: str, segment_id: int, version: int) -> str:
    """Return the final file name of one segment version."""
    return os.path.join(directory, f"segment-{segment_id:020d}-v{version:020d}{SEGMENT_FILE_EXT}")


def segment_temp_file_name(directory: str, segment_id: int, version: int) -> str:
    """Return the temporary file name used while a segment is being written."""
    return segment_file_name(directory, segment_id, version) + SEGMENT_TMP_EXT


def _read_full_at(handle: File, offset: int, size: int, what: str) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = handle.read_at(size - len(buf), offset + len(buf))
        if not chunk:
            break
        buf += chunk
    if len(buf) != size:
        raise SegmentError(f"read {what}: unexpected end of file")
    return bytes(buf)


def _read_section_from(handle: File, section: Section, what: str) -> bytes:
    if section.length == 0:
        return b""
    if section.length > sys.maxsize or section.offset > _MAX_I64:
        raise SegmentError("section too large")
    return _read_full_at(handle, section.offset, section.length, what)


def _validate_layout(file_size: int, footer: Footer) -> None:
    try:
        footer.validate()
    except SegmentError as exc:
        raise SegmentError(f"validate footer: {exc}") from exc
    data_end = footer.data.end_offset()
    bloom_end = footer.bloom.end_offset()
    index_end = footer.index.end_offset()
    if footer.data.offset < HEADER_SIZE:
        raise SegmentError("corrupt segment layout")
    if footer.bloom.offset != data_end:
        raise SegmentError("corrupt segment layout")
    if footer.index.offset != bloom_end:
        raise SegmentError("corrupt segment layout")
    if index_end + FOOTER_SIZE != file_size:
        raise SegmentError("corrupt segment layout")


class Segment:
    """A segment that starts mutable and becomes immutable after ``freeze``."""

    def __init__(
        self,
        header: Header,
        *,
        fs: FileSystem | None,
        path: str,
        footer: Footer | None = None,
        index: Index | None = None,
        bloom: BloomFilter | None = None,
        frozen: bool = False,
    ) -> None:
        self.header = header
        self.footer = footer if footer is not None else Footer()
        self.index = index if index is not None else Index()
        self.bloom = bloom if bloom is not None else BloomFilter()
        self._frozen = frozen
        self._fs = fs
        self._path = path
        self._temp_path = ""
        self._file: File | None = None
        self._target_block_size = DEFAULT_TARGET_BLOCK_SIZE
        self._dictionary: Dictionary | None = None
        self._current_block = Block()
        self._current_block_size = _EMPTY_BLOCK_SIZE
        self._last_key = b""
        self._data_length = 0

    @classmethod
    def create(
        cls,
        fs: FileSystem,
        directory: str,
        segment_id: int,
        version: int = 0,
        expected_keys: int = 0,
        target_block_size: int = 0,
        bloom_false_positive: float = 0.0,
        compression: CompressionKind | int = CompressionKind.NONE,
        dictionary: Dictionary | None = None,
    ) -> Segment:
        """Start writing a new segment into a temporary file."""
        if fs is None:
            raise SegmentError("nil filesystem")
        if segment_id == 0:
            raise SegmentError("zero segment id")

        if target_block_size == 0:
            target_block_size = DEFAULT_TARGET_BLOCK_SIZE
        if target_block_size < MIN_TARGET_BLOCK_SIZE:
            raise SegmentError(f"invalid target block size: {target_block_size}")

        if bloom_false_positive == 0:
            bloom_false_positive = DEFAULT_BLOOM_FALSE_POSITIVE_RATE
        try:
            bloom = BloomFilter(expected_keys, bloom_false_positive)
        except SegmentError as exc:
            raise SegmentError(f"create bloom filter: {exc}") from exc

        try:
            kind = CompressionKind(compression)
        except ValueError:
            raise SegmentError(f"invalid compression kind: {int(compression)}") from None
        if kind == CompressionKind.NONE and dictionary is not None:
            raise SegmentError("unexpected compression dictionary for raw segment")
        if kind == CompressionKind.ZSTD_DICT and dictionary is None:
            raise SegmentError("missing compression dictionary")

        final_path = segment_file_name(directory, segment_id, version)
        temp_path = segment_temp_file_name(directory, segment_id, version)
        if directory not in ("", "."):
            fs.mkdir_all(directory)
        try:
            fs.stat(final_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise SegmentError(f"stat final file: {exc}") from exc
        else:
            raise SegmentError(f"final segment file already exists: {final_path}")

        header = Header(
            version=version,
            compression=kind,
            dictionary_id=dictionary.id if kind == CompressionKind.ZSTD_DICT else 0,
        )
        handle = fs.create(temp_path)
        try:
            handle.write(header.to_bytes())
        except BaseException:
            handle.close()
            fs.remove(temp_path)
            raise

        segment = cls(header, fs=fs, path=final_path, bloom=bloom)
        segment._temp_path = temp_path
        segment._file = handle
        segment._target_block_size = target_block_size
        segment._dictionary = dictionary
        return segment

    @property
    def frozen(self) -> bool:
        """Whether the segment was finalized."""
        return self._frozen

    @property
    def path(self) -> str:
        """Final segment file path."""
        return self._path

    def size(self) -> int:
        """Return the current size of the segment file in bytes (0 if unknown)."""
        name = self._path
        if not self._frozen and self._temp_path:
            name = self._temp_path
        if self._fs is None or not name:
            return 0
        try:
            return self._fs.stat(name).size
        except OSError:
            return 0

    def append(self, entry: BlockEntry) -> None:
        """Add one entry; keys must arrive in strictly increasing order."""
        if self._frozen:
            raise SegmentError("segment is frozen")
        if len(self.index) >= _MAX_U32:
            raise SegmentError("too many segment blocks")
        if self._last_key and self._last_key >= entry.key:
            raise SegmentError("segment entries out of order")

        entry_size = BLOCK_ENTRY_HEADER_SIZE + len(entry.key) + len(entry.value) + 4
        if (
            not self._current_block.empty
            and self._current_block_size + entry_size > self._target_block_size
        ):
            self._flush_block()

        self._current_block.add(entry)
        self._current_block_size += entry_size
        self.bloom.add(entry.key)
        self._last_key = entry.key

    def append_kv(self, key: bytes, value: bytes) -> None:
        """Add one sorted key/value pair."""
        self.append(BlockEntry(key, value))

    def freeze(self) -> None:
        """Write the remaining sections, rename the file into place and become immutable."""
        if self._frozen:
            return
        assert self._fs is not None and self._file is not None

        self._flush_block()
        bloom_bytes = self.bloom.to_bytes()
        index_bytes = self.index.to_bytes()

        data_end = HEADER_SIZE + self._data_length
        footer = Footer(
            block_count=len(self.index),
            data=Section(HEADER_SIZE, self._data_length),
            bloom=Section(data_end, len(bloom_bytes)),
            index=Section(data_end + len(bloom_bytes), len(index_bytes)),
        )
        footer_bytes = footer.to_bytes()

        self._file.write(bloom_bytes)
        self._file.write(index_bytes)
        self._file.write(footer_bytes)
        self._file.sync()
        self._file.close()
        self._file = None
        self._fs.rename(self._temp_path, self._path)
        self._fs.sync_dir(os.path.dirname(self._path) or ".")

        self.footer = footer
        self._frozen = True
        self._current_block = Block()
        self._current_block_size = 0
        self._last_key = b""
        self._data_length = 0

    def _flush_block(self) -> None:
        if self._current_block.empty:
            return
        if len(self.index) >= _MAX_U32:
            raise SegmentError("too many segment blocks")
        number = len(self.index)
        payload = self._current_block.to_bytes()
        if self.header.compression == CompressionKind.ZSTD_DICT:
            assert self._dictionary is not None
            try:
                payload = self._dictionary.compress(payload)
            except CompressionError as exc:
                raise SegmentError(f"compress block {number}: {exc}") from exc
        if len(payload) > _MAX_U32:
            raise SegmentError("encoded segment data too large")

        assert self._file is not None
        offset = self._data_length
        self._file.write(payload)
        self._data_length += len(payload)
        self.index.add_block(self._current_block.separator, offset, len(payload))

        self._current_block = Block()
        self._current_block_size = _EMPTY_BLOCK_SIZE

    def read_section(self, section: Section) -> bytes:
        """Read one section of a frozen segment file."""
        if not self._frozen:
            raise SegmentError("segment is not frozen")
        if self._fs is None or not self._path:
            raise SegmentError("nil filesystem")
        if section.length == 0:
            return b""
        with self._fs.open(self._path) as handle:
            return _read_section_from(handle, section, "section")

    def read_block_payload(self, entry: BlockIndexEntry) -> bytes:
        """Read the stored (possibly compressed) bytes of one indexed block."""
        if entry.offset + entry.length > self.footer.data.length:
            raise SegmentError("block points outside data section")
        return self.read_section(Section(self.footer.data.offset + entry.offset, entry.length))

    def __repr__(self) -> str:
        return f"Segment(path={self._path!r}, frozen={self._frozen}, blocks={len(self.index)})"


def open_segment(fs: FileSystem, path: str) -> Segment:
    """Load one frozen segment from a finalized file."""
    if fs is None:
        raise SegmentError("nil filesystem")

    with fs.open(path) as handle:
        file_size = handle.stat().size
        if file_size < HEADER_SIZE + FOOTER_SIZE:
            raise SegmentError("short segment file")

        header_bytes = _read_full_at(handle, 0, HEADER_SIZE, "header")
        try:
            header = decode_header(header_bytes)
        except SegmentError as exc:
            raise SegmentError(f"decode header: {exc}") from exc

        footer_bytes = _read_full_at(handle, file_size - FOOTER_SIZE, FOOTER_SIZE, "footer")
        try:
            footer = decode_footer(footer_bytes)
        except SegmentError as exc:
            raise SegmentError(f"decode footer: {exc}") from exc
        _validate_layout(file_size, footer)

        index_bytes = _read_section_from(handle, footer.index, "index")
        try:
            index = decode_index(index_bytes)
        except SegmentError as exc:
            raise SegmentError(f"decode index: {exc}") from exc
        if len(index) != footer.block_count:
            raise SegmentError("block count mismatch")

        bloom_bytes = _read_section_from(handle, footer.bloom, "bloom filter")
        try:
            bloom = decode_bloom_filter(bloom_bytes)
        except SegmentError as exc:
            raise SegmentError(f"decode bloom filter: {exc}") from exc

    return Segment(header, fs=fs, path=path, footer=footer, index=index, bloom=bloom, frozen=True)