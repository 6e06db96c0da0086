"""Point lookups and ordered iteration over one frozen segment."""

from __future__ import annotations

from collections.abc import Iterator

from fusedb.block import Block, BlockEntry, decode_block
from fusedb.compression import CompressionError, Dictionary, Registry
from fusedb.disk import FileSystem
from fusedb.header import CompressionKind, SegmentError
from fusedb.index import BlockIndexEntry
from fusedb.segment import Segment, open_segment


class Reader:
    """Binds a frozen segment to the dictionary its blocks need, if any."""

    def __init__(self, segment: Segment, registry: Registry | None = None) -> None:
        if segment is None:
            raise SegmentError("nil segment")
        if not segment.frozen:
            raise SegmentError("segment is not frozen")
        self._segment = segment
        self._dictionary: Dictionary | None = None
        if segment.header.compression == CompressionKind.ZSTD_DICT:
            if registry is None:
                raise SegmentError("missing dictionary registry for compressed segment")
            self._dictionary = registry.must_get(segment.header.dictionary_id)

    @classmethod
    def open(cls, fs: FileSystem, path: str, registry: Registry | None = None) -> Reader:
        """Load a segment from ``path`` and bind a reader to it."""
        return cls(open_segment(fs, path), registry)

    @property
    def segment(self) -> Segment:
        """The frozen segment backing this reader."""
        return self._segment

    def may_contain(self, key: bytes) -> bool:
        """Check the segment-wide bloom filter."""
        return self._segment.bloom.may_contain(key)

    def get(self, key: bytes) -> bytes | None:
        """Return the value stored for ``key``, or None when it is absent."""
        key = bytes(key)
        if not self._segment.bloom.may_contain(key):
            return None
        found = self._segment.index.find_block(key)
        if found is None:
            return None
        entry, _ = found
        return self.read_block(entry).find(key)

    def read_block(self, entry: BlockIndexEntry) -> Block:
        """Read, decompress if needed and decode the block ``entry`` points at."""
        payload = self._segment.read_block_payload(entry)
        if self._segment.header.compression == CompressionKind.ZSTD_DICT:
            assert self._dictionary is not None
            try:
                payload = self._dictionary.decompress(payload)
            except CompressionError as exc:
                raise SegmentError(f"decompress block: {exc}") from exc
        try:
            return decode_block(payload)
        except SegmentError as exc:
            raise SegmentError(f"decode block: {exc}") from exc

    def iterator(self) -> SegmentIterator:
        """Return an ordered iterator over the segment's entries."""
        return SegmentIterator(self)

    def __iter__(self) -> Iterator[BlockEntry]:
        with self.iterator() as it:
            yield from it

    def __repr__(self) -> str:
        return f"Reader({self._segment!r})"


class SegmentIterator:
    """Cursor over the entries of one frozen segment in key order.

    ``first``, ``seek`` and ``advance`` return whether the cursor points at an
    entry. A read or decode failure is raised once, recorded in ``error`` and
    leaves the cursor unusable.
    """

    def __init__(self, reader: Reader) -> None:
        self._reader: Reader | None = reader
        self._block = Block()
        self._block_index = -1
        self._entry_index = -1
        self._valid = False
        self._closed = False
        self._error: Exception | None = None

    @property
    def valid(self) -> bool:
        """Whether the cursor currently points at an entry."""
        return self._valid and self._error is None and not self._closed

    @property
    def error(self) -> Exception | None:
        """The first read or decode error observed, if any."""
        return self._error

    @property
    def key(self) -> bytes | None:
        """Current key, or None when the cursor is not valid."""
        current = self.entry()
        return current.key if current is not None else None

    @property
    def value(self) -> bytes | None:
        """Current value, or None when the cursor is not valid."""
        current = self.entry()
        return current.value if current is not None else None

    def entry(self) -> BlockEntry | None:
        """Return the current entry, or None when the cursor is not valid."""
        if not self.valid:
            return None
        return self._block.entry(self._entry_index)

    def first(self) -> bool:
        """Move to the first entry of the segment."""
        if not self._ready():
            return False
        return self._load_block(0, 0)

    def seek(self, target: bytes) -> bool:
        """Move to the first entry whose key is >= ``target``."""
        if not self._ready():
            return False
        assert self._reader is not None
        target = bytes(target)
        index = self._reader.segment.index
        block_index = index.find_block_index(target)
        if block_index == -1:
            self._invalidate()
            return False
        index_entry = index.entry(block_index)
        if index_entry is None:
            self._invalidate()
            return False
        block = self._read(index_entry)
        entry_index = block.lower_bound(target)
        if entry_index >= len(block):
            return self._load_block(block_index + 1, 0)
        self._set(block, block_index, entry_index)
        return True

    def advance(self) -> bool:
        """Move to the next entry."""
        if not self._ready() or not self._valid:
            return False
        next_entry = self._entry_index + 1
        if next_entry < len(self._block):
            self._entry_index = next_entry
            return True
        return self._load_block(self._block_index + 1, 0)

    def close(self) -> None:
        """Release the iterator's state."""
        self._closed = True
        self._invalidate()
        self._reader = None

    def __enter__(self) -> SegmentIterator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __iter__(self) -> Iterator[BlockEntry]:
        ok = self.first()
        while ok:
            current = self.entry()
            assert current is not None
            yield current
            ok = self.advance()

    def _ready(self) -> bool:
        return not self._closed and self._error is None and self._reader is not None

    def _read(self, index_entry: BlockIndexEntry) -> Block:
        assert self._reader is not None
        try:
            return self._reader.read_block(index_entry)
        except Exception as exc:
            self._error = exc
            self._invalidate()
            raise

    def _load_block(self, block_index: int, entry_index: int) -> bool:
        assert self._reader is not None
        index = self._reader.segment.index
        while block_index < len(index):
            index_entry = index.entry(block_index)
            if index_entry is None:
                break
            block = self._read(index_entry)
            if entry_index < len(block):
                self._set(block, block_index, entry_index)
                return True
            block_index += 1
            entry_index = 0
        self._invalidate()
        return False

    def _set(self, block: Block, block_index: int, entry_index: int) -> None:
        self._block = block
        self._block_index = block_index
        self._entry_index = entry_index
        self._valid = True

    def _invalidate(self) -> None:
        self._valid = False
        self._block_index = -1
        self._entry_index = -1
        self._block = Block()


def open_reader(fs: FileSystem, path: str, registry: Registry | None = None) -> Reader:
    """Load one segment from a file and bind a reader to it."""
    return Reader.open(fs, path, registry)