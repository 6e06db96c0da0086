"""Dictionary-based zstd block compression, dictionary files and a dictionary registry."""

from __future__ import annotations

import os
import struct
import threading
import zlib
from collections import OrderedDict
from collections.abc import Iterable

import zstandard

from fusedb.disk import FileSystem, read_file, write_file_atomically

MIN_DICTIONARY_SIZE = 8
DEFAULT_DICTIONARY_SIZE = 64 << 10
DEFAULT_ZSTD_LEVEL = 3

_FILE_MAGIC = b"FDDC"
_FILE_VERSION = 1
_FILE_HEADER = struct.Struct("<4sIIIII")
_MAX_U32 = 0xFFFFFFFF


class CompressionError(Exception):
    """Base error of the compression layer."""


class DictionaryNotFoundError(CompressionError):
    """No dictionary is registered under the requested id."""


class DuplicateDictionaryError(CompressionError):
    """A different dictionary is already registered under the same id."""


class DictionaryClosedError(CompressionError):
    """The dictionary was closed and can no longer encode or decode."""


class DictionaryStorageError(CompressionError):
    """The registry has no backing storage."""


class DictionaryIdMismatchError(CompressionError):
    """A dictionary file holds a dictionary with another id."""


class DictionaryFormatError(CompressionError):
    """A dictionary file is truncated, malformed or of an unknown version."""


class DictionaryChecksumError(DictionaryFormatError):
    """A dictionary file's checksum does not match its contents."""


def _check_id(dict_id: int) -> None:
    if dict_id == 0:
        raise ValueError("dictionary id must be non-zero")
    if not 0 < dict_id <= _MAX_U32:
        raise ValueError(f"dictionary id {dict_id} out of range")


class Dictionary:
    """Immutable wrapper around one zstd dictionary, safe for concurrent use.

    The same dictionary bytes must be used for compression and decompression.
    """

    def __init__(self, dict_id: int, raw: bytes, level: int = DEFAULT_ZSTD_LEVEL) -> None:
        _check_id(dict_id)
        raw = bytes(raw)
        if not raw:
            raise ValueError("empty dictionary")
        if level == 0:
            level = DEFAULT_ZSTD_LEVEL

        try:
            zdict = zstandard.ZstdCompressionDict(raw, dict_type=zstandard.DICT_TYPE_AUTO)
            compressor = zstandard.ZstdCompressor(level=level, dict_data=zdict)
            decompressor = zstandard.ZstdDecompressor(dict_data=zdict)
        except zstandard.ZstdError as exc:
            raise CompressionError(f"create zstd codec: {exc}") from exc

        self._id = dict_id
        self._raw = raw
        self._level = level
        self._lock = threading.Lock()
        self._compressor: zstandard.ZstdCompressor | None = compressor
        self._decompressor: zstandard.ZstdDecompressor | None = decompressor

    @property
    def id(self) -> int:
        """Stable dictionary identifier."""
        return self._id

    @property
    def level(self) -> int:
        """Configured encoder level."""
        return self._level

    @property
    def raw(self) -> bytes:
        """Raw dictionary bytes."""
        return self._raw

    @property
    def closed(self) -> bool:
        """Whether the codec resources were released."""
        return self._compressor is None

    def compress(self, src: bytes) -> bytes:
        """Encode one independent block with the dictionary."""
        with self._lock:
            if self._compressor is None:
                raise DictionaryClosedError("dictionary closed")
            return self._compressor.compress(bytes(src))

    def decompress(self, src: bytes) -> bytes:
        """Decode one independent block with the dictionary."""
        with self._lock:
            if self._decompressor is None:
                raise DictionaryClosedError("dictionary closed")
            try:
                return self._decompressor.decompressobj().decompress(bytes(src))
            except zstandard.ZstdError as exc:
                raise CompressionError(f"decode zstd block: {exc}") from exc

    def close(self) -> None:
        """Release codec resources."""
        with self._lock:
            self._compressor = None
            self._decompressor = None

    def __enter__(self) -> Dictionary:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Dictionary(id={self._id}, level={self._level}, size={len(self._raw)})"


def _normalize_samples(samples: Iterable[bytes]) -> list[bytes]:
    return [bytes(sample) for sample in samples if sample]


def _make_history(size: int, samples: list[bytes]) -> bytes:
    history = bytearray()
    for sample in samples:
        remain = size - len(history)
        if remain <= 0:
            break
        history += sample[:remain]
    return bytes(history)


def train_dictionary(
    dict_id: int,
    samples: Iterable[bytes],
    size: int = 0,
    level: int = 0,
    compat_v155: bool = False,
) -> bytes:
    """Build raw dictionary bytes from representative samples.

    The result is a raw-content dictionary made of the samples' leading bytes,
    at most ``size`` long. ``level`` and ``compat_v155`` do not change the
    bytes produced; the level is applied when the dictionary is opened.
    """
    _check_id(dict_id)
    if size == 0:
        size = DEFAULT_DICTIONARY_SIZE
    if size < MIN_DICTIONARY_SIZE:
        raise ValueError(f"dictionary size {size} < {MIN_DICTIONARY_SIZE}")

    normalized = _normalize_samples(samples)
    if not normalized:
        raise ValueError("no samples provided")

    history = _make_history(size, normalized)
    if len(history) < MIN_DICTIONARY_SIZE:
        raise ValueError(f"dictionary history {len(history)} < {MIN_DICTIONARY_SIZE}")
    return history


def pretrain_dictionary(
    dict_id: int,
    samples: Iterable[bytes],
    size: int = 0,
    level: int = 0,
    compat_v155: bool = False,
) -> Dictionary:
    """Train and open a reusable dictionary.

    Samples should match the real compression unit, e.g. encoded raw blocks.
    """
    raw = train_dictionary(dict_id, samples, size=size, level=level, compat_v155=compat_v155)
    return Dictionary(dict_id, raw, level)


def dictionary_file_name(directory: str, dict_id: int) -> str:
    """Return the file name holding one dictionary version."""
    return os.path.join(directory, f"dict-{dict_id:08d}.zdict")


def encode_dictionary(dictionary: Dictionary) -> bytes:
    """Serialize one dictionary version to bytes."""
    raw = dictionary.raw
    header = _FILE_HEADER.pack(
        _FILE_MAGIC,
        _FILE_VERSION,
        dictionary.id,
        dictionary.level & _MAX_U32,
        len(raw),
        zlib.crc32(raw),
    )
    return header + raw


def decode_dictionary(data: bytes) -> Dictionary:
    """Deserialize one dictionary version from bytes."""
    data = bytes(data)
    if len(data) < _FILE_HEADER.size:
        raise DictionaryFormatError("short dictionary file")
    magic, version, dict_id, level, raw_len, checksum = _FILE_HEADER.unpack_from(data)
    if magic != _FILE_MAGIC:
        raise DictionaryFormatError("dictionary magic mismatch")
    if version != _FILE_VERSION:
        raise DictionaryFormatError(f"unsupported dictionary file version: {version}")

    expected = _FILE_HEADER.size + raw_len
    if len(data) < expected:
        raise DictionaryFormatError("short dictionary file")
    if len(data) != expected:
        raise DictionaryFormatError("trailing dictionary bytes")

    raw = data[_FILE_HEADER.size:]
    if zlib.crc32(raw) != checksum:
        raise DictionaryChecksumError("dictionary checksum mismatch")

    if level >= 1 << 31:
        level -= 1 << 32
    return Dictionary(dict_id, raw, level)


def save_dictionary(fs: FileSystem, name: str, dictionary: Dictionary) -> None:
    """Write one dictionary version to a file atomically."""
    write_file_atomically(fs, name, encode_dictionary(dictionary))


def load_dictionary(fs: FileSystem, name: str) -> Dictionary:
    """Read one dictionary version from a file."""
    return decode_dictionary(read_file(fs, name))


class Registry:
    """Dictionaries by id, with optional LRU limit and optional file storage.

    A limit of zero or less means unlimited. Eviction only drops the registry's
    reference; holders of an evicted dictionary keep using it.
    """

    def __init__(self, limit: int = 0) -> None:
        self._limit = max(limit, 0)
        self._dicts: OrderedDict[int, Dictionary] = OrderedDict()
        self._lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._fs: FileSystem | None = None
        self._dir = ""

    @classmethod
    def persistent(cls, fs: FileSystem, directory: str, limit: int = 0) -> Registry:
        """Create a registry backed by dictionary files in ``directory``."""
        if fs is None:
            raise ValueError("nil dictionary filesystem")
        if directory:
            fs.mkdir_all(directory)
        registry = cls(limit)
        registry._fs = fs
        registry._dir = directory
        return registry

    @property
    def has_storage(self) -> bool:
        """Whether the registry is backed by files."""
        return self._fs is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._dicts)

    def __contains__(self, dict_id: object) -> bool:
        with self._lock:
            return dict_id in self._dicts

    def _store_locked(self, dictionary: Dictionary) -> None:
        self._dicts[dictionary.id] = dictionary
        self._dicts.move_to_end(dictionary.id)
        while self._limit > 0 and len(self._dicts) > self._limit:
            self._dicts.popitem(last=False)

    def add(self, dictionary: Dictionary) -> None:
        """Register a dictionary; an id already present is rejected."""
        with self._lock:
            if dictionary.id in self._dicts:
                raise DuplicateDictionaryError(f"duplicate dictionary id: {dictionary.id}")
            self._store_locked(dictionary)

    def save(self, dictionary: Dictionary) -> None:
        """Persist a dictionary and keep it cached."""
        if self._fs is None:
            raise DictionaryStorageError("dictionary registry has no storage")
        with self._load_lock:
            with self._lock:
                existing = self._dicts.get(dictionary.id)
            if existing is not None and existing is not dictionary:
                raise DuplicateDictionaryError(f"duplicate dictionary id: {dictionary.id}")

            save_dictionary(self._fs, dictionary_file_name(self._dir, dictionary.id), dictionary)

            with self._lock:
                existing = self._dicts.get(dictionary.id)
                if existing is not None and existing is not dictionary:
                    raise DuplicateDictionaryError(f"duplicate dictionary id: {dictionary.id}")
                self._store_locked(dictionary)

    def load(self, dict_id: int) -> Dictionary:
        """Return a cached dictionary, reading it from storage on a miss."""
        if self._fs is None:
            raise DictionaryStorageError("dictionary registry has no storage")
        cached = self.get(dict_id)
        if cached is not None:
            return cached

        with self._load_lock:
            cached = self.get(dict_id)
            if cached is not None:
                return cached

            loaded = load_dictionary(self._fs, dictionary_file_name(self._dir, dict_id))
            if loaded.id != dict_id:
                loaded.close()
                raise DictionaryIdMismatchError(
                    f"dictionary id mismatch: want {dict_id}, got {loaded.id}"
                )

            with self._lock:
                existing = self._dicts.get(dict_id)
                if existing is not None:
                    loaded.close()
                    self._dicts.move_to_end(dict_id)
                    return existing
                self._store_locked(loaded)
                return loaded

    def get(self, dict_id: int) -> Dictionary | None:
        """Return a cached dictionary and mark it recently used, or None."""
        with self._lock:
            dictionary = self._dicts.get(dict_id)
            if dictionary is not None:
                self._dicts.move_to_end(dict_id)
            return dictionary

    def must_get(self, dict_id: int) -> Dictionary:
        """Return a dictionary, loading it from storage if possible."""
        dictionary = self.get(dict_id)
        if dictionary is not None:
            return dictionary
        if self._fs is not None:
            return self.load(dict_id)
        raise DictionaryNotFoundError(f"dictionary not found: {dict_id}")

    def remove(self, dict_id: int) -> None:
        """Drop a dictionary registration."""
        with self._lock:
            self._dicts.pop(dict_id, None)

    def close(self) -> None:
        """Release all registered dictionaries."""
        with self._lock:
            dictionaries = list(self._dicts.values())
            self._dicts.clear()
        for dictionary in dictionaries:
            dictionary.close()

    def __enter__(self) -> Registry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def compress(self, dict_id: int, src: bytes) -> bytes:
        """Encode ``src`` with the dictionary selected by id."""
        return self.must_get(dict_id).compress(src)

    def decompress(self, dict_id: int, src: bytes) -> bytes:
        """Decode ``src`` with the dictionary selected by id."""
        return self.must_get(dict_id).decompress(src)