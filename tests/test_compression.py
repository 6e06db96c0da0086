import os
import struct
from concurrent.futures import ThreadPoolExecutor

import pytest

from fusedb.compression import (
    CompressionError,
    Dictionary,
    DictionaryChecksumError,
    DictionaryClosedError,
    DictionaryFormatError,
    DictionaryIdMismatchError,
    DictionaryNotFoundError,
    DictionaryStorageError,
    DuplicateDictionaryError,
    Registry,
    decode_dictionary,
    dictionary_file_name,
    encode_dictionary,
    load_dictionary,
    pretrain_dictionary,
    save_dictionary,
    train_dictionary,
)
from fusedb.disk import MemFS

SAMPLES = [
    b"tenant=a|region=eu|state=active|count=1",
    b"tenant=a|region=eu|state=active|count=2",
    b"tenant=b|region=us|state=active|count=1",
    b"tenant=b|region=us|state=disabled|count=8",
]
PAYLOAD = b"tenant=a|region=eu|state=active|count=99"


def make_dictionary(dict_id):
    raw = train_dictionary(dict_id, SAMPLES)
    return Dictionary(dict_id, raw, 3)


def test_dictionary_round_trip_through_file():
    dictionary = make_dictionary(1)
    fs = MemFS()
    name = dictionary_file_name("dicts", dictionary.id)
    save_dictionary(fs, name, dictionary)

    loaded = load_dictionary(fs, name)
    assert loaded.id == dictionary.id
    assert loaded.level == dictionary.level
    assert loaded.raw == dictionary.raw

    compressed = loaded.compress(PAYLOAD)
    assert loaded.decompress(compressed) == PAYLOAD


def test_dictionary_file_name_format():
    assert dictionary_file_name("dicts", 7) == os.path.join("dicts", "dict-00000007.zdict")
    assert dictionary_file_name("", 12345678) == "dict-12345678.zdict"


def test_encode_dictionary_header_layout():
    dictionary = make_dictionary(9)
    data = encode_dictionary(dictionary)
    assert data[:4] == b"FDDC"
    version, dict_id, level, raw_len = struct.unpack_from("<IIII", data, 4)
    assert (version, dict_id, level) == (1, 9, 3)
    assert raw_len == len(dictionary.raw)
    assert data[24:] == dictionary.raw


def test_decode_dictionary_rejects_short_data():
    with pytest.raises(DictionaryFormatError):
        decode_dictionary(b"FDDC")


def test_decode_dictionary_rejects_bad_magic():
    data = bytearray(encode_dictionary(make_dictionary(2)))
    data[:4] = b"XXXX"
    with pytest.raises(DictionaryFormatError, match="magic"):
        decode_dictionary(bytes(data))


def test_decode_dictionary_rejects_unknown_version():
    data = bytearray(encode_dictionary(make_dictionary(2)))
    data[4:8] = struct.pack("<I", 9)
    with pytest.raises(DictionaryFormatError, match="version"):
        decode_dictionary(bytes(data))


def test_decode_dictionary_rejects_checksum_mismatch():
    data = bytearray(encode_dictionary(make_dictionary(2)))
    data[-1] ^= 0xFF
    with pytest.raises(DictionaryChecksumError):
        decode_dictionary(bytes(data))


def test_decode_dictionary_rejects_trailing_and_truncated_bytes():
    data = encode_dictionary(make_dictionary(2))
    with pytest.raises(DictionaryFormatError, match="trailing"):
        decode_dictionary(data + b"\x00")
    with pytest.raises(DictionaryFormatError, match="short"):
        decode_dictionary(data[:-1])


def test_train_dictionary_respects_size():
    raw = train_dictionary(4, SAMPLES, size=64)
    assert len(raw) == 64


def test_train_dictionary_errors():
    with pytest.raises(ValueError):
        train_dictionary(0, SAMPLES)
    with pytest.raises(ValueError):
        train_dictionary(1, SAMPLES, size=4)
    with pytest.raises(ValueError):
        train_dictionary(1, [b"", b""])
    with pytest.raises(ValueError):
        train_dictionary(1, [b"abc"])


def test_dictionary_constructor_errors():
    with pytest.raises(ValueError):
        Dictionary(0, b"abcdefgh")
    with pytest.raises(ValueError):
        Dictionary(1, b"")


def test_dictionary_level_zero_uses_default():
    dictionary = Dictionary(5, train_dictionary(5, SAMPLES), 0)
    assert dictionary.level == 3


def test_pretrain_dictionary_round_trip():
    dictionary = pretrain_dictionary(8, SAMPLES, size=128, level=5)
    assert dictionary.id == 8
    assert dictionary.level == 5
    assert dictionary.decompress(dictionary.compress(PAYLOAD)) == PAYLOAD


def test_closed_dictionary_rejects_use():
    dictionary = make_dictionary(3)
    compressed = dictionary.compress(PAYLOAD)
    dictionary.close()
    assert dictionary.closed
    with pytest.raises(DictionaryClosedError):
        dictionary.compress(PAYLOAD)
    with pytest.raises(DictionaryClosedError):
        dictionary.decompress(compressed)


def test_decompress_garbage_raises():
    dictionary = make_dictionary(3)
    with pytest.raises(CompressionError):
        dictionary.decompress(b"not a zstd frame")


def test_persistent_registry_save_and_lazy_load():
    fs = MemFS()
    dictionary = make_dictionary(7)
    writer = Registry.persistent(fs, "dicts")
    writer.save(dictionary)

    with Registry.persistent(fs, "dicts") as reader:
        loaded = reader.must_get(dictionary.id)
        loaded_again = reader.must_get(dictionary.id)
        assert loaded_again is loaded
        assert loaded.decompress(loaded.compress(PAYLOAD)) == PAYLOAD


def test_lru_registry_evicts_least_recently_used():
    registry = Registry(2)
    dict1, dict2, dict3 = make_dictionary(21), make_dictionary(22), make_dictionary(23)
    registry.add(dict1)
    registry.add(dict2)

    assert registry.get(dict1.id) is dict1
    registry.add(dict3)

    assert registry.get(dict2.id) is None
    assert registry.get(dict1.id) is dict1
    assert registry.get(dict3.id) is dict3


def test_persistent_lru_registry_reloads_evicted_dictionary():
    fs = MemFS()
    with Registry.persistent(fs, "dicts", 1) as registry:
        dict1, dict2 = make_dictionary(31), make_dictionary(32)
        registry.save(dict1)
        registry.save(dict2)

        assert registry.get(dict1.id) is None
        assert registry.get(dict2.id) is dict2

        loaded1 = registry.must_get(dict1.id)
        assert loaded1.id == dict1.id
        assert registry.get(dict2.id) is None


def test_dictionary_concurrent_compress_decompress():
    dictionary = make_dictionary(11)
    payload = b"tenant=b|region=us|state=disabled|count=12345"

    def work(_):
        return all(
            dictionary.decompress(dictionary.compress(payload)) == payload for _ in range(50)
        )

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(work, range(16)))
    assert results == [True] * 16


def test_registry_add_rejects_duplicate():
    registry = Registry()
    registry.add(make_dictionary(5))
    with pytest.raises(DuplicateDictionaryError):
        registry.add(make_dictionary(5))


def test_registry_save_rejects_other_dictionary_with_same_id():
    registry = Registry.persistent(MemFS(), "dicts")
    first = make_dictionary(5)
    registry.save(first)
    registry.save(first)
    with pytest.raises(DuplicateDictionaryError):
        registry.save(make_dictionary(5))


def test_registry_without_storage():
    registry = Registry()
    with pytest.raises(DictionaryNotFoundError):
        registry.must_get(99)
    with pytest.raises(DictionaryStorageError):
        registry.save(make_dictionary(1))
    with pytest.raises(DictionaryStorageError):
        registry.load(1)


def test_registry_load_missing_file_raises():
    registry = Registry.persistent(MemFS(), "dicts")
    with pytest.raises(FileNotFoundError):
        registry.must_get(42)


def test_registry_load_detects_id_mismatch():
    fs = MemFS()
    save_dictionary(fs, dictionary_file_name("dicts", 6), make_dictionary(5))
    registry = Registry.persistent(fs, "dicts")
    with pytest.raises(DictionaryIdMismatchError):
        registry.load(6)


def test_registry_compress_remove_and_close():
    registry = Registry()
    dictionary = make_dictionary(12)
    registry.add(dictionary)

    compressed = registry.compress(12, PAYLOAD)
    assert registry.decompress(12, compressed) == PAYLOAD
    assert 12 in registry and len(registry) == 1

    registry.remove(12)
    assert registry.get(12) is None
    with pytest.raises(DictionaryNotFoundError):
        registry.compress(12, PAYLOAD)

    registry.add(dictionary)
    registry.close()
    assert len(registry) == 0
    assert dictionary.closed