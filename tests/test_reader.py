import pytest

from fusedb.block import BlockEntry
from fusedb.compression import Dictionary, DictionaryNotFoundError, Registry, train_dictionary
from fusedb.disk import MemFS
from fusedb.header import CompressionKind, SegmentError
from fusedb.reader import Reader, open_reader
from fusedb.segment import Segment

SAMPLES = [
    b"tenant=a|region=eu|state=active|count=1",
    b"tenant=a|region=eu|state=active|count=2",
    b"tenant=b|region=us|state=disabled|count=9",
    b"tenant=b|region=us|state=active|count=12",
]

COMPRESSED_ENTRIES = [
    BlockEntry(b"alpha", b"tenant=a|region=eu|state=active|count=1"),
    BlockEntry(b"beta", b"tenant=a|region=eu|state=active|count=2"),
    BlockEntry(b"delta", b"tenant=b|region=us|state=disabled|count=9"),
    BlockEntry(b"omega", b"tenant=b|region=us|state=active|count=12"),
]

RAW_ENTRIES = [
    BlockEntry(b"alpha", b"1"),
    BlockEntry(b"beta", b"2"),
    BlockEntry(b"delta", b"3"),
    BlockEntry(b"gamma", b"4"),
    BlockEntry(b"omega", b"5"),
]


def make_dictionary(dict_id, samples=SAMPLES):
    raw = train_dictionary(dict_id, samples, size=64, level=3)
    return Dictionary(dict_id, raw, 3)


def build_segment(fs, segment_id, entries, *, version=1, target=64, dictionary=None):
    kind = CompressionKind.ZSTD_DICT if dictionary is not None else CompressionKind.NONE
    segment = Segment.create(
        fs,
        "segments",
        segment_id,
        version=version,
        expected_keys=len(entries),
        target_block_size=target,
        bloom_false_positive=0.01,
        compression=kind,
        dictionary=dictionary,
    )
    for entry in entries:
        segment.append(entry)
    segment.freeze()
    return segment


def test_reader_get_raw():
    fs = MemFS()
    segment = build_segment(fs, 301, RAW_ENTRIES[:3])
    reader = Reader(segment, None)

    assert reader.get(b"beta") == b"2"
    assert reader.get(b"missing") is None


def test_reader_iterator_raw():
    fs = MemFS()
    segment = build_segment(fs, 305, RAW_ENTRIES)
    reader = Reader(segment)

    with reader.iterator() as it:
        got = []
        ok = it.first()
        while ok:
            current = it.entry()
            assert current is not None
            got.append(current)
            ok = it.advance()
        assert it.error is None
        assert got == RAW_ENTRIES

        assert it.seek(b"charlie")
        assert it.key == b"delta"
        assert it.value == b"3"
        assert it.advance()
        assert it.key == b"gamma"
        assert not it.seek(b"zzz")
        assert it.error is None
        assert not it.valid


def test_iterator_is_python_iterable():
    fs = MemFS()
    segment = build_segment(fs, 307, RAW_ENTRIES)
    reader = Reader(segment)

    assert [entry.key for entry in reader.iterator()] == [e.key for e in RAW_ENTRIES]
    assert list(reader) == RAW_ENTRIES


def test_open_reader_compressed():
    fs = MemFS()
    dictionary = make_dictionary(41)
    registry = Registry()
    registry.add(dictionary)

    segment = build_segment(fs, 302, COMPRESSED_ENTRIES, version=2, target=96, dictionary=dictionary)
    reader = open_reader(fs, segment.path, registry)

    assert reader.get(b"omega") == b"tenant=b|region=us|state=active|count=12"


def test_reader_iterator_compressed():
    fs = MemFS()
    dictionary = make_dictionary(43)
    registry = Registry()
    registry.add(dictionary)

    segment = build_segment(fs, 306, COMPRESSED_ENTRIES, target=96, dictionary=dictionary)
    reader = Reader.open(fs, segment.path, registry)

    it = reader.iterator()
    seen = []
    ok = it.first()
    while ok:
        seen.append((it.key, it.value))
        ok = it.advance()
    it.close()
    assert it.error is None
    assert seen == [(e.key, e.value) for e in COMPRESSED_ENTRIES]


def test_open_reader_compressed_loads_dictionary_from_persistent_registry():
    fs = MemFS()
    dictionary = make_dictionary(42)
    writer_registry = Registry.persistent(fs, "dicts")
    writer_registry.save(dictionary)

    segment = Segment.create(
        fs,
        "segments",
        304,
        version=2,
        expected_keys=2,
        target_block_size=96,
        bloom_false_positive=0.01,
        compression=CompressionKind.ZSTD_DICT,
        dictionary=dictionary,
    )
    segment.append_kv(b"alpha", b"tenant=a|region=eu|state=active|count=1")
    segment.append_kv(b"omega", b"tenant=b|region=us|state=active|count=12")
    segment.freeze()

    with Registry.persistent(fs, "dicts") as recovery_registry:
        reader = open_reader(fs, segment.path, recovery_registry)
        assert reader.get(b"omega") == b"tenant=b|region=us|state=active|count=12"


def test_reader_compressed_requires_registry():
    fs = MemFS()
    dictionary = make_dictionary(51, SAMPLES[::2])
    segment = Segment.create(
        fs,
        "segments",
        303,
        version=3,
        expected_keys=2,
        compression=CompressionKind.ZSTD_DICT,
        dictionary=dictionary,
    )
    segment.append_kv(b"alpha", b"tenant=a|region=eu|state=active|count=1")
    segment.append_kv(b"delta", b"tenant=b|region=us|state=disabled|count=9")
    segment.freeze()

    with pytest.raises(SegmentError, match="missing dictionary registry"):
        Reader(segment, None)


def test_reader_compressed_unknown_dictionary():
    fs = MemFS()
    dictionary = make_dictionary(52)
    segment = build_segment(fs, 308, COMPRESSED_ENTRIES, target=96, dictionary=dictionary)

    with pytest.raises(DictionaryNotFoundError):
        Reader(segment, Registry())


def test_reader_rejects_unfrozen_segment():
    fs = MemFS()
    segment = Segment.create(fs, "segments", 309, version=1)
    segment.append_kv(b"alpha", b"1")

    with pytest.raises(SegmentError, match="not frozen"):
        Reader(segment)


def test_reader_may_contain_and_segment():
    fs = MemFS()
    segment = build_segment(fs, 310, RAW_ENTRIES)
    reader = Reader(segment)

    assert reader.segment is segment
    assert all(reader.may_contain(entry.key) for entry in RAW_ENTRIES)


def test_read_error_is_recorded_and_disables_iterator():
    fs = MemFS()
    dictionary = make_dictionary(53)
    registry = Registry()
    registry.add(dictionary)
    segment = build_segment(fs, 311, COMPRESSED_ENTRIES, target=96, dictionary=dictionary)
    reader = Reader(segment, registry)
    dictionary.close()

    with pytest.raises(SegmentError, match="decompress block"):
        reader.get(b"alpha")

    it = reader.iterator()
    with pytest.raises(SegmentError):
        it.first()
    assert isinstance(it.error, SegmentError)
    assert it.first() is False
    assert it.entry() is None


def test_closed_iterator_is_invalid():
    fs = MemFS()
    segment = build_segment(fs, 312, RAW_ENTRIES)
    it = Reader(segment).iterator()

    assert it.first()
    assert it.key == b"alpha"
    it.close()
    assert not it.valid
    assert it.key is None
    assert it.first() is False
    assert it.seek(b"alpha") is False
    assert it.advance() is False