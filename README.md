# fusedb

Building blocks for a log-structured key/value storage engine. It is a library: it has
no command-line tool and no server.

- `fusedb.skiplist` — an ordered in-memory mutation buffer keyed by strings. It stores typed
  operations (`OpKind.PUT`, `OpKind.DELETE` tombstones, `OpKind.INC` counter increments) and
  merges consecutive increments on the same key. Writers are serialised by a lock; readers
  do not lock.
- `fusedb.segment` — immutable sorted segment files. A `Segment` is written entry by entry
  in strictly increasing key order into a temporary file. Entries are split into blocks of a
  target size. `freeze()` then renames the file into place. The file holds a header, the data
  blocks, a bloom filter, a block index and a footer. `open_segment` loads a frozen file.
- `fusedb.reader` — `Reader` does point lookups over a frozen segment, and `SegmentIterator`
  walks its entries in key order.
- `fusedb.block`, `fusedb.index`, `fusedb.bloom`, `fusedb.header`, `fusedb.footer` — the
  pieces of a segment file and their binary encodings. Each has `to_bytes` / `from_bytes`
  and `encode_*` / `decode_*` functions. Corrupt or invalid data raises
  `fusedb.header.SegmentError`.
- `fusedb.compression` — zstd `Dictionary` codecs and their file format
  (`save_dictionary`, `load_dictionary`). A `Registry` holds dictionaries in memory, with an
  optional LRU limit. `Registry.persistent` backs it with dictionary files, which it loads
  the first time they are needed.
- `fusedb.hashing` — `xxhash64`, `splitmix64` and the hash pair used by the bloom filter.
- `fusedb.disk` — the file-system layer that all IO goes through. `OSFS` works on real files
  and `MemFS` keeps files in memory. It also has `read_file` and `write_file_atomically`.

## Installation

```
pip install .
```

## Memtable

```python
from fusedb.skiplist import SkipList, decode_inc

memtable = SkipList(42)
memtable.put("alpha", b"1")
memtable.inc("counter", 2)
memtable.inc("counter", 3)
memtable.delete("beta")

memtable.get("alpha")                      # bytearray(b'1'), an owned copy
decode_inc(memtable.read("counter"))       # 5
memtable.get("beta")                       # None: the key holds a delete tombstone
len(memtable)                              # 3: tombstones still count
for key, op in memtable.safe_iter():       # keys come out in sorted order
    print(key, op.kind)
```

`read` and `iter` return the stored operations as they are. `safe_read`, `safe_iter` and
`get` return copies that may be changed freely.

## Writing and reading a segment

```python
from fusedb.disk import MemFS
from fusedb.header import CompressionKind
from fusedb.reader import open_reader
from fusedb.segment import Segment

fs = MemFS()
segment = Segment.create(fs, "segments", 1, 1, 3, 64, 0.01, CompressionKind.NONE, None)
segment.append_kv(b"alpha", b"1")
segment.append_kv(b"beta", b"2")
segment.append_kv(b"delta", b"3")
segment.freeze()

reader = open_reader(fs, segment.path, None)
reader.get(b"beta")                        # b"2"
reader.get(b"missing")                     # None

with reader.iterator() as it:
    if it.seek(b"charlie"):
        print(it.key, it.value)            # b"delta" b"3"
    it.advance()                           # False: delta was the last entry

[entry.key for entry in reader]            # [b"alpha", b"beta", b"delta"]
```

`Segment.create` refuses to overwrite an existing final segment file. Appending a key that is
not greater than the previous one raises `SegmentError`, and so does appending after `freeze()`.

## Dictionary compression

```python
from fusedb.compression import Registry, pretrain_dictionary
from fusedb.disk import MemFS

samples = [b"tenant=a|region=eu|state=active|count=1",
           b"tenant=b|region=us|state=disabled|count=8"]
dictionary = pretrain_dictionary(7, samples, 64, 3, False)

registry = Registry.persistent(MemFS(), "dicts", 0)
registry.save(dictionary)
packed = registry.compress(7, b"tenant=a|region=eu|state=active|count=99")
registry.decompress(7, packed)
```

`train_dictionary` builds a raw-content dictionary. It is made of the leading bytes of the
non-empty samples, at most `size` bytes (64 KiB by default). Its `level` and `compat_v155`
arguments do not change these bytes. The level is used when the dictionary is opened as a
`Dictionary`.

To compress a segment, pass `CompressionKind.ZSTD_DICT` and the dictionary to
`Segment.create`. A `Reader` for that segment then needs a `Registry` that holds the
dictionary or can load it from its files.

## What it does not do

The package provides components, not a finished database. Nothing moves the contents of a
`SkipList` into segments. There is no write-ahead log, no compaction or merging of segments,
and no lookup across several segments.

## Tests

```
pip install ".[test]"
pytest
```