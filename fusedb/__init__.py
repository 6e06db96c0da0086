"""Storage engine building blocks: memtable skiplist, segment files, bloom filters, zstd dictionaries and a file-system layer."""

__version__ = "0.1.0"