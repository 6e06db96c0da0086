"""In-memory ordered mutation buffer keyed by strings.

This is a memtable-like structure rather than a general ordered map. It stores
typed mutation operations, keeps deletes as tombstones and never removes nodes.

Ownership: published operations are treated as immutable. ``read`` and
``iter`` return views of stored data; ``safe_read``, ``safe_iter`` and ``get``
return owned, mutable copies of the payload.

Concurrency: writers are serialised by a lock, while readers traverse without
locking. Nodes are fully linked before they are published, so readers always
see a consistent ordered list.
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterator
from dataclasses import dataclass

from fusedb.hashing import xxhash64

MAX_HEIGHT = 20
_DEFAULT_SEED = 0x9E3779B97F4A7C15
_MAX_VARINT_LEN = 10
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class OpKind(enum.IntEnum):
    """Kind of buffered mutation."""

    PUT = 0
    DELETE = 1
    INC = 2


@dataclass(frozen=True)
class Op:
    """One buffered mutation."""

    kind: OpKind
    data: bytes = b""

    def copy(self) -> Op:
        """Return the operation with an owned, mutable copy of its payload."""
        return Op(self.kind, bytearray(self.data))


def _to_int64(value: int) -> int:
    value &= (1 << 64) - 1
    return value - (1 << 64) if value >= 1 << 63 else value


def _encode_varint(value: int) -> bytes:
    unsigned = (value << 1) & ((1 << 64) - 1)
    if value < 0:
        unsigned ^= (1 << 64) - 1
    out = bytearray()
    while unsigned >= 0x80:
        out.append((unsigned & 0x7F) | 0x80)
        unsigned >>= 7
    out.append(unsigned)
    return bytes(out)


def _decode_varint(data: bytes) -> int:
    unsigned = 0
    shift = 0
    for i, byte in enumerate(data):
        if i == _MAX_VARINT_LEN:
            raise ValueError("bad inc encoding")
        if byte < 0x80:
            if i == _MAX_VARINT_LEN - 1 and byte > 1:
                raise ValueError("bad inc encoding")
            unsigned |= byte << shift
            value = unsigned >> 1
            if unsigned & 1:
                value = ~value
            return value
        unsigned |= (byte & 0x7F) << shift
        shift += 7
    raise ValueError("bad inc encoding")


def new_put(value: bytes) -> Op:
    """Return a put operation owning a copy of ``value``."""
    return Op(OpKind.PUT, bytes(value))


def new_delete() -> Op:
    """Return a delete tombstone."""
    return Op(OpKind.DELETE)


def new_inc(delta: int) -> Op:
    """Return an increment operation encoded as a signed varint delta."""
    if not _INT64_MIN <= delta <= _INT64_MAX:
        raise OverflowError(f"inc delta {delta} out of int64 range")
    return Op(OpKind.INC, _encode_varint(delta))


def decode_inc(op: Op) -> int:
    """Decode the delta of an increment operation."""
    if op.kind != OpKind.INC:
        raise ValueError("not inc op")
    return _decode_varint(bytes(op.data))


def merge_inc(op1: Op, op2: Op) -> Op:
    """Return a new increment holding ``op1 + op2`` (with int64 wrap-around)."""
    return new_inc(_to_int64(decode_inc(op1) + decode_inc(op2)))


def coalesce_to_new(old: Op, new: Op) -> Op:
    """Merge ``new`` into ``old`` where the pair is mergeable; inputs are untouched."""
    if new.kind == OpKind.INC and old.kind == OpKind.INC:
        return merge_inc(old, new)
    return new


class _Node:
    __slots__ = ("key", "op", "next")

    def __init__(self, key: str, op: Op | None, height: int) -> None:
        self.key = key
        self.op = op
        self.next: list[_Node | None] = [None] * height


class SkipList:
    """Ordered in-memory mutation index for string keys."""

    def __init__(self, seed: int = 0) -> None:
        self._seed = seed or _DEFAULT_SEED
        self._head = _Node("", None, MAX_HEIGHT)
        self._height = 1
        self._count = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        """Number of distinct keys; tombstones still count."""
        return self._count

    def _random_height(self, key: str) -> int:
        height = 1
        mixed = xxhash64(key.encode("utf-8")) ^ self._seed
        while height < MAX_HEIGHT and mixed & 3 == 0:
            height += 1
            mixed >>= 2
        return height

    def _find_splice(self, key: str) -> tuple[list[_Node], list[_Node | None]]:
        prev: list[_Node] = [self._head] * MAX_HEIGHT
        nxt: list[_Node | None] = [None] * MAX_HEIGHT
        node = self._head
        for level in reversed(range(self._height)):
            while True:
                candidate = node.next[level]
                if candidate is None or candidate.key >= key:
                    prev[level] = node
                    nxt[level] = candidate
                    break
                node = candidate
        return prev, nxt

    def _find_node(self, key: str) -> _Node | None:
        node = self._head
        for level in reversed(range(self._height)):
            while True:
                candidate = node.next[level]
                if candidate is None or candidate.key >= key:
                    break
                node = candidate
        candidate = node.next[0]
        if candidate is not None and candidate.key == key:
            return candidate
        return None

    def apply(self, key: str, op: Op) -> None:
        """Publish ``op`` for ``key``; ``op.data`` must not change afterwards."""
        with self._lock:
            prev, nxt = self._find_splice(key)
            found = nxt[0]
            if found is not None and found.key == key:
                found.op = coalesce_to_new(found.op, op)
                return

            height = self._random_height(key)
            node = _Node(key, op, height)
            for level in range(height):
                node.next[level] = nxt[level]
            for level in range(height):
                prev[level].next[level] = node
            self._count += 1
            if height > self._height:
                self._height = height

    def put(self, key: str, value: bytes) -> None:
        """Publish a value replacement, copying ``value``."""
        self.apply(key, new_put(value))

    def delete(self, key: str) -> None:
        """Publish a delete tombstone."""
        self.apply(key, new_delete())

    def inc(self, key: str, delta: int) -> None:
        """Publish a counter increment."""
        self.apply(key, new_inc(delta))

    def read(self, key: str) -> Op | None:
        """Return the current operation for ``key`` as a view, or None."""
        node = self._find_node(key)
        return None if node is None else node.op

    def safe_read(self, key: str) -> Op | None:
        """Return the current operation with an owned copy of its payload."""
        op = self.read(key)
        return None if op is None else op.copy()

    def get(self, key: str) -> bytearray | None:
        """Return an owned copy of the put value, or None for missing, deleted or counter keys."""
        op = self.safe_read(key)
        if op is None or op.kind != OpKind.PUT:
            return None
        return op.data

    def iter(self) -> Iterator[tuple[str, Op]]:
        """Yield ``(key, op)`` pairs in key order, tombstones included, as views."""
        node = self._head.next[0]
        while node is not None:
            op = node.op
            if op is not None:
                yield node.key, op
            node = node.next[0]

    def safe_iter(self) -> Iterator[tuple[str, Op]]:
        """Yield ``(key, op)`` pairs in key order with owned payload copies."""
        for key, op in self.iter():
            yield key, op.copy()