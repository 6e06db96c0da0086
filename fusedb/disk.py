"""Filesystem abstraction with in-memory and OS-backed implementations."""

from __future__ import annotations

import abc
import os
import stat as stat_module
import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class FileInfo:
    """Metadata about one file."""

    name: str
    size: int
    is_dir: bool = False
    mode: int = 0o644


class File(abc.ABC):
    """A readable, writable file. Write operations must be called sequentially."""

    @abc.abstractmethod
    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes from the current position (all if negative)."""

    @abc.abstractmethod
    def read_at(self, size: int, offset: int) -> bytes:
        """Read up to ``size`` bytes at ``offset``; shorter at end of file."""

    @abc.abstractmethod
    def write(self, data: bytes) -> int:
        """Write all of ``data`` and return its length."""

    @abc.abstractmethod
    def write_at(self, data: bytes, offset: int) -> int:
        """Write all of ``data`` at ``offset`` and return its length."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the file."""

    @abc.abstractmethod
    def sync(self) -> None:
        """Flush file contents to stable storage."""

    @abc.abstractmethod
    def stat(self) -> FileInfo:
        """Return metadata about the file."""

    def __enter__(self) -> File:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FileSystem(abc.ABC):
    """Filesystem through which all disk IO goes."""

    @abc.abstractmethod
    def create(self, name: str) -> File:
        """Create (or truncate) a file for reading and writing."""

    @abc.abstractmethod
    def open(self, name: str) -> File:
        """Open an existing file for reading."""

    @abc.abstractmethod
    def open_read_write(self, name: str) -> File:
        """Open an existing file for reading and writing."""

    @abc.abstractmethod
    def remove(self, name: str) -> None:
        """Remove a file."""

    @abc.abstractmethod
    def rename(self, oldname: str, newname: str) -> None:
        """Rename a file, atomically where possible."""

    @abc.abstractmethod
    def sync_dir(self, directory: str) -> None:
        """Flush directory metadata."""

    @abc.abstractmethod
    def mkdir_all(self, directory: str) -> None:
        """Create a directory and all its parents."""

    @abc.abstractmethod
    def list(self, directory: str) -> list[str]:
        """Return the names of files in a directory."""

    @abc.abstractmethod
    def stat(self, name: str) -> FileInfo:
        """Return metadata about a file."""


class _MemNode:
    __slots__ = ("lock", "data", "name")

    def __init__(self, name: str) -> None:
        self.lock = threading.Lock()
        self.data = bytearray()
        self.name = name


class MemFile(File):
    """Handle onto an in-memory file."""

    def __init__(self, node: _MemNode) -> None:
        self._node = node
        self._read_offset = 0

    def read(self, size: int = -1) -> bytes:
        with self._node.lock:
            data = self._node.data
            if self._read_offset >= len(data):
                return b""
            end = len(data) if size < 0 else self._read_offset + size
            chunk = bytes(data[self._read_offset:end])
            self._read_offset += len(chunk)
            return chunk

    def read_at(self, size: int, offset: int) -> bytes:
        with self._node.lock:
            if offset >= len(self._node.data):
                return b""
            return bytes(self._node.data[offset:offset + size])

    def write(self, data: bytes) -> int:
        with self._node.lock:
            return self._write_locked(data, len(self._node.data))

    def write_at(self, data: bytes, offset: int) -> int:
        with self._node.lock:
            return self._write_locked(data, offset)

    def _write_locked(self, data: bytes, offset: int) -> int:
        buf = self._node.data
        end = offset + len(data)
        if end > len(buf):
            buf.extend(bytes(end - len(buf)))
        buf[offset:end] = data
        return len(data)

    def close(self) -> None:
        pass

    def sync(self) -> None:
        pass

    def stat(self) -> FileInfo:
        with self._node.lock:
            return FileInfo(self._node.name, len(self._node.data))


class MemFS(FileSystem):
    """In-memory filesystem, mainly for tests. Directories are not modelled."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._files: dict[str, _MemNode] = {}

    def _lookup(self, name: str) -> _MemNode:
        try:
            return self._files[name]
        except KeyError:
            raise FileNotFoundError(f"file not found: {name}") from None

    def create(self, name: str) -> MemFile:
        with self._lock:
            node = _MemNode(name)
            self._files[name] = node
            return MemFile(node)

    def open(self, name: str) -> MemFile:
        with self._lock:
            return MemFile(self._lookup(name))

    def open_read_write(self, name: str) -> MemFile:
        return self.open(name)

    def remove(self, name: str) -> None:
        with self._lock:
            self._files.pop(name, None)

    def rename(self, oldname: str, newname: str) -> None:
        with self._lock:
            node = self._lookup(oldname)
            del self._files[oldname]
            node.name = newname
            self._files[newname] = node

    def sync_dir(self, directory: str) -> None:
        pass

    def mkdir_all(self, directory: str) -> None:
        pass

    def list(self, directory: str) -> list[str]:
        with self._lock:
            return sorted(self._files)

    def stat(self, name: str) -> FileInfo:
        with self._lock:
            node = self._lookup(name)
            with node.lock:
                return FileInfo(node.name, len(node.data))


class OSFile(File):
    """Handle onto a file of the operating system."""

    def __init__(self, name: str, mode: str) -> None:
        self._name = name
        self._handle = open(name, mode, buffering=0)
        self._lock = threading.Lock()

    def read(self, size: int = -1) -> bytes:
        with self._lock:
            return self._handle.read(size) or b""

    def read_at(self, size: int, offset: int) -> bytes:
        with self._lock:
            position = self._handle.tell()
            try:
                self._handle.seek(offset)
                return self._handle.read(size) or b""
            finally:
                self._handle.seek(position)

    def _write_all(self, data: bytes) -> int:
        view = memoryview(bytes(data))
        while view:
            written = self._handle.write(view)
            view = view[written:]
        return len(data)

    def write(self, data: bytes) -> int:
        with self._lock:
            return self._write_all(data)

    def write_at(self, data: bytes, offset: int) -> int:
        with self._lock:
            position = self._handle.tell()
            try:
                self._handle.seek(offset)
                return self._write_all(data)
            finally:
                self._handle.seek(position)

    def close(self) -> None:
        self._handle.close()

    def sync(self) -> None:
        os.fsync(self._handle.fileno())

    def stat(self) -> FileInfo:
        return _file_info(self._name, os.fstat(self._handle.fileno()))


def _file_info(name: str, result: os.stat_result) -> FileInfo:
    return FileInfo(
        name=os.path.basename(name),
        size=result.st_size,
        is_dir=stat_module.S_ISDIR(result.st_mode),
        mode=stat_module.S_IMODE(result.st_mode),
    )


class OSFS(FileSystem):
    """Filesystem backed by the operating system."""

    def create(self, name: str) -> OSFile:
        return OSFile(name, "w+b")

    def open(self, name: str) -> OSFile:
        return OSFile(name, "rb")

    def open_read_write(self, name: str) -> OSFile:
        return OSFile(name, "r+b")

    def remove(self, name: str) -> None:
        os.remove(name)

    def rename(self, oldname: str, newname: str) -> None:
        os.replace(oldname, newname)

    def sync_dir(self, directory: str) -> None:
        fd = os.open(directory or ".", os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def mkdir_all(self, directory: str) -> None:
        os.makedirs(directory, mode=0o755, exist_ok=True)

    def list(self, directory: str) -> list[str]:
        return [os.path.join(directory, entry) for entry in sorted(os.listdir(directory))]

    def stat(self, name: str) -> FileInfo:
        return _file_info(name, os.stat(name))


DEFAULT_FS: FileSystem = OSFS()


def read_file(fs: FileSystem, name: str) -> bytes:
    """Read the whole file into memory."""
    with fs.open(name) as handle:
        size = handle.stat().size
        buf = bytearray()
        while len(buf) < size:
            chunk = handle.read_at(size - len(buf), len(buf))
            if not chunk:
                break
            buf += chunk
        return bytes(buf)


def write_file_atomically(fs: FileSystem, name: str, data: bytes) -> None:
    """Write through a temporary file, sync it and rename it into place."""
    directory = os.path.dirname(name)
    if directory not in ("", "."):
        fs.mkdir_all(directory)

    tmp_name = name + ".tmp"
    handle = fs.create(tmp_name)
    try:
        handle.write(data)
        handle.sync()
        handle.close()
        fs.rename(tmp_name, name)
        fs.sync_dir(directory or ".")
    except BaseException:
        try:
            handle.close()
        finally:
            try:
                fs.remove(tmp_name)
            except OSError:
                pass
        raise