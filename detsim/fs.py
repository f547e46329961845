"""A simulated file system, one per node."""

from __future__ import annotations

import errno
import logging
import os
from dataclasses import dataclass, field
from pathlib import PurePath

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Metadata:
    """Metadata about a file."""

    len: int


@dataclass
class _INode:
    path: PurePath
    data: bytearray = field(default_factory=bytearray)
    synced: bytes = b""

    def truncate(self) -> None:
        self.data.clear()

    def metadata(self) -> Metadata:
        return Metadata(len(self.data))


def _key(path) -> PurePath:
    return PurePath(os.fspath(path))


def _not_found(path: PurePath) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, f"file not found: {str(path)!r}")


class File:
    """An open file in the simulated file system."""

    def __init__(self, inode: _INode, can_write: bool) -> None:
        self._inode = inode
        self._can_write = can_write

    def __repr__(self) -> str:
        return f"File(path={str(self._inode.path)!r})"

    async def read_at(self, size: int, offset: int) -> bytes:
        """Read up to ``size`` bytes starting at ``offset``."""
        data = self._inode.data
        if offset > len(data):
            raise ValueError(f"offset {offset} is beyond the end of the file")
        return bytes(data[offset : offset + size])

    async def write_all_at(self, buf: bytes, offset: int) -> None:
        """Write all of ``buf`` at ``offset``, extending the file as needed."""
        if not self._can_write:
            raise PermissionError(errno.EACCES, "the file is read only")
        data = self._inode.data
        if offset > len(data):
            raise ValueError(f"offset {offset} is beyond the end of the file")
        data[offset : offset + len(buf)] = buf

    async def set_len(self, size: int) -> None:
        """Truncate or zero-extend the file to ``size`` bytes."""
        if size < 0:
            raise ValueError("size must not be negative")
        data = self._inode.data
        if size < len(data):
            del data[size:]
        else:
            data.extend(bytes(size - len(data)))

    async def sync_all(self) -> None:
        """Record the current contents as having reached storage."""
        self._inode.synced = bytes(self._inode.data)
        _log.debug("sync_all %s (%d bytes)", self._inode.path, len(self._inode.synced))

    async def metadata(self) -> Metadata:
        return self._inode.metadata()


class FsSim:
    """File system simulator holding a separate file table for every node."""

    def __init__(self) -> None:
        self._nodes: dict[object, dict[PurePath, _INode]] = {}

    def _node(self, node_id) -> dict[PurePath, _INode]:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError("node not found") from None

    def _inode(self, node_id, path) -> _INode:
        key = _key(path)
        inode = self._node(node_id).get(key)
        if inode is None:
            raise _not_found(key)
        return inode

    def create_node(self, node_id) -> None:
        self._nodes[node_id] = {}

    def reset_node(self, node_id) -> None:
        self.power_fail(node_id)

    def power_fail(self, node_id) -> None:
        """Simulate a power failure; writes are never buffered, so nothing is lost."""
        self._node(node_id)
        _log.debug("power failure on node %s", node_id)

    def get_file_size(self, node_id, path) -> int:
        return self._inode(node_id, path).metadata().len

    async def open(self, node_id, path) -> File:
        """Open an existing file read-only."""
        _log.debug("open file %s", path)
        return File(self._inode(node_id, path), can_write=False)

    async def create(self, node_id, path) -> File:
        """Open a file for writing, creating it or truncating it."""
        _log.debug("create file %s", path)
        files = self._node(node_id)
        key = _key(path)
        inode = files.get(key)
        if inode is None:
            inode = files[key] = _INode(key)
        else:
            inode.truncate()
        return File(inode, can_write=True)

    async def metadata(self, node_id, path) -> Metadata:
        return self._inode(node_id, path).metadata()

    async def read(self, node_id, path) -> bytes:
        """Read the whole contents of a file."""
        return bytes(self._inode(node_id, path).data)