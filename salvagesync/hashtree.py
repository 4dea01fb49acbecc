from __future__ import annotations

import hashlib
import logging
import os
import queue
import stat
import threading
from typing import Callable, Iterator, Optional, Protocol, runtime_checkable

from .filetree import FileTree, Node
from .hashitem import HashTreeItem
from .store import DigestStore

log = logging.getLogger(__name__)

DEFAULT_WORKERS = 1024
READ_CHUNK = 1024 * 1024

_DONE = object()


@runtime_checkable
class PrecalculatedDigester(Protocol):
    """Optional capability of a hasher: a digest known without reading the file."""

    def precalculated_digest(self, path: str) -> Optional[bytes]:
        ...


class PrecalculatedHasher:
    """A hashlib-style hasher that can also answer precalculated digests."""

    def __init__(self, hasher, digests: DigestStore):
        self._hasher = hasher
        self.digests = digests

    @property
    def name(self) -> str:
        return self._hasher.name

    def update(self, data: bytes) -> None:
        self._hasher.update(data)

    def digest(self) -> bytes:
        return self._hasher.digest()

    def copy(self) -> "PrecalculatedHasher":
        return PrecalculatedHasher(self._hasher.copy(), self.digests)

    def precalculated_digest(self, path: str) -> Optional[bytes]:
        return self.digests.precalculated_digest(path)


def hasher_factory(algorithm: str = "sha256", digests: Optional[DigestStore] = None) -> Callable[[], object]:
    hashlib.new(algorithm)  # fail fast on unknown names
    if digests is None:
        return lambda: hashlib.new(algorithm)
    return lambda: PrecalculatedHasher(hashlib.new(algorithm), digests)


class HashTreeBuilder:
    """
    Hashes every file of a tree with a pool of workers.

    Workers drain the tree's discovery stream, so hashing runs while the scan
    is still in progress. ``items()`` yields one item per regular file in no
    particular order; failures come out as items with ``error`` set.
    """

    def __init__(
        self,
        tree: FileTree,
        hasher_factory: Callable[[], object] = hashlib.sha256,
        workers: int = DEFAULT_WORKERS,
        stat_func: Callable[[str], os.stat_result] = os.stat,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.tree = tree
        self.hasher_factory = hasher_factory
        self.workers = workers
        self.stat = stat_func
        self._results: queue.Queue = queue.Queue()

    def items(self) -> Iterator[HashTreeItem]:
        threads = [
            threading.Thread(target=self._work, name=f"hash-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for t in threads:
            t.start()

        def close() -> None:
            for t in threads:
                t.join()
            self._results.put(_DONE)

        threading.Thread(target=close, name="hash-join", daemon=True).start()

        while True:
            item = self._results.get()
            if item is _DONE:
                return
            yield item

    def _work(self) -> None:
        hasher = self.hasher_factory()
        digester = hasher if isinstance(hasher, PrecalculatedDigester) else None
        for node in self.tree.stream():
            try:
                item = self._hash_node(node, hasher, digester)
            except Exception as e:
                log.exception("hashing %s failed", node.path)
                item = HashTreeItem(path=node.path, error=f"unable to hash: {e}")
            if item is not None:
                self._results.put(item)

    def _hash_node(self, node: Node, hasher, digester: Optional[PrecalculatedDigester]) -> Optional[HashTreeItem]:
        path = os.path.join(self.tree.root, node.path)
        try:
            st = self.stat(path)
        except OSError as e:
            return HashTreeItem(path=node.path, error=f"unable to stat(): {e}")

        if not stat.S_ISREG(st.st_mode):
            return None

        digest = None
        if digester is not None:
            digest = digester.precalculated_digest(node.path)
            if digest is None:
                log.info("no precalculated digest for '%s' ('%s')", path, node.path)

        if digest is None:
            h = hasher.copy()
            try:
                f = open(path, "rb")
            except OSError as e:
                return HashTreeItem(path=node.path, error=f"unable to open(): {e}")
            try:
                with f:
                    for chunk in iter(lambda: f.read(READ_CHUNK), b""):
                        h.update(chunk)
            except OSError as e:
                return HashTreeItem(path=node.path, error=f"unable to read(): {e}")
            digest = h.digest()

        return HashTreeItem(
            path=node.path,
            digest=digest,
            size=st.st_size,
            modify_time=st.st_mtime_ns,
            change_time=st.st_ctime_ns,
            access_time=st.st_atime_ns,
        )
