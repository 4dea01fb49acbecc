from __future__ import annotations

import posixpath
import queue
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

from .errors import CycleError
from .ledger import BrokenFileLedger
from .store import SnapshotStore

_CLOSED = object()


@dataclass(frozen=True)
class Node:
    path: str
    size: int


class FileTree:
    """
    Files discovered under one root.

    Holds the path → Node map, the discovery stream consumers drain while the
    scan is running, the ledger of broken paths, and an optional snapshot the
    nodes are persisted into. The stream is closed by ``complete()`` exactly
    once; after that the map is final.
    """

    def __init__(
        self,
        root: str,
        ledger: Optional[BrokenFileLedger] = None,
        snapshot: Optional[SnapshotStore] = None,
    ):
        self.root = str(root)
        self.ledger = ledger if ledger is not None else BrokenFileLedger()
        self.snapshot = snapshot
        self._nodes: dict[str, Node] = {}
        self._guard = threading.Lock()
        self._stream: queue.Queue = queue.Queue()
        self._completed = threading.Event()

    def add_node(self, path: str, size: int, persist: bool = True) -> Node:
        node = Node(path=posixpath.normpath(path), size=size)
        with self._guard:
            if self._completed.is_set():
                raise RuntimeError(f"file tree {self.root} is already complete")
            if node.path in self._nodes:
                raise CycleError(node.path)
            self._nodes[node.path] = node
            self._stream.put(node)
        if persist and self.snapshot is not None:
            self.snapshot.add(node.path, node.size)
        return node

    def lookup(self, path: str) -> Optional[Node]:
        with self._guard:
            return self._nodes.get(posixpath.normpath(path))

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        return self.lookup(path) is not None

    def __len__(self) -> int:
        with self._guard:
            return len(self._nodes)

    def paths(self) -> list[str]:
        with self._guard:
            return list(self._nodes)

    def complete(self) -> None:
        with self._guard:
            if self._completed.is_set():
                return
            self._completed.set()
            self._stream.put(_CLOSED)

    @property
    def is_complete(self) -> bool:
        return self._completed.is_set()

    def wait_complete(self, timeout: Optional[float] = None) -> bool:
        return self._completed.wait(timeout)

    def stream(self) -> Iterator[Node]:
        """Yield discovered nodes until the scan completes.

        Safe to call from many threads at once; each node goes to one consumer.
        """
        while True:
            node = self._stream.get()
            if node is _CLOSED:
                # leave the marker for the other consumers
                self._stream.put(_CLOSED)
                return
            yield node
