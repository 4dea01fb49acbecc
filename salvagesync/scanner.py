from __future__ import annotations

import logging
import os
import posixpath
import stat
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from .concurrency import TaskGroup, WeightedSemaphore
from .errors import CycleError, DuplicateNameError, SetupError
from .filetree import FileTree
from .ledger import BrokenFileLedger
from .listing import Lister, Listing, default_lister
from .logs import log_action
from .store import CHECKPOINT_INTERVAL_SEC, SnapshotStore

log = logging.getLogger(__name__)

DEFAULT_MAX_OPEN_FILES = 512

StatFunc = Callable[[str], os.stat_result]


class DirScanner:
    """
    Walks one root into a FileTree, one task per directory.

    Failures are recorded in the tree's ledger against the path they concern
    and never stop the other directories. The tree is completed once the root
    task and every task it spawned, transitively, have returned.
    """

    def __init__(
        self,
        tree: FileTree,
        max_depth: int = 0,
        max_open_files: int = DEFAULT_MAX_OPEN_FILES,
        lister: Optional[Callable[[str], Listing]] = None,
        stat_func: StatFunc = os.lstat,
        on_complete: Optional[Callable[[], None]] = None,
    ):
        self.tree = tree
        self.max_depth = max_depth
        self.handles = WeightedSemaphore(max_open_files)
        self.lister = lister or default_lister()
        self.stat = stat_func
        self.on_complete = on_complete
        self._executor = ThreadPoolExecutor(max_workers=max_open_files, thread_name_prefix="scan")
        self._group = TaskGroup(self._executor)
        self._seen_dirs: set[tuple[int, int]] = set()
        self._seen_guard = threading.Lock()

    def _rel(self, path: str) -> str:
        return posixpath.normpath(os.path.relpath(path, self.tree.root))

    def _broken(self, path: str, cause: object) -> bool:
        return self.tree.ledger.add(self._rel(path), cause)

    def _first_visit(self, st: os.stat_result) -> bool:
        if not st.st_ino:
            return True
        key = (st.st_dev, st.st_ino)
        with self._seen_guard:
            if key in self._seen_dirs:
                return False
            self._seen_dirs.add(key)
            return True

    def start(self) -> "DirScanner":
        log_action(log, "SCAN", f"scanning {self.tree.root}", path=self.tree.root)
        try:
            self._first_visit(self.stat(self.tree.root))
        except OSError as e:
            self._broken(self.tree.root, e)
        else:
            self._group.spawn(self._scan_dir, self.tree.root, self.max_depth)
        threading.Thread(target=self._finish, name=f"scan-join:{self.tree.root}", daemon=True).start()
        return self

    def _finish(self) -> None:
        self._group.wait()
        self._executor.shutdown(wait=False)
        try:
            if self.on_complete is not None:
                self.on_complete()
        finally:
            self.tree.complete()
        log_action(log, "SCAN", f"scanning {self.tree.root} -- complete ({len(self.tree)} files)", path=self.tree.root)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.tree.wait_complete(timeout)

    def _scan_dir(self, dir_path: str, depth: int) -> None:
        try:
            with self.handles.hold():
                self._list_dir(dir_path, depth)
        except Exception as e:
            log.exception("scanning %s failed", dir_path)
            self._broken(dir_path, e)

    def _drain_errors(self, listing: Listing, dir_path: str) -> None:
        for err in listing.errors():
            if isinstance(err, DuplicateNameError) and not err.fatal:
                log.warning("got error in '%s': %s", dir_path, err)
                continue
            self._broken(dir_path, f"got error in '{dir_path}': {err}")

    def _list_dir(self, dir_path: str, depth: int) -> None:
        log.debug("scanning dir %s with max depth %d", dir_path, depth)
        listing = self.lister(dir_path)
        errors = threading.Thread(target=self._drain_errors, args=(listing, dir_path), daemon=True)
        errors.start()
        try:
            for name in listing.names():
                if name in (".", ".."):
                    continue
                if not self._visit(dir_path, name, depth):
                    listing.cancel()
                    break
        finally:
            errors.join()

    def _visit(self, dir_path: str, name: str, depth: int) -> bool:
        """Handle one entry; False aborts the directory."""
        file_path = os.path.join(dir_path, name)
        if self.tree.ledger.known_before(self._rel(file_path)):
            log.debug("skipping known broken %s", file_path)
            return True
        try:
            st = self.stat(file_path)
        except OSError as e:
            if not self._broken(file_path, e):
                # this entry already failed during this run: the listing is looping
                self._broken(dir_path, f"got into a loop in '{dir_path}': {e}")
                return False
            return True

        if stat.S_ISDIR(st.st_mode):
            if depth == 1:
                return True
            if not self._first_visit(st):
                self._broken(file_path, CycleError(self._rel(file_path), f"directory '{file_path}' loops back into the tree"))
                return True
            self._group.spawn(self._scan_dir, file_path, depth - 1 if depth else 0)
            return True

        if not stat.S_ISREG(st.st_mode):
            log.debug("skipping non-regular file %s", file_path)
            return True

        try:
            self.tree.add_node(self._rel(file_path), st.st_size)
        except CycleError as e:
            self._broken(dir_path, f"got into a cycle getdents in '{dir_path}': {e}")
            return False
        return True


def open_file_tree(
    root: str,
    snapshot_path: Optional[Path] = None,
    ledger_path: Optional[Path] = None,
    max_depth: int = 0,
    max_open_files: int = DEFAULT_MAX_OPEN_FILES,
    lister: Optional[Lister] = None,
    checkpoint_interval_sec: float = CHECKPOINT_INTERVAL_SEC,
) -> FileTree:
    """Return a FileTree that fills in the background.

    With an existing snapshot the tree is loaded from it instead of scanned;
    otherwise the scan is persisted into a new snapshot as it goes.
    """
    root_path = Path(root).expanduser().resolve()
    if not root_path.is_dir():
        raise SetupError(f"Not a directory: {root_path}")

    ledger = BrokenFileLedger(ledger_path) if ledger_path else BrokenFileLedger()
    snapshot = SnapshotStore(snapshot_path, str(root_path)) if snapshot_path else None

    if snapshot is not None and snapshot.has_snapshot:
        tree = FileTree(str(root_path), ledger=ledger)
        threading.Thread(target=_load_snapshot, args=(tree, snapshot), daemon=True).start()
        return tree

    tree = FileTree(str(root_path), ledger=ledger, snapshot=snapshot)
    if snapshot is not None:
        snapshot.start_checkpointing(checkpoint_interval_sec)
    DirScanner(
        tree,
        max_depth=max_depth,
        max_open_files=max_open_files,
        lister=lister,
        on_complete=snapshot.close if snapshot is not None else None,
    ).start()
    return tree


def _load_snapshot(tree: FileTree, snapshot: SnapshotStore) -> None:
    log.info("Reading the cache from %s", snapshot.path)
    try:
        for path, size in snapshot.load():
            tree.add_node(path, size, persist=False)
    except Exception:
        log.exception("Reading the cache from %s failed", snapshot.path)
    finally:
        snapshot.close()
        tree.complete()
    log.info("Reading the cache from %s -- complete (%d files)", snapshot.path, len(tree))
