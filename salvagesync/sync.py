from __future__ import annotations

import io
import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, TextIO

from pathspec import PathSpec

from .concurrency import WeightedSemaphore
from .errors import CopyError
from .filetree import FileTree
from .logs import log_action

log = logging.getLogger(__name__)

COPY_CHUNK = 1024 * 1024
HANDLES_PER_COPY = 2
DEFAULT_MAX_OPEN_FILES = 512


class IgnoreMatcher:
    """Gitignore-style patterns matched against root-relative paths."""

    def __init__(self, patterns: Iterable[str]):
        self.patterns = list(patterns)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_ignored(self, rel_path: str) -> bool:
        return self.spec.match_file(rel_path)


@dataclass
class SyncReport:
    candidates: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    copied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    dry_run: bool = False


def select_candidates(src: FileTree, dst: FileTree) -> list[str]:
    """Source files whose size differs from the destination (missing counts as 0).

    Only sizes are compared: a same-size content change is not detected.
    Paths in the source ledger are skipped.
    """
    candidates = []
    for node in src.stream():
        if node.path in src.ledger:
            continue
        dst_node = dst.lookup(node.path)
        dst_size = dst_node.size if dst_node is not None else 0
        if node.size == dst_size:
            continue
        candidates.append(node.path)
    return candidates


def surrogate_safe(out: TextIO) -> TextIO:
    """Let undecodable names (kept as surrogate escapes) through ``out`` as their original bytes."""
    if isinstance(out, io.TextIOWrapper) and out.errors == "strict":
        out.reconfigure(errors="surrogateescape")
    return out


def write_report(paths: Sequence[str], out: TextIO) -> None:
    out = surrogate_safe(out)
    print("Syncing: to copy report", file=out)
    for path in paths:
        print(path, file=out)
    print("Syncing: to copy report -- complete", file=out)
    out.flush()


def copy_file_contents(src: str, dst: str, chunk_size: int = COPY_CHUNK) -> int:
    """Copy ``src`` over ``dst`` keeping one write in flight while the next chunk is read.

    Raises CopyError when a write is shorter than the chunk read. Access and
    modify times are carried over.
    """
    total = 0
    with open(src, "rb") as fin, open(dst, "wb", buffering=0) as fout, ThreadPoolExecutor(max_workers=1) as writer:
        pending = None
        while True:
            chunk = fin.read(chunk_size)
            if pending is not None:
                future, expected = pending
                written = future.result()
                if written != expected:
                    raise CopyError(f"written != read: {written} != {expected}")
                total += written
                pending = None
            if not chunk:
                break
            pending = (writer.submit(fout.write, chunk), len(chunk))
        st = os.fstat(fin.fileno())
    os.utime(dst, ns=(st.st_atime_ns, st.st_mtime_ns))
    return total


class TreeSync:
    """
    One-way sync of a source tree onto a destination tree.

    Waits for the destination and exclusion trees to finish scanning, picks
    the source files whose size differs, prints the sorted list, then copies
    them with at most ``max_open_files // 2`` copies in flight. A failed copy
    is recorded in the source ledger and the rest carry on.
    """

    def __init__(
        self,
        src: FileTree,
        dst: FileTree,
        excludes: Sequence[FileTree] = (),
        dry_run: bool = False,
        ignore: Optional[IgnoreMatcher] = None,
        max_open_files: int = DEFAULT_MAX_OPEN_FILES,
        out: Optional[TextIO] = None,
    ):
        self.src = src
        self.dst = dst
        self.excludes = list(excludes)
        self.dry_run = dry_run
        self.ignore = ignore
        self.copies = WeightedSemaphore(max_open_files)
        self.out = out or sys.stdout
        self._report_guard = threading.Lock()

    def _is_excluded(self, path: str) -> bool:
        if self.ignore is not None and self.ignore.is_ignored(path):
            return True
        return any(path in exc for exc in self.excludes)

    def run(self) -> SyncReport:
        report = SyncReport(dry_run=self.dry_run)

        log.info("Syncing: wait for DST and EXC to complete scanning")
        self.dst.wait_complete()
        for exc in self.excludes:
            exc.wait_complete()

        log.info("Syncing: filtering")
        for path in select_candidates(self.src, self.dst):
            if self._is_excluded(path):
                report.excluded.append(path)
            else:
                report.candidates.append(path)
        report.candidates.sort()
        report.excluded.sort()

        write_report(report.candidates, self.out)

        if self.dry_run:
            log.info("Syncing: dry run, %d files would be copied", len(report.candidates))
            return report

        log.info("Syncing: copying %d files", len(report.candidates))
        threads = []
        for path in report.candidates:
            self.copies.acquire(HANDLES_PER_COPY)
            t = threading.Thread(target=self._copy, args=(path, report), name=f"copy:{path}", daemon=True)
            try:
                t.start()
            except RuntimeError:
                self.copies.release(HANDLES_PER_COPY)
                raise
            threads.append(t)
        for t in threads:
            t.join()

        report.copied.sort()
        report.failed.sort()
        log.info("Syncing -- complete (%d copied, %d failed)", len(report.copied), len(report.failed))
        return report

    def _copy(self, path: str, report: SyncReport) -> None:
        try:
            src_path = os.path.join(self.src.root, path)
            dst_path = os.path.join(self.dst.root, path)
            try:
                os.makedirs(os.path.dirname(dst_path), exist_ok=True)
                size = copy_file_contents(src_path, dst_path)
            except (OSError, CopyError) as e:
                self.src.ledger.add(path, e)
                with self._report_guard:
                    report.failed.append(path)
                return
            log_action(log, "COPY", f"{src_path} -> {dst_path} ({size} bytes)", path=path)
            with self._report_guard:
                report.copied.append(path)
        finally:
            self.copies.release(HANDLES_PER_COPY)


def sync_trees(
    src: FileTree,
    dst: FileTree,
    excludes: Sequence[FileTree] = (),
    dry_run: bool = False,
    ignore: Optional[IgnoreMatcher] = None,
    max_open_files: int = DEFAULT_MAX_OPEN_FILES,
    out: Optional[TextIO] = None,
) -> SyncReport:
    return TreeSync(
        src,
        dst,
        excludes=excludes,
        dry_run=dry_run,
        ignore=ignore,
        max_open_files=max_open_files,
        out=out,
    ).run()
