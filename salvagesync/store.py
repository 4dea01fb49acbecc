"""
SQLite-backed persistence.

- SnapshotStore: (path, size) pairs of one scanned root, so a rerun can skip the scan.
- HashTreeStore: hash-tree items of one run, for querying by digest/size/times.
- DigestStore: precalculated digests parsed from a `sha256sum`-style manifest.

Writers share one connection behind a lock and commit on a timer, so a crash
loses at most one checkpoint interval.

Paths are stored as BLOBs of their file-system bytes (`os.fsencode`), so names
that are not valid UTF-8 round-trip unchanged.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Iterator, Optional

from .errors import ManifestParseError, SetupError
from .hashitem import HEX_DIGEST_RE, HashTreeItem
from .logs import log_action

log = logging.getLogger(__name__)

CHECKPOINT_INTERVAL_SEC = 60.0


def _connect(path: Path) -> sqlite3.Connection:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(path), check_same_thread=False)
    except (OSError, sqlite3.Error) as e:
        raise SetupError(f"Could not open SQLite DB {path}: {e}") from e


class SqliteStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.conn = _connect(self.path)
        self._guard = threading.Lock()
        self._stop = threading.Event()
        self._checkpointer: Optional[threading.Thread] = None

    def checkpoint(self) -> None:
        with self._guard:
            self.conn.commit()
        log_action(log, "CHECKPOINT", f"committed {self.path}", level=logging.DEBUG)

    def start_checkpointing(self, interval_sec: float = CHECKPOINT_INTERVAL_SEC) -> None:
        if self._checkpointer is not None:
            return

        def run() -> None:
            while not self._stop.wait(interval_sec):
                try:
                    self.checkpoint()
                except sqlite3.Error as e:
                    log_action(log, "CHECKPOINT", f"commit failed {self.path} | {e}", level=logging.ERROR)

        self._checkpointer = threading.Thread(target=run, name=f"checkpoint:{self.path.name}", daemon=True)
        self._checkpointer.start()

    def close(self) -> None:
        self._stop.set()
        if self._checkpointer is not None:
            self._checkpointer.join(timeout=10)
            self._checkpointer = None
        with self._guard:
            self.conn.commit()
            self.conn.close()


# -------------------------
# File tree snapshot
# -------------------------

class SnapshotStore(SqliteStore):
    """Snapshot of one root; ``has_snapshot`` tells whether to load or to scan."""

    def __init__(self, path: Path, root: str):
        path = Path(path)
        existed = path.exists()
        super().__init__(path)
        self.root = root
        try:
            self.has_snapshot = existed and self._has_table()
            if self.has_snapshot:
                self._check_root()
            else:
                self._create()
        except SetupError:
            self.conn.close()
            raise
        except sqlite3.Error as e:
            self.conn.close()
            raise SetupError(f"Could not initialise snapshot {path}: {e}") from e

    def _has_table(self) -> bool:
        cur = self.conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name='file_tree'")
        return cur.fetchone() is not None

    def _create(self) -> None:
        self.conn.execute("CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT)")
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS file_tree (
                path BLOB PRIMARY KEY,
                size INTEGER
            )
            """
        )
        self.conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES ('root', ?)", (os.fsencode(self.root),))
        self.conn.commit()

    def _check_root(self) -> None:
        try:
            row = self.conn.execute("SELECT value FROM meta WHERE key='root'").fetchone()
        except sqlite3.OperationalError:
            # snapshot written before the meta table existed
            return
        if row is not None and os.fsdecode(row[0]) != self.root:
            raise SetupError(f"Snapshot {self.path} belongs to {os.fsdecode(row[0])}, not {self.root}")

    def add(self, path: str, size: int) -> None:
        with self._guard:
            self.conn.execute("INSERT OR REPLACE INTO file_tree (path, size) VALUES (?, ?)", (os.fsencode(path), size))

    def load(self) -> Iterator[tuple[str, int]]:
        with self._guard:
            rows = self.conn.execute("SELECT path, size FROM file_tree").fetchall()
        for path, size in rows:
            yield os.fsdecode(path), int(size)


# -------------------------
# Hash tree output
# -------------------------

class HashTreeStore(SqliteStore):
    def __init__(self, path: Path):
        super().__init__(path)
        try:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS hash_tree (
                    path BLOB PRIMARY KEY,
                    digest BLOB,
                    size INTEGER,
                    mtime INTEGER,
                    ctime INTEGER,
                    atime INTEGER
                )
                """
            )
            for column in ("digest", "size", "mtime", "ctime", "atime"):
                self.conn.execute(f"CREATE INDEX IF NOT EXISTS hash_tree_{column}_idx ON hash_tree ({column})")
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.close()
            raise SetupError(f"Could not initialise hash tree DB {path}: {e}") from e

    def add(self, item: HashTreeItem) -> None:
        if item.error is not None:
            return
        with self._guard:
            self.conn.execute(
                "INSERT OR REPLACE INTO hash_tree (path, digest, size, mtime, ctime, atime) VALUES (?, ?, ?, ?, ?, ?)",
                (os.fsencode(item.path), item.digest, item.size, item.modify_time, item.change_time, item.access_time),
            )

    def count(self) -> int:
        with self._guard:
            return self.conn.execute("SELECT COUNT(*) FROM hash_tree").fetchone()[0]


# -------------------------
# Precalculated digests
# -------------------------

class DigestStore(SqliteStore):
    """Path → digest lookups, safe to share between hash workers."""

    DB_NAME = "db"

    def __init__(self, path: Path, cleanup_dir: Optional[Path] = None):
        super().__init__(path)
        self._cleanup_dir = cleanup_dir
        try:
            self.conn.execute("CREATE TABLE IF NOT EXISTS hashes (path BLOB PRIMARY KEY, digest BLOB)")
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.close()
            raise SetupError(f"Could not initialise digest DB {path}: {e}") from e

    @classmethod
    def open_parsed(cls, parsed_dir: Path) -> "DigestStore":
        db_path = Path(parsed_dir) / cls.DB_NAME
        if not db_path.is_file():
            raise SetupError(f"No parsed digests DB at {db_path}")
        return cls(db_path)

    @classmethod
    def from_manifest(
        cls,
        manifest_path: Path,
        work_dir: Optional[Path] = None,
        keep: bool = False,
    ) -> tuple["DigestStore", list[ManifestParseError]]:
        """Parse ``<hex digest>  <path>`` lines into a fresh DB.

        Malformed lines are returned as errors; every valid line is kept.
        The DB lives in a temporary directory next to the manifest (removed on
        ``close`` unless ``keep``), so it can be reused with ``open_parsed``.
        """
        manifest_path = Path(manifest_path)
        try:
            tmp = Path(tempfile.mkdtemp(prefix="parsedDigestsFile-", dir=str(work_dir or manifest_path.parent)))
        except OSError as e:
            raise SetupError(f"Could not create temporary directory for {manifest_path}: {e}") from e
        store = cls(tmp / cls.DB_NAME, cleanup_dir=None if keep else tmp)

        errors: list[ManifestParseError] = []
        try:
            with manifest_path.open("r", encoding="utf-8", errors="surrogateescape") as f, store._guard:
                for lineno, raw in enumerate(f, start=1):
                    line = raw.rstrip("\n")
                    if not line:
                        continue
                    parsed = parse_manifest_line(lineno, line)
                    if isinstance(parsed, ManifestParseError):
                        errors.append(parsed)
                        continue
                    path, digest = parsed
                    store.conn.execute(
                        "INSERT OR REPLACE INTO hashes (path, digest) VALUES (?, ?)", (os.fsencode(path), digest)
                    )
                store.conn.commit()
        except OSError as e:
            store.close()
            raise SetupError(f"Could not read {manifest_path}: {e}") from e

        log.info("parsed %s into %s (%d errors)", manifest_path, tmp, len(errors))
        return store, errors

    def precalculated_digest(self, path: str) -> Optional[bytes]:
        with self._guard:
            row = self.conn.execute("SELECT digest FROM hashes WHERE path = ?", (os.fsencode(path),)).fetchone()
        if row is None:
            return None
        return bytes(row[0])

    def close(self) -> None:
        super().close()
        if self._cleanup_dir is not None:
            shutil.rmtree(self._cleanup_dir, ignore_errors=True)


def parse_manifest_line(lineno: int, line: str):
    if "  " not in line:
        return ManifestParseError(lineno, line, "missing two-space separator")
    digest_hex, path = line.split("  ", 1)
    if not HEX_DIGEST_RE.fullmatch(digest_hex):
        return ManifestParseError(lineno, line, f"unable to unhex digest '{digest_hex}'")
    digest = bytes.fromhex(digest_hex)
    if not digest or not path:
        return ManifestParseError(lineno, line, "empty digest or path")
    return posixpath.normpath(path), digest
