from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from .errors import SetupError
from .logs import log_action

log = logging.getLogger(__name__)


class BrokenFileLedger:
    """
    Set of root-relative paths that could not be listed, stat'ed or copied.

    Backed by an append-only file with one path per line. Paths already in
    the file are loaded on ``enable`` so a later run skips them. Without a
    file the ledger only lives in memory.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path: Optional[Path] = None
        self._paths: set[str] = set()
        self._preloaded: set[str] = set()
        self._file = None
        self._guard = threading.Lock()
        if path is not None:
            self.enable(path)

    def enable(self, path: Path) -> None:
        path = Path(path)
        with self._guard:
            if self._file is not None:
                self._file.close()
                self._file = None
            try:
                if path.exists():
                    with path.open("r", encoding="utf-8", errors="surrogateescape") as f:
                        for line in f:
                            line = line.rstrip("\n")
                            if line:
                                self._paths.add(line)
                                self._preloaded.add(line)
                self._file = path.open("a", encoding="utf-8", errors="surrogateescape")
            except OSError as e:
                raise SetupError(f"Could not open broken-files list {path}: {e}") from e
            self.path = path
        log.info("broken-files list %s: %d known paths", path, len(self._paths))

    def add(self, path: str, cause: object) -> bool:
        """Record ``path``; returns False when it was already known.

        A False result on a fresh failure means the same path failed again,
        which callers treat as a loop.
        """
        log_action(log, "BROKEN", f"{path} | {cause}", path=path, level=logging.WARNING)
        with self._guard:
            if path in self._paths:
                return False
            self._paths.add(path)
            if self._file is not None:
                self._file.write(f"{path}\n")
                self._file.flush()
            return True

    def known_before(self, path: str) -> bool:
        """True if ``path`` came from the ledger file rather than this run."""
        with self._guard:
            return path in self._preloaded

    def __contains__(self, path: object) -> bool:
        with self._guard:
            return path in self._paths

    def __len__(self) -> int:
        with self._guard:
            return len(self._paths)

    def paths(self) -> set[str]:
        with self._guard:
            return set(self._paths)

    def close(self) -> None:
        with self._guard:
            if self._file is not None:
                self._file.close()
                self._file = None
