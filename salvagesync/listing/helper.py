from __future__ import annotations

import os
import subprocess
import sys
import threading
from pathlib import Path
from typing import Optional

from ..errors import ListingError
from .base import Lister, Listing
from .records import RecordParser

HELPER_SCRIPT = Path(__file__).with_name("getdents.py")
READ_SIZE = 64 * 1024


class GetdentsListing(Listing):
    """Listing fed by the getdents64 helper process; cancelling kills the helper."""

    def __init__(self, path: str, **kwargs):
        super().__init__(path, **kwargs)
        self._proc: Optional[subprocess.Popen] = None
        self._proc_guard = threading.Lock()

    def command(self) -> list[str]:
        return [sys.executable, str(HELPER_SCRIPT), self.path]

    def _produce(self) -> None:
        with self._proc_guard:
            if self.cancelled.is_set():
                return
            self._proc = subprocess.Popen(
                self.command(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        proc = self._proc
        try:
            parser = RecordParser(on_name=self._emit_name)
            fd = proc.stdout.fileno()
            while not self.cancelled.is_set():
                chunk = os.read(fd, READ_SIZE)
                if not chunk:
                    break
                parser.feed(chunk)
            if self.cancelled.is_set():
                return

            parser.close()
            stderr = proc.stderr.read()
            returncode = proc.wait()
            if returncode != 0:
                detail = os.fsdecode(stderr).strip() or f"exit status {returncode}"
                raise ListingError(f"unable to list '{self.path}': {detail}")
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            proc.stderr.close()

    def _on_cancel(self) -> None:
        with self._proc_guard:
            if self._proc is not None and self._proc.poll() is None:
                self._proc.kill()


class GetdentsLister(Lister):
    listing_class = GetdentsListing
