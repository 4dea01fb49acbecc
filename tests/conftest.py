import io
import logging
import os
import stat
from pathlib import Path

import pytest

from salvagesync.ledger import BrokenFileLedger
from salvagesync.listing import Listing, ScandirLister
from salvagesync.logs import LOGGER_NAME
from salvagesync.scanner import open_file_tree


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def no_config(tmp_path: Path) -> Path:
    return tmp_path / "missing-config.json"


def scan(root: Path, **kwargs):
    """Scan a real directory with the scandir lister and wait for the result."""
    kwargs.setdefault("lister", ScandirLister(timeout=30))
    kwargs.setdefault("max_open_files", 8)
    tree = open_file_tree(str(root), **kwargs)
    assert tree.wait_complete(timeout=30)
    return tree


def write(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


BAD_NAME = b"bad\xff.txt"


def write_bad_name(directory: Path, data: bytes) -> str:
    """Create a file whose name is not valid UTF-8; returns the name as the scanner sees it."""
    directory.mkdir(parents=True, exist_ok=True)
    try:
        with open(os.path.join(os.fsencode(directory), BAD_NAME), "wb") as f:
            f.write(data)
    except OSError as e:
        pytest.skip(f"filesystem refuses non-UTF-8 names: {e}")
    return os.fsdecode(BAD_NAME)


def byte_stream() -> io.TextIOWrapper:
    """A strict UTF-8 text stream over bytes, like a real stdout; capsys cannot hold undecodable names."""
    return io.TextIOWrapper(io.BytesIO(), encoding="utf-8")


class RecordingLedger(BrokenFileLedger):
    def __init__(self, path=None):
        self.causes = {}
        super().__init__(path)

    def add(self, path, cause):
        self.causes.setdefault(path, []).append(cause)
        return super().add(path, cause)


# -------------------------
# Fake filesystem for scanner scenarios
# -------------------------

HANG = "hang"


class FakeFS:
    """
    Absolute path -> entry, where an entry is
    ("dir", ino, [names]), ("file", ino, size) or ("dir", ino, HANG).
    """

    def __init__(self, entries):
        self.entries = {os.path.normpath(k): v for k, v in entries.items()}

    def stat(self, path):
        entry = self.entries.get(os.path.normpath(path))
        if entry is None:
            raise FileNotFoundError(2, "No such file or directory", path)
        kind, ino, payload = entry
        if kind == "dir":
            mode, size = stat.S_IFDIR | 0o755, 4096
        else:
            mode, size = stat.S_IFREG | 0o644, payload
        return os.stat_result((mode, ino, 1, 1, 0, 0, size, 0, 0, 0))

    def names(self, path):
        return self.entries[os.path.normpath(path)][2]


class FakeListing(Listing):
    def __init__(self, path, names, **kwargs):
        super().__init__(path, **kwargs)
        self.fake_names = names

    def _produce(self):
        if self.fake_names == HANG:
            self.cancelled.wait()
            return
        for name in self.fake_names:
            self._emit_name(name)


class FakeLister:
    def __init__(self, fs: FakeFS, timeout=30.0, poll_interval=0.01):
        self.fs = fs
        self.timeout = timeout
        self.poll_interval = poll_interval

    def __call__(self, path):
        listing = FakeListing(
            path,
            self.fs.names(path),
            timeout=self.timeout,
            poll_interval=self.poll_interval,
        )
        return listing.start()
