"""
Raw directory listing through the Linux getdents64 syscall.

Run as a script by the getdents lister, so a listing stuck inside the kernel
can be killed without taking the scanner down with it. It only depends on the
standard library so the interpreter can run the file directly.

Output: one record per directory entry, fields in order
inode, type, record length, offset, name; each field is followed by a NUL
byte and then a tab (more fields) or a newline (end of record).
"""

from __future__ import annotations

import ctypes
import errno
import os
import platform
import struct
import sys
from typing import Iterator, List, NamedTuple, Optional

BUF_SIZE = 32 * 1024

# getdents64 syscall numbers per machine
SYSCALL_NUMBERS = {
    "x86_64": 217,
    "amd64": 217,
    "i386": 220,
    "i686": 220,
    "aarch64": 61,
    "arm64": 61,
    "armv7l": 217,
    "armv6l": 217,
    "riscv64": 61,
    "loongarch64": 61,
    "ppc64": 202,
    "ppc64le": 202,
    "s390x": 220,
}

# struct linux_dirent64 up to d_name: d_ino, d_off, d_reclen, d_type
DIRENT_HEADER = struct.Struct("=QqHB")

DT_NAMES = {
    0: "???",
    1: "FIFO",
    2: "char dev",
    4: "directory",
    6: "block dev",
    8: "regular",
    10: "symlink",
    12: "socket",
}
KNOWN_TYPES = frozenset(t for t in DT_NAMES if t != 0)


class Dirent(NamedTuple):
    ino: int
    off: int
    reclen: int
    type: int
    name: bytes


def syscall_number(machine: Optional[str] = None) -> Optional[int]:
    return SYSCALL_NUMBERS.get((machine or platform.machine()).lower())


def supported() -> bool:
    return sys.platform.startswith("linux") and syscall_number() is not None


def parse_dirents(buf: bytes, buf_size: int = BUF_SIZE) -> Iterator[Dirent]:
    """Decode one getdents64 result.

    A record with ``d_reclen == 0`` would loop forever; in that case skip past
    its name and scan forward byte by byte until something that looks like a
    record (sane length, known type) shows up.
    """
    pos = 0
    end = len(buf)
    while pos + DIRENT_HEADER.size <= end:
        ino, off, reclen, dtype = DIRENT_HEADER.unpack_from(buf, pos)
        name_start = pos + DIRENT_HEADER.size
        name_end = buf.find(b"\0", name_start)
        if name_end == -1:
            name_end = end
        name = buf[name_start:name_end]
        yield Dirent(ino, off, reclen, dtype, name)

        if reclen != 0:
            pos += reclen
            continue

        # invalid d_reclen, bruteforcing
        pos = name_start + len(name)
        while pos + DIRENT_HEADER.size <= end:
            _, _, reclen, dtype = DIRENT_HEADER.unpack_from(buf, pos)
            if reclen > buf_size or dtype not in KNOWN_TYPES:
                pos += 1
                continue
            break


def iter_batches(path: str) -> Iterator[List[Dirent]]:
    nr = syscall_number()
    if nr is None:
        raise OSError(errno.ENOSYS, f"getdents64 is not known for {platform.machine()}", path)

    libc = ctypes.CDLL(None, use_errno=True)
    libc.syscall.restype = ctypes.c_long

    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        buf = ctypes.create_string_buffer(BUF_SIZE)
        while True:
            nread = libc.syscall(ctypes.c_long(nr), ctypes.c_int(fd), buf, ctypes.c_size_t(BUF_SIZE))
            if nread < 0:
                err = ctypes.get_errno()
                raise OSError(err, os.strerror(err), path)
            if nread == 0:
                return
            yield list(parse_dirents(buf.raw[:nread]))
    finally:
        os.close(fd)


def format_record(d: Dirent) -> bytes:
    fields = (
        str(d.ino).encode(),
        DT_NAMES.get(d.type, "???").encode(),
        str(d.reclen).encode(),
        str(d.off).encode(),
        d.name,
    )
    return b"\0\t".join(fields) + b"\0\n"


def main(argv: Optional[list] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    path = argv[0] if argv else "."
    out = sys.stdout.buffer
    try:
        for batch in iter_batches(path):
            out.write(b"".join(format_record(d) for d in batch))
            out.flush()
    except OSError as e:
        print(f"getdents64: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
