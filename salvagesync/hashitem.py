"""
Hash-tree item text format.

One item per line, tab separated:

    hash  <HEX DIGEST>  <mtime ns>  <ctime ns>  <atime ns>  <size>  <path>
    error <message>  <path>

Paths are normalized on both serialize and parse. Lines with any other tag are
ignored by readers so the format can grow.
"""

from __future__ import annotations

import posixpath
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .errors import (
    DigestParseError,
    HashTreeParseError,
    SizeParseError,
    TimestampParseError,
)

HASH_TAG = "hash"
ERROR_TAG = "error"
FIELD_COUNT = 7

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1
UINT64_MAX = (1 << 64) - 1

HEX_DIGEST_RE = re.compile(r"(?:[0-9A-Fa-f]{2})*")
_INT_RE = re.compile(r"-?[0-9]+")
_UINT_RE = re.compile(r"[0-9]+")


def normalize_path(path: str) -> str:
    return posixpath.normpath(path)


@dataclass(frozen=True)
class HashTreeItem:
    path: str
    digest: bytes = b""
    size: int = 0
    modify_time: int = 0
    change_time: int = 0
    access_time: int = 0
    error: Optional[str] = None

    def serialize(self) -> str:
        path = normalize_path(self.path)
        if self.error is not None:
            message = self.error.replace("\t", " ").replace("\n", " ")
            return f"{ERROR_TAG}\t{message}\t{path}"
        return "\t".join(
            (
                HASH_TAG,
                self.digest.hex().upper(),
                str(self.modify_time),
                str(self.change_time),
                str(self.access_time),
                str(self.size),
                path,
            )
        )

    __str__ = serialize


def _parse_int64(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise TimestampParseError(f"unable to parse int64 '{value}'")
    n = int(value)
    if not INT64_MIN <= n <= INT64_MAX:
        raise TimestampParseError(f"int64 out of range '{value}'")
    return n


def _parse_uint64(value: str) -> int:
    if not _UINT_RE.fullmatch(value):
        raise SizeParseError(f"unable to parse uint64 '{value}'")
    n = int(value)
    if n > UINT64_MAX:
        raise SizeParseError(f"uint64 out of range '{value}'")
    return n


def parse_hash_tree_item(line: str) -> HashTreeItem:
    parts = line.split("\t", FIELD_COUNT - 1)
    if parts[0] != HASH_TAG:
        raise HashTreeParseError("is not a hash line")
    if len(parts) != FIELD_COUNT:
        raise HashTreeParseError(f"expected {FIELD_COUNT} fields, got {len(parts)}")

    _, digest_hex, mtime, ctime, atime, size, path = parts
    if not HEX_DIGEST_RE.fullmatch(digest_hex):
        raise DigestParseError(f"unable to unhex digest '{digest_hex}'")

    return HashTreeItem(
        path=normalize_path(path),
        digest=bytes.fromhex(digest_hex),
        modify_time=_parse_int64(mtime),
        change_time=_parse_int64(ctime),
        access_time=_parse_int64(atime),
        size=_parse_uint64(size),
    )


def diff_items(
    left: Iterable[HashTreeItem],
    right: Iterable[HashTreeItem],
) -> tuple[list[HashTreeItem], list[HashTreeItem]]:
    """Symmetric difference keyed by the whole serialized line.

    Items that differ only in ctime/atime are reported on both sides.
    """
    left_map = {item.serialize(): item for item in left}
    right_map = {item.serialize(): item for item in right}
    only_left = [item for key, item in left_map.items() if key not in right_map]
    only_right = [item for key, item in right_map.items() if key not in left_map]
    return only_left, only_right


# -------------------------
# Hash tree files
# -------------------------

GROUP_BY_DIGEST = "digest"
GROUP_BY_PATH = "path"
GROUP_BY_CHOICES = (GROUP_BY_DIGEST, GROUP_BY_PATH)


def read_hash_tree(
    lines: Iterable[str],
    group_by: str = GROUP_BY_DIGEST,
) -> tuple[dict[object, list[HashTreeItem]], list[HashTreeParseError]]:
    """Group ``hash`` lines by digest or path.

    Lines with other tags are skipped. Malformed ``hash`` lines are collected
    as errors; valid lines are kept regardless.
    """
    if group_by not in GROUP_BY_CHOICES:
        raise ValueError(f"unknown group_by {group_by!r}")

    groups: dict[object, list[HashTreeItem]] = defaultdict(list)
    errors: list[HashTreeParseError] = []
    for lineno, raw in enumerate(lines, start=1):
        line = raw.rstrip("\n")
        if not line.startswith(HASH_TAG + "\t"):
            continue
        try:
            item = parse_hash_tree_item(line)
        except HashTreeParseError as e:
            errors.append(HashTreeParseError(f"line {lineno}: {e}: {line!r}"))
            continue
        key = item.digest if group_by == GROUP_BY_DIGEST else item.path
        groups[key].append(item)
    return dict(groups), errors


def diff_hash_trees(
    left: dict[object, list[HashTreeItem]],
    right: dict[object, list[HashTreeItem]],
) -> Iterator[tuple[str, HashTreeItem]]:
    """Yield ``("<", item)`` for left-only and ``(">", item)`` for right-only items."""
    for key in sorted(set(left) | set(right)):
        only_left, only_right = diff_items(left.get(key, ()), right.get(key, ()))
        for item in sorted(only_left, key=HashTreeItem.serialize):
            yield "<", item
        for item in sorted(only_right, key=HashTreeItem.serialize):
            yield ">", item
