from __future__ import annotations

import os
from typing import Callable

from ..errors import RecordFormatError

FIELD_END = 0x00
NEXT_FIELD = 0x09  # \t
RECORD_END = 0x0A  # \n

NAME_FIELD = 4


class RecordParser:
    """
    Incremental parser for the listing helper's output.

    Every field ends with a NUL byte followed by ``\\t`` (more fields follow)
    or ``\\n`` (end of record). Bytes may arrive split anywhere, including
    between the NUL and its separator. ``on_name`` receives field
    ``name_field`` of each record, decoded with the filesystem encoding.
    """

    def __init__(self, on_name: Callable[[str], object], name_field: int = NAME_FIELD):
        self.on_name = on_name
        self.name_field = name_field
        self.field_index = 0
        self.records = 0
        self._value = bytearray()
        self._want_separator = False

    def feed(self, data: bytes) -> int:
        pos = 0
        end = len(data)
        while pos < end:
            if self._want_separator:
                self._end_field(data[pos])
                pos += 1
                continue

            idx = data.find(FIELD_END, pos)
            if idx == -1:
                self._value += data[pos:]
                break
            self._value += data[pos:idx]
            pos = idx + 1
            self._want_separator = True
        return end

    def _end_field(self, separator: int) -> None:
        if separator not in (NEXT_FIELD, RECORD_END):
            raise RecordFormatError(f"invalid separator type: {separator} (0x{separator:02X})")

        if self.field_index == self.name_field:
            self.on_name(os.fsdecode(bytes(self._value)))

        if separator == NEXT_FIELD:
            self.field_index += 1
        else:
            self.field_index = 0
            self.records += 1
        self._value.clear()
        self._want_separator = False

    def close(self) -> None:
        if self._value or self._want_separator or self.field_index:
            raise RecordFormatError(f"truncated record after {self.records} complete records")
