from __future__ import annotations


class SalvageError(Exception):
    """Base class for every error raised by salvagesync."""


class SetupError(SalvageError):
    """Bad arguments, unreachable root, or a store/ledger that cannot be opened.

    These are the only errors that terminate a run.
    """


class CycleError(SalvageError):
    """A path was registered twice in one file tree."""

    def __init__(self, path: str, message: str | None = None):
        super().__init__(message or f"got into a cycle: '{path}' is already registered")
        self.path = path


# -------------------------
# Listing
# -------------------------

class ListingError(SalvageError):
    """Enumerating one directory failed."""


class WatchdogTimeout(ListingError):
    def __init__(self, path: str, timeout: float):
        super().__init__(f"watchdog timeout: no new names in '{path}' for {timeout:.1f}s")
        self.path = path
        self.timeout = timeout


class DuplicateNameError(ListingError):
    def __init__(self, name: str, count: int, fatal: bool):
        if fatal:
            message = f"name '{name}' is duplicated (count: {count}), cancelling the dir-scanning"
        else:
            message = f"name '{name}' is duplicated (count: {count})"
        super().__init__(message)
        self.name = name
        self.count = count
        self.fatal = fatal


class RecordFormatError(ListingError):
    """The listing helper produced bytes that are not a valid record stream."""


class CopyError(SalvageError):
    pass


# -------------------------
# Parsing
# -------------------------

class HashTreeParseError(SalvageError, ValueError):
    pass


class DigestParseError(HashTreeParseError):
    pass


class TimestampParseError(HashTreeParseError):
    pass


class SizeParseError(HashTreeParseError):
    pass


class ManifestParseError(SalvageError, ValueError):
    def __init__(self, lineno: int, line: str, reason: str):
        super().__init__(f"line {lineno}: {reason}: {line!r}")
        self.lineno = lineno
        self.line = line
        self.reason = reason
