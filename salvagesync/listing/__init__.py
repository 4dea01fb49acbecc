"""
Directory listing that survives failing media.

Names and errors arrive on separate channels, a watchdog cancels listings
that stop producing names, and repeated names are treated as corruption.
On Linux the entries come from the raw getdents64 syscall run in a helper
process; elsewhere ``os.scandir`` in a thread is used.
"""

from __future__ import annotations

from typing import Optional

from . import getdents
from .base import DUPLICATE_LIMIT, NEW_NAME_TIMEOUT, Lister, Listing
from .helper import GetdentsLister, GetdentsListing
from .records import RecordParser
from .scandir import ScandirLister, ScandirListing


def default_lister(
    timeout: float = NEW_NAME_TIMEOUT,
    poll_interval: Optional[float] = None,
    duplicate_limit: int = DUPLICATE_LIMIT,
) -> Lister:
    lister_class = GetdentsLister if getdents.supported() else ScandirLister
    return lister_class(timeout=timeout, poll_interval=poll_interval, duplicate_limit=duplicate_limit)


__all__ = [
    "DUPLICATE_LIMIT",
    "NEW_NAME_TIMEOUT",
    "GetdentsLister",
    "GetdentsListing",
    "Lister",
    "Listing",
    "RecordParser",
    "ScandirLister",
    "ScandirListing",
    "default_lister",
]
