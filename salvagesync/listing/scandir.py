from __future__ import annotations

import os

from .base import Lister, Listing


class ScandirListing(Listing):
    """Listing through ``os.scandir`` in a thread.

    Cancellation is checked between entries only: a call hung in the kernel
    keeps its thread, but the watchdog still closes the listing so the
    scanner moves on.
    """

    def _produce(self) -> None:
        with os.scandir(self.path) as it:
            for entry in it:
                if self.cancelled.is_set():
                    return
                self._emit_name(entry.name)


class ScandirLister(Lister):
    listing_class = ScandirListing
