"""
Cooperative cancellation token.

Set from any thread (the host loop handles `cancelSync` while a sync runs),
checked by the pipeline only between suspension points.
"""

import threading

from .errors import CancellationRequested


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationRequested("Sync cancelled")
