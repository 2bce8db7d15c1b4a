#!/usr/bin/env python3
"""Cooperative cancellation shared by every compaction stage."""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Iterator

from patchtool.compactify.errors import CancellationRequested

_LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """A flag that stages poll between items.

    Setting it never interrupts work already running; each stage decides where
    it is safe to stop.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancellation requested") -> None:
        if not self._event.is_set():
            _LOGGER.warning("Cancelling: %s", reason)
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationRequested(self._reason or "cancellation requested")


@contextmanager
def cancel_on_sigint(token: CancellationToken) -> Iterator[CancellationToken]:
    """Turn the first Ctrl-C into a cooperative cancel; a second one interrupts as usual."""

    def _handler(signum, frame):
        if token.cancelled:
            signal.signal(signal.SIGINT, original_handler)
            raise KeyboardInterrupt
        token.cancel("interrupted by user")

    original_handler = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, _handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, original_handler)
