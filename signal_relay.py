"""Relay OS interrupt/terminate signals into an explicit cancellation source."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)


class CancellationSource:
    """One-shot cancellation flag shared by the loop and the process executor.

    The first ``cancel()`` wins; later calls are ignored. Safe to call from a
    signal handler or another thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.signum: Optional[int] = None

    def cancel(self, signum: Optional[int] = None) -> None:
        if self._event.is_set():
            return
        self.signum = signum
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to ``timeout`` seconds; True once cancelled."""
        return self._event.wait(timeout)


class SignalRelay:
    """Installs handlers that forward SIGINT/SIGTERM to a CancellationSource.

    Usage:
        relay = SignalRelay()
        cancel = relay.setup()
        try:
            ...
        finally:
            relay.restore()
    """

    def __init__(self, signals: Sequence[int] = DEFAULT_SIGNALS) -> None:
        self._signals = tuple(signals)
        self._previous: dict[int, object] = {}
        self.source: Optional[CancellationSource] = None

    def setup(self) -> CancellationSource:
        """Create the run's cancellation source and start relaying signals to it."""
        source = CancellationSource()
        self.source = source

        def _handler(signum, frame) -> None:
            # Flag only; no logging inside a signal handler.
            source.cancel(signum)

        for signum in self._signals:
            try:
                self._previous[signum] = signal.signal(signum, _handler)
            except (ValueError, OSError) as e:
                # Only the main thread may install handlers.
                logger.warning("Cannot relay signal %d: %s", signum, e)
        return source

    def restore(self) -> None:
        """Put back whatever handlers were installed before setup()."""
        for signum, previous in self._previous.items():
            try:
                signal.signal(signum, previous)
            except (ValueError, OSError, TypeError) as e:
                logger.warning("Cannot restore handler for signal %d: %s", signum, e)
        self._previous.clear()

    def __enter__(self) -> CancellationSource:
        return self.setup()

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.restore()
        return False
