"""
One-shot shutdown handling for epic runs.

ShutdownGuard registers an atexit hook and SIGINT/SIGTERM handlers. Whichever
fires first runs the cleanup callback; later triggers (atexit after a signal,
a second Ctrl-C) are no-ops. The callback finalises metrics and writes the
checkpoint, so it must run exactly once.
"""

import atexit
import logging
import signal
import sys
import threading
from typing import Callable

logger = logging.getLogger(__name__)

# Exit codes for signal-terminated runs follow the shell convention
SIGNAL_EXIT_CODES = {
    signal.SIGINT: 130,
    signal.SIGTERM: 143,
}


class ShutdownGuard:
    """Run a cleanup callback exactly once on exit or SIGINT/SIGTERM.

    Usage:
        with ShutdownGuard(lambda code: cleanup(code)) as guard:
            ...
            guard.run(0)   # normal completion; signals are now no-ops

    Args:
        callback: Called with the exit code (None from atexit, 130/143 from signals)
        signals: Signals to handle
    """

    def __init__(self, callback: Callable[[int | None], None],
                 signals: tuple = (signal.SIGINT, signal.SIGTERM)):
        self.callback = callback
        self.signals = signals
        self._lock = threading.Lock()
        self._done = False
        self._previous: dict = {}
        self._installed = False

    @property
    def done(self) -> bool:
        return self._done

    def install(self) -> "ShutdownGuard":
        atexit.register(self._atexit)
        for sig in self.signals:
            try:
                self._previous[sig] = signal.signal(sig, self._on_signal)
            except ValueError:
                # signal.signal only works in the main thread
                logger.debug(f"Cannot install handler for {sig} outside the main thread")
        self._installed = True
        return self

    def restore(self) -> None:
        """Unregister the atexit hook and put the previous signal handlers back."""
        if not self._installed:
            return
        atexit.unregister(self._atexit)
        for sig, previous in self._previous.items():
            try:
                signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
            except ValueError:
                pass
        self._previous.clear()
        self._installed = False

    def run(self, exit_code: int | None) -> bool:
        """Run the callback unless it already ran. Returns True if it ran now."""
        with self._lock:
            if self._done:
                return False
            self._done = True
        try:
            self.callback(exit_code)
        except Exception as e:
            logger.error(f"Shutdown cleanup failed: {e}")
        return True

    def _atexit(self) -> None:
        self.run(None)

    def _on_signal(self, signum, frame) -> None:
        exit_code = SIGNAL_EXIT_CODES.get(signum, 1)
        logger.warning(f"Received signal {signum}, shutting down")
        self.run(exit_code)
        self.restore()
        sys.exit(exit_code)

    def __enter__(self) -> "ShutdownGuard":
        return self.install()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.restore()
