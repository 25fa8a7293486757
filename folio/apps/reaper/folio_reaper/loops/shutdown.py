"""Shared graceful-shutdown event for all reaper loops.

One handler for SIGTERM/SIGINT sets a single event that every loop waits on,
so a signal stops all loops at once.
"""

import logging
import signal
import threading

logger = logging.getLogger(__name__)

# Global shutdown event for graceful termination
_shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("REAPER_SHUTDOWN_SIGNAL", extra={"signal": sig_name})
    _shutdown_event.set()


def install_signal_handlers() -> None:
    """Register handlers (main thread only)."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


def shutdown_requested() -> bool:
    return _shutdown_event.is_set()


def wait_for_shutdown(seconds: float) -> bool:
    """Interruptible sleep. Returns True once shutdown was requested."""
    return _shutdown_event.wait(seconds)


def request_shutdown() -> None:
    _shutdown_event.set()
