# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Injectable time source for expiry and cursor-timeout reasoning.

``SystemClock`` is used for real runs: it reads the monotonic clock and its
``sleep`` can be interrupted by :meth:`SystemClock.cancel` (the runner calls
it when a check exceeds its time budget). ``SimulatedClock`` never blocks;
``sleep`` advances virtual time so self-tests stay deterministic.

A ``child`` clock reads the same time but has its own cancellation; the
runner gives each timed check one so a timeout never cancels later checks.

The reference service and the verifier share a ``SimulatedClock`` in the
self-tests, so sleeping past a lock's expiry on one side expires it on the
other.
"""

from __future__ import annotations

import copy
import threading
import time
from typing import Protocol, runtime_checkable

from wfs_ets.errors import RunCancelled

__all__ = ["Clock", "SimulatedClock", "SystemClock"]


@runtime_checkable
class Clock(Protocol):
    """Monotonic time source with a cancellable bounded sleep."""

    def now(self) -> float:
        """Return the current time in seconds."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block for *seconds*; raise ``RunCancelled`` if cancelled."""
        ...

    def cancel(self) -> None:
        """Interrupt any current and future ``sleep`` calls."""
        ...

    def reset(self) -> None:
        """Clear a previous cancellation so the clock can be reused."""
        ...

    def child(self) -> Clock:
        """Return a clock reading the same time with its own cancellation."""
        ...


class SystemClock:
    """Wall-clock implementation backed by ``time.monotonic``."""

    def __init__(self) -> None:
        """Initialize an uncancelled clock."""
        self._cancelled = threading.Event()

    def now(self) -> float:
        """Return ``time.monotonic()``."""
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        """Wait up to *seconds*, returning early only through cancellation.

        Raises:
            RunCancelled: If :meth:`cancel` was called before or during the wait.

        """
        if seconds <= 0:
            return
        if self._cancelled.wait(seconds):
            raise RunCancelled("Wait cancelled by run timeout", expected=f"{seconds:.1f}s wait", actual="cancelled")

    def cancel(self) -> None:
        """Cancel the current and any later waits."""
        self._cancelled.set()

    def reset(self) -> None:
        """Clear a previous cancellation so the clock can be reused."""
        self._cancelled.clear()

    def child(self) -> SystemClock:
        """Return an uncancelled clock; monotonic time is shared by construction."""
        return SystemClock()


class _VirtualTime:
    """Virtual time shared by a SimulatedClock and its children."""

    def __init__(self, start: float) -> None:
        self.now = start
        self.lock = threading.Lock()


class SimulatedClock:
    """Virtual clock advanced programmatically.

    Args:
        start: Initial virtual time in seconds.

    """

    def __init__(self, start: float = 0.0) -> None:
        """Initialize at *start*."""
        self._time = _VirtualTime(start)
        self._cancelled = False

    def now(self) -> float:
        """Return the virtual time."""
        with self._time.lock:
            return self._time.now

    def advance(self, seconds: float) -> None:
        """Move virtual time forward by *seconds*."""
        if seconds < 0:
            raise ValueError(f"cannot move time backwards: {seconds}")
        with self._time.lock:
            self._time.now += seconds

    def sleep(self, seconds: float) -> None:
        """Advance virtual time instead of blocking.

        Raises:
            RunCancelled: If the clock was cancelled.

        """
        if self._cancelled:
            raise RunCancelled("Wait cancelled by run timeout", expected=f"{seconds:.1f}s wait", actual="cancelled")
        self.advance(max(seconds, 0.0))

    def cancel(self) -> None:
        """Make subsequent sleeps raise ``RunCancelled``."""
        self._cancelled = True

    def reset(self) -> None:
        """Clear a previous cancellation."""
        self._cancelled = False

    def child(self) -> SimulatedClock:
        """Return an uncancelled clock sharing this clock's virtual time."""
        clone = copy.copy(self)
        clone._cancelled = False
        return clone
