from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from .alignment import AlignmentStatus


class StatusProvider(Protocol):
    def status(self) -> AlignmentStatus:
        """Return the current operator-facing status."""


def run_status_monitor(
    system: StatusProvider,
    on_status: Callable[[AlignmentStatus], None],
    stop_event: threading.Event,
    loop_hz: float = 10.0,
) -> None:
    """Poll the alignment status at a fixed rate and dispatch it (for a display or log)."""

    if loop_hz <= 0:
        raise ValueError("loop_hz must be > 0")
    dt = 1.0 / loop_hz
    while not stop_event.is_set():
        t0 = time.monotonic()
        on_status(system.status())
        elapsed = time.monotonic() - t0
        if elapsed < dt:
            stop_event.wait(dt - elapsed)
